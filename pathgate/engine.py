from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .client_ip import resolve_client_ip
from .errors import AccessDenied, ApplicationNotFound, GateError, SessionStoreError
from .infra.redis_client import DEFAULT_KEY_TEMPLATE, SessionStore, session_key
from .registry import ApplicationPolicy, ApplicationRegistry, strip_port
from .rewrite import redirect_location, rewrite_forward_path

logger = logging.getLogger("pathgate.engine")

BROWSER_UA = re.compile(r"(?i)Mozilla|Chrome|Safari|Edge|Opera|Firefox")
# Mobile OS token whose clients are treated as app traffic even with a browser-ish UA.
APP_OS_TOKEN = "android"


def is_browser(user_agent: str | None) -> bool:
    ua = user_agent or ""
    return bool(BROWSER_UA.search(ua)) and APP_OS_TOKEN not in ua.lower()


class Outcome(str, enum.Enum):
    NOT_FOUND = "not_found"   # 404
    FORWARD = "forward"
    REDIRECT = "redirect"     # 302
    DENY = "deny"             # 403
    ERROR = "error"           # 500


@dataclass(frozen=True)
class GateRequest:
    host: str
    method: str
    path: str
    raw_path: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    peer: Optional[str] = None

    @property
    def user_agent(self) -> str:
        return self.headers.get("User-Agent") or self.headers.get("user-agent") or ""


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    hostname: str
    client_ip: str = ""
    policy: Optional[ApplicationPolicy] = None
    path: str = ""
    raw_path: str = ""
    location: Optional[str] = None
    error: Optional[GateError] = None
    allow_listed: bool = False

    @property
    def status_code(self) -> Optional[int]:
        return _STATUS.get(self.outcome)


_STATUS = {
    Outcome.NOT_FOUND: 404,
    Outcome.REDIRECT: 302,
    Outcome.DENY: 403,
    Outcome.ERROR: 500,
}


class AccessDecisionEngine:
    """
    Per-request access state machine.

      1) unmapped host           -> NOT_FOUND
      2) allow-listed IP         -> FORWARD (no session logic, path untouched)
      3) session exists?         (store error counts as "no")
      4) no session + secret path -> create session;
                                    browser -> REDIRECT to the stripped path,
                                    otherwise fall through with the pre-grant answer
      5) no session / store error -> DENY
      6) auto-renew              -> refresh TTL, failures logged only
      7) strip secret prefix     -> FORWARD

    Step 4's fall-through means a non-browser client's first secret-path hit
    creates the session but is still denied. `grant_non_browser_on_first_visit`
    lets that request through instead.
    """

    def __init__(
        self,
        registry: ApplicationRegistry,
        store: SessionStore,
        *,
        key_template: str = DEFAULT_KEY_TEMPLATE,
        grant_non_browser_on_first_visit: bool = False,
    ) -> None:
        self.registry = registry
        self.store = store
        self.key_template = key_template
        self.grant_non_browser_on_first_visit = grant_non_browser_on_first_visit

    async def decide(self, req: GateRequest) -> Decision:
        hostname = strip_port(req.host)
        app = self.registry.lookup(hostname)
        if app is None:
            logger.info("No app configured for hostname: %s", hostname)
            return Decision(Outcome.NOT_FOUND, hostname, error=ApplicationNotFound(hostname))

        ip = resolve_client_ip(req.headers, req.peer)
        logger.info("[%s] Request from %s %s %s", hostname, ip, req.method, req.path)

        if app.allow_patterns.matches(ip):
            logger.info("[%s] IP %s matches allow list. Forwarding directly to upstream.", hostname, ip)
            path, raw_path = rewrite_forward_path(req.path, req.raw_path, "")
            return Decision(
                Outcome.FORWARD, hostname, ip, app,
                path=path, raw_path=raw_path, allow_listed=True,
            )

        key = session_key(hostname, ip, self.key_template)
        existed = False
        lookup_error: SessionStoreError | None = None
        try:
            existed = await self.store.exists(key)
        except SessionStoreError as exc:
            lookup_error = exc
            logger.warning("[%s] Session lookup failed for %s: %s", hostname, ip, exc)

        just_granted = False
        if not existed and req.path.startswith(app.secret_path_prefix):
            try:
                await self.store.set_with_expiry(key, app.session_ttl)
            except SessionStoreError as exc:
                logger.error("[%s] Redis error: %s", hostname, exc)
                return Decision(Outcome.ERROR, hostname, ip, app, error=exc)
            just_granted = True
            logger.info("[%s] Access granted to %s via secret path", hostname, ip)

            ua = req.user_agent
            if is_browser(ua):
                location = redirect_location(req.path, app.secret_path_prefix)
                logger.info("[%s] Detected User-Agent %s. Redirecting %s to %s", hostname, ua, ip, location)
                return Decision(Outcome.REDIRECT, hostname, ip, app, location=location)

        if lookup_error is not None or not existed:
            if not (just_granted and self.grant_non_browser_on_first_visit):
                logger.info("[%s] Access denied to %s", hostname, ip)
                return Decision(
                    Outcome.DENY, hostname, ip, app,
                    error=lookup_error or AccessDenied(hostname, ip),
                )

        if existed and app.auto_renew:
            try:
                await self.store.refresh_expiry(key, app.session_ttl)
            except SessionStoreError as exc:
                logger.warning("[%s] Session renew failed for %s: %s", hostname, ip, exc)

        path, raw_path = rewrite_forward_path(req.path, req.raw_path, app.secret_path_prefix)
        return Decision(Outcome.FORWARD, hostname, ip, app, path=path, raw_path=raw_path)
