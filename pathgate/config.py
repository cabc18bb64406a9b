from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .allowlist import compile_allow_patterns
from .errors import ConfigurationError
from .infra.redis_client import DEFAULT_KEY_TEMPLATE
from .registry import DEFAULT_SECRET_PATH, ApplicationPolicy, ApplicationRegistry

logger = logging.getLogger("pathgate.config")

DEFAULT_SESSION_TTL = "10m"
DEFAULT_HEALTH_PATH = ""

# -------------------------
# Durations ("10m", "1h30m", "1.5s")
# -------------------------
_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,   # micro sign
    "μs": 1e-6,   # greek mu
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Go-style duration: signed sequence of <number><unit>; bare "0" is allowed."""
    s = (value or "").strip()
    if not s:
        raise ValueError("invalid duration \"\"")
    sign = 1.0
    body = s
    if body[0] in "+-":
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return timedelta(0)

    pos = 0
    total = 0.0
    while pos < len(body):
        m = _DURATION_PART.match(body, pos)
        if not m:
            raise ValueError(f"invalid duration \"{value}\"")
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    if pos == 0:
        raise ValueError(f"invalid duration \"{value}\"")
    return timedelta(seconds=sign * total)


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: Union[str, bool, None], default: bool = False) -> bool:
    """strconv-style booleans. Unparseable input reads as False."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    v = str(value).strip()
    if v == "":
        return default
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    logger.warning("unrecognised boolean %r, treating as false", value)
    return False


def _env_true(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    return parse_bool(env.get(name), default)


def parse_listen_address(addr: str) -> tuple[str, int]:
    """':8080' -> ('0.0.0.0', 8080); '[::1]:9000' -> ('::1', 9000)."""
    addr = (addr or "").strip()
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigurationError(f"invalid LISTEN_ADDRESS {addr!r}, expected host:port")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


# -------------------------
# Application records
# -------------------------
class AppRecord(BaseModel):
    """One application as written in APPS_CONFIG or APP_n_* variables."""

    model_config = ConfigDict(extra="ignore")

    hostname: str = ""
    secret_path: str = DEFAULT_SECRET_PATH
    upstream_url: str = ""
    allow_ips: Union[str, List[str]] = ""
    session_ttl: str = DEFAULT_SESSION_TTL
    auto_renew: Union[bool, str] = False

    @field_validator("secret_path", mode="before")
    @classmethod
    def _default_secret_path(cls, v: Any) -> Any:
        return v if v not in (None, "") else DEFAULT_SECRET_PATH

    @field_validator("session_ttl", mode="before")
    @classmethod
    def _default_ttl(cls, v: Any) -> Any:
        return v if v not in (None, "") else DEFAULT_SESSION_TTL

    @field_validator("allow_ips", "auto_renew", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    def to_policy(self) -> ApplicationPolicy:
        if not self.hostname:
            raise ConfigurationError("hostname is required")
        if not self.upstream_url:
            raise ConfigurationError("upstream_url is required")
        try:
            upstream = httpx.URL(self.upstream_url)
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"invalid upstream_url: {exc}") from exc
        try:
            ttl = parse_duration(self.session_ttl)
        except ValueError as exc:
            raise ConfigurationError(f"invalid session_ttl: {exc}") from exc

        return ApplicationPolicy(
            hostname=self.hostname,
            upstream_target=upstream,
            secret_path_prefix=self.secret_path,
            allow_patterns=compile_allow_patterns(self.allow_ips),
            session_ttl=ttl,
            auto_renew=parse_bool(self.auto_renew),
        )


def _record_to_policy(raw: Any, source: str) -> ApplicationPolicy:
    try:
        if not isinstance(raw, dict):
            raise ConfigurationError("expected a JSON object")
        return AppRecord.model_validate(raw).to_policy()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid app config {source}: {exc}") from exc
    except ConfigurationError as exc:
        raise ConfigurationError(f"Invalid app config {source}: {exc}") from exc


def load_apps_from_json(payload: str) -> List[ApplicationPolicy]:
    try:
        records = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Failed to parse APPS_CONFIG JSON: {exc}") from exc
    if not isinstance(records, list):
        raise ConfigurationError("Failed to parse APPS_CONFIG JSON: expected an array of objects")
    return [_record_to_policy(r, f"APPS_CONFIG[{i}]") for i, r in enumerate(records)]


def load_apps_from_env(env: Mapping[str, str]) -> List[ApplicationPolicy]:
    """APP_1_HOSTNAME, APP_2_HOSTNAME, ... until the first gap."""
    policies: List[ApplicationPolicy] = []
    i = 1
    while True:
        prefix = f"APP_{i}_"
        hostname = env.get(prefix + "HOSTNAME", "")
        if not hostname:
            break
        record: Dict[str, Any] = {
            "hostname": hostname,
            "secret_path": env.get(prefix + "SECRET_PATH", ""),
            "upstream_url": env.get(prefix + "UPSTREAM_URL", ""),
            "allow_ips": env.get(prefix + "ALLOW_IPS", ""),
            "session_ttl": env.get(prefix + "SESSION_TTL", ""),
            # numbered deployments renew by default
            "auto_renew": env.get(prefix + "AUTO_RENEW") or "true",
        }
        policies.append(_record_to_policy(record, prefix))
        i += 1
    return policies


def load_registry(env: Mapping[str, str]) -> ApplicationRegistry:
    """APPS_CONFIG wins when set; numbered variables otherwise."""
    payload = env.get("APPS_CONFIG", "")
    if payload:
        policies = load_apps_from_json(payload)
    else:
        policies = load_apps_from_env(env)

    if not policies:
        raise ConfigurationError(
            "No app configurations found. Set APPS_CONFIG (JSON) or use numbered "
            "environment variables (APP_1_HOSTNAME, etc.)"
        )
    return ApplicationRegistry.from_policies(policies)


# -------------------------
# Process settings
# -------------------------
@dataclass(frozen=True)
class GateSettings:
    registry: ApplicationRegistry
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    redis_url: Optional[str] = None
    redis_address: str = "redis:6379"
    redis_password: str = ""
    redis_db: int = 0
    session_key_template: str = DEFAULT_KEY_TEMPLATE
    session_store_timeout_s: float = 2.0
    session_store_max_attempts: int = 2
    upstream_timeout_s: float = 30.0
    grant_non_browser_on_first_visit: bool = False
    health_path: str = DEFAULT_HEALTH_PATH
    log_level: str = "INFO"

    @property
    def redis_display(self) -> str:
        # never log the URL itself, it may carry a password
        return "REDIS_URL" if self.redis_url else self.redis_address


def _number(env: Mapping[str, str], name: str, default: str, kind=float):
    raw = env.get(name) or default
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid {name}: {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None) -> GateSettings:
    """Build the immutable settings snapshot; any problem raises ConfigurationError."""
    env = os.environ if env is None else env

    host, port = parse_listen_address(env.get("LISTEN_ADDRESS") or ":8080")

    template = env.get("SESSION_KEY_TEMPLATE") or DEFAULT_KEY_TEMPLATE
    if "{ip}" not in template:
        raise ConfigurationError("SESSION_KEY_TEMPLATE must contain {ip}")
    try:
        template.format(hostname="h", ip="i")
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigurationError(f"invalid SESSION_KEY_TEMPLATE {template!r}: {exc}") from exc

    health_path = env.get("HEALTH_PATH", DEFAULT_HEALTH_PATH).rstrip("/")
    if health_path and not health_path.startswith("/"):
        raise ConfigurationError("HEALTH_PATH must start with '/'")

    return GateSettings(
        registry=load_registry(env),
        listen_host=host,
        listen_port=port,
        redis_url=env.get("REDIS_URL") or None,
        redis_address=env.get("REDIS_ADDRESS") or "redis:6379",
        redis_password=env.get("REDIS_PASSWORD", ""),
        redis_db=_number(env, "REDIS_DB", "0", int),
        session_key_template=template,
        session_store_timeout_s=_number(env, "SESSION_STORE_TIMEOUT_SECONDS", "2"),
        session_store_max_attempts=_number(env, "SESSION_STORE_MAX_ATTEMPTS", "2", int),
        upstream_timeout_s=_number(env, "UPSTREAM_TIMEOUT_SECONDS", "30"),
        grant_non_browser_on_first_visit=_env_true(env, "GRANT_NON_BROWSER_ON_FIRST_VISIT"),
        health_path=health_path,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
