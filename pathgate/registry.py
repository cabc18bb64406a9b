from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

import httpx

from .allowlist import AllowList
from .errors import ConfigurationError

logger = logging.getLogger("pathgate.registry")

DEFAULT_SECRET_PATH = "/secret_path"
DEFAULT_SESSION_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class ApplicationPolicy:
    hostname: str
    upstream_target: httpx.URL
    secret_path_prefix: str = DEFAULT_SECRET_PATH
    allow_patterns: AllowList = field(default_factory=AllowList)
    session_ttl: timedelta = DEFAULT_SESSION_TTL
    auto_renew: bool = True

    def __post_init__(self) -> None:
        if not self.hostname:
            raise ConfigurationError("hostname is required")
        if not self.secret_path_prefix:
            raise ConfigurationError(f"{self.hostname}: secret_path must not be empty")
        if self.session_ttl <= timedelta(0):
            raise ConfigurationError(f"{self.hostname}: session_ttl must be positive")
        if not self.upstream_target.scheme or not self.upstream_target.host:
            raise ConfigurationError(f"{self.hostname}: upstream_url needs a scheme and host")


def strip_port(host: str | None) -> str:
    """Drop everything from the first ':' so "app.example.com:8443" maps to its record."""
    host = host or ""
    idx = host.find(":")
    return host[:idx] if idx != -1 else host


class ApplicationRegistry(Mapping[str, ApplicationPolicy]):
    """
    Read-only hostname -> policy snapshot.

    Built once at startup; request handlers share it without locking.
    Hostnames are exact, case-sensitive keys.
    """

    def __init__(self, policies: Mapping[str, ApplicationPolicy]) -> None:
        self._apps = MappingProxyType(dict(policies))

    @classmethod
    def from_policies(cls, policies: Iterable[ApplicationPolicy]) -> "ApplicationRegistry":
        apps: dict[str, ApplicationPolicy] = {}
        for policy in policies:
            if policy.hostname in apps:
                raise ConfigurationError(f"duplicate application hostname: {policy.hostname}")
            apps[policy.hostname] = policy
        if not apps:
            raise ConfigurationError("no applications configured")
        return cls(apps)

    def lookup(self, hostname: str) -> Optional[ApplicationPolicy]:
        return self._apps.get(hostname)

    def __getitem__(self, hostname: str) -> ApplicationPolicy:
        return self._apps[hostname]

    def __iter__(self) -> Iterator[str]:
        return iter(self._apps)

    def __len__(self) -> int:
        return len(self._apps)

    def log_summary(self) -> None:
        logger.info("  Configured apps: %d", len(self._apps))
        for hostname, app in self._apps.items():
            logger.info(
                "    %s -> %s (secret: %s, ttl: %s, auto_renew: %s, allow: %d)",
                hostname, app.upstream_target, app.secret_path_prefix,
                app.session_ttl, app.auto_renew, len(app.allow_patterns),
            )
