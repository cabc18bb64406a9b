from __future__ import annotations


class GateError(Exception):
    """Base class for everything the gate raises on purpose."""


class ConfigurationError(GateError):
    """Invalid or missing configuration. Fatal at startup."""


class ApplicationNotFound(GateError):
    def __init__(self, hostname: str) -> None:
        super().__init__(f"no application configured for hostname: {hostname}")
        self.hostname = hostname


class SessionStoreError(GateError):
    """The session store failed or timed out for a single call."""

    def __init__(self, operation: str, key: str, cause: BaseException | None = None) -> None:
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"session store {operation} failed for {key}{detail}")
        self.operation = operation
        self.key = key
        self.cause = cause


class AccessDenied(GateError):
    """Not a fault: the client has not unlocked the application."""

    def __init__(self, hostname: str, ip: str) -> None:
        super().__init__(f"access denied to {ip} for {hostname}")
        self.hostname = hostname
        self.ip = ip
