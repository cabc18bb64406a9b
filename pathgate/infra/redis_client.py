from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Protocol, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import SessionStoreError

logger = logging.getLogger("pathgate.session_store")

DEFAULT_KEY_TEMPLATE = "app:{hostname}:ip:{ip}"

# Errors worth a second try; anything else (auth, wrong type, ...) fails fast.
_TRANSIENT = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError)


def session_key(hostname: str, ip: str, template: str = DEFAULT_KEY_TEMPLATE) -> str:
    """
    Render the store key for one (application, client IP) pair.

    Single-app deployments migrating an existing store can pass a template
    without the hostname, e.g. "ip:{ip}".
    """
    return template.format(hostname=hostname, ip=ip)


@runtime_checkable
class SessionStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def set_with_expiry(self, key: str, ttl: timedelta) -> None: ...

    async def refresh_expiry(self, key: str, ttl: timedelta) -> None: ...


def _ttl_ms(ttl: timedelta) -> int:
    return max(1, int(ttl.total_seconds() * 1000))


class RedisSessionStore:
    """
    SessionStore over redis.asyncio.

    Every call is bounded by `timeout_s`. exists/set get up to `max_attempts`
    tries on transient errors; refresh is single-shot since callers ignore
    its failures anyway.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        timeout_s: float = 2.0,
        max_attempts: int = 2,
        retry_backoff_s: float = 0.05,
    ) -> None:
        self.client = client
        self.timeout_s = timeout_s
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_s = retry_backoff_s

    async def _call(self, operation: str, key: str, factory, *, attempts: int):
        attempt = 0
        last_err: BaseException | None = None
        while attempt < attempts:
            attempt += 1
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout_s)
            except _TRANSIENT as exc:
                last_err = exc
                logger.warning("redis %s %s attempt %d/%d failed: %r", operation, key, attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(self.retry_backoff_s * attempt)
            except RedisError as exc:
                raise SessionStoreError(operation, key, exc) from exc
        raise SessionStoreError(operation, key, last_err) from last_err

    async def exists(self, key: str) -> bool:
        n = await self._call("exists", key, lambda: self.client.exists(key), attempts=self.max_attempts)
        return int(n or 0) > 0

    async def set_with_expiry(self, key: str, ttl: timedelta) -> None:
        await self._call(
            "set", key, lambda: self.client.set(key, "1", px=_ttl_ms(ttl)), attempts=self.max_attempts
        )

    async def refresh_expiry(self, key: str, ttl: timedelta) -> None:
        await self._call("expire", key, lambda: self.client.pexpire(key, _ttl_ms(ttl)), attempts=1)

    async def ping(self) -> bool:
        return bool(await self._call("ping", "-", lambda: self.client.ping(), attempts=1))

    async def close(self) -> None:
        await self.client.aclose()


def create_redis_client(
    *,
    url: str | None = None,
    address: str = "redis:6379",
    password: str | None = None,
    db: int = 0,
) -> redis.Redis:
    if url:
        return redis.from_url(url, decode_responses=True)

    host, _, port = address.rpartition(":")
    if not host:
        host, port = address, "6379"
    return redis.Redis(
        host=host,
        port=int(port or 6379),
        password=password or None,
        db=db,
        decode_responses=True,
    )
