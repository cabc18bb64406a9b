"""Streaming reverse proxy from the gate to an application's upstream.

The upstream response (status, headers, body bytes) is relayed as-is;
redirects are not followed and content is not decoded.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Tuple

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from .registry import ApplicationPolicy

logger = logging.getLogger("pathgate.forwarder")

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade", "proxy-connection",
}

# httpx adds these from its client defaults; only send them if the client did.
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")


def _strip_hop_headers(items: Iterable[Tuple[str, str]], connection: str | None) -> List[Tuple[str, str]]:
    drop = set(HOP_BY_HOP)
    for h in (connection or "").split(","):
        if h.strip():
            drop.add(h.strip().lower())
    return [(k, v) for k, v in items if k.lower() not in drop]


def request_has_body(headers: Mapping[str, str]) -> bool:
    length = headers.get("content-length")
    if length is not None:
        return length.strip() not in ("", "0")
    return "transfer-encoding" in headers


def join_paths(base: str, path: str) -> str:
    """Single-slash join of the upstream base path and the request path."""
    a, b = base.endswith("/"), path.startswith("/")
    if a and b:
        return base + path[1:]
    if not a and not b:
        return base + "/" + path
    return base + path


def _escape_obs_text(raw: bytes) -> bytes:
    # bytes >= 0x80 can arrive unescaped in a request target
    return b"".join(b"%%%02X" % c if c >= 0x80 else bytes((c,)) for c in raw)


def build_target_url(upstream: httpx.URL, raw_path: str, query: bytes = b"") -> httpx.URL:
    """
    Upstream authority + (upstream base path joined with raw_path).
    Upstream query and request query are both kept, upstream first.
    """
    base_path = upstream.raw_path.split(b"?", 1)[0].decode("ascii")
    path = join_paths(base_path, raw_path or "/")
    upstream_query = upstream.query
    if upstream_query and query:
        merged = upstream_query + b"&" + query
    else:
        merged = upstream_query or query
    raw = _escape_obs_text(path.encode("latin-1"))
    if merged:
        raw += b"?" + _escape_obs_text(merged)
    return upstream.copy_with(raw_path=raw)


def _forward_headers(request: Request) -> List[Tuple[str, str]]:
    headers = _strip_hop_headers(request.headers.items(), request.headers.get("connection"))

    peer = request.client.host if request.client else None
    if peer:
        prior = ", ".join(v for k, v in headers if k.lower() == "x-forwarded-for")
        headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
        headers.append(("x-forwarded-for", f"{prior}, {peer}" if prior else peer))
    return headers


class Forwarder:
    """Relays requests through a shared httpx.AsyncClient (one per worker)."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def forward(self, request: Request, app: ApplicationPolicy, raw_path: str) -> Response:
        target_url = build_target_url(app.upstream_target, raw_path, request.scope.get("query_string", b""))
        headers = _forward_headers(request)

        upstream_request = self.client.build_request(
            request.method,
            target_url,
            headers=headers,
            content=request.stream() if request_has_body(request.headers) else None,
        )
        for name in _CLIENT_DEFAULT_HEADERS:
            if name not in request.headers and name in upstream_request.headers:
                del upstream_request.headers[name]

        logger.debug("[%s] Forwarding %s %s", app.hostname, request.method, target_url)
        try:
            upstream_response = await self.client.send(upstream_request, stream=True, follow_redirects=False)
        except httpx.RequestError as exc:
            logger.error("[%s] Upstream %s failed: %r", app.hostname, target_url, exc)
            return PlainTextResponse("Bad Gateway", status_code=502)

        resp_headers = _strip_hop_headers(
            upstream_response.headers.multi_items(), upstream_response.headers.get("connection")
        )
        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        # replace Starlette's defaults; keeps repeated headers like Set-Cookie
        response.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in resp_headers
        ]
        return response
