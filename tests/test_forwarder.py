from __future__ import annotations

import asyncio

import httpx
import pytest
from starlette.requests import Request

from pathgate.forwarder import Forwarder, build_target_url, join_paths, request_has_body

from conftest import make_policy


def _request(path="/x", headers=(), query=b"", method="GET", body=b"") -> Request:
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query,
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers],
        "client": ("192.0.2.1", 5555),
        "server": ("gate", 80),
    }
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _run_forward(request, policy, raw_path, handler):
    seen = {}

    def capture(upstream_request: httpx.Request) -> httpx.Response:
        seen["request"] = upstream_request
        return handler(upstream_request)

    async def go():
        client = httpx.AsyncClient(transport=httpx.MockTransport(capture))
        response = await Forwarder(client).forward(request, policy, raw_path)
        chunks = []
        if hasattr(response, "body_iterator"):
            async for chunk in response.body_iterator:
                chunks.append(chunk)
            if response.background is not None:
                await response.background()
        else:
            chunks.append(response.body)
        await client.aclose()
        return response, b"".join(chunks)

    response, body = asyncio.run(go())
    return seen.get("request"), response, body


@pytest.mark.parametrize(
    "base, path, expected",
    [
        ("", "/x", "/x"),
        ("/", "/x", "/x"),
        ("/base", "/x", "/base/x"),
        ("/base/", "/x", "/base/x"),
        ("/base", "x", "/base/x"),
        ("/base/", "x", "/base/x"),
    ],
)
def test_join_paths(base, path, expected):
    assert join_paths(base, path) == expected


def test_build_target_url_keeps_base_path_and_both_queries():
    url = build_target_url(httpx.URL("http://backend:3000/base?token=abc"), "/x%20y", b"a=1")
    assert str(url) == "http://backend:3000/base/x%20y?token=abc&a=1"


def test_build_target_url_plain():
    url = build_target_url(httpx.URL("https://backend.internal"), "/docs", b"")
    assert str(url) == "https://backend.internal/docs"
    url = build_target_url(httpx.URL("https://backend.internal"), "/docs", b"q=2")
    assert str(url) == "https://backend.internal/docs?q=2"


def test_build_target_url_escapes_raw_high_bytes():
    # a latin-1 decoded target from a lenient HTTP parser
    url = build_target_url(httpx.URL("http://backend:3000"), "/caf\xe9/menu", b"dish=cr\xe8me")
    assert url.raw_path == b"/caf%E9/menu?dish=cr%E8me"


def test_request_has_body():
    assert request_has_body({"content-length": "4"})
    assert not request_has_body({"content-length": "0"})
    assert request_has_body({"transfer-encoding": "chunked"})
    assert not request_has_body({})


def test_forward_request_shape():
    policy = make_policy(upstream_target=httpx.URL("http://backend:3000/base"))
    request = _request(
        path="/docs",
        query=b"page=2",
        headers=[
            ("Host", "app.example.com"),
            ("Connection", "keep-alive, X-Hop-Secret"),
            ("X-Hop-Secret", "1"),
            ("TE", "trailers"),
            ("X-Forwarded-For", "203.0.113.7"),
            ("Cookie", "sid=1"),
        ],
    )
    upstream, response, body = _run_forward(
        request, policy, "/docs", lambda r: httpx.Response(200, content=b"ok")
    )
    assert str(upstream.url) == "http://backend:3000/base/docs?page=2"
    assert upstream.method == "GET"
    assert upstream.headers["host"] == "app.example.com"
    assert upstream.headers["cookie"] == "sid=1"
    assert upstream.headers["x-forwarded-for"] == "203.0.113.7, 192.0.2.1"
    for hop in ("x-hop-secret", "te"):
        assert hop not in upstream.headers
    # nothing the client did not send
    assert "user-agent" not in upstream.headers
    assert "accept-encoding" not in upstream.headers
    assert response.status_code == 200
    assert body == b"ok"


def test_forward_body_is_streamed_upstream():
    policy = make_policy()
    request = _request(
        method="POST",
        headers=[("Host", "app.example.com"), ("Content-Length", "5"), ("Content-Type", "text/plain")],
        body=b"hello",
    )
    upstream, response, _ = _run_forward(request, policy, "/submit", lambda r: httpx.Response(204))
    assert upstream.method == "POST"
    assert upstream.content == b"hello"
    assert response.status_code == 204


def test_response_relayed_verbatim():
    policy = make_policy()

    def upstream(request):
        return httpx.Response(
            201,
            headers=[
                ("Content-Type", "text/plain"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
                ("Connection", "close"),
                ("Location", "/created/1"),
            ],
            content=b"made",
        )

    _, response, body = _run_forward(_request(headers=[("Host", "app.example.com")]), policy, "/x", upstream)
    assert response.status_code == 201
    cookies = [v for k, v in response.raw_headers if k == b"set-cookie"]
    assert cookies == [b"a=1", b"b=2"]
    assert b"connection" not in [k for k, _ in response.raw_headers]
    assert (b"location", b"/created/1") in response.raw_headers
    assert body == b"made"


def test_upstream_failure_is_bad_gateway():
    policy = make_policy()

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    _, response, body = _run_forward(_request(headers=[("Host", "app.example.com")]), policy, "/x", refuse)
    assert response.status_code == 502
    assert body == b"Bad Gateway"
