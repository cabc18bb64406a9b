from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from ..engine import AccessDecisionEngine, Decision, GateRequest, Outcome
from ..forwarder import Forwarder, request_has_body

logger = logging.getLogger("pathgate.gate")

DISCONNECT_POLL_SECONDS = 0.1


def gate_request_from(request: Request) -> GateRequest:
    raw_path = request.scope.get("raw_path") or b""
    return GateRequest(
        host=request.headers.get("host", ""),
        method=request.method,
        path=request.scope.get("path") or "/",
        raw_path=raw_path.decode("latin-1"),
        headers=request.headers,
        peer=request.client.host if request.client else None,
    )


async def decide_unless_disconnected(engine: AccessDecisionEngine, request: Request) -> Optional[Decision]:
    """
    Run the decision, abandoning it if the client hangs up first.

    Only bodiless requests are watched: polling for disconnect reads from the
    ASGI receive channel and would eat body chunks meant for the upstream.
    """
    task = asyncio.ensure_future(engine.decide(gate_request_from(request)))
    if request_has_body(request.headers):
        return await task

    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return task.result()
        if await request.is_disconnected():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info("client went away before a decision for %s %s", request.method, request.url.path)
            return None


async def gate(request: Request) -> Response:
    """
    Catch-all endpoint. Mounted without a method filter so every verb,
    including WebDAV and TRACE, reaches the engine.
    """
    engine: AccessDecisionEngine = request.app.state.engine
    forwarder: Forwarder = request.app.state.forwarder

    decision = await decide_unless_disconnected(engine, request)
    if decision is None:
        # nobody is listening; status only shows up in access logs
        return Response(status_code=499)

    if decision.outcome is Outcome.NOT_FOUND:
        return PlainTextResponse("Not Found", status_code=404)
    if decision.outcome is Outcome.DENY:
        return PlainTextResponse("Access denied", status_code=403)
    if decision.outcome is Outcome.ERROR:
        return PlainTextResponse("Internal error", status_code=500)
    if decision.outcome is Outcome.REDIRECT:
        return RedirectResponse(decision.location or "/", status_code=302)

    logger.info(
        "[%s] Forwarding request from %s %s %s",
        decision.hostname, decision.client_ip, request.method, decision.path,
    )
    return await forwarder.forward(request, decision.policy, decision.raw_path)
