from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import SessionStoreError
from ..registry import strip_port
from .gate import gate

router = APIRouter()


def _for_application(request: Request) -> bool:
    # a registered Host always goes through the gate; health only answers other hosts
    registry = request.app.state.settings.registry
    return registry.lookup(strip_port(request.headers.get("host", ""))) is not None


@router.get("")
async def health(request: Request):
    if _for_application(request):
        return await gate(request)
    return {"status": "ok"}


@router.get("/redis")
async def health_redis(request: Request):
    if _for_application(request):
        return await gate(request)

    store = getattr(request.app.state, "store", None)
    ping = getattr(store, "ping", None)
    if ping is None:
        return JSONResponse(status_code=503, content={"ok": False, "error": "no_session_store"})

    try:
        pong = await ping()
        return {"ok": True, "ping": bool(pong)}
    except SessionStoreError as e:
        return JSONResponse(status_code=503, content={"ok": False, "error": "redis_ping_failed", "detail": str(e)})
