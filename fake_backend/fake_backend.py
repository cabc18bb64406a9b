from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

app = FastAPI()


@app.get("/health")
def health():
    return {"status": "ok"}


def _csv(rows: int) -> str:
    # simple deterministic CSV
    lines = ["id,name"]
    for i in range(1, rows + 1):
        lines.append(f"{i},User{i}")
    return "\n".join(lines) + "\n"


@app.get("/export/small.csv")
def export_small():
    return Response(content=_csv(5), media_type="text/csv; charset=utf-8")


@app.get("/export/large.csv")
def export_large():
    return Response(content=_csv(5000), media_type="text/csv; charset=utf-8")


@app.get("/moved")
def moved():
    # the gate must relay this, not follow it
    return RedirectResponse("/elsewhere", status_code=307)


@app.get("/cookies")
def cookies():
    resp = JSONResponse({"ok": True})
    resp.set_cookie("a", "1")
    resp.set_cookie("b", "2")
    return resp


@app.get("/status/{code}")
def status(code: int):
    return Response(content=f"status {code}\n", status_code=code, media_type="text/plain")


@app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "PROPFIND"])
async def echo(request: Request, full_path: str):
    """Everything else: report what arrived so callers can check the rewrite."""
    body = await request.body()
    return JSONResponse(
        {
            "method": request.method,
            "path": request.scope.get("path"),
            "raw_path": (request.scope.get("raw_path") or b"").decode("latin-1"),
            "query": (request.scope.get("query_string") or b"").decode("latin-1"),
            "headers": {k: v for k, v in request.headers.items()},
            "body": body.decode("utf-8", errors="replace"),
        },
        headers={"X-Upstream": "fake-backend"},
    )
