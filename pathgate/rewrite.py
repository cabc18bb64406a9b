from __future__ import annotations

import posixpath
from urllib.parse import quote

# Characters left alone when re-encoding a decoded path.
_PATH_SAFE = "/:@!$&'()*+,;=-._~"


def strip_secret_prefix(path: str, prefix: str) -> str:
    if prefix and path.startswith(prefix):
        return path[len(prefix):]
    return path


def rewrite_forward_path(path: str, raw_path: str | None, prefix: str) -> tuple[str, str]:
    """
    Remove the secret prefix from both path forms before forwarding.

    The decoded path and the raw (percent-encoded) path are stripped
    independently. An empty path becomes "/"; an empty raw path is rebuilt
    from the rewritten decoded path.
    """
    new_path = strip_secret_prefix(path, prefix) or "/"
    new_raw = strip_secret_prefix(raw_path, prefix) if raw_path else ""
    if not new_raw:
        new_raw = quote(new_path, safe=_PATH_SAFE)
    return new_path, new_raw


def redirect_location(request_path: str, prefix: str) -> str:
    """
    Where a browser goes after unlocking: the request path minus the prefix.

    "/secret_path/docs" -> "/docs", "/secret_path" -> "/". A remainder without
    a leading slash ("/secret_pathdocs" -> "docs") is resolved against the
    request path's directory, the way HTTP redirect helpers treat relative
    locations.
    """
    target = strip_secret_prefix(request_path, prefix) or "/"
    if target.startswith("/"):
        return target

    base_dir = posixpath.split(request_path or "/")[0]
    if not base_dir.endswith("/"):
        base_dir += "/"
    trailing = target.endswith("/")
    resolved = posixpath.normpath(base_dir + target)
    if resolved.startswith("//"):
        resolved = "/" + resolved.lstrip("/")
    if trailing and not resolved.endswith("/"):
        resolved += "/"
    return resolved
