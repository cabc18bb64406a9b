from __future__ import annotations

from typing import Mapping, Optional

# Checked in order; first non-empty wins.
CLIENT_IP_HEADERS: tuple[str, ...] = (
    "CF-Connecting-IP",     # Cloudflare
    "True-Client-IP",       # Akamai
    "X-Real-IP",
    "X-Forwarded-For",
    "X-Cluster-Client-IP",
    "Fastly-Client-IP",     # Fastly
    "Forwarded",            # RFC 7239
)


def _header_get(headers: Mapping[str, str], name: str) -> Optional[str]:
    v = headers.get(name)
    if v is None:
        # plain dicts are case-sensitive, Starlette Headers are not
        v = headers.get(name.lower())
    return v


def strip_peer_port(peer: str | None) -> str:
    """
    "1.2.3.4:5678" -> "1.2.3.4", "[::1]:80" -> "::1".
    Bare addresses (including unbracketed IPv6) are returned as-is.
    """
    if not peer:
        return ""
    if peer.startswith("["):
        end = peer.find("]")
        return peer[1:end] if end != -1 else peer
    if peer.count(":") == 1:
        return peer.split(":", 1)[0]
    return peer


def resolve_client_ip(headers: Mapping[str, str], peer: str | None) -> str:
    """
    Best-available client address.

    Proxy headers are trusted blindly: only run this behind an edge that
    overwrites them.
    """
    for name in CLIENT_IP_HEADERS:
        value = _header_get(headers, name)
        if value:
            return value.split(",")[0].strip()
    return strip_peer_port(peer)
