from __future__ import annotations

import ipaddress
from urllib.parse import quote

_FALLBACK_SAFE = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789.-_ ")


def content_disposition(filename: str) -> str:
    if filename.isascii() and filename.isprintable():
        escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
        return f'attachment; filename="{escaped}"'
    fallback = "".join(ch if ch in _FALLBACK_SAFE else "_" for ch in filename)
    encoded = quote(filename, safe="")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"


def _valid_ip(value: str) -> str | None:
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_ip(trust_proxy: bool, peer: str | None, forwarded_for: str | None = None) -> str | None:
    """Address recorded against a request.

    Forwarded headers are only honoured behind a trusted proxy; the first
    parseable entry is the originating client.
    """
    if trust_proxy and forwarded_for:
        for part in forwarded_for.split(","):
            address = _valid_ip(part)
            if address:
                return address
    if peer is None:
        return None
    return _valid_ip(peer) or peer
