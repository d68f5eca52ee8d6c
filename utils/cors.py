from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import urlsplit

import azure.functions as func

from shared.config import get_cors_settings

CORS_SETTINGS = get_cors_settings()
APPLICATION_HEADERS = ("Content-Type", "Authorization", "x-organization-id")
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


def _split_origin(value: str) -> Tuple[Optional[str], str, Optional[int]]:
    text = value.strip().rstrip("/").lower()
    if "://" not in text:
        return None, text, None
    parts = urlsplit(text)
    return parts.scheme, parts.hostname or "", parts.port


def _origin_matches(origin: Optional[str], allowed: str) -> bool:
    """
    Compare a request origin with one configured entry.
    Entries may omit the scheme (any scheme matches) and may use a leading
    "*." wildcard for subdomains.
    """
    if not origin or not allowed:
        return False
    scheme, host, port = _split_origin(origin)
    want_scheme, want_host, want_port = _split_origin(allowed)
    if want_scheme and (want_scheme, want_port) != (scheme, port):
        return False
    if want_host.startswith("*."):
        return host.endswith(want_host[1:]) and host != want_host[2:]
    return host == want_host


def _is_local_origin(origin: Optional[str]) -> bool:
    return bool(origin) and _split_origin(origin)[1] in LOCAL_HOSTS


def _allow_headers(req: func.HttpRequest) -> str:
    # Known application headers, then whatever the preflight asked for.
    names = {name.lower(): name for name in APPLICATION_HEADERS}
    for requested in req.headers.get("Access-Control-Request-Headers", "").split(","):
        requested = requested.strip()
        if requested:
            names.setdefault(requested.lower(), requested)
    return ", ".join(names.values())


def _origin_allowed(origin: Optional[str]) -> bool:
    origins = CORS_SETTINGS["origins"]
    if not origins:
        return True
    if any(_origin_matches(origin, entry) for entry in origins):
        return True
    return CORS_SETTINGS["allow_localhost"] and _is_local_origin(origin)


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """Return CORS headers for the request origin, or only ``Vary`` when the origin is refused."""
    origin = req.headers.get("Origin")
    headers: Dict[str, str] = {"Vary": "Origin"}
    if not _origin_allowed(origin):
        return headers

    methods = [m.strip().upper() for m in allowed_methods if m and m.strip()]
    methods = list(dict.fromkeys(methods + ["OPTIONS"]))
    credentials = CORS_SETTINGS["allow_credentials"]
    # Browsers reject "*" together with credentials.
    if origin and (credentials or CORS_SETTINGS["origins"]):
        allow_origin = origin
    else:
        allow_origin = "*"
    headers["Access-Control-Allow-Origin"] = allow_origin
    headers["Access-Control-Allow-Methods"] = ", ".join(methods)
    headers["Access-Control-Allow-Headers"] = _allow_headers(req)
    if credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
