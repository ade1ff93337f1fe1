from urllib.parse import quote, unquote

from .config import RouteRule

_DOT_SEGMENTS = {".": "%2E", "..": "%2E%2E"}


def encode_segment(raw: str) -> str:
    """
    Re-encode one path segment so it stays a single segment downstream.

    The segment is decoded once and every reserved character is escaped,
    so ``user+tag@example.com`` becomes ``user%2Btag%40example.com`` and an
    encoded slash cannot split it.
    """
    decoded = unquote(raw)
    if decoded in _DOT_SEGMENTS:
        return _DOT_SEGMENTS[decoded]
    return quote(decoded, safe="")


def rewrite_path(rule: RouteRule, suffix) -> str:
    """Strip the matched prefix, or replace it with the rule's literal rewrite."""
    base = (rule.rewrite or "").rstrip("/")
    tail = "/".join(encode_segment(segment) for segment in suffix)
    if suffix:
        return f"{base}/{tail}"
    return base or "/"
