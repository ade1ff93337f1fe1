from typing import NamedTuple
from urllib.parse import unquote

from .config import RouteRule
from .errors import MethodNotAllowed, RouteNotFound


class RouteMatch(NamedTuple):
    rule: RouteRule
    suffix: tuple[str, ...]     # raw (still percent-encoded) segments after the prefix


def split_path(raw_path: str) -> list[str]:
    """Split a raw path into segments, keeping a trailing empty segment for a trailing slash."""
    raw_path = raw_path.split("?", 1)[0]
    if raw_path in ("", "/"):
        return []
    return raw_path.lstrip("/").split("/")


def _matches(rule: RouteRule, segments: list[str]) -> bool:
    prefix = rule.segments
    if len(segments) < len(prefix):
        return False
    return all(unquote(seg) == expected for seg, expected in zip(segments, prefix))


def find_route(routes, raw_path: str, method: str) -> RouteMatch:
    """
    Pick the most specific rule for a path and method.

    Prefixes match whole segments only; the rule with the most prefix
    segments wins.
    :raises RouteNotFound: no prefix matches the path
    :raises MethodNotAllowed: prefixes match but none accepts the method
    """
    segments = split_path(raw_path)
    candidates = sorted(
        (rule for rule in routes if _matches(rule, segments)),
        key=lambda rule: len(rule.segments),
        reverse=True,
    )
    if not candidates:
        raise RouteNotFound(
            f"No route configured for '{unquote('/' + '/'.join(segments))}'",
            available_routes=available_prefixes(routes),
        )

    for rule in candidates:
        if rule.allows(method):
            return RouteMatch(rule, tuple(segments[len(rule.segments):]))

    allowed = sorted({m for rule in candidates for m in (rule.methods or ())})
    raise MethodNotAllowed(
        f"Method {method.upper()} is not allowed for '{candidates[0].prefix}'",
        allowed=allowed,
    )


def available_prefixes(routes) -> list[str]:
    return sorted({rule.prefix for rule in routes})
