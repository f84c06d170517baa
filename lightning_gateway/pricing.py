"""
Per-route pricing for gateways.

A gateway has a default price and an optional ordered list of glob rules:

    [
        {"pattern": "/free/*", "price": 0},
        {"pattern": "/premium/**", "price": 50},
        {"pattern": "/**", "price": 5},
    ]

Rules are checked in the order the owner declared them and the first match
wins, so order matters: put the free tier first and the catch-all last.

Glob syntax:
    *   one path segment (never crosses a '/')
    **  zero or more path segments
Patterns must match the whole path.
"""

from __future__ import annotations

import functools
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Pattern

_GLOB_TOKENS = re.compile(r"(/\*\*|\*\*|\*)")


@dataclass(frozen=True)
class RouteRule:
    """A single pricing override."""
    pattern: str
    price: int
    description: Optional[str] = None


@functools.lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Pattern[str]:
    """Translate a route glob into an anchored regex."""
    parts: List[str] = []
    for token in _GLOB_TOKENS.split(pattern):
        if token == "/**":
            # "/a/**" matches "/a" as well as "/a/b/c"
            parts.append("(?:/.*)?")
        elif token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        elif token:
            parts.append(re.escape(token))
    return re.compile("^" + "".join(parts) + "$")


def match_path(pattern: str, path: str) -> bool:
    """Return True if the glob pattern matches the entire path."""
    return compile_pattern(pattern).match(path) is not None


def parse_rules(raw: Any) -> List[RouteRule]:
    """
    Normalize stored route rules.

    Args:
        raw: None, a JSON string, or a list of dicts / RouteRule objects.

    Returns:
        List of RouteRule in declared order.

    Raises:
        ValueError: If a rule is malformed or has a negative price.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise ValueError("Route rules must be a list")

    rules: List[RouteRule] = []
    for item in raw:
        if isinstance(item, RouteRule):
            rule = item
        elif isinstance(item, dict):
            rule = RouteRule(
                pattern=item.get("pattern"),
                price=item.get("price"),
                description=item.get("description"),
            )
        else:
            raise ValueError(f"Invalid route rule: {item!r}")

        if not isinstance(rule.pattern, str) or not rule.pattern:
            raise ValueError(f"Route rule pattern must be a non-empty string: {item!r}")
        if isinstance(rule.price, bool) or not isinstance(rule.price, int) or rule.price < 0:
            raise ValueError(f"Route rule price must be a non-negative integer: {item!r}")
        rules.append(rule)
    return rules


def resolve_price(rules: Optional[Iterable[Any]], path: str, default_price: int) -> int:
    """
    Resolve the price of a request path.

    Args:
        rules: Ordered route rules (dicts or RouteRule), or None.
        path: Sub-path after the gateway prefix, e.g. "/v1/users".
        default_price: Gateway default price in sats.

    Returns:
        Price of the first matching rule, else the default.
    """
    if rules is not None and not isinstance(rules, (str, list)):
        rules = list(rules)
    for rule in parse_rules(rules):
        if match_path(rule.pattern, path):
            return rule.price
    return default_price
