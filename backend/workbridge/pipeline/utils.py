"""Small helpers shared by providers and the executor."""

import json
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import httpx

from workbridge.models import RateLimitInfo

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split a sequence into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def is_token_expired(
    expires_at: datetime | None,
    buffer: timedelta = timedelta(seconds=60),
) -> bool:
    """True if the token expires within ``buffer`` from now. No expiry means never."""
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return datetime.now(UTC) + buffer >= expires_at


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitInfo | None:
    """Read the conventional x-ratelimit-* / retry-after headers.

    Returns None when the response carries none of them. The reset header
    is epoch seconds.
    """
    remaining = _int_header(headers, "x-ratelimit-remaining")
    reset = _int_header(headers, "x-ratelimit-reset")
    retry_after = _int_header(headers, "retry-after")

    if remaining is None and reset is None and retry_after is None:
        return None

    return RateLimitInfo(
        remaining=remaining if remaining is not None else 0,
        reset_at=float(reset) if reset is not None else time.time(),
        retry_after=float(retry_after) if retry_after is not None else None,
    )


def safe_json(response: httpx.Response) -> Any:
    """Decode a JSON body, returning None for empty or non-JSON content."""
    if not response.content:
        return None
    try:
        return json.loads(response.content)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as ``1h 2m``, ``3m 4s`` or ``5s``."""
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def order_parents_first(entries: Iterable[T]) -> list[T]:
    """Sort entries so that a parent always precedes its children.

    Entries need ``external_id`` and ``parent_external_id`` attributes.
    Roots keep their original relative order; a child whose parent is not
    in the list is treated as a root.
    """
    entries = list(entries)
    by_id = {e.external_id: e for e in entries}
    children_of: dict[str | None, list[str]] = defaultdict(list)
    for e in entries:
        parent = e.parent_external_id
        children_of[parent if parent in by_id else None].append(e.external_id)

    result: list[T] = []
    visited: set[str] = set()

    def visit(external_id: str) -> None:
        if external_id in visited:
            return
        visited.add(external_id)
        result.append(by_id[external_id])
        for child_id in children_of.get(external_id, []):
            visit(child_id)

    for root_id in children_of.get(None, []):
        visit(root_id)

    # Cycles are unreachable from any root
    for e in entries:
        if e.external_id not in visited:
            visit(e.external_id)

    return result
