"""Tests for shared pipeline helpers."""

import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from workbridge.pipeline.utils import (
    chunked,
    format_duration,
    is_token_expired,
    order_parents_first,
    parse_rate_limit_headers,
    safe_json,
)


@dataclass
class Node:
    external_id: str
    parent_external_id: str | None = None


class TestChunked:
    def test_even_split(self):
        assert chunked([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert chunked([], 3) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunked([1], 0)


class TestTokenExpiry:
    def test_no_expiry(self):
        assert not is_token_expired(None)

    def test_far_future(self):
        assert not is_token_expired(datetime.now(UTC) + timedelta(hours=1))

    def test_within_buffer(self):
        assert is_token_expired(datetime.now(UTC) + timedelta(seconds=30))

    def test_past(self):
        assert is_token_expired(datetime.now(UTC) - timedelta(minutes=5))

    def test_naive_treated_as_utc(self):
        naive = (datetime.now(UTC) + timedelta(hours=1)).replace(tzinfo=None)
        assert not is_token_expired(naive)


class TestRateLimitHeaders:
    def test_none_present(self):
        assert parse_rate_limit_headers(httpx.Headers({"content-type": "application/json"})) is None

    def test_all_present(self):
        info = parse_rate_limit_headers(httpx.Headers({
            "x-ratelimit-remaining": "0",
            "x-ratelimit-reset": "1700000000",
            "retry-after": "30",
        }))
        assert info is not None
        assert info.remaining == 0
        assert info.reset_at == 1700000000
        assert info.retry_after == 30

    def test_retry_after_only(self):
        before = time.time()
        info = parse_rate_limit_headers(httpx.Headers({"Retry-After": "7"}))
        assert info is not None
        assert info.retry_after == 7
        assert info.reset_at >= before

    def test_garbage_values_ignored(self):
        assert parse_rate_limit_headers(httpx.Headers({"retry-after": "soon"})) is None


class TestSafeJson:
    def test_valid(self):
        assert safe_json(httpx.Response(200, json={"ok": True})) == {"ok": True}

    def test_empty_body(self):
        assert safe_json(httpx.Response(204)) is None

    def test_not_json(self):
        assert safe_json(httpx.Response(200, text="<html>busy</html>")) is None


class TestFormatDuration:
    def test_seconds(self):
        assert format_duration(5.7) == "5s"

    def test_minutes(self):
        assert format_duration(184) == "3m 4s"

    def test_hours(self):
        assert format_duration(3720) == "1h 2m"


class TestOrderParentsFirst:
    def test_parent_moved_before_child(self):
        ordered = order_parents_first([Node("b", "a"), Node("a")])
        assert [n.external_id for n in ordered] == ["a", "b"]

    def test_roots_keep_order(self):
        ordered = order_parents_first([Node("x"), Node("y"), Node("z")])
        assert [n.external_id for n in ordered] == ["x", "y", "z"]

    def test_nested(self):
        ordered = order_parents_first([Node("c", "b"), Node("b", "a"), Node("a")])
        assert [n.external_id for n in ordered] == ["a", "b", "c"]

    def test_orphan_treated_as_root(self):
        ordered = order_parents_first([Node("child", "elsewhere"), Node("root")])
        assert [n.external_id for n in ordered] == ["child", "root"]

    def test_cycle_does_not_drop_entries(self):
        ordered = order_parents_first([Node("a", "b"), Node("b", "a")])
        assert sorted(n.external_id for n in ordered) == ["a", "b"]
