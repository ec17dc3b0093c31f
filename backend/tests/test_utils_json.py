"""Tests for the JSON column helpers."""

from datetime import UTC, datetime

import pytest

from workbridge.utils.json import dump_json, parse_json_field


class TestParseJsonField:
    """parse_json_field: strict dict parser for metadata, config, progress."""

    def test_from_json_string(self):
        assert parse_json_field('{"key": "value"}') == {"key": "value"}

    def test_from_dict(self):
        assert parse_json_field({"key": "value"}) == {"key": "value"}

    def test_none_returns_none(self):
        assert parse_json_field(None) is None

    def test_empty_values_return_none(self):
        assert parse_json_field({}) is None
        assert parse_json_field("") is None
        assert parse_json_field("{}") is None

    def test_invalid_json_returns_none(self):
        assert parse_json_field("not json") is None

    def test_json_list_returns_none(self):
        assert parse_json_field("[1, 2, 3]") is None


class TestDumpJson:
    def test_none_becomes_empty_object(self):
        assert dump_json(None) == "{}"

    def test_datetimes_as_iso(self):
        value = dump_json({"at": datetime(2024, 3, 1, 12, 0, tzinfo=UTC)})
        assert value == '{"at": "2024-03-01T12:00:00+00:00"}'

    def test_unserializable_rejected(self):
        with pytest.raises(TypeError, match="set"):
            dump_json({"ids": {1, 2}})
