"""Tests for the Record model."""

import json
import re
from datetime import datetime

import pytest

from ledger.types import ENTRY_TYPES, Record, parse_utc_timestamp, utc_now


class TestValidation:
    """Record.is_valid() rules."""

    @pytest.mark.parametrize("entry_type", ENTRY_TYPES)
    def test_every_known_type_is_valid(self, entry_type):
        assert Record(entry_type, "something").is_valid()

    def test_unknown_type_is_invalid(self):
        assert not Record("bogus", "something").is_valid()

    def test_empty_content_is_invalid(self):
        assert not Record("learning", "").is_valid()

    def test_unknown_importance_is_invalid(self):
        assert not Record("learning", "x", importance="urgent").is_valid()

    def test_source_must_be_user_or_assistant(self):
        assert Record("direction", "x", source="user").is_valid()
        assert Record("direction", "x", source="assistant").is_valid()
        assert not Record("direction", "x", source="system").is_valid()

    def test_non_string_keywords_are_invalid(self):
        assert not Record("guideline", "x", keywords=("ok", 3)).is_valid()

    def test_metadata_must_be_json_serializable(self):
        assert Record("learning", "x", metadata={"n": [1, "two", None]}).is_valid()
        assert not Record("learning", "x", metadata={"when": datetime.now()}).is_valid()
        assert not Record("learning", "x", metadata={1, 2}).is_valid()

    def test_keywords_list_becomes_tuple(self):
        record = Record("guideline", "x", keywords=["a", "b"])
        assert record.keywords == ("a", "b")
        assert record.is_valid()


class TestDefaults:

    def test_importance_defaults_to_medium(self):
        assert Record("learning", "x").importance == "medium"

    def test_created_at_is_utc_iso(self):
        record = Record("learning", "x")
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", record.created_at)

    def test_utc_now_parses_back(self):
        dt = parse_utc_timestamp(utc_now())
        assert dt.tzinfo is not None


class TestSerialization:
    """JSON form used in buffer files."""

    def test_to_json_is_single_line(self):
        record = Record("learning", "line one\nline two", metadata={"k": [1, 2]})
        line = record.to_json()
        assert "\n" not in line
        assert Record.from_json(line) == record

    def test_unset_enhanced_fields_are_omitted(self):
        data = Record("learning", "x").to_dict()
        assert "category" not in data
        assert "applies_when" not in data
        assert "source_file" not in data
        assert data["keywords"] == []

    def test_enhanced_fields_round_trip(self):
        record = Record(
            "guideline", "Always use trailing commas",
            importance="high",
            category="style",
            keywords=("commas", "style"),
            applies_when="editing Python",
            source_file="CONTRIBUTING.md",
        )
        assert Record.from_dict(json.loads(record.to_json())) == record

    def test_missing_importance_and_created_at_default(self):
        record = Record.from_dict({"entry_type": "learning", "content": "x"})
        assert record.importance == "medium"
        assert record.created_at

    def test_malformed_json_raises_value_error(self):
        with pytest.raises(ValueError):
            Record.from_json("{not json")

    def test_missing_content_raises_value_error(self):
        with pytest.raises(ValueError):
            Record.from_dict({"entry_type": "learning"})

    def test_non_object_raises_value_error(self):
        with pytest.raises(ValueError):
            Record.from_json("[1, 2, 3]")

    def test_unknown_type_parses_but_is_invalid(self):
        record = Record.from_dict({"entry_type": "bogus", "content": "x"})
        assert not record.is_valid()
