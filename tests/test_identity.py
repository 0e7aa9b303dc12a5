"""Tests for identity embedding in log_comment."""
import json

from clickhouse_admin.identity import AppIdentity, build_log_comment, parse_log_comment


class TestBuildLogComment:
    """Serializing the caller into the log_comment setting."""

    def test_compact_json_with_user_id(self):
        assert build_log_comment("u-1") == '{"rbac_user_id":"u-1"}'

    def test_no_caller_attaches_nothing(self):
        assert build_log_comment(None) is None
        assert build_log_comment("") is None

    def test_round_trip(self):
        """Whatever is emitted parses back to the same id."""
        for user_id in ["u-1", "9f1c2d3e-aaaa-bbbb-cccc-111122223333", "ü-ñ"]:
            assert parse_log_comment(build_log_comment(user_id)) == user_id


class TestParseLogComment:
    """Reading the embedded identity back from engine metadata."""

    def test_unknown_for_empty_values(self):
        assert parse_log_comment(None) is None
        assert parse_log_comment("") is None

    def test_unknown_for_plain_text(self):
        """Comments set by other tools are not identities."""
        assert parse_log_comment("nightly etl run") is None

    def test_unknown_for_non_object_json(self):
        assert parse_log_comment('["u-1"]') is None
        assert parse_log_comment('"u-1"') is None
        assert parse_log_comment("42") is None

    def test_unknown_for_missing_or_blank_id(self):
        assert parse_log_comment('{"other": "x"}') is None
        assert parse_log_comment('{"rbac_user_id": ""}') is None
        assert parse_log_comment('{"rbac_user_id": "   "}') is None
        assert parse_log_comment('{"rbac_user_id": null}') is None

    def test_non_string_input(self):
        assert parse_log_comment(123) is None
        assert parse_log_comment({"rbac_user_id": "u-1"}) is None

    def test_extra_keys_are_ignored(self):
        raw = json.dumps({"rbac_user_id": "u-7", "source": "ui"})
        assert parse_log_comment(raw) == "u-7"

    def test_numeric_id_is_stringified(self):
        assert parse_log_comment('{"rbac_user_id": 17}') == "17"


class TestAppIdentity:
    def test_label_prefers_display_name(self):
        identity = AppIdentity("u-1", username="alice", display_name="Alice A.", email="a@x.io")
        assert identity.label == "Alice A."

    def test_label_falls_back_to_user_id(self):
        assert AppIdentity("u-1").label == "u-1"
