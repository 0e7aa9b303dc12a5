"""Tests for the live query listing."""
import pytest

from clickhouse_admin.errors import EngineQueryError, EngineUnavailable, Forbidden
from clickhouse_admin.identity import AppIdentity
from clickhouse_admin.live_queries import LiveQueryReader, QueryRecord
from clickhouse_admin.permissions import (
    LIVE_QUERIES_KILL,
    LIVE_QUERIES_KILL_ALL,
    LIVE_QUERIES_VIEW,
    LIVE_QUERIES_VIEW_ALL,
)

from conftest import FakeDirectory, make_caller, process_row


@pytest.fixture
def directory():
    return FakeDirectory({
        "U1": AppIdentity("U1", username="alice", display_name="Alice"),
        "U2": AppIdentity("U2", username="bob"),
    })


@pytest.fixture
def reader(directory):
    return LiveQueryReader(directory, max_workers=4)


class TestListing:
    """Scoping of system.processes rows per caller."""

    def test_restricted_caller_sees_only_own_rows(self, reader, engine, connection):
        """U1 with view+kill but no kill-all gets exactly their own row."""
        engine.responses["is_initial_query"] = [
            process_row("q-2", owner="U2", elapsed=9.0),
            process_row("q-1", owner="U1", elapsed=3.0),
        ]
        caller = make_caller("U1", LIVE_QUERIES_VIEW, LIVE_QUERIES_KILL)

        listing = reader.list_running(caller, connection)

        assert [q.record.query_id for q in listing.queries] == ["q-1"]
        assert listing.total == 1
        assert listing.connection_id == "conn-1"
        assert listing.queries[0].can_kill is True

    def test_unknown_owner_hidden_from_restricted(self, reader, engine, connection):
        engine.responses["is_initial_query"] = [
            process_row("q-1", log_comment="not json"),
            process_row("q-2", log_comment=""),
        ]
        listing = reader.list_running(make_caller("U1", LIVE_QUERIES_VIEW), connection)
        assert listing.total == 0
        assert listing.queries == []

    def test_view_all_sees_everything_but_cannot_kill(self, reader, engine, connection):
        engine.responses["is_initial_query"] = [
            process_row("q-2", owner="U2"),
            process_row("q-x"),
        ]
        caller = make_caller("U1", LIVE_QUERIES_VIEW, LIVE_QUERIES_VIEW_ALL, LIVE_QUERIES_KILL)

        listing = reader.list_running(caller, connection)

        assert listing.total == 2
        assert [q.can_kill for q in listing.queries] == [False, False]

    def test_kill_all_sees_and_may_kill_everything(self, reader, engine, connection):
        engine.responses["is_initial_query"] = [process_row("q-2", owner="U2"), process_row("q-x")]
        caller = make_caller("U1", LIVE_QUERIES_VIEW, LIVE_QUERIES_KILL, LIVE_QUERIES_KILL_ALL)

        listing = reader.list_running(caller, connection)

        assert listing.total == 2
        assert all(q.can_kill for q in listing.queries)

    def test_owner_names_resolved_once_per_identity(self, reader, directory, engine, connection):
        engine.responses["is_initial_query"] = [
            process_row("q-1", owner="U1"),
            process_row("q-2", owner="U1"),
            process_row("q-3", owner="U2"),
        ]
        listing = reader.list_running(make_caller("root", is_admin=True), connection)

        assert sorted(directory.lookups) == ["U1", "U2"]
        assert listing.queries[0].record.owner.display_name == "Alice"
        assert listing.queries[2].record.owner.username == "bob"

    def test_name_lookup_failure_keeps_the_row(self, engine, connection):
        reader = LiveQueryReader(FakeDirectory(failing={"U1"}))
        engine.responses["is_initial_query"] = [process_row("q-1", owner="U1")]

        listing = reader.list_running(make_caller("U1", LIVE_QUERIES_VIEW), connection)

        assert listing.total == 1
        assert listing.queries[0].record.owner == AppIdentity("U1")

    def test_listing_excludes_itself_and_kill_commands(self, reader, engine, connection):
        reader.list_running(make_caller("U1", LIVE_QUERIES_VIEW), connection)

        call = engine.calls[0]
        assert "system.processes" in call["sql"]
        assert "is_initial_query = 1" in call["sql"]
        assert f"query_id != '{call['query_id']}'" in call["sql"]
        assert "NOT LIKE 'KILL QUERY%'" in call["sql"]
        assert "ORDER BY elapsed DESC" in call["sql"]
        assert call["app_user_id"] == "U1"

    def test_requires_view_permission(self, reader, engine, connection):
        with pytest.raises(Forbidden):
            reader.list_running(make_caller("U1", LIVE_QUERIES_KILL), connection)
        assert engine.calls == []

    def test_engine_failure(self, reader, engine, connection):
        engine.responses["is_initial_query"] = EngineUnavailable("down")
        with pytest.raises(EngineUnavailable):
            reader.list_running(make_caller("U1", LIVE_QUERIES_VIEW), connection)

    def test_rejected_listing_is_unavailable(self, reader, engine, connection):
        engine.responses["is_initial_query"] = EngineQueryError("ACCESS_DENIED")
        with pytest.raises(EngineUnavailable):
            reader.list_running(make_caller("U1", LIVE_QUERIES_VIEW), connection)


class TestLookup:
    def test_found(self, reader, engine, connection):
        engine.responses["LIMIT 1"] = [process_row("q-9", owner="U2", query="SELECT sleep(3)")]
        record = reader.lookup(connection, "q-9")
        assert record.owner_id == "U2"
        assert record.query == "SELECT sleep(3)"
        assert "query_id = 'q-9'" in engine.calls[0]["sql"]

    def test_gone(self, reader, engine, connection):
        assert reader.lookup(connection, "q-9") is None

    def test_failure_is_none(self, reader, engine, connection):
        engine.responses["LIMIT 1"] = EngineUnavailable("down")
        assert reader.lookup(connection, "q-9") is None

    def test_query_id_is_escaped(self, reader, engine, connection):
        reader.lookup(connection, "x' OR 1=1 --")
        assert "query_id = 'x\\' OR 1=1 --'" in engine.calls[0]["sql"]


class TestQueryRecord:
    def test_from_row_parses_identity_and_numbers(self):
        record = QueryRecord.from_row(process_row("q-1", owner="U1", elapsed=2.5))
        assert record.owner_id == "U1"
        assert record.elapsed_seconds == 2.5
        assert record.read_rows == 100
        assert record.memory_usage == 4096

    def test_malformed_comment_is_unknown(self):
        record = QueryRecord.from_row(process_row("q-1", log_comment="{broken"))
        assert record.owner is None
