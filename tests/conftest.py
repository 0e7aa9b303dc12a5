"""Pytest fixtures and configuration.

Provides in-memory fakes for the engine and the metadata-store backed
collaborators, plus a few factories shared by unit and API tests.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import psycopg
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from clickhouse_admin.audit import AuditStore
from clickhouse_admin.connections import ConnectionProfile, ConnectionRegistry, ConnectionSecret
from clickhouse_admin.engine import EngineResult
from clickhouse_admin.identity import AppIdentity, build_log_comment
from clickhouse_admin.permissions import CallerContext
from clickhouse_admin.resolver import ResolvedConnection
from clickhouse_admin.schemas_audit import AuditEventSchema
from clickhouse_admin.users import UserDirectory


class FakeEngineClient:
    """Answers statements by the first registered fragment they contain.

    Values are either a list of row dicts or an exception instance to raise.
    """

    def __init__(self, responses: Optional[dict[str, Any]] = None, url: str = "http://fake:8123"):
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []
        self.url = url
        self.username = "default"
        self.database = None
        self.closed = False
        self.pinged = 0

    def execute_query(self, sql, fmt="JSON", app_user_id=None, query_id=None):
        query_id = query_id or f"q-{len(self.calls) + 1}"
        self.calls.append({"sql": sql, "fmt": fmt, "app_user_id": app_user_id, "query_id": query_id})
        for fragment, answer in self.responses.items():
            if fragment in sql:
                if isinstance(answer, Exception):
                    raise answer
                return EngineResult(query_id=query_id, rows=list(answer))
        return EngineResult(query_id=query_id)

    def statements(self, fragment: str) -> list[str]:
        return [c["sql"] for c in self.calls if fragment in c["sql"]]

    def ping(self):
        self.pinged += 1
        return True

    def close(self):
        self.closed = True

    @property
    def is_closed(self):
        return self.closed


class FakeAuditStore(AuditStore):
    """AuditStore keeping events in memory; record() semantics are inherited."""

    def __init__(self, events: Optional[list[AuditEventSchema]] = None):
        self.events: list[AuditEventSchema] = list(events or [])
        self.fail_writes = False
        self.fail_reads = False
        self.queries: list[dict[str, Any]] = []

    def append(self, action, user_id, status="success", resource_type=None, resource_id=None,
               details=None, error_message=None, ip_address=None, user_agent=None):
        if self.fail_writes:
            raise psycopg.OperationalError("audit store is down")
        event = AuditEventSchema(
            id=f"evt-{len(self.events) + 1}",
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            status=status,
            error_message=error_message,
            created_at=datetime.now(timezone.utc),
        )
        self.events.append(event)
        return event.id

    def query(self, action=None, user_id=None, since=None, limit=100):
        self.queries.append({"action": action, "user_id": user_id, "since": since, "limit": limit})
        if self.fail_reads:
            raise psycopg.OperationalError("audit store is down")
        found = [
            e for e in self.events
            if (action is None or e.action == action)
            and (user_id is None or e.user_id == user_id)
        ]
        return found[:limit]

    def by_action(self, action: str) -> list[AuditEventSchema]:
        return [e for e in self.events if e.action == action]


class FakeDirectory(UserDirectory):
    def __init__(self, users: Optional[dict[str, AppIdentity]] = None, failing: Optional[set[str]] = None):
        self.users = users or {}
        self.failing = failing or set()
        self.lookups: list[str] = []

    def get_user(self, user_id):
        self.lookups.append(user_id)
        if user_id in self.failing:
            raise psycopg.OperationalError(f"lookup of {user_id} failed")
        return self.users.get(user_id)


class FakeRegistry(ConnectionRegistry):
    def __init__(self, profiles: list[ConnectionProfile], grants: Optional[dict[str, list[str]]] = None,
                 passwords: Optional[dict[str, str]] = None):
        super().__init__(vault=None)
        self.profiles = profiles
        self.grants = grants or {}
        self.passwords = passwords or {}
        self.decrypt_error: Optional[Exception] = None

    def list_accessible(self, user_id):
        granted = self.grants.get(user_id, [])
        return [p for p in self.profiles if p.id in granted and p.is_active]

    def list_all(self, active_only=True):
        return [p for p in self.profiles if p.is_active or not active_only]

    def get_with_secret(self, connection_id):
        if self.decrypt_error is not None:
            raise self.decrypt_error
        for profile in self.profiles:
            if profile.id == connection_id:
                return ConnectionSecret(profile=profile, password=self.passwords.get(connection_id, ""))
        return None


def make_caller(user_id: str, *permissions: str, is_admin: bool = False) -> CallerContext:
    return CallerContext(user_id=user_id, permissions=frozenset(permissions), is_admin=is_admin)


def process_row(query_id: str, owner: Optional[str] = None, query: str = "SELECT 1",
                elapsed: float = 1.0, user: str = "default", log_comment: Optional[str] = None) -> dict[str, Any]:
    """A system.processes row as the engine returns it in JSON format."""
    return {
        "query_id": query_id,
        "user": user,
        "query": query,
        "elapsed_seconds": elapsed,
        "read_rows": "100",
        "read_bytes": "2048",
        "memory_usage": "4096",
        "client_name": "",
        "log_comment": log_comment if log_comment is not None else (build_log_comment(owner) or ""),
    }


def query_log_row(query_id: str, ts: int, query: str = "SELECT 1", owner: Optional[str] = None,
                  log_comment: Optional[str] = None) -> dict[str, Any]:
    """A system.query_log row as selected by the history service."""
    when = datetime.fromtimestamp(ts, tz=timezone.utc)
    return {
        "type": "QueryFinish",
        "event_date": when.strftime("%Y-%m-%d"),
        "event_time": when.strftime("%Y-%m-%d %H:%M:%S"),
        "event_timestamp": str(ts),
        "query_id": query_id,
        "query": query,
        "query_duration_ms": "12",
        "read_rows": "10",
        "read_bytes": "100",
        "memory_usage": "1000",
        "user": "default",
        "exception": "",
        "log_comment": log_comment if log_comment is not None else (build_log_comment(owner) or ""),
    }


def audit_event(user_id: Optional[str], ts_ms: Optional[int] = None, query: Optional[str] = None,
                connection_id: str = "conn-1", created_at: Optional[datetime] = None,
                action: str = "clickhouse.query_execute") -> AuditEventSchema:
    details: dict[str, Any] = {"connectionId": connection_id}
    if ts_ms is not None:
        details["timestamp"] = ts_ms
    if query is not None:
        details["query"] = query
    return AuditEventSchema(
        id=f"evt-{user_id}-{ts_ms}",
        user_id=user_id,
        action=action,
        details=details,
        status="success",
        created_at=created_at or datetime.now(timezone.utc),
    )


@pytest.fixture
def profiles() -> list[ConnectionProfile]:
    return [
        ConnectionProfile(id="conn-1", name="primary", host="ch1", port=8123, username="default", is_default=True),
        ConnectionProfile(id="conn-2", name="replica", host="ch2", port=8443, username="reader", ssl_enabled=True),
        ConnectionProfile(id="conn-3", name="retired", host="ch3", port=8123, username="default", is_active=False),
    ]


@pytest.fixture
def audit_store() -> FakeAuditStore:
    return FakeAuditStore()


@pytest.fixture
def engine() -> FakeEngineClient:
    return FakeEngineClient()


@pytest.fixture
def connection(engine) -> ResolvedConnection:
    return ResolvedConnection(client=engine, connection_id="conn-1")
