"""Integration tests for the Postgres-backed audit store and registry.

Require a metadata store initialised with scripts/init_db.py.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from clickhouse_admin.audit import CH_QUERY_EXECUTE, AuditStore
from clickhouse_admin.connections import ConnectionRegistry
from clickhouse_admin.credentials import CredentialVault
from clickhouse_admin.db import check_metadata_store, get_connection

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module", autouse=True)
def require_metadata_store():
    if not check_metadata_store():
        pytest.skip("Metadata store not available - run scripts/init_db.py against a Postgres instance")


class TestAuditStore:
    def test_append_then_query(self):
        store = AuditStore()
        actor = f"it-{uuid.uuid4().hex[:8]}"
        started = datetime.now(timezone.utc) - timedelta(seconds=5)

        event_id = store.append(
            CH_QUERY_EXECUTE,
            actor,
            resource_type="query",
            details={"timestamp": 1_700_000_000_000, "connectionId": "conn-it", "query": "SELECT 1"},
        )

        events = store.query(action=CH_QUERY_EXECUTE, user_id=actor, since=started)
        assert [e.id for e in events] == [event_id]
        assert events[0].details["connectionId"] == "conn-it"
        assert events[0].status == "success"


class TestConnectionRegistry:
    def test_grant_and_decrypt(self):
        vault = CredentialVault()
        user_id = f"it-user-{uuid.uuid4().hex[:8]}"
        conn_id = f"it-conn-{uuid.uuid4().hex[:8]}"
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO rbac_users (id, username) VALUES (%s, %s)",
                    (user_id, user_id)
                )
                cur.execute(
                    """
                    INSERT INTO clickhouse_connections (id, name, host, port, username, password_encrypted, is_default)
                    VALUES (%s, %s, 'localhost', 8123, 'default', %s, TRUE)
                    """,
                    (conn_id, conn_id, vault.encrypt("pw-it"))
                )
                cur.execute(
                    "INSERT INTO user_connections (user_id, connection_id, can_use) VALUES (%s, %s, TRUE)",
                    (user_id, conn_id)
                )
            conn.commit()

        try:
            registry = ConnectionRegistry(vault)
            assert [p.id for p in registry.list_accessible(user_id)] == [conn_id]
            assert registry.get_with_secret(conn_id).password == "pw-it"
        finally:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM clickhouse_connections WHERE id = %s", (conn_id,))
                    cur.execute("DELETE FROM rbac_users WHERE id = %s", (user_id,))
                conn.commit()
