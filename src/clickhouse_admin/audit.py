"""Append-only audit trail backed by the metadata store."""
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from psycopg.types.json import Jsonb

from .db import get_connection, rows_as_dicts
from .schemas_audit import AuditEventSchema, AuditStatus

logger = logging.getLogger(__name__)

CH_QUERY_EXECUTE = "clickhouse.query_execute"
LIVE_QUERY_KILL = "live_query.kill"
SESSION_CONNECT = "clickhouse.session_connect"
SESSION_DISCONNECT = "clickhouse.session_disconnect"

# Audit details keep only a prefix of the SQL text
QUERY_PREVIEW_CHARS = 500
MAX_QUERY_LIMIT = 5000


def query_preview(sql: Optional[str]) -> Optional[str]:
    if sql is None:
        return None
    return sql[:QUERY_PREVIEW_CHARS]


class AuditStore:
    """Writes and reads audit events. There is no update or delete path."""

    def append(
        self,
        action: str,
        user_id: Optional[str],
        status: AuditStatus = "success",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> str:
        """Insert one audit event.

        Returns:
            The new event id (the write acknowledgement).

        Raises:
            psycopg.Error: If the insert fails. Use record() where a failed
                write must not interrupt the caller.
        """
        event_id = str(uuid.uuid4())
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO rbac_audit_logs (
                        id, user_id, action, resource_type, resource_id,
                        details, ip_address, user_agent, status,
                        error_message, created_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                    )
                    """,
                    (
                        event_id,
                        user_id,
                        action,
                        resource_type,
                        resource_id,
                        Jsonb(details or {}),
                        ip_address,
                        user_agent,
                        status,
                        error_message,
                        datetime.now(timezone.utc),
                    )
                )
            conn.commit()
        return event_id

    def record(self, action: str, user_id: Optional[str], **fields: Any) -> Optional[str]:
        """append() that logs instead of raising.

        The primary operation is authoritative over audit bookkeeping, so a
        failed write is reported and swallowed here.
        """
        try:
            return self.append(action, user_id, **fields)
        except Exception:
            logger.exception("Audit write failed for action=%s user=%s", action, user_id)
            return None

    def query(
        self,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> list[AuditEventSchema]:
        """Read audit events, newest first.

        Args:
            action: Optional filter by action kind
            user_id: Optional filter by actor
            since: Only events written at or after this time
            limit: Maximum number of events (capped at 5000)
        """
        conditions = []
        params: list[Any] = []
        if action:
            conditions.append("action = %s")
            params.append(action)
        if user_id:
            conditions.append("user_id = %s")
            params.append(user_id)
        if since:
            conditions.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(max(1, min(limit, MAX_QUERY_LIMIT)))

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT id, user_id, action, resource_type, resource_id,
                           details, ip_address, user_agent, status,
                           error_message, created_at
                    FROM rbac_audit_logs
                    {where}
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    params
                )
                rows = rows_as_dicts(cur)

        return [
            AuditEventSchema(**{**row, "id": str(row["id"]), "details": row.get("details") or {}})
            for row in rows
        ]


@contextmanager
def audit_context(
    store: AuditStore,
    action: str,
    user_id: Optional[str],
    details: Optional[dict[str, Any]] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
):
    """Audit one operation with automatic timing and outcome.

    Usage:
        with audit_context(store, CH_QUERY_EXECUTE, "u-1", {"query": sql}) as ctx:
            result = client.execute_query(sql)
            ctx.set_output({"rows": result.row_count})

    Exactly one event is written when the block exits, successful or not.
    Exceptions from the block propagate; audit write failures do not.
    """
    class AuditContext:
        def __init__(self):
            self.details: dict[str, Any] = dict(details or {})
            self.success = False
            self.error_message: Optional[str] = None

        def set_output(self, extra: Optional[dict[str, Any]] = None):
            """Merge result details and mark the operation as successful."""
            if extra:
                self.details.update(extra)
            self.success = True

    ctx = AuditContext()
    start_time = time.perf_counter()

    try:
        yield ctx
    except Exception as e:
        ctx.success = False
        ctx.error_message = str(e)[:1000]
        raise
    finally:
        ctx.details["durationMs"] = int((time.perf_counter() - start_time) * 1000)
        store.record(
            action,
            user_id,
            status="success" if ctx.success else "failure",
            resource_type=resource_type,
            resource_id=resource_id,
            details=ctx.details,
            error_message=ctx.error_message,
            ip_address=ip_address,
            user_agent=user_agent,
        )
