"""Run ad-hoc statements for a caller, stamped and audited."""
import logging
import time

from .audit import CH_QUERY_EXECUTE, AuditStore, audit_context, query_preview
from .engine import EngineResult
from .errors import Forbidden, ValidationError
from .permissions import QUERY_EXECUTE, CallerContext
from .resolver import ResolvedConnection

logger = logging.getLogger(__name__)


class QueryExecutor:
    def __init__(self, audit_store: AuditStore):
        self.audit_store = audit_store

    def execute(self, caller: CallerContext, connection: ResolvedConnection, sql: str, fmt: str = "JSON") -> EngineResult:
        """Execute ``sql`` on the caller's connection.

        The audit event records the start time in epoch milliseconds, taken
        before the statement is sent, so query-log rows can later be matched
        against it.

        Raises:
            Forbidden: Caller lacks query:execute
            ValidationError: Empty statement
            EngineQueryError / EngineUnavailable: From the engine
        """
        if not caller.can(QUERY_EXECUTE):
            raise Forbidden(
                f"Permission '{QUERY_EXECUTE}' is required",
                details={"permission": QUERY_EXECUTE}
            )
        if not sql or not sql.strip():
            raise ValidationError("Query is required", details={"field": "query"})

        details = {
            "timestamp": int(time.time() * 1000),
            "connectionId": connection.connection_id,
            "query": query_preview(sql.strip()),
        }
        with audit_context(
            self.audit_store,
            CH_QUERY_EXECUTE,
            caller.user_id,
            details,
            resource_type="query",
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
        ) as ctx:
            result = connection.client.execute_query(sql, fmt=fmt, app_user_id=caller.user_id)
            ctx.set_output({"queryId": result.query_id, "rows": result.row_count})
        logger.info("User %s executed query %s (%d rows)", caller.user_id, result.query_id, result.row_count)
        return result
