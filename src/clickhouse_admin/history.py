"""Historical query log with per-row attribution and visibility scoping."""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

from .audit import CH_QUERY_EXECUTE, AuditStore
from .config import settings
from .connections import ConnectionRegistry
from .correlation import AuditIndex, attribute_row
from .engine import as_float, as_int
from .errors import EngineQueryError, EngineUnavailable, Forbidden, ValidationError
from .identity import AppIdentity, parse_log_comment
from .permissions import HISTORY_VISIBILITY, QUERY_HISTORY_VIEW, CallerContext
from .resolver import ResolvedConnection
from .schemas_audit import AuditEventSchema
from .users import UserDirectory, resolve_identities

logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 1000

Attribution = Literal["embedded", "audit"]


@dataclass(frozen=True)
class QueryLogRecord:
    """One row of ``system.query_log`` plus whoever it was attributed to."""
    type: str
    event_date: str
    event_time: str
    event_timestamp: float
    query_id: str
    query: str
    query_duration_ms: int = 0
    read_rows: int = 0
    read_bytes: int = 0
    memory_usage: int = 0
    user: str = ""
    exception: str = ""
    log_comment: Optional[str] = None
    owner: Optional[AppIdentity] = None
    connection_id: Optional[str] = None
    connection_name: Optional[str] = None
    attribution: Optional[Attribution] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self.owner.user_id if self.owner else None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "QueryLogRecord":
        return cls(
            type=str(row.get("type", "")),
            event_date=str(row.get("event_date", "")),
            event_time=str(row.get("event_time", "")),
            event_timestamp=as_float(row.get("event_timestamp")),
            query_id=str(row.get("query_id", "")),
            query=str(row.get("query", "")),
            query_duration_ms=as_int(row.get("query_duration_ms")),
            read_rows=as_int(row.get("read_rows")),
            read_bytes=as_int(row.get("read_bytes")),
            memory_usage=as_int(row.get("memory_usage")),
            user=str(row.get("user", "")),
            exception=str(row.get("exception") or ""),
            log_comment=row.get("log_comment") or None,
        )


@dataclass
class QueryLogListing:
    rows: list[QueryLogRecord] = field(default_factory=list)
    matched: int = 0
    unmatched: int = 0
    audit_available: bool = True


class HistoryService:
    """Reads the query log and attributes each row to an application user."""

    def __init__(
        self,
        audit_store: AuditStore,
        directory: Optional[UserDirectory] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        registry: Optional[ConnectionRegistry] = None
    ):
        self.audit_store = audit_store
        self.directory = directory or UserDirectory()
        self.clock = clock
        self.registry = registry

    def list_logs(self, caller: CallerContext, connection: ResolvedConnection, limit: int = 100) -> QueryLogListing:
        """Recent query-log rows visible to ``caller``, newest first.

        If the audit trail cannot be read, privileged callers still get every
        row (attributed from embedded identity only) and restricted callers
        get nothing, since ownership of unmarked rows cannot be shown.

        Raises:
            Forbidden: Caller lacks query:history:view
            ValidationError: ``limit`` outside 1..1000
            EngineUnavailable: The query log could not be read
        """
        if not caller.can(QUERY_HISTORY_VIEW):
            raise Forbidden(
                f"Permission '{QUERY_HISTORY_VIEW}' is required",
                details={"permission": QUERY_HISTORY_VIEW}
            )
        if limit < 1 or limit > MAX_LOG_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_LOG_LIMIT}",
                details={"limit": limit}
            )

        records = self._read_query_log(connection, caller.user_id, limit)
        privileged = HISTORY_VISIBILITY.is_privileged(caller)

        events = self._audit_events()
        if events is None and not privileged:
            return QueryLogListing(audit_available=False)

        index = AuditIndex.build(
            events or [],
            window=settings.correlation_window_seconds,
            step=settings.correlation_bucket_seconds,
        )
        attributed = [self._attribute(index, r) for r in records]
        matched = sum(1 for r in attributed if r.owner_id)
        unmatched = len(attributed) - matched
        if unmatched:
            logger.info("Query log: %d rows attributed, %d left unknown", matched, unmatched)

        identities = resolve_identities(
            self.directory,
            (r.owner_id for r in attributed),
            max_workers=settings.name_resolution_workers,
        )
        rows = [
            replace(r, owner=identities.get(r.owner_id, r.owner)) if r.owner_id else r
            for r in attributed
            if HISTORY_VISIBILITY.allows(caller, r.owner_id)
        ]
        rows = self._with_connection_names(rows)
        return QueryLogListing(
            rows=rows,
            matched=matched,
            unmatched=unmatched,
            audit_available=events is not None,
        )

    def _read_query_log(self, connection: ResolvedConnection, app_user_id: str, limit: int) -> list[QueryLogRecord]:
        sql = f"""
            SELECT
                type,
                toString(event_date) AS event_date,
                formatDateTime(event_time, '%Y-%m-%d %H:%M:%S') AS event_time,
                toUnixTimestamp(event_time) AS event_timestamp,
                query_id,
                query,
                query_duration_ms,
                read_rows,
                read_bytes,
                memory_usage,
                user,
                exception,
                log_comment
            FROM system.query_log
            WHERE event_date >= today() - 1
            ORDER BY event_time DESC
            LIMIT {int(limit)}
        """
        try:
            result = connection.client.execute_query(sql, app_user_id=app_user_id)
        except EngineQueryError as e:
            raise EngineUnavailable(
                "Failed to read the query log",
                retryable=False,
                details={"reason": e.message}
            ) from e
        return [QueryLogRecord.from_row(row) for row in result.rows]

    def _audit_events(self) -> Optional[list[AuditEventSchema]]:
        """Query-execution events of every actor in the lookback window.

        Returns None when the audit store cannot be read.
        """
        since = self.clock() - settings.audit_lookback
        try:
            return self.audit_store.query(
                action=CH_QUERY_EXECUTE,
                since=since,
                limit=settings.audit_fetch_limit,
            )
        except Exception:
            logger.exception("Audit trail unavailable; query log attribution degraded")
            return None

    @staticmethod
    def _attribute(index: AuditIndex, record: QueryLogRecord) -> QueryLogRecord:
        embedded = parse_log_comment(record.log_comment)
        candidate = attribute_row(index, record.event_timestamp, record.query, embedded)
        if candidate is None:
            return record
        return replace(
            record,
            owner=AppIdentity(user_id=candidate.user_id),
            connection_id=candidate.connection_id,
            attribution="embedded" if embedded else "audit",
        )

    def _with_connection_names(self, rows: list[QueryLogRecord]) -> list[QueryLogRecord]:
        """Fill in profile names for rows attributed to a connection.

        Names are cosmetic; a registry failure leaves them empty.
        """
        if self.registry is None or not any(r.connection_id for r in rows):
            return rows
        try:
            names = {p.id: p.name for p in self.registry.list_all(active_only=False)}
        except Exception:
            logger.warning("Could not resolve connection names for the query log", exc_info=True)
            return rows
        return [
            replace(r, connection_name=names.get(r.connection_id)) if r.connection_id else r
            for r in rows
        ]
