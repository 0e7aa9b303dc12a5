"""Read the engine's currently running queries and scope them per caller."""
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .config import settings
from .engine import EngineClient, as_float, as_int, sql_string
from .errors import EngineQueryError, EngineUnavailable, Forbidden, StructuredError
from .identity import AppIdentity, parse_log_comment
from .permissions import LIVE_QUERIES_VIEW, LIVE_VISIBILITY, CallerContext, may_terminate
from .resolver import ResolvedConnection
from .users import UserDirectory, resolve_identities

logger = logging.getLogger(__name__)

_PROCESS_COLUMNS = """
    query_id,
    user,
    query,
    elapsed AS elapsed_seconds,
    read_rows,
    read_bytes,
    memory_usage,
    client_name,
    Settings['log_comment'] AS log_comment
"""


@dataclass(frozen=True)
class QueryRecord:
    """One row of ``system.processes``."""
    query_id: str
    user: str
    query: str
    elapsed_seconds: float = 0.0
    read_rows: int = 0
    read_bytes: int = 0
    memory_usage: int = 0
    client_name: str = ""
    log_comment: Optional[str] = None
    owner: Optional[AppIdentity] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self.owner.user_id if self.owner else None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "QueryRecord":
        comment = row.get("log_comment") or None
        owner_id = parse_log_comment(comment)
        return cls(
            query_id=str(row.get("query_id", "")),
            user=str(row.get("user", "")),
            query=str(row.get("query", "")),
            elapsed_seconds=as_float(row.get("elapsed_seconds")),
            read_rows=as_int(row.get("read_rows")),
            read_bytes=as_int(row.get("read_bytes")),
            memory_usage=as_int(row.get("memory_usage")),
            client_name=str(row.get("client_name") or ""),
            log_comment=comment,
            owner=AppIdentity(user_id=owner_id) if owner_id else None,
        )


@dataclass(frozen=True)
class LiveQuery:
    record: QueryRecord
    can_kill: bool = False


@dataclass
class LiveQueryListing:
    queries: list[LiveQuery] = field(default_factory=list)
    total: int = 0
    connection_id: str = ""


class LiveQueryReader:
    """Lists running queries with their owners, filtered by visibility."""

    def __init__(self, directory: Optional[UserDirectory] = None, max_workers: Optional[int] = None):
        self.directory = directory or UserDirectory()
        self.max_workers = max_workers or settings.name_resolution_workers

    def list_running(self, caller: CallerContext, connection: ResolvedConnection) -> LiveQueryListing:
        """Running initial queries visible to ``caller``, longest-running first.

        Raises:
            Forbidden: Caller lacks live_queries:view
            EngineUnavailable: The process list could not be read
        """
        if not caller.can(LIVE_QUERIES_VIEW):
            raise Forbidden(
                f"Permission '{LIVE_QUERIES_VIEW}' is required",
                details={"permission": LIVE_QUERIES_VIEW}
            )

        records = self._read_processes(connection.client, caller.user_id)
        records = self._with_names(records)

        visible = [r for r in records if LIVE_VISIBILITY.allows(caller, r.owner_id)]
        queries = [LiveQuery(record=r, can_kill=may_terminate(caller, r.owner_id)) for r in visible]
        logger.info(
            "Live queries for %s: %d running, %d visible",
            caller.user_id, len(records), len(visible)
        )
        return LiveQueryListing(queries=queries, total=len(queries), connection_id=connection.connection_id)

    def lookup(self, connection: ResolvedConnection, query_id: str, app_user_id: Optional[str] = None) -> Optional[QueryRecord]:
        """Best-effort read of one running query; None if gone or unreadable."""
        sql = f"""
            SELECT {_PROCESS_COLUMNS}
            FROM system.processes
            WHERE query_id = {sql_string(query_id)}
            LIMIT 1
        """
        try:
            result = connection.client.execute_query(sql, app_user_id=app_user_id)
        except StructuredError as e:
            logger.warning("Could not look up running query %s: %s", query_id, e.message)
            return None
        if not result.rows:
            return None
        return QueryRecord.from_row(result.rows[0])

    def _read_processes(self, client: EngineClient, app_user_id: str) -> list[QueryRecord]:
        own_query_id = str(uuid.uuid4())
        sql = f"""
            SELECT {_PROCESS_COLUMNS}
            FROM system.processes
            WHERE is_initial_query = 1
              AND query_id != {sql_string(own_query_id)}
              AND query NOT LIKE 'KILL QUERY%'
            ORDER BY elapsed DESC
        """
        try:
            result = client.execute_query(sql, app_user_id=app_user_id, query_id=own_query_id)
        except EngineQueryError as e:
            raise EngineUnavailable(
                "Failed to read running queries",
                retryable=False,
                details={"reason": e.message}
            ) from e
        return [QueryRecord.from_row(row) for row in result.rows]

    def _with_names(self, records: list[QueryRecord]) -> list[QueryRecord]:
        identities = resolve_identities(
            self.directory,
            (r.owner_id for r in records),
            max_workers=self.max_workers,
        )
        return [
            replace(r, owner=identities.get(r.owner_id, r.owner)) if r.owner_id else r
            for r in records
        ]
