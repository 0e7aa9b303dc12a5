"""Authorize and execute termination of running queries.

A kill is allowed when the caller holds live_queries:kill and either holds
live_queries:kill_all or is the embedded owner of the running query. When
ownership cannot be established the request is refused. Every attempt that
gets past authentication leaves exactly one ``live_query.kill`` audit event,
whatever its outcome.
"""
import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

from .audit import LIVE_QUERY_KILL, AuditStore, query_preview
from .engine import sql_string
from .errors import EngineQueryError, EngineUnavailable, Forbidden, StructuredError, ValidationError
from .live_queries import LiveQueryReader, QueryRecord
from .permissions import KILL_AUTHORITY, LIVE_QUERIES_KILL, CallerContext, may_terminate
from .resolver import ConnectionResolver, ResolvedConnection

logger = logging.getLogger(__name__)

KillOutcome = Literal["killed", "already_completed"]


@dataclass(frozen=True)
class KillResult:
    message: str
    query_id: str
    outcome: KillOutcome
    owner_id: Optional[str] = None


class TerminationService:
    def __init__(self, resolver: ConnectionResolver, reader: LiveQueryReader, audit_store: AuditStore):
        self.resolver = resolver
        self.reader = reader
        self.audit_store = audit_store

    def kill(self, caller: CallerContext, query_id: str, session_id: Optional[str] = None) -> KillResult:
        """Terminate one running query on the caller's connection.

        Args:
            caller: Authenticated requester
            query_id: Engine query id to terminate
            session_id: Optional explicit session to run the command on

        Returns:
            KillResult; a query that already finished is reported as
            ``already_completed`` rather than as an error

        Raises:
            ValidationError: Empty query id
            Forbidden: Missing permission, or ownership not established
            NoConnectionAvailable / ConnectionUnreachable: From resolution
            EngineUnavailable: The kill command failed
        """
        query_id = (query_id or "").strip()
        details: dict[str, Any] = {
            "killedQueryId": query_id,
            "killType": "global" if KILL_AUTHORITY.is_privileged(caller) else "own_query",
        }
        connection: Optional[ResolvedConnection] = None
        error_message: Optional[str] = None
        try:
            if not query_id:
                raise ValidationError("query_id is required", details={"field": "query_id"})
            if not caller.can(LIVE_QUERIES_KILL):
                raise Forbidden(
                    f"Permission '{LIVE_QUERIES_KILL}' is required",
                    details={"permission": LIVE_QUERIES_KILL}
                )

            connection = self.resolver.resolve(caller, session_id)
            details["connectionId"] = connection.connection_id

            record = self.reader.lookup(connection, query_id, app_user_id=caller.user_id)
            if record is not None:
                details.update(self._target_details(record))

            owner_id = record.owner_id if record else None
            if not may_terminate(caller, owner_id):
                raise Forbidden(
                    "You can only kill your own queries",
                    details={"query_id": query_id}
                )

            result = self._send_kill(connection, query_id, caller.user_id)
            outcome: KillOutcome = "killed" if result else "already_completed"
            details["outcome"] = outcome
            message = (
                f"Query {query_id} killed" if outcome == "killed"
                else f"Query {query_id} had already completed"
            )
            logger.info("User %s kill %s: %s", caller.user_id, query_id, outcome)
            return KillResult(message=message, query_id=query_id, outcome=outcome, owner_id=owner_id)
        except StructuredError as e:
            error_message = e.message
            logger.warning("User %s kill %s refused or failed: %s", caller.user_id, query_id, e.message)
            raise
        finally:
            self.audit_store.record(
                LIVE_QUERY_KILL,
                caller.user_id,
                status="failure" if error_message is not None else "success",
                resource_type="live_query",
                resource_id=query_id,
                details=details,
                error_message=error_message,
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
            )
            if connection is not None:
                connection.release()

    @staticmethod
    def _target_details(record: QueryRecord) -> dict[str, Any]:
        return {
            "killedQueryUser": record.user,
            "killedQueryOwner": record.owner_id,
            "killedQueryPreview": query_preview(record.query),
            "elapsedSeconds": record.elapsed_seconds,
        }

    @staticmethod
    def _send_kill(connection: ResolvedConnection, query_id: str, app_user_id: str) -> bool:
        """Issue KILL QUERY; True if the engine reported a matching query."""
        try:
            result = connection.client.execute_query(
                f"KILL QUERY WHERE query_id = {sql_string(query_id)}",
                app_user_id=app_user_id,
            )
        except EngineQueryError as e:
            raise EngineUnavailable(
                "Failed to kill query",
                retryable=False,
                details={"query_id": query_id, "reason": e.message}
            ) from e
        return bool(result.rows)
