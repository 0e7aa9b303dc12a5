import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Cookie, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from .audit import SESSION_CONNECT, SESSION_DISCONNECT, AuditStore
from .auth import bearer_token, build_caller, parse_access_token
from .config import settings
from .connections import ConnectionRegistry
from .db import check_metadata_store
from .errors import Forbidden, SessionOwnershipMismatch, StructuredError
from .executor import QueryExecutor
from .history import HistoryService, MAX_LOG_LIMIT
from .live_queries import LiveQueryReader
from .logging import client_ip, correlation_id_middleware, setup_logging
from .permissions import CONNECTIONS_ADMIN, CallerContext, PermissionStore
from .resolver import ConnectionResolver
from .schemas import (
    ExecuteRequest,
    ExecuteResponse,
    KillRequest,
    KillResponse,
    LiveQueriesResponse,
    QueryLogView,
    QueryRecordView,
    SessionCreateRequest,
    SessionCreateResponse,
)
from .sessions import SessionStore
from .termination import TerminationService
from .users import UserDirectory

setup_logging()
logger = logging.getLogger(__name__)

SESSION_CLEANUP_INTERVAL_SECONDS = 60

REQS = Counter("chadmin_requests_total", "Total API requests", ["endpoint"])
LAT = Histogram("chadmin_request_duration_seconds", "Request duration in seconds", ["endpoint"])
LIVE_ROWS = Counter("chadmin_live_query_rows_total", "Live query rows returned to callers")
KILLS = Counter("chadmin_kill_requests_total", "Kill requests by outcome", ["outcome"])
CORRELATION = Counter("chadmin_query_log_rows_total", "Query log rows by attribution result", ["result"])

permission_store = PermissionStore()
audit_store = AuditStore()
registry = ConnectionRegistry()
sessions = SessionStore(max_age_seconds=settings.session_max_age_seconds)
resolver = ConnectionResolver(registry, sessions)
live_reader = LiveQueryReader(UserDirectory())
termination = TerminationService(resolver, live_reader, audit_store)
history = HistoryService(audit_store, UserDirectory(), registry=registry)
executor = QueryExecutor(audit_store)


async def _expire_sessions_periodically():
    while True:
        await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SECONDS)
        sessions.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    cleanup = asyncio.create_task(_expire_sessions_periodically())
    try:
        yield
    finally:
        cleanup.cancel()
        sessions.close_all()


app = FastAPI(title="ClickHouse Admin API", version="0.1.0", lifespan=lifespan)
app.middleware("http")(correlation_id_middleware)


@app.exception_handler(StructuredError)
async def structured_error_handler(request: Request, exc: StructuredError):
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict()},
    )


def get_permission_store() -> PermissionStore:
    return permission_store


def get_resolver() -> ConnectionResolver:
    return resolver


def get_live_reader() -> LiveQueryReader:
    return live_reader


def get_termination() -> TerminationService:
    return termination


def get_history() -> HistoryService:
    return history


def get_executor() -> QueryExecutor:
    return executor


def get_sessions() -> SessionStore:
    return sessions


def get_audit_store() -> AuditStore:
    return audit_store


def get_caller(
    request: Request,
    authorization: Optional[str] = Header(None),
    store: PermissionStore = Depends(get_permission_store),
) -> CallerContext:
    payload = parse_access_token(bearer_token(authorization))
    return build_caller(
        payload,
        store,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_session_id(
    x_session_id: Optional[str] = Header(None),
    ch_session: Optional[str] = Cookie(None),
) -> Optional[str]:
    return x_session_id or ch_session


@app.get("/health")
def health():
    metadata_ok = check_metadata_store()
    return {
        "service": settings.service_name,
        "status": "ok" if metadata_ok else "degraded",
        "metadata_store": metadata_ok,
        "sessions": sessions.count(),
    }


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/live-queries", response_model=LiveQueriesResponse)
def list_live_queries(
    caller: CallerContext = Depends(get_caller),
    session_id: Optional[str] = Depends(get_session_id),
    resolver: ConnectionResolver = Depends(get_resolver),
    reader: LiveQueryReader = Depends(get_live_reader),
):
    REQS.labels(endpoint="live_queries").inc()
    with LAT.labels(endpoint="live_queries").time():
        connection = resolver.resolve(caller, session_id)
        try:
            listing = reader.list_running(caller, connection)
        finally:
            connection.release()
    LIVE_ROWS.inc(listing.total)
    return LiveQueriesResponse(
        queries=[QueryRecordView.from_live(q) for q in listing.queries],
        total=listing.total,
        connection_id=listing.connection_id,
    )


@app.post("/api/live-queries/kill", response_model=KillResponse)
def kill_live_query(
    req: KillRequest,
    caller: CallerContext = Depends(get_caller),
    session_id: Optional[str] = Depends(get_session_id),
    service: TerminationService = Depends(get_termination),
):
    REQS.labels(endpoint="kill").inc()
    try:
        with LAT.labels(endpoint="kill").time():
            result = service.kill(caller, req.query_id, session_id)
    except StructuredError as e:
        KILLS.labels(outcome=e.__class__.__name__).inc()
        raise
    KILLS.labels(outcome=result.outcome).inc()
    return KillResponse(message=result.message, query_id=result.query_id, outcome=result.outcome)


@app.get("/api/query-logs", response_model=list[QueryLogView])
def list_query_logs(
    limit: int = Query(100, ge=1, le=MAX_LOG_LIMIT),
    caller: CallerContext = Depends(get_caller),
    session_id: Optional[str] = Depends(get_session_id),
    resolver: ConnectionResolver = Depends(get_resolver),
    service: HistoryService = Depends(get_history),
):
    REQS.labels(endpoint="query_logs").inc()
    with LAT.labels(endpoint="query_logs").time():
        connection = resolver.resolve(caller, session_id)
        try:
            listing = service.list_logs(caller, connection, limit)
        finally:
            connection.release()
    CORRELATION.labels(result="matched").inc(listing.matched)
    CORRELATION.labels(result="unmatched").inc(listing.unmatched)
    return [QueryLogView.from_record(r) for r in listing.rows]


@app.post("/api/query/execute", response_model=ExecuteResponse)
def execute_query(
    req: ExecuteRequest,
    caller: CallerContext = Depends(get_caller),
    session_id: Optional[str] = Depends(get_session_id),
    resolver: ConnectionResolver = Depends(get_resolver),
    service: QueryExecutor = Depends(get_executor),
):
    REQS.labels(endpoint="execute").inc()
    with LAT.labels(endpoint="execute").time():
        connection = resolver.resolve(caller, session_id)
        try:
            result = service.execute(caller, connection, req.query, req.format)
        finally:
            connection.release()
    return ExecuteResponse(
        query_id=result.query_id,
        data=result.rows,
        meta=result.meta,
        statistics=result.statistics,
        text=result.text or None,
        rows=result.row_count,
    )


@app.post("/api/sessions", response_model=SessionCreateResponse)
def create_session(
    req: SessionCreateRequest,
    response: Response,
    caller: CallerContext = Depends(get_caller),
    resolver: ConnectionResolver = Depends(get_resolver),
    store: SessionStore = Depends(get_sessions),
    audit: AuditStore = Depends(get_audit_store),
):
    REQS.labels(endpoint="session_create").inc()
    if caller.can(CONNECTIONS_ADMIN):
        allowed = {p.id for p in resolver.registry.list_all(active_only=True)}
    else:
        allowed = {p.id for p in resolver.registry.list_accessible(caller.user_id)}
    if req.connection_id not in allowed:
        raise Forbidden(
            "You do not have access to this connection",
            details={"connection_id": req.connection_id}
        )

    client = resolver.build_client(req.connection_id, ping=True)
    session = store.create(caller.user_id, req.connection_id, client)
    audit.record(
        SESSION_CONNECT,
        caller.user_id,
        resource_type="connection",
        resource_id=req.connection_id,
        details={"connectionId": req.connection_id},
        ip_address=caller.ip_address,
        user_agent=caller.user_agent,
    )
    response.set_cookie(
        "ch_session",
        session.session_id,
        max_age=settings.session_max_age_seconds,
        httponly=True,
        samesite="strict",
        secure=settings.environment != "dev",
    )
    return SessionCreateResponse(
        session_id=session.session_id,
        connection_id=session.connection_id,
        expires_in_seconds=settings.session_max_age_seconds,
    )


@app.delete("/api/sessions/{session_id}")
def destroy_session(
    session_id: str,
    response: Response,
    caller: CallerContext = Depends(get_caller),
    store: SessionStore = Depends(get_sessions),
    audit: AuditStore = Depends(get_audit_store),
):
    REQS.labels(endpoint="session_destroy").inc()
    session = store.peek(session_id)
    if session is None:
        return {"success": True, "destroyed": False}
    if session.owner_user_id != caller.user_id:
        raise SessionOwnershipMismatch()
    store.destroy(session_id)
    audit.record(
        SESSION_DISCONNECT,
        caller.user_id,
        resource_type="connection",
        resource_id=session.connection_id,
        details={"connectionId": session.connection_id},
        ip_address=caller.ip_address,
        user_agent=caller.user_agent,
    )
    response.delete_cookie("ch_session")
    return {"success": True, "destroyed": True}


@app.delete("/api/sessions")
def destroy_own_sessions(
    caller: CallerContext = Depends(get_caller),
    store: SessionStore = Depends(get_sessions),
):
    """Disconnect every session of the caller (logout)."""
    REQS.labels(endpoint="session_destroy_all").inc()
    return {"success": True, "destroyed": store.destroy_user_sessions(caller.user_id)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("clickhouse_admin.main:app", host="127.0.0.1", port=8000, reload=True)
