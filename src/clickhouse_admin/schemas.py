from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

from .history import QueryLogRecord
from .identity import AppIdentity
from .live_queries import LiveQuery

OutputFormat = Literal["JSON", "JSONEachRow", "TabSeparated", "CSV"]


class OwnerView(BaseModel):
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Optional[AppIdentity]) -> Optional["OwnerView"]:
        if identity is None:
            return None
        return cls(
            user_id=identity.user_id,
            username=identity.username,
            display_name=identity.display_name,
            email=identity.email,
        )


class QueryRecordView(BaseModel):
    query_id: str
    user: str
    query: str
    elapsed_seconds: float
    read_rows: int
    read_bytes: int
    memory_usage: int
    client_name: str = ""
    owner: Optional[OwnerView] = None
    can_kill: bool = False

    @classmethod
    def from_live(cls, live: LiveQuery) -> "QueryRecordView":
        r = live.record
        return cls(
            query_id=r.query_id,
            user=r.user,
            query=r.query,
            elapsed_seconds=r.elapsed_seconds,
            read_rows=r.read_rows,
            read_bytes=r.read_bytes,
            memory_usage=r.memory_usage,
            client_name=r.client_name,
            owner=OwnerView.from_identity(r.owner),
            can_kill=live.can_kill,
        )


class LiveQueriesResponse(BaseModel):
    queries: list[QueryRecordView]
    total: int
    connection_id: str


class KillRequest(BaseModel):
    query_id: str = Field(..., min_length=1, max_length=256)


class KillResponse(BaseModel):
    message: str
    query_id: str
    outcome: Literal["killed", "already_completed"]


class QueryLogView(BaseModel):
    type: str
    event_date: str
    event_time: str
    event_timestamp: float
    query_id: str
    query: str
    query_duration_ms: int
    read_rows: int
    read_bytes: int
    memory_usage: int
    user: str
    exception: str = ""
    owner: Optional[OwnerView] = None
    connection_id: Optional[str] = None
    connection_name: Optional[str] = None
    attribution: Optional[Literal["embedded", "audit"]] = None

    @classmethod
    def from_record(cls, r: QueryLogRecord) -> "QueryLogView":
        return cls(
            type=r.type,
            event_date=r.event_date,
            event_time=r.event_time,
            event_timestamp=r.event_timestamp,
            query_id=r.query_id,
            query=r.query,
            query_duration_ms=r.query_duration_ms,
            read_rows=r.read_rows,
            read_bytes=r.read_bytes,
            memory_usage=r.memory_usage,
            user=r.user,
            exception=r.exception,
            owner=OwnerView.from_identity(r.owner),
            connection_id=r.connection_id,
            connection_name=r.connection_name,
            attribution=r.attribution,
        )


class ExecuteRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=100000)
    format: OutputFormat = "JSON"


class ExecuteResponse(BaseModel):
    query_id: str
    data: list[dict[str, Any]] = Field(default_factory=list)
    meta: list[dict[str, Any]] = Field(default_factory=list)
    statistics: dict[str, Any] = Field(default_factory=dict)
    text: Optional[str] = None
    rows: int = 0


class SessionCreateRequest(BaseModel):
    connection_id: str = Field(..., min_length=1)


class SessionCreateResponse(BaseModel):
    session_id: str
    connection_id: str
    expires_in_seconds: int
