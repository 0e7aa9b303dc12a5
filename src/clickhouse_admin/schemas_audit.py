"""Pydantic schemas for audit log records."""
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Any, Literal, Optional


AuditStatus = Literal["success", "failure"]


class AuditEventSchema(BaseModel):
    """A single audit trail entry.

    Audit events are append-only: once written they are never updated or
    deleted by the application, so the model is frozen as well.
    """
    id: str = Field(..., description="Unique audit event ID")
    user_id: Optional[str] = Field(
        None,
        max_length=128,
        description="Application user who performed the action"
    )
    action: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Action kind, e.g. clickhouse.query_execute"
    )
    resource_type: Optional[str] = Field(None, max_length=64)
    resource_id: Optional[str] = Field(None, max_length=256)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured details (timestamp, connectionId, query prefix, ...)"
    )
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: AuditStatus = Field(..., description="Outcome of the action")
    error_message: Optional[str] = None
    created_at: datetime = Field(..., description="When the event was written")

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "id": "5f0c3c1e-7b0e-4c38-9d89-3f1d2b6c0a11",
                    "user_id": "u-42",
                    "action": "clickhouse.query_execute",
                    "resource_type": "query",
                    "resource_id": "b7d7e3a0-1111-2222-3333-444455556666",
                    "details": {
                        "timestamp": 1718000000123,
                        "connectionId": "conn-1",
                        "query": "SELECT count() FROM events"
                    },
                    "status": "success",
                    "created_at": "2024-06-10T06:13:21Z"
                }
            ]
        }
    )
