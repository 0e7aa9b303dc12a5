"""ClickHouse engine client over the HTTP interface.

One EngineClient wraps one set of engine credentials. Every call is a single
POST; the caller's application identity rides on the same request as the
``log_comment`` setting (see identity.py), so attribution never costs an
extra round trip.

Example:
    >>> client = EngineClient("http://localhost:8123", "default", "")
    >>> result = client.execute_query("SELECT 1 AS x", app_user_id="u-1")
    >>> result.rows
    [{'x': 1}]
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from .errors import ConnectionUnreachable, EngineQueryError, EngineUnavailable
from .identity import build_log_comment

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"JSON", "JSONEachRow", "TabSeparated", "CSV"}

# Guard rails applied to every call made through the service
DEFAULT_ENGINE_SETTINGS = {
    "max_result_rows": "10000",
    "max_result_bytes": "10000000",
    "result_overflow_mode": "break",
}

# Gateway-style statuses mean the server never ran the statement
_UNAVAILABLE_STATUSES = {502, 503, 504}


@dataclass(frozen=True)
class EngineResult:
    """Rows and metadata returned by one engine call."""
    query_id: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    meta: list[dict[str, Any]] = field(default_factory=list)
    statistics: dict[str, Any] = field(default_factory=dict)
    text: str = ""

    @property
    def row_count(self) -> int:
        return len(self.rows)


def sql_string(value: str) -> str:
    """Render a Python string as a ClickHouse string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def as_int(value: Any) -> int:
    """ClickHouse quotes 64-bit integers in JSON output; normalize them."""
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(float(value))


def as_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    return float(value)


class EngineClient:
    """Thin synchronous client for the ClickHouse HTTP interface."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str = "",
        database: Optional[str] = None,
        timeout: float = 300.0,
        http: Optional[requests.Session] = None
    ):
        """Initialize the client.

        Args:
            url: Base URL, e.g. ``https://ch.internal:8443``
            username: Engine-level user
            password: Engine-level password (plaintext, held in memory only)
            database: Default database for unqualified names
            timeout: Per-request timeout in seconds
            http: Optional pre-built requests.Session (tests inject one)
        """
        self.url = url.rstrip("/")
        self.username = username
        self.database = database
        self._password = password
        self._timeout = timeout
        self._http = http or requests.Session()
        self._closed = False

    def execute_query(
        self,
        sql: str,
        fmt: str = "JSON",
        app_user_id: Optional[str] = None,
        query_id: Optional[str] = None
    ) -> EngineResult:
        """Run one statement and return its parsed result.

        Args:
            sql: Statement text (no trailing FORMAT clause needed)
            fmt: Output format; JSON and JSONEachRow are parsed into rows
            app_user_id: Application caller to embed as ``log_comment``
            query_id: Explicit engine query id (generated when omitted)

        Raises:
            EngineUnavailable: Transport failure or gateway error
            EngineQueryError: The engine rejected the statement
        """
        if fmt not in SUPPORTED_FORMATS:
            raise EngineQueryError(f"Unsupported output format '{fmt}'", details={"format": fmt})

        query_id = query_id or str(uuid.uuid4())
        params = dict(DEFAULT_ENGINE_SETTINGS)
        params["default_format"] = fmt
        params["query_id"] = query_id
        if self.database:
            params["database"] = self.database
        comment = build_log_comment(app_user_id)
        if comment:
            params["log_comment"] = comment

        try:
            response = self._http.post(
                f"{self.url}/",
                params=params,
                data=sql.strip().encode("utf-8"),
                headers=self._auth_headers(),
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise EngineUnavailable(
                f"ClickHouse did not answer within {self._timeout:.0f}s",
                details={"url": self.url, "query_id": query_id}
            ) from e
        except requests.RequestException as e:
            raise EngineUnavailable(
                f"ClickHouse request failed: {e}",
                details={"url": self.url, "query_id": query_id}
            ) from e

        if response.status_code != 200:
            message = response.text.strip()[:2000] or f"HTTP {response.status_code}"
            details = {
                "status_code": response.status_code,
                "exception_code": response.headers.get("X-ClickHouse-Exception-Code"),
                "query_id": query_id,
            }
            if response.status_code in _UNAVAILABLE_STATUSES:
                raise EngineUnavailable(message, details=details)
            raise EngineQueryError(message, details=details)

        try:
            return self._parse(response.text, fmt, query_id)
        except ValueError as e:
            raise EngineUnavailable(
                "ClickHouse returned a malformed response",
                retryable=False,
                details={"query_id": query_id, "format": fmt}
            ) from e

    def ping(self) -> bool:
        """Handshake with the server.

        Raises:
            ConnectionUnreachable: If the server cannot be reached
        """
        try:
            response = self._http.get(f"{self.url}/ping", timeout=min(self._timeout, 10.0))
        except requests.RequestException as e:
            raise ConnectionUnreachable(
                f"ClickHouse at {self.url} is unreachable: {e}",
                details={"url": self.url}
            ) from e
        if response.status_code != 200:
            raise ConnectionUnreachable(
                f"ClickHouse at {self.url} answered ping with HTTP {response.status_code}",
                details={"url": self.url, "status_code": response.status_code}
            )
        return True

    def close(self) -> None:
        if not self._closed:
            self._http.close()
            self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _auth_headers(self) -> dict[str, str]:
        return {
            "X-ClickHouse-User": self.username,
            "X-ClickHouse-Key": self._password,
        }

    @staticmethod
    def _parse(body: str, fmt: str, query_id: str) -> EngineResult:
        text = body.strip()
        if not text:
            # DDL, KILL with no matches, INSERT ... return no body
            return EngineResult(query_id=query_id)
        if fmt == "JSON":
            payload = json.loads(text)
            return EngineResult(
                query_id=query_id,
                rows=payload.get("data") or [],
                meta=payload.get("meta") or [],
                statistics=payload.get("statistics") or {},
            )
        if fmt == "JSONEachRow":
            rows = [json.loads(line) for line in text.splitlines() if line.strip()]
            return EngineResult(query_id=query_id, rows=rows)
        return EngineResult(query_id=query_id, text=text)
