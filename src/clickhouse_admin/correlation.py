"""Best-effort attribution of historical query-log rows to application users.

Rows that carry an embedded identity (see identity.py) are attributed from
it directly. For the rest, the ``clickhouse.query_execute`` audit trail is
indexed into 5-second time buckets and a row is matched to the nearest
bucket holding at least one candidate; within a bucket, a candidate whose
stored SQL prefix occurs in the row's SQL wins, otherwise the first one.

Nothing in this module performs I/O.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import CorrelationInconclusive
from .schemas_audit import AuditEventSchema

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_STEP_SECONDS = 5


@dataclass(frozen=True)
class CorrelationCandidate:
    user_id: str
    connection_id: Optional[str] = None
    sql_prefix: Optional[str] = None
    timestamp: float = 0.0


def effective_timestamp(event: AuditEventSchema) -> float:
    """When the audited query actually started, in epoch seconds.

    ``details.timestamp`` (epoch milliseconds, captured before execution)
    beats the row's write time.
    """
    raw = event.details.get("timestamp") if event.details else None
    if raw is not None and not isinstance(raw, bool):
        try:
            ts = float(raw) / 1000.0
        except (TypeError, ValueError, OverflowError):
            ts = None
        if ts is not None and math.isfinite(ts):
            return ts
        logger.debug("Ignoring unusable audit timestamp %r on %s", raw, event.id)
    return event.created_at.timestamp()


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass
class AuditIndex:
    """Time-bucketed audit candidates.

    Each candidate is registered in every bucket within ``window`` seconds of
    its effective timestamp. Bucket keys are ``floor(ts / step)``, so two
    timestamps in the same step share a key whatever their offset.
    """
    window: int = DEFAULT_WINDOW_SECONDS
    step: int = DEFAULT_STEP_SECONDS
    buckets: dict[int, list[CorrelationCandidate]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        events: Iterable[AuditEventSchema],
        window: int = DEFAULT_WINDOW_SECONDS,
        step: int = DEFAULT_STEP_SECONDS
    ) -> "AuditIndex":
        index = cls(window=window, step=step)
        for event in events:
            if not event.user_id:
                continue
            details = event.details or {}
            ts = effective_timestamp(event)
            index.add(CorrelationCandidate(
                user_id=event.user_id,
                connection_id=_text(details.get("connectionId")),
                sql_prefix=_text(details.get("query")),
                timestamp=ts,
            ))
        return index

    def bucket_key(self, ts: float) -> int:
        return math.floor(ts / self.step)

    def add(self, candidate: CorrelationCandidate) -> None:
        first = self.bucket_key(candidate.timestamp - self.window)
        last = self.bucket_key(candidate.timestamp + self.window)
        for key in range(first, last + 1):
            self.buckets.setdefault(key, []).append(candidate)

    def probe_keys(self, ts: float) -> list[int]:
        """Own bucket first, then neighbours nearest-first, earlier before later."""
        own = self.bucket_key(ts)
        keys = [own]
        for distance in range(1, self.window // self.step + 1):
            keys.append(own - distance)
            keys.append(own + distance)
        return keys

    def __len__(self) -> int:
        return len(self.buckets)


def best_candidate(candidates: list[CorrelationCandidate], row_sql: str) -> CorrelationCandidate:
    """Content tie-break within one bucket."""
    for candidate in candidates:
        if candidate.sql_prefix and candidate.sql_prefix in (row_sql or ""):
            return candidate
    return candidates[0]


def match_row(index: AuditIndex, row_ts: float, row_sql: str) -> CorrelationCandidate:
    """Find the audit candidate for a row without embedded identity.

    Raises:
        CorrelationInconclusive: No bucket near ``row_ts`` holds a candidate
    """
    for key in index.probe_keys(row_ts):
        candidates = index.buckets.get(key)
        if candidates:
            return best_candidate(candidates, row_sql)
    raise CorrelationInconclusive(details={"row_timestamp": row_ts})


def attribute_row(
    index: AuditIndex,
    row_ts: float,
    row_sql: str,
    embedded_user_id: Optional[str] = None
) -> Optional[CorrelationCandidate]:
    """Attribute one historical row; embedded identity always wins.

    Returns:
        The attributed candidate, or None when the row stays unknown
    """
    if embedded_user_id:
        return CorrelationCandidate(user_id=embedded_user_id, timestamp=row_ts)
    try:
        return match_row(index, row_ts, row_sql)
    except CorrelationInconclusive:
        return None
