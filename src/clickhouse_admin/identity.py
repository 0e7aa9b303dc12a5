"""Application identity carried inside ClickHouse's own query metadata.

ClickHouse only knows its own users. Queries issued through this service are
stamped with the issuing application user via the ``log_comment`` setting,
which the engine copies verbatim into ``system.processes`` and
``system.query_log`` for the lifetime of that query:

    log_comment = '{"rbac_user_id":"u-123"}'

A missing or unreadable comment means *unknown*, never "system".
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

IDENTITY_KEY = "rbac_user_id"


@dataclass(frozen=True)
class AppIdentity:
    """An application user, optionally enriched with directory details."""
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def label(self) -> str:
        """Best human-readable name available."""
        return self.display_name or self.username or self.email or self.user_id


def build_log_comment(user_id: Optional[str]) -> Optional[str]:
    """Serialize the caller's identity for the ``log_comment`` setting.

    Returns None when there is no caller, so nothing is attached.
    """
    if not user_id:
        return None
    return json.dumps({IDENTITY_KEY: user_id}, separators=(",", ":"))


def parse_log_comment(raw: Any) -> Optional[str]:
    """Extract the embedded application user id from a ``log_comment`` value.

    Plain-text comments, other JSON shapes, and blank ids all yield None.
    """
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring non-JSON log_comment: %.80s", raw)
        return None
    if not isinstance(parsed, dict):
        return None
    user_id = parsed.get(IDENTITY_KEY)
    if user_id is None:
        return None
    user_id = str(user_id).strip()
    return user_id or None
