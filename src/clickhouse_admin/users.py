"""Application user directory and batched display-name resolution."""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from .db import get_connection, rows_as_dicts
from .identity import AppIdentity

logger = logging.getLogger(__name__)


class UserDirectory:
    """Looks up application users in the metadata store."""

    def get_user(self, user_id: str) -> Optional[AppIdentity]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, username, display_name, email
                    FROM rbac_users
                    WHERE id = %s
                    """,
                    (user_id,)
                )
                rows = rows_as_dicts(cur)
        if not rows:
            return None
        row = rows[0]
        return AppIdentity(
            user_id=str(row["id"]),
            username=row.get("username"),
            display_name=row.get("display_name"),
            email=row.get("email"),
        )


def resolve_identities(
    directory: UserDirectory,
    user_ids: Iterable[Optional[str]],
    max_workers: int = 8
) -> dict[str, AppIdentity]:
    """Resolve each distinct user id once, concurrently.

    A failed or empty lookup degrades to a bare AppIdentity for that id;
    it never fails the batch.

    Returns:
        Mapping of user id to identity, one entry per distinct non-empty id
    """
    distinct = sorted({uid for uid in user_ids if uid})
    if not distinct:
        return {}

    def lookup(user_id: str) -> AppIdentity:
        try:
            found = directory.get_user(user_id)
        except Exception as e:
            logger.warning("Failed to resolve user %s: %s", user_id, e)
            return AppIdentity(user_id=user_id)
        return found or AppIdentity(user_id=user_id)

    workers = max(1, min(max_workers, len(distinct)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolve-user") as pool:
        resolved = list(pool.map(lookup, distinct))
    return dict(zip(distinct, resolved))
