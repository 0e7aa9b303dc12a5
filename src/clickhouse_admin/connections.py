"""Registry of ClickHouse connection profiles stored in the metadata store.

Access to a connection is granted per user through ``user_connections``;
administrators may use every profile in ``clickhouse_connections``.
"""
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .credentials import CredentialVault
from .db import get_connection, rows_as_dicts

_PROFILE_COLUMNS = """
    c.id, c.name, c.host, c.port, c.username, c.database,
    c.ssl_enabled, c.is_default, c.is_active
"""


@dataclass(frozen=True)
class ConnectionProfile:
    """A stored ClickHouse connection, without its secret."""
    id: str
    name: str
    host: str
    port: int
    username: str
    database: Optional[str] = None
    ssl_enabled: bool = False
    is_default: bool = False
    is_active: bool = True

    @property
    def url(self) -> str:
        scheme = "https" if self.ssl_enabled else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConnectionProfile":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            host=row["host"],
            port=int(row["port"]),
            username=row["username"],
            database=row.get("database"),
            ssl_enabled=bool(row.get("ssl_enabled")),
            is_default=bool(row.get("is_default")),
            is_active=bool(row.get("is_active")),
        )


@dataclass(frozen=True)
class ConnectionSecret:
    """A profile plus its decrypted password, valid for one request."""
    profile: ConnectionProfile
    password: str


def select_connection(candidates: Sequence[ConnectionProfile]) -> Optional[ConnectionProfile]:
    """Pick the default-and-active profile, else the first active one."""
    for profile in candidates:
        if profile.is_default and profile.is_active:
            return profile
    for profile in candidates:
        if profile.is_active:
            return profile
    return None


class ConnectionRegistry:
    """Reads connection profiles and decrypts their secrets on demand."""

    def __init__(self, vault: Optional[CredentialVault] = None):
        self._vault = vault

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault()
        return self._vault

    def list_accessible(self, user_id: str) -> list[ConnectionProfile]:
        """Active profiles explicitly granted to a user, default first."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_PROFILE_COLUMNS}
                    FROM clickhouse_connections c
                    JOIN user_connections uc ON uc.connection_id = c.id
                    WHERE uc.user_id = %s
                      AND uc.can_use = TRUE
                      AND c.is_active = TRUE
                    ORDER BY c.is_default DESC, c.name ASC
                    """,
                    (user_id,)
                )
                return [ConnectionProfile.from_row(r) for r in rows_as_dicts(cur)]

    def list_all(self, active_only: bool = True) -> list[ConnectionProfile]:
        """Every registered profile (administrator path)."""
        where = "WHERE c.is_active = TRUE" if active_only else ""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_PROFILE_COLUMNS}
                    FROM clickhouse_connections c
                    {where}
                    ORDER BY c.is_default DESC, c.name ASC
                    """
                )
                return [ConnectionProfile.from_row(r) for r in rows_as_dicts(cur)]

    def get_with_secret(self, connection_id: str) -> Optional[ConnectionSecret]:
        """Load one profile and decrypt its password.

        Returns:
            ConnectionSecret, or None if the profile no longer exists

        Raises:
            ConfigurationError: If the stored password cannot be decrypted
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_PROFILE_COLUMNS}, c.password_encrypted
                    FROM clickhouse_connections c
                    WHERE c.id = %s
                    """,
                    (connection_id,)
                )
                rows = rows_as_dicts(cur)
        if not rows:
            return None
        row = rows[0]
        encrypted = row.get("password_encrypted")
        password = self.vault.decrypt(encrypted) if encrypted else ""
        return ConnectionSecret(profile=ConnectionProfile.from_row(row), password=password)
