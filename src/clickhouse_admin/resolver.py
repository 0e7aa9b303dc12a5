"""Pick the engine client a request should run on.

Resolution order:
1. An explicit session owned by the caller is reused as-is.
2. Otherwise the caller's candidate profiles are read (all active profiles
   for connection administrators, granted ones for everyone else) and the
   default-and-active profile wins over the first active one.
3. The chosen profile's password is decrypted and a fresh client is built
   for this request only.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .config import settings
from .connections import ConnectionRegistry, select_connection
from .engine import EngineClient
from .errors import (
    ConfigurationError,
    ConnectionUnreachable,
    NoConnectionAvailable,
    SessionOwnershipMismatch,
)
from .permissions import CONNECTIONS_ADMIN, CallerContext
from .sessions import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedConnection:
    """An engine client bound to one request.

    ``pooled`` clients belong to a session and must stay open; derived
    clients are closed by whoever resolved them.
    """
    client: EngineClient
    connection_id: str
    pooled: bool = False
    session_id: Optional[str] = None

    def release(self) -> None:
        if not self.pooled:
            self.client.close()


class ConnectionResolver:
    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionStore,
        ping_on_resolve: Optional[bool] = None,
        timeout: Optional[float] = None
    ):
        self.registry = registry
        self.sessions = sessions
        self.ping_on_resolve = settings.engine_ping_on_resolve if ping_on_resolve is None else ping_on_resolve
        self.timeout = settings.engine_request_timeout_seconds if timeout is None else timeout

    def resolve(self, caller: CallerContext, session_id: Optional[str] = None) -> ResolvedConnection:
        """Resolve the engine client for ``caller``.

        Raises:
            SessionOwnershipMismatch: The session belongs to another user
            NoConnectionAvailable: The caller has no active profile
            ConnectionUnreachable: The profile cannot be turned into a client
        """
        if session_id:
            session = self.sessions.peek(session_id)
            if session is not None:
                if session.owner_user_id != caller.user_id:
                    logger.warning(
                        "User %s presented a session owned by %s",
                        caller.user_id, session.owner_user_id
                    )
                    raise SessionOwnershipMismatch()
                self.sessions.get(session_id)
                return ResolvedConnection(
                    client=session.client,
                    connection_id=session.connection_id,
                    pooled=True,
                    session_id=session.session_id,
                )
            logger.debug("Session %.8s... unknown or expired, deriving a client", session_id)

        if caller.can(CONNECTIONS_ADMIN):
            candidates = self.registry.list_all(active_only=True)
        else:
            candidates = self.registry.list_accessible(caller.user_id)

        profile = select_connection(candidates)
        if profile is None:
            raise NoConnectionAvailable(details={"user_id": caller.user_id})

        client = self.build_client(profile.id)
        return ResolvedConnection(client=client, connection_id=profile.id)

    def build_client(self, connection_id: str, ping: Optional[bool] = None) -> EngineClient:
        """Decrypt a profile's secret and open a client on it.

        Raises:
            ConnectionUnreachable: Profile vanished, secret unreadable, or the
                handshake failed
        """
        try:
            secret = self.registry.get_with_secret(connection_id)
        except ConfigurationError as e:
            raise ConnectionUnreachable(
                "Connection credentials could not be decrypted",
                retryable=False,
                details={"connection_id": connection_id}
            ) from e
        if secret is None:
            raise ConnectionUnreachable(
                "Connection profile no longer exists",
                retryable=False,
                details={"connection_id": connection_id}
            )

        profile = secret.profile
        client = EngineClient(
            profile.url,
            profile.username,
            secret.password,
            database=profile.database,
            timeout=self.timeout,
        )
        if self.ping_on_resolve if ping is None else ping:
            try:
                client.ping()
            except ConnectionUnreachable:
                client.close()
                raise
        return client
