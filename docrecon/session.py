"""Per-run session management and the re-authentication protocol.

A run holds one ``SessionPool`` per side (source, target). A pool creates
one remote client per domain on first use and reuses it for every pair on
that domain. When a call fails because the session's cookies are no
longer accepted, ``SessionPool.reauthenticate`` asks the configured
handler for fresh credentials and reports the outcome as ``Retry``,
``Declined`` or ``Unavailable``.

A user who declines once is not asked again for that side during the run;
the latch lives on the ``RunContext`` shared by both pools.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, TypeVar, Union
from urllib.parse import urlsplit

from docrecon.cancellation import CancellationToken
from docrecon.client import LibraryInfo, SharePointClient, SiteInfo
from docrecon.core.log import get_logger
from docrecon.credentials import (
    ConnectionConfig,
    ConnectionRegistry,
    Credentials,
    CredentialStore,
    ReauthHandler,
    lookup_credentials,
)
from docrecon.errors import AuthenticationError, ConfigError, is_auth_failure
from docrecon.models import DocumentSnapshotItem

logger = get_logger(__name__)

T = TypeVar("T")


class RemoteClient(Protocol):
    async def get_site_info(self, site_url: str) -> SiteInfo: ...

    async def get_libraries(self, site_url: str, include_hidden: bool = False) -> list[LibraryInfo]: ...

    async def get_documents(
        self,
        site_url: str,
        library_title: str,
        include_special_pages: bool = False,
        progress: Callable[[int], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[DocumentSnapshotItem]: ...

    async def aclose(self) -> None: ...


ClientFactory = Callable[[Credentials], RemoteClient]


class Side(str, Enum):
    SOURCE = "source"
    TARGET = "target"


@dataclass(frozen=True)
class Retry:
    client: RemoteClient


@dataclass(frozen=True)
class Declined:
    pass


@dataclass(frozen=True)
class Unavailable:
    reason: str


ReauthOutcome = Union[Retry, Declined, Unavailable]


@dataclass
class RunContext:
    """Run-scoped state shared by both session pools."""

    reauth_declined: dict[Side, bool] = field(
        default_factory=lambda: {Side.SOURCE: False, Side.TARGET: False}
    )

    def is_declined(self, side: Side) -> bool:
        return self.reauth_declined[side]

    def decline(self, side: Side) -> None:
        self.reauth_declined[side] = True


def url_host(url: str) -> str:
    return urlsplit(url.strip()).netloc.lower()


class SessionProvider:
    """Resolves connections and builds clients from stored credentials."""

    def __init__(
        self,
        credential_store: CredentialStore | None,
        connections: ConnectionRegistry,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.credential_store = credential_store
        self.connections = connections
        self._client_factory = client_factory or SharePointClient

    def resolve_connection(self, connection_id: str) -> ConnectionConfig:
        connection = self.connections.get_connection(connection_id)
        if connection is None:
            raise ConfigError(f"Connection '{connection_id}' not found")
        return connection

    def credentials_for(self, connection: ConnectionConfig, domain: str) -> Credentials | None:
        if self.credential_store is None:
            return None
        stored = self.credential_store.get_stored_credentials(domain)
        if stored is not None and stored.is_valid:
            return stored
        return lookup_credentials(self.credential_store, connection)

    def create_client(self, credentials: Credentials) -> RemoteClient:
        return self._client_factory(credentials)

    def save_credentials(self, credentials: Credentials) -> None:
        if self.credential_store is not None:
            self.credential_store.save_credentials(credentials)


class SessionPool:
    def __init__(
        self,
        provider: SessionProvider,
        context: RunContext,
        side: Side,
        connection: ConnectionConfig,
        reauth_handler: ReauthHandler | None = None,
    ) -> None:
        self._provider = provider
        self._context = context
        self._reauth_handler = reauth_handler
        self.side = side
        self.connection = connection
        self._clients: dict[str, RemoteClient] = {}
        self._closed_throttle_retries = 0

    async def __aenter__(self) -> SessionPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def throttle_retry_count(self) -> int:
        live = sum(getattr(client, "throttle_retries", 0) for client in self._clients.values())
        return self._closed_throttle_retries + live

    async def get(self, domain: str) -> RemoteClient:
        """Client for ``domain``, created on first use.

        With no valid stored credentials the re-authentication protocol runs
        before giving up.
        """
        client, _ = await self._get(domain)
        return client

    async def _get(self, domain: str) -> tuple[RemoteClient, bool]:
        """Client for ``domain`` and whether it was just obtained by re-authenticating."""
        domain = domain.lower()
        client = self._clients.get(domain)
        if client is not None:
            return client, False
        credentials = self._provider.credentials_for(self.connection, domain)
        if credentials is not None:
            client = self._provider.create_client(credentials)
            self._clients[domain] = client
            logger.debug("session.created", side=self.side.value, domain=domain)
            return client, False
        outcome = await self.reauthenticate(domain)
        if isinstance(outcome, Retry):
            return outcome.client, True
        reason = outcome.reason if isinstance(outcome, Unavailable) else "re-authentication declined"
        raise AuthenticationError(f"No valid credentials for {domain} ({reason})")

    async def reauthenticate(self, domain: str) -> ReauthOutcome:
        domain = domain.lower()
        if self._reauth_handler is None:
            return Unavailable("no re-authentication handler configured")
        if self._context.is_declined(self.side):
            return Unavailable(f"re-authentication already declined for {self.side.value}")

        logger.info(
            "session.reauth_requested",
            side=self.side.value,
            tenant=self.connection.tenant_name,
            domain=domain,
        )
        credentials = await self._reauth_handler(self.connection.tenant_name, self.connection.tenant_domain)
        if credentials is None or not credentials.is_valid:
            self._context.decline(self.side)
            logger.warning("session.reauth_declined", side=self.side.value, domain=domain)
            return Declined()

        self._provider.save_credentials(credentials)
        await self.close_domain(domain)
        client = self._provider.create_client(credentials)
        self._clients[domain] = client
        logger.info("session.reauthenticated", side=self.side.value, domain=domain)
        return Retry(client)

    async def call_with_reauth(self, domain: str, operation: Callable[[RemoteClient], Awaitable[T]]) -> T:
        """Run ``operation``; on an authentication failure re-authenticate and retry once.

        The user is prompted at most once per call: credentials typed in to
        open the session are not followed by a second prompt if rejected.
        """
        client, prompted = await self._get(domain)
        try:
            return await operation(client)
        except Exception as exc:
            if prompted or not is_auth_failure(exc):
                raise
            outcome = await self.reauthenticate(domain)
            if not isinstance(outcome, Retry):
                raise
            return await operation(outcome.client)

    async def close_domain(self, domain: str) -> None:
        client = self._clients.pop(domain.lower(), None)
        if client is None:
            return
        self._closed_throttle_retries += getattr(client, "throttle_retries", 0)
        await client.aclose()
        logger.debug("session.closed", side=self.side.value, domain=domain)

    async def aclose(self) -> None:
        for domain in list(self._clients):
            await self.close_domain(domain)


__all__ = [
    "ClientFactory",
    "Declined",
    "ReauthOutcome",
    "RemoteClient",
    "Retry",
    "RunContext",
    "SessionPool",
    "SessionProvider",
    "Side",
    "Unavailable",
    "url_host",
]
