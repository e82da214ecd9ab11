"""In-memory SharePoint fakes and builders shared by the test suite."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

from docrecon.cancellation import CancellationToken, is_cancelled
from docrecon.client import DOCUMENT_LIBRARY_TEMPLATE, LibraryInfo, SiteInfo
from docrecon.config import ComparisonConfig
from docrecon.credentials import ConnectionConfig, Credentials, StaticConnectionRegistry
from docrecon.errors import AuthenticationError, NotFoundError
from docrecon.models import DocumentSnapshotItem, ItemKind, SitePair, site_key
from docrecon.normalize import canonical_relative_path

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

SOURCE_TENANT = "contoso"
TARGET_TENANT = "fabrikam"
SOURCE_ROOT = "https://contoso.sharepoint.com"
TARGET_ROOT = "https://fabrikam.sharepoint.com"


def make_doc(
    site_url: str,
    path: str,
    *,
    item_id: int = 1,
    size: int = 1000,
    modified: datetime | None = T0,
    library: str = "Documents",
    library_url: str = "Shared Documents",
    kind: ItemKind = ItemKind.FILE,
    versions: int = 1,
) -> DocumentSnapshotItem:
    """Snapshot item for ``path`` (relative to the library root) on ``site_url``."""
    site_path = urlsplit(site_url).path.rstrip("/")
    server_relative = f"{site_path}/{library_url}/{path}"
    return DocumentSnapshotItem(
        item_id=item_id,
        file_name=path.rsplit("/", 1)[-1],
        server_relative_path=server_relative,
        canonical_relative_path=canonical_relative_path(server_relative, library, site_url),
        size_bytes=size,
        version_count=versions,
        item_kind=kind,
        created=modified,
        modified=modified,
        library_title=library,
    )


def make_library(title: str = "Documents", *, url_name: str | None = None, site_url: str = "", **kwargs: Any) -> LibraryInfo:
    site_path = urlsplit(site_url).path.rstrip("/")
    root = f"{site_path}/{url_name or title}"
    kwargs.setdefault("base_template", DOCUMENT_LIBRARY_TEMPLATE)
    return LibraryInfo(title=title, root_folder_url=root, **kwargs)


@dataclass
class FakeSite:
    url: str
    title: str
    libraries: list[LibraryInfo] = field(default_factory=list)
    documents: dict[str, list[DocumentSnapshotItem]] = field(default_factory=dict)


class FakeSharePoint:
    """Every site of every tenant the fake clients can reach.

    ``rejected_cookies`` holds FedAuth values the server treats as
    expired. ``failures`` queues exceptions per (operation, site key).
    """

    def __init__(self) -> None:
        self.sites: dict[str, FakeSite] = {}
        self.rejected_cookies: set[str] = set()
        self.failures: dict[tuple[str, str], list[Exception]] = defaultdict(list)
        self.calls: list[tuple[str, str, str]] = []
        self.clients: list[FakeClient] = []
        self.on_documents: Any = None

    def add_site(
        self,
        url: str,
        title: str = "Site",
        libraries: dict[str, list[DocumentSnapshotItem]] | None = None,
        *,
        extra_libraries: list[LibraryInfo] | None = None,
    ) -> FakeSite:
        site = FakeSite(url=url, title=title)
        for library_title, docs in (libraries or {}).items():
            site.libraries.append(make_library(library_title, site_url=url))
            site.documents[library_title] = list(docs)
        site.libraries.extend(extra_libraries or [])
        self.sites[site_key(url)] = site
        return site

    def fail(self, operation: str, url: str, exc: Exception) -> None:
        self.failures[(operation, site_key(url))].append(exc)

    def _check(self, operation: str, url: str, client: FakeClient) -> FakeSite:
        self.calls.append((operation, site_key(url), client.credentials.fed_auth))
        queued = self.failures.get((operation, site_key(url)))
        if queued:
            raise queued.pop(0)
        if client.credentials.fed_auth in self.rejected_cookies:
            raise AuthenticationError("Authentication failed: cookies may have expired", status=401, url=url)
        site = self.sites.get(site_key(url))
        if site is None:
            raise NotFoundError(f"Not found: {url}", status=404, url=url)
        return site

    def calls_for(self, operation: str) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == operation]


class FakeClient:
    def __init__(self, world: FakeSharePoint, credentials: Credentials) -> None:
        self.world = world
        self.credentials = credentials
        self.closed = 0
        self.throttle_retries = 0
        world.clients.append(self)

    async def get_site_info(self, site_url: str) -> SiteInfo:
        site = self.world._check("site_info", site_url, self)
        return SiteInfo(url=site.url, title=site.title)

    async def get_libraries(self, site_url: str, include_hidden: bool = False) -> list[LibraryInfo]:
        site = self.world._check("libraries", site_url, self)
        return [lib for lib in site.libraries if include_hidden or not lib.hidden]

    async def get_documents(
        self,
        site_url: str,
        library_title: str,
        include_special_pages: bool = False,
        progress: Any = None,
        cancellation: CancellationToken | None = None,
    ) -> list[DocumentSnapshotItem]:
        site = self.world._check("documents", site_url, self)
        if self.world.on_documents is not None:
            self.world.on_documents(site_url, library_title)
        if is_cancelled(cancellation):
            return []
        if library_title not in site.documents:
            raise NotFoundError(f"List '{library_title}' does not exist", status=404, url=site_url)
        return [doc.model_copy() for doc in site.documents[library_title]]

    async def aclose(self) -> None:
        self.closed += 1


class InMemoryCredentialStore:
    def __init__(self, credentials: list[Credentials] | None = None) -> None:
        self.by_domain = {c.domain: c for c in credentials or []}
        self.saved: list[Credentials] = []

    def get_stored_credentials(self, domain: str) -> Credentials | None:
        return self.by_domain.get(domain.lower())

    def get_stored_domains(self) -> list[str]:
        return sorted(self.by_domain)

    def save_credentials(self, credentials: Credentials) -> None:
        self.by_domain[credentials.domain] = credentials
        self.saved.append(credentials)


def cookies_for(domain: str, token: str = "cookie") -> Credentials:
    return Credentials(domain=domain, fed_auth=f"{token}-fedauth", rt_fa=f"{token}-rtfa")


def default_connections() -> StaticConnectionRegistry:
    return StaticConnectionRegistry(
        [
            ConnectionConfig(id="src", name="Source", tenant_name=SOURCE_TENANT),
            ConnectionConfig(id="dst", name="Target", tenant_name=TARGET_TENANT),
        ]
    )


def make_config(pairs: list[tuple[str, str]], **overrides: Any) -> ComparisonConfig:
    values: dict[str, Any] = {
        "task_id": "task-1",
        "source_connection_id": "src",
        "target_connection_id": "dst",
        "site_pairs": [SitePair(source_url=s, target_url=t) for s, t in pairs],
        "use_cache": False,
    }
    values.update(overrides)
    return ComparisonConfig(**values)
