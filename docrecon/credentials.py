"""Tenant connections and stored session credentials.

SharePoint Online browser sessions are carried by two cookies, ``FedAuth``
and ``rtFa``, captured per domain. They are kept in a plaintext JSON file
per domain with 0o600 permissions.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from docrecon.core.json import JSONDecodeError, dumps, loads
from docrecon.core.log import get_logger
from docrecon.core.paths import safe_path_component
from docrecon.core.timestamps import ensure_utc, utc_now

logger = get_logger(__name__)

SHAREPOINT_SUFFIX = ".sharepoint.com"


class Credentials(BaseModel):
    domain: str
    fed_auth: str = ""
    rt_fa: str = ""
    user_email: str | None = None
    captured_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("domain cannot be empty")
        return v

    @field_validator("captured_at", "expires_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @property
    def is_valid(self) -> bool:
        if not self.fed_auth.strip() or not self.rt_fa.strip():
            return False
        return self.expires_at is None or self.expires_at > utc_now()

    def cookies(self) -> dict[str, str]:
        return {"FedAuth": self.fed_auth, "rtFa": self.rt_fa}


class ConnectionConfig(BaseModel):
    """A named tenant reference used by comparison tasks."""

    id: str
    name: str = ""
    tenant_name: str

    @field_validator("tenant_name")
    @classmethod
    def bare_tenant(cls, v: str) -> str:
        v = v.strip().lower()
        for suffix in ("-admin" + SHAREPOINT_SUFFIX, SHAREPOINT_SUFFIX):
            if v.endswith(suffix):
                v = v[: -len(suffix)]
                break
        if not v:
            raise ValueError("tenant_name cannot be empty")
        return v

    @property
    def tenant_domain(self) -> str:
        return f"{self.tenant_name}{SHAREPOINT_SUFFIX}"

    @property
    def admin_domain(self) -> str:
        return f"{self.tenant_name}-admin{SHAREPOINT_SUFFIX}"


class CredentialStore(Protocol):
    def get_stored_credentials(self, domain: str) -> Credentials | None: ...

    def get_stored_domains(self) -> list[str]: ...

    def save_credentials(self, credentials: Credentials) -> None: ...


class ConnectionRegistry(Protocol):
    def get_connection(self, connection_id: str) -> ConnectionConfig | None: ...


ReauthHandler = Callable[[str, str], Awaitable[Credentials | None]]


class FileCredentialStore:
    """Per-domain credential files with 0o600 permissions."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def _path_for_domain(self, domain: str) -> Path:
        return self._directory / f"{safe_path_component(domain.strip().lower(), fallback='domain')}.json"

    def get_stored_credentials(self, domain: str) -> Credentials | None:
        path = self._path_for_domain(domain)
        if not path.exists():
            return None
        try:
            return Credentials.model_validate(loads(path.read_bytes()))
        except (OSError, JSONDecodeError, ValidationError) as exc:
            logger.warning("credentials.unreadable", domain=domain, path=str(path), error=str(exc))
            return None

    def get_stored_domains(self) -> list[str]:
        if not self._directory.exists():
            return []
        domains: list[str] = []
        for path in sorted(self._directory.glob("*.json")):
            with suppress(OSError, JSONDecodeError, ValidationError):
                domains.append(Credentials.model_validate(loads(path.read_bytes())).domain)
        return domains

    def save_credentials(self, credentials: Credentials) -> None:
        path = self._path_for_domain(credentials.domain)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dumps(credentials), encoding="utf-8")
        path.chmod(0o600)
        logger.info("credentials.saved", domain=credentials.domain)

    def delete_credentials(self, domain: str) -> None:
        path = self._path_for_domain(domain)
        if path.exists():
            path.unlink()


class StaticConnectionRegistry:
    def __init__(self, connections: Iterable[ConnectionConfig] = ()) -> None:
        self._connections = {conn.id: conn for conn in connections}

    def get_connection(self, connection_id: str) -> ConnectionConfig | None:
        return self._connections.get(connection_id)


def lookup_credentials(store: CredentialStore, connection: ConnectionConfig) -> Credentials | None:
    """Return valid stored credentials for the tenant, then its admin domain."""
    for domain in (connection.tenant_domain, connection.admin_domain):
        credentials = store.get_stored_credentials(domain)
        if credentials is not None and credentials.is_valid:
            return credentials
    return None


__all__ = [
    "ConnectionConfig",
    "ConnectionRegistry",
    "CredentialStore",
    "Credentials",
    "FileCredentialStore",
    "ReauthHandler",
    "StaticConnectionRegistry",
    "lookup_credentials",
]
