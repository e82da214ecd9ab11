"""docrecon error hierarchy.

All project exceptions inherit from DocReconError, enabling:
- ``except DocReconError`` at top-level boundaries (CLI, run controller)
- Fine-grained catches deeper in the stack (``except AuthenticationError``)

Hierarchy:
    DocReconError
    ├── ConfigError
    ├── RemoteError
    │   ├── AuthenticationError
    │   ├── AccessDeniedError
    │   ├── NotFoundError
    │   └── ThrottledError
    └── PersistenceError
"""

from __future__ import annotations

_AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "authentication required",
    "authentication expired",
    "cookies may have expired",
    "credentials expired",
    "invalid credential",
    "token expired",
)


class DocReconError(Exception):
    """Base class for all docrecon errors."""


class ConfigError(DocReconError):
    """Missing, unparseable or unresolvable run configuration."""


class RemoteError(DocReconError):
    """A remote SharePoint call failed."""

    def __init__(self, message: str, status: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class AuthenticationError(RemoteError):
    """Credentials are missing, expired or rejected."""


class AccessDeniedError(RemoteError):
    pass


class NotFoundError(RemoteError):
    pass


class ThrottledError(RemoteError):
    def __init__(
        self,
        message: str,
        status: int | None = None,
        url: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, url=url)
        self.retry_after = retry_after


class PersistenceError(DocReconError):
    pass


def is_auth_failure(exc: BaseException) -> bool:
    """Return True when ``exc`` means the session's credentials are no good."""
    if isinstance(exc, AuthenticationError):
        return True
    if isinstance(exc, RemoteError) and exc.status == 401:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _AUTH_FAILURE_MARKERS)


__all__ = [
    "DocReconError",
    "ConfigError",
    "RemoteError",
    "AuthenticationError",
    "AccessDeniedError",
    "NotFoundError",
    "ThrottledError",
    "PersistenceError",
    "is_auth_failure",
]
