"""Async SharePoint Online REST client.

Authenticates with captured browser cookies (``FedAuth`` and ``rtFa``) and
requests ``odata=nometadata`` JSON. Throttled responses (429 and 503) are
retried with tenacity, honoring ``Retry-After`` when the server sends one.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from docrecon.cancellation import CancellationToken, is_cancelled
from docrecon.core.log import get_logger
from docrecon.core.timestamps import parse_sharepoint_date
from docrecon.credentials import Credentials
from docrecon.errors import (
    AccessDeniedError,
    AuthenticationError,
    NotFoundError,
    RemoteError,
    ThrottledError,
)
from docrecon.models import DocumentSnapshotItem, ItemKind
from docrecon.normalize import canonical_relative_path

logger = get_logger(__name__)

ACCEPT_JSON = "application/json;odata=nometadata"
DOCUMENT_LIBRARY_TEMPLATE = 101
PAGE_SIZE = 5000
THROTTLE_DELAYS = (2, 4, 8, 16, 32, 60, 120)
DEFAULT_HTTP_TIMEOUT = 60.0
ENV_HTTP_TIMEOUT = "DOCRECON_HTTP_TIMEOUT"
ENV_THROTTLE_RETRIES = "DOCRECON_THROTTLE_RETRIES"

_LOGIN_MARKERS = ("login.microsoftonline.com", "/_forms/default.aspx", "/_layouts/15/authenticate.aspx")
_SPECIAL_PAGE_SUFFIX = ".aspx"

_LIST_SELECT = (
    "$select=Id,Title,ItemCount,Hidden,Created,LastItemModifiedDate,BaseTemplate,"
    "RootFolder/ServerRelativeUrl&$expand=RootFolder"
)

_VIEW_FIELDS = ("ID", "FileLeafRef", "FileRef", "File_x0020_Size", "_UIVersionString", "FSObjType", "Created", "Modified")
VIEW_XML = (
    "<View Scope='RecursiveAll'><ViewFields>"
    + "".join(f"<FieldRef Name='{name}'/>" for name in _VIEW_FIELDS)
    + f"</ViewFields><RowLimit Paged='TRUE'>{PAGE_SIZE}</RowLimit></View>"
)

ThrottleListener = Callable[[str, int, float], None]


class SiteInfo(BaseModel):
    url: str
    title: str = ""
    server_relative_url: str = ""


class LibraryInfo(BaseModel):
    id: str = ""
    title: str
    item_count: int = 0
    hidden: bool = False
    base_template: int = 0
    root_folder_url: str = ""
    created: datetime | None = None
    last_modified: datetime | None = None

    @property
    def is_document_library(self) -> bool:
        return self.base_template == DOCUMENT_LIBRARY_TEMPLATE


def _resolve_timeout(value: float | None) -> float:
    if value is not None:
        return max(1.0, float(value))
    raw = os.environ.get(ENV_HTTP_TIMEOUT)
    if raw:
        try:
            return max(1.0, float(raw))
        except ValueError:
            logger.warning("client.bad_env", name=ENV_HTTP_TIMEOUT, value=raw)
    return DEFAULT_HTTP_TIMEOUT


def _resolve_throttle_retries(value: int | None) -> int:
    if value is not None:
        return max(0, int(value))
    raw = os.environ.get(ENV_THROTTLE_RETRIES)
    if raw:
        try:
            return max(0, int(raw))
        except ValueError:
            logger.warning("client.bad_env", name=ENV_THROTTLE_RETRIES, value=raw)
    return len(THROTTLE_DELAYS)


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    message = f"HTTP {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return f"{message}: {text[:200]}" if text else message
    if isinstance(payload, dict):
        error = payload.get("odata.error") or payload.get("error") or {}
        if isinstance(error, dict):
            detail = error.get("message")
            if isinstance(detail, dict):
                detail = detail.get("value")
            if isinstance(detail, str) and detail.strip():
                return f"{message}: {detail.strip()}"
    return message


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    url = str(response.request.url)
    if response.is_redirect:
        location = response.headers.get("Location", "").lower()
        if any(marker in location for marker in _LOGIN_MARKERS):
            raise AuthenticationError(
                "Authentication required: redirected to sign-in page", status=status, url=url
            )
        raise RemoteError(f"Unexpected redirect (HTTP {status})", status=status, url=url)
    if status < 400:
        return
    message = _error_message(response)
    if status == 401:
        raise AuthenticationError(f"Authentication failed: {message}", status=status, url=url)
    if status == 403:
        raise AccessDeniedError(f"Access denied: {message}", status=status, url=url)
    if status == 404:
        raise NotFoundError(f"Not found: {message}", status=status, url=url)
    if status in (429, 503):
        raise ThrottledError(
            f"Throttled: {message}", status=status, url=url, retry_after=_retry_after_seconds(response)
        )
    raise RemoteError(message, status=status, url=url)


def _throttle_wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, ThrottledError) and exc.retry_after is not None:
        return exc.retry_after
    index = min(retry_state.attempt_number - 1, len(THROTTLE_DELAYS) - 1)
    return float(THROTTLE_DELAYS[index])


def _parse_size(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, (int, float)):
        return max(0, int(raw))
    cleaned = str(raw).replace(",", "").replace(" ", "").replace("\u00a0", "")
    if not cleaned:
        return 0
    try:
        return max(0, int(float(cleaned)))
    except ValueError:
        return 0


def _parse_version(raw: Any) -> int:
    if raw is None:
        return 1
    major = str(raw).split(".", 1)[0].strip()
    try:
        return max(0, int(major))
    except ValueError:
        return 1


def _row_date(row: dict[str, Any], field: str) -> datetime | None:
    # "Created." carries ISO 8601; "Created" is locale formatted.
    for key in (f"{field}.", field):
        value = row.get(key)
        if value:
            parsed = parse_sharepoint_date(str(value))
            if parsed is not None:
                return parsed
    return None


def parse_document_row(
    row: dict[str, Any],
    *,
    site_url: str,
    library_title: str,
    include_special_pages: bool = False,
) -> DocumentSnapshotItem | None:
    """Turn one RenderListDataAsStream row into a snapshot item.

    Returns None for rows that are skipped (special pages, rows without an
    id or path).
    """
    file_ref = str(row.get("FileRef") or "")
    raw_id = row.get("ID")
    if not file_ref or raw_id in (None, ""):
        return None
    try:
        item_id = int(raw_id)
    except (TypeError, ValueError):
        return None
    file_name = str(row.get("FileLeafRef") or file_ref.rsplit("/", 1)[-1])
    is_folder = str(row.get("FSObjType", "0")).strip() == "1"
    if not is_folder and not include_special_pages and file_name.lower().endswith(_SPECIAL_PAGE_SUFFIX):
        return None
    return DocumentSnapshotItem(
        item_id=item_id,
        file_name=file_name,
        server_relative_path=file_ref,
        canonical_relative_path=canonical_relative_path(file_ref, library_title, site_url),
        size_bytes=0 if is_folder else _parse_size(row.get("File_x0020_Size")),
        version_count=_parse_version(row.get("_UIVersionString")),
        item_kind=ItemKind.FOLDER if is_folder else ItemKind.FILE,
        created=_row_date(row, "Created"),
        modified=_row_date(row, "Modified"),
        library_title=library_title,
    )


def _site_base(site_url: str) -> str:
    return site_url.strip().rstrip("/")


class SharePointClient:
    """REST client for one SharePoint domain.

    ``throttle_retries`` counts every retry caused by throttling over the
    client's lifetime.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        timeout: float | None = None,
        max_throttle_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_throttle: ThrottleListener | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.credentials = credentials
        self.throttle_retries = 0
        self._max_throttle_retries = _resolve_throttle_retries(max_throttle_retries)
        self._on_throttle = on_throttle
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            cookies=credentials.cookies(),
            headers={"Accept": ACCEPT_JSON},
            timeout=_resolve_timeout(timeout),
            follow_redirects=False,
            transport=transport,
        )

    async def __aenter__(self) -> SharePointClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _before_throttle_sleep(self, retry_state: RetryCallState) -> None:
        self.throttle_retries += 1
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        url = getattr(exc, "url", None) or ""
        logger.warning(
            "client.throttled",
            url=url,
            attempt=retry_state.attempt_number,
            delay=delay,
        )
        if self._on_throttle is not None:
            self._on_throttle(url, retry_state.attempt_number, delay)

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_throttle_retries + 1),
            wait=_throttle_wait,
            retry=retry_if_exception_type(ThrottledError),
            before_sleep=self._before_throttle_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    response = await self._http.request(method, url, **kwargs)
                except httpx.HTTPError as exc:
                    raise RemoteError(f"Request failed: {exc}", url=url) from exc
                _raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteError(f"Invalid JSON response from {url}", status=response.status_code, url=url) from exc

    async def get_site_info(self, site_url: str) -> SiteInfo:
        base = _site_base(site_url)
        data = await self._request("GET", f"{base}/_api/web?$select=Title,Url,ServerRelativeUrl")
        return SiteInfo(
            url=str(data.get("Url") or base),
            title=str(data.get("Title") or ""),
            server_relative_url=str(data.get("ServerRelativeUrl") or ""),
        )

    async def get_libraries(self, site_url: str, include_hidden: bool = False) -> list[LibraryInfo]:
        """Document libraries (template 101) of a site, in server order."""
        base = _site_base(site_url)
        data = await self._request("GET", f"{base}/_api/web/lists?{_LIST_SELECT}")
        libraries: list[LibraryInfo] = []
        for entry in data.get("value", []):
            library = LibraryInfo(
                id=str(entry.get("Id") or ""),
                title=str(entry.get("Title") or ""),
                item_count=int(entry.get("ItemCount") or 0),
                hidden=bool(entry.get("Hidden")),
                base_template=int(entry.get("BaseTemplate") or 0),
                root_folder_url=str((entry.get("RootFolder") or {}).get("ServerRelativeUrl") or ""),
                created=parse_sharepoint_date(entry.get("Created") or ""),
                last_modified=parse_sharepoint_date(entry.get("LastItemModifiedDate") or ""),
            )
            if not library.is_document_library:
                continue
            if library.hidden and not include_hidden:
                continue
            libraries.append(library)
        return libraries

    async def get_documents(
        self,
        site_url: str,
        library_title: str,
        include_special_pages: bool = False,
        progress: Callable[[int], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[DocumentSnapshotItem]:
        """Every file and folder in a library, following ``NextHref`` pages.

        Paging stops early when ``cancellation`` fires; the partial list is
        returned and callers must not treat it as complete.
        """
        base = _site_base(site_url)
        escaped = library_title.replace("'", "''")
        endpoint = f"{base}/_api/web/lists/GetByTitle('{escaped}')/RenderListDataAsStream"
        body = {"parameters": {"RenderOptions": 2, "ViewXml": VIEW_XML}}
        items: list[DocumentSnapshotItem] = []
        url = endpoint
        while True:
            if is_cancelled(cancellation):
                logger.info("client.documents_cancelled", library=library_title, fetched=len(items))
                break
            data = await self._request("POST", url, json=body)
            for row in data.get("Row", []):
                item = parse_document_row(
                    row,
                    site_url=site_url,
                    library_title=library_title,
                    include_special_pages=include_special_pages,
                )
                if item is not None:
                    items.append(item)
            if progress is not None:
                progress(len(items))
            next_href = data.get("NextHref")
            if not next_href:
                break
            url = endpoint + next_href
        logger.debug("client.documents_fetched", site=site_url, library=library_title, count=len(items))
        return items


__all__ = [
    "DOCUMENT_LIBRARY_TEMPLATE",
    "LibraryInfo",
    "SharePointClient",
    "SiteInfo",
    "THROTTLE_DELAYS",
    "VIEW_XML",
    "parse_document_row",
]
