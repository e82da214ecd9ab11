"""Path normalization and canonical path extraction.

Migration tools rewrite characters that are illegal or awkward in
SharePoint URLs. A space is URL-encoded to ``%20`` and the ``%`` then
rewritten to ``_``, so ``My File.docx`` lands on the target as
``My_20File.docx``. ``normalize_path`` reproduces that scheme so a target
document can be found under its rewritten name when the exact path misses.

Canonical relative paths are the primary matching key: the server-relative
URL of a document with the site prefix and library folder removed, lower
cased. Paths are never URL-decoded.
"""

from __future__ import annotations

from collections.abc import Iterable

_SPACE_REPLACEMENT = "_20"
_REPLACED_CHARS = frozenset('"*:<>?\\&#%{}~')


def normalize_path(path: str) -> str:
    if not path:
        return ""
    out: list[str] = []
    for ch in path:
        if ch == " ":
            out.append(_SPACE_REPLACEMENT)
        elif ch in _REPLACED_CHARS:
            out.append("_")
        else:
            out.append(ch)
    result = "".join(out)
    # A single replace pass can leave new dot pairs behind ("..." -> "_..").
    while ".." in result:
        result = result.replace("..", "_.")
    return result


def site_server_relative_path(site_url: str) -> str:
    """Return the server-relative path of a site URL, lower cased.

    ``https://contoso.sharepoint.com/sites/HR/`` -> ``/sites/hr``.
    The tenant root site yields an empty string.
    """
    if not site_url:
        return ""
    url = site_url.strip()
    scheme_end = url.find("://")
    if scheme_end >= 0:
        path_start = url.find("/", scheme_end + 3)
        url = "" if path_start < 0 else url[path_start:]
    for sep in ("?", "#"):
        cut = url.find(sep)
        if cut >= 0:
            url = url[:cut]
    return url.rstrip("/").lower()


def _strip_site_and_library(path: str, site_path: str) -> str | None:
    prefix = site_path + "/"
    if site_path and not path.startswith(prefix):
        return None
    if not site_path and not path.startswith("/"):
        return None
    remainder = path[len(prefix):] if site_path else path[1:]
    # First segment is the library's URL name, which may differ from its title.
    slash = remainder.find("/")
    if slash < 0:
        return ""
    return remainder[slash + 1:]


def _after_library_segment(path: str, library_title: str) -> str | None:
    candidates = [library_title.lower()]
    compact = candidates[0].replace(" ", "")
    if compact and compact != candidates[0]:
        candidates.append(compact)
    for candidate in candidates:
        if not candidate:
            continue
        needle = candidate + "/"
        index = path.rfind(needle)
        while index >= 0:
            if index == 0 or path[index - 1] in "/ ":
                return path[index + len(needle):]
            index = path.rfind(needle, 0, index)
    return None


def canonical_relative_path(server_relative_path: str, library_title: str, site_url: str) -> str:
    """Return the lower-cased path of a document below its library root.

    Strategy 1 strips the site's server-relative prefix and the library
    URL segment. Strategy 2 looks for the library title (or the title with
    spaces removed) as a path segment. Otherwise the whole lower-cased path
    is used.
    """
    if not server_relative_path:
        return ""
    path = server_relative_path.lower()
    stripped = _strip_site_and_library(path, site_server_relative_path(site_url))
    if stripped is not None:
        return stripped
    stripped = _after_library_segment(path, library_title or "")
    if stripped is not None:
        return stripped
    return path


def recompute_canonical_paths(items: Iterable, site_url: str) -> list:
    """Return copies of snapshot items with canonical paths derived afresh."""
    return [
        item.model_copy(
            update={
                "canonical_relative_path": canonical_relative_path(
                    item.server_relative_path, item.library_title, site_url
                )
            }
        )
        for item in items
    ]


__all__ = [
    "canonical_relative_path",
    "normalize_path",
    "recompute_canonical_paths",
    "site_server_relative_path",
]
