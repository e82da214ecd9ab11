"""Core utilities package for docrecon."""

from docrecon.core.hashing import hash_text, hash_text_short
from docrecon.core.timestamps import hours_between, parse_sharepoint_date, utc_now

__all__ = [
    "hash_text",
    "hash_text_short",
    "hours_between",
    "parse_sharepoint_date",
    "utc_now",
]
