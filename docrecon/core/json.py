"""Central JSON utilities using orjson."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import orjson
from pydantic import BaseModel

# orjson.JSONDecodeError subclasses ValueError
JSONDecodeError = orjson.JSONDecodeError


def _default_encoder(user_default: Callable[[Any], Any] | None = None) -> Callable[[Any], Any]:
    """Encoder for pydantic models and paths, after any caller-supplied default."""

    def _encoder(obj: Any) -> Any:
        if user_default is not None:
            try:
                return user_default(obj)
            except TypeError:
                pass
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")

    return _encoder


def dumps_bytes(obj: Any, *, default: Callable[[Any], Any] | None = None, option: int | None = None) -> bytes:
    """Dump object to UTF-8 encoded JSON bytes."""
    if option is None:
        return orjson.dumps(obj, default=_default_encoder(default))
    return orjson.dumps(obj, default=_default_encoder(default), option=option)


def dumps(obj: Any, *, default: Callable[[Any], Any] | None = None, option: int | None = None) -> str:
    """Dump object to JSON string."""
    return dumps_bytes(obj, default=default, option=option).decode("utf-8")


def loads(obj: str | bytes) -> Any:
    """Load object from JSON string or bytes."""
    return orjson.loads(obj)


__all__ = ["JSONDecodeError", "dumps", "dumps_bytes", "loads"]
