"""Cooperative cancellation for reconciliation runs."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """A one-way flag polled by the orchestrator and the remote client.

    Nothing is raised when the token fires. Callers check
    ``is_cancelled`` at their suspension points and unwind normally.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.is_cancelled


__all__ = ["CancellationToken", "is_cancelled"]
