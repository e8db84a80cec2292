import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class SubmissionInFlightError(RuntimeError):
    """Raised when a session already has an import request outstanding."""


class SubmissionGuard:
    """
    Per-session registry that lets at most one import submission run at a time.

    Keeps an in-process set of session ids guarded by a lock; the persisted wizard flag covers
    requests that land on another worker. A second submit is rejected rather than queued.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        async with self._lock:
            if session_id in self._in_flight:
                raise SubmissionInFlightError(f"Import session {session_id} is already submitting.")
            self._in_flight.add(session_id)
        try:
            yield
        finally:
            async with self._lock:
                self._in_flight.discard(session_id)

    def is_submitting(self, session_id: str) -> bool:
        return session_id in self._in_flight
