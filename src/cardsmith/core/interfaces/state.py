"""Session store protocol consumed by the execution engine."""

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from cardsmith.core.domain.models import SessionRecord


class SessionStoreProtocol(Protocol):
    async def create(self, record: SessionRecord) -> SessionRecord:
        ...

    async def load(self, session_id: str) -> SessionRecord:
        """Load a session, raising SessionNotFoundError if absent."""
        ...

    async def save(self, record: SessionRecord) -> SessionRecord:
        """Compare-and-swap write, raising SessionConflictError on a stale version."""
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def list_sessions(self) -> list[str]:
        ...

    def cleanup_old_sessions(self, days: int = 30) -> int:
        """Remove sessions untouched for ``days`` days and return how many went."""
        ...

    def transaction(self, session_id: str) -> AbstractAsyncContextManager[SessionRecord]:
        ...
