# ==================== SESSION PERSISTENCE ====================
"""
File-based session store.

One JSON document per session under ``storage_dir``. Writes are
compare-and-swap on the record's ``version`` and serialized per session id
with an ``asyncio.Lock``; a write that finds a different version on disk
raises ``SessionConflictError`` instead of overwriting. Files are replaced
atomically (temp file + rename) so a crash never leaves a torn record.
"""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os
import structlog

from cardsmith.core.domain.errors import SessionConflictError, SessionNotFoundError
from cardsmith.core.domain.models import SessionRecord, now_iso


class FileSessionStore:
    """Persists session records as JSON files with versioning and locks"""

    def __init__(self, storage_dir: str | Path = ".storage/sessions"):
        self.storage_dir = Path(storage_dir).expanduser()
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.locks: dict[str, asyncio.Lock] = {}
        self.logger = structlog.get_logger().bind(component="session_store")

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self.locks:
            self.locks[session_id] = asyncio.Lock()
        return self.locks[session_id]

    def _path(self, session_id: str) -> Path:
        return self.storage_dir / f"{session_id}.json"

    async def _read(self, session_id: str) -> dict | None:
        path = self._path(session_id)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())

    async def _write(self, record: SessionRecord) -> None:
        path = self._path(record.id)
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))
            await aiofiles.os.replace(temp_path, path)
        except Exception:
            if await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.remove(temp_path)
            raise

    async def exists(self, session_id: str) -> bool:
        return await aiofiles.os.path.exists(self._path(session_id))

    async def create(self, record: SessionRecord) -> SessionRecord:
        """Persist a new session as version 1.

        Raises:
            SessionConflictError: If a session with this id already exists
        """
        async with self._get_lock(record.id):
            existing = await self._read(record.id)
            if existing is not None:
                raise SessionConflictError(record.id, 0, int(existing.get("version", 0)))
            record.version = 1
            record.updated_at = now_iso()
            await self._write(record)
        self.logger.info("session_created", session_id=record.id)
        return record

    async def load(self, session_id: str) -> SessionRecord:
        data = await self._read(session_id)
        if data is None:
            raise SessionNotFoundError(session_id)
        record = SessionRecord.from_dict(data)
        self.logger.debug("session_loaded", session_id=session_id, version=record.version)
        return record

    async def save(self, record: SessionRecord) -> SessionRecord:
        """Compare-and-swap write.

        Raises:
            SessionNotFoundError: If the session file disappeared
            SessionConflictError: If the stored version differs from the record's
        """
        async with self._get_lock(record.id):
            current = await self._read(record.id)
            if current is None:
                raise SessionNotFoundError(record.id)
            stored_version = int(current.get("version", 0))
            if stored_version != record.version:
                raise SessionConflictError(record.id, record.version, stored_version)

            record.version += 1
            record.updated_at = now_iso()
            try:
                await self._write(record)
            except Exception:
                record.version -= 1
                raise

        self.logger.debug("session_saved", session_id=record.id, version=record.version)
        return record

    @asynccontextmanager
    async def transaction(self, session_id: str) -> AsyncIterator[SessionRecord]:
        """Load a snapshot, let the caller mutate it, then CAS-write it back.

        Nothing is written if the body raises.
        """
        record = await self.load(session_id)
        yield record
        await self.save(record)

    async def delete(self, session_id: str) -> bool:
        async with self._get_lock(session_id):
            path = self._path(session_id)
            if not await aiofiles.os.path.exists(path):
                return False
            await aiofiles.os.remove(path)
        self.locks.pop(session_id, None)
        self.logger.info("session_deleted", session_id=session_id)
        return True

    async def list_sessions(self) -> list[str]:
        paths = sorted(self.storage_dir.glob("*.json"), key=lambda p: p.stat().st_mtime)
        return [p.stem for p in paths]

    async def list_records(self) -> list[SessionRecord]:
        records = []
        for session_id in await self.list_sessions():
            try:
                records.append(await self.load(session_id))
            except SessionNotFoundError:
                # Deleted between listing and loading
                continue
        return records

    def cleanup_old_sessions(self, days: int = 30) -> int:
        """Remove sessions not written for the given number of days"""
        cutoff_time = time.time() - (days * 24 * 60 * 60)
        removed = 0
        for session_file in self.storage_dir.glob("*.json"):
            if session_file.stat().st_mtime < cutoff_time:
                session_file.unlink()
                removed += 1
                self.logger.info("old_session_removed", file=session_file.name)
        return removed
