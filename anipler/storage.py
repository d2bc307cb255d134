"""SQLite-backed record of managed torrents and the artifact directory on the relay."""

from __future__ import annotations

import asyncio
import enum
import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

import aiosqlite

from anipler.errors import (
    ArtifactAlreadyArchived,
    ArtifactNotFound,
    FinalizeArtifactError,
    StorageManagerError,
)
from anipler.task import ArtifactInfo, TorrentStatus, TorrentTaskInfo

if TYPE_CHECKING:
    from anipler.config import DaemonConfig

logger = logging.getLogger(__name__)

EARLIEST_IMPORT_DATE_KEY = "earliest_import_date"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tasks (
  hash TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  status INTEGER NOT NULL,
  content_path TEXT NOT NULL
);
"""

_UPSERT_TASK = """
INSERT INTO tasks (hash, name, status, content_path)
VALUES (?, ?, ?, ?)
ON CONFLICT(hash) DO UPDATE SET
  name = excluded.name,
  status = excluded.status,
  content_path = excluded.content_path
WHERE tasks.status < excluded.status
"""

_ADVANCE_STATUS = "UPDATE tasks SET status = ? WHERE hash = ? AND status = ?"


class TaskStatus(enum.IntEnum):
    """Lifecycle of a managed torrent; values only ever grow."""

    TRACKED = 0
    TORRENT_READY = 1
    ARTIFACT_READY = 2
    ARCHIVED = 3


@contextmanager
def _database_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StorageManagerError(f"Database error: {exc}") from exc


def _parse_rfc3339(value: str) -> datetime:
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise StorageManagerError(f"Parsing error: {exc}") from exc
    if moment.tzinfo is None:
        raise StorageManagerError(f"Parsing error: missing UTC offset in {value!r}")
    return moment.astimezone(timezone.utc)


class StorageManager:
    """Keeps task state in SQLite and artifacts under ``storage_path/artifacts``."""

    def __init__(self, db: aiosqlite.Connection, storage_path: Path) -> None:
        self._db = db
        self.storage_path = Path(storage_path)
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, storage_path: Path | str, stateless: bool = False) -> StorageManager:
        """Open (creating if needed) the database and its schema."""
        storage_path = Path(storage_path)
        target = ":memory:" if stateless else str(storage_path / "storage.db")
        with _database_errors():
            db = await aiosqlite.connect(target)
        manager = cls(db, storage_path)
        try:
            await manager.init()
        except BaseException:
            await db.close()
            raise
        return manager

    @classmethod
    async def from_config(cls, config: DaemonConfig) -> StorageManager:
        return await cls.open(config.storage_path, config.stateless)

    async def close(self) -> None:
        await self._db.close()

    async def __aenter__(self) -> StorageManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def init(self) -> None:
        """Create the tables if they do not exist."""
        async with self._lock:
            with _database_errors():
                await self._db.executescript(_SCHEMA)
                await self._db.commit()

    async def earliest_import_date(self) -> datetime:
        """Return the cut-off date for imported torrents, recording now on first use."""
        async with self._lock:
            with _database_errors():
                async with self._db.execute(
                    "SELECT value FROM settings WHERE key = ?", (EARLIEST_IMPORT_DATE_KEY,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is not None:
                    return _parse_rfc3339(row[0])

                now = datetime.now(timezone.utc)
                await self._db.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (EARLIEST_IMPORT_DATE_KEY, now.isoformat()),
                )
                await self._db.commit()
        return now

    async def update_torrent_info(self, torrents: Iterable[TorrentTaskInfo]) -> None:
        """Insert or advance the given torrents; a status never moves backwards."""
        rows = [
            (
                t.hash,
                t.name,
                int(
                    TaskStatus.TRACKED
                    if t.status is TorrentStatus.DOWNLOADING
                    else TaskStatus.TORRENT_READY
                ),
                t.content_path,
            )
            for t in torrents
        ]
        async with self._lock:
            with _database_errors():
                await self._db.executemany(_UPSERT_TASK, rows)
                await self._db.commit()

    async def list_ready_torrents(self) -> list[TorrentTaskInfo]:
        """Torrents finished on the seedbox and waiting for transfer to the relay."""
        async with self._lock:
            with _database_errors():
                async with self._db.execute(
                    "SELECT hash, name, content_path FROM tasks WHERE status = ?",
                    (int(TaskStatus.TORRENT_READY),),
                ) as cursor:
                    rows = await cursor.fetchall()
        return [
            TorrentTaskInfo(
                hash=hash_, name=name, status=TorrentStatus.SEEDING, content_path=content_path
            )
            for hash_, name, content_path in rows
        ]

    async def mark_artifact_ready(self, hash: str) -> None:
        """Move a transferred torrent to the artifact-ready state."""
        async with self._lock:
            with _database_errors():
                await self._db.execute(
                    _ADVANCE_STATUS,
                    (int(TaskStatus.ARTIFACT_READY), hash, int(TaskStatus.TORRENT_READY)),
                )
                await self._db.commit()

    async def list_ready_artifacts(self) -> list[ArtifactInfo]:
        """Artifacts on the relay waiting to be pulled."""
        async with self._lock:
            with _database_errors():
                async with self._db.execute(
                    "SELECT hash, name FROM tasks WHERE status = ?",
                    (int(TaskStatus.ARTIFACT_READY),),
                ) as cursor:
                    rows = await cursor.fetchall()
        return [
            ArtifactInfo(hash=hash_, name=name, path=str(self.artifact_storage_path(hash_)))
            for hash_, name in rows
        ]

    def artifact_storage_path(self, hash: str) -> Path:
        """Directory on the relay holding the artifact with this hash."""
        return self.storage_path / "artifacts" / hash

    async def prepare_artifact_storage(self, hash: str) -> None:
        """Create the artifact directory for this hash."""
        path = self.artifact_storage_path(hash)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageManagerError(f"I/O error: {exc}") from exc

    async def finalize_artifact(self, hash: str) -> None:
        """Mark an artifact archived and delete its directory."""
        logger.info("Finalizing artifact %s", hash)
        try:
            async with self._lock:
                cursor = await self._db.execute(
                    _ADVANCE_STATUS,
                    (int(TaskStatus.ARCHIVED), hash, int(TaskStatus.ARTIFACT_READY)),
                )
                changed = cursor.rowcount
                await cursor.close()
                await self._db.commit()
                if changed == 0:
                    async with self._db.execute(
                        "SELECT 1 FROM tasks WHERE hash = ? AND status = ?",
                        (hash, int(TaskStatus.ARCHIVED)),
                    ) as check:
                        archived = await check.fetchone() is not None
        except sqlite3.Error as exc:
            raise FinalizeArtifactError(f"Storage error: {exc}") from exc

        if changed == 0:
            raise ArtifactAlreadyArchived() if archived else ArtifactNotFound()

        path = self.artifact_storage_path(hash)
        logger.info("Removing artifact storage directory %s", path)
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as exc:
            raise FinalizeArtifactError(f"Storage error: {exc}") from exc