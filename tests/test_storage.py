import sqlite3
from datetime import timezone
from pathlib import Path

import pytest
import pytest_asyncio

from anipler.config import DaemonConfig
from anipler.errors import (
    ArtifactAlreadyArchived,
    ArtifactNotFound,
    FinalizeArtifactError,
    StorageManagerError,
)
from anipler.storage import StorageManager
from anipler.task import ArtifactInfo, TorrentStatus, TorrentTaskInfo


def _torrent(hash_, status, name=None, path=None):
    return TorrentTaskInfo(
        hash=hash_, status=status, content_path=path or f"/seed/{hash_}", name=name or hash_
    )


def _stored_statuses(db_path):
    with sqlite3.connect(db_path) as conn:
        return conn.execute("SELECT hash, status FROM tasks ORDER BY hash").fetchall()


@pytest_asyncio.fixture
async def store(tmp_path):
    manager = await StorageManager.open(tmp_path, stateless=True)
    yield manager
    await manager.close()


@pytest.mark.asyncio
async def test_stored_status_values(tmp_path):
    async with await StorageManager.open(tmp_path) as manager:
        await manager.update_torrent_info(
            [_torrent("a", TorrentStatus.DOWNLOADING), _torrent("b", TorrentStatus.SEEDING)]
        )
    assert _stored_statuses(tmp_path / "storage.db") == [("a", 0), ("b", 1)]

    async with await StorageManager.open(tmp_path) as manager:
        await manager.mark_artifact_ready("b")
    assert _stored_statuses(tmp_path / "storage.db") == [("a", 0), ("b", 2)]

    async with await StorageManager.open(tmp_path) as manager:
        await manager.prepare_artifact_storage("b")
        await manager.finalize_artifact("b")
    assert _stored_statuses(tmp_path / "storage.db") == [("a", 0), ("b", 3)]


@pytest.mark.asyncio
async def test_earliest_import_date_is_stable(store):
    first = await store.earliest_import_date()
    second = await store.earliest_import_date()
    assert first == second
    assert first.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_earliest_import_date_persists(tmp_path):
    async with await StorageManager.open(tmp_path) as manager:
        first = await manager.earliest_import_date()
    assert (tmp_path / "storage.db").exists()
    async with await StorageManager.open(tmp_path) as manager:
        assert await manager.earliest_import_date() == first


@pytest.mark.asyncio
async def test_corrupt_import_date(tmp_path):
    manager = await StorageManager.open(tmp_path)
    await manager.close()
    with sqlite3.connect(tmp_path / "storage.db") as conn:
        conn.execute(
            "INSERT INTO settings (key, value) VALUES ('earliest_import_date', 'garbage')"
        )
    async with await StorageManager.open(tmp_path) as manager:
        with pytest.raises(StorageManagerError, match="Parsing error"):
            await manager.earliest_import_date()


@pytest.mark.asyncio
async def test_ready_torrents_only_seeding(store):
    await store.update_torrent_info(
        [_torrent("a", TorrentStatus.DOWNLOADING), _torrent("b", TorrentStatus.SEEDING)]
    )
    ready = await store.list_ready_torrents()
    assert [t.hash for t in ready] == ["b"]
    assert ready[0].status is TorrentStatus.SEEDING
    assert ready[0].content_path == "/seed/b"


@pytest.mark.asyncio
async def test_status_upgrades(store):
    await store.update_torrent_info([_torrent("a", TorrentStatus.DOWNLOADING)])
    await store.update_torrent_info([_torrent("a", TorrentStatus.SEEDING, name="renamed")])
    ready = await store.list_ready_torrents()
    assert [(t.hash, t.name) for t in ready] == [("a", "renamed")]


@pytest.mark.asyncio
async def test_status_never_regresses(store):
    await store.update_torrent_info([_torrent("a", TorrentStatus.SEEDING)])
    await store.mark_artifact_ready("a")
    await store.update_torrent_info([_torrent("a", TorrentStatus.SEEDING, name="other")])
    assert await store.list_ready_torrents() == []
    artifacts = await store.list_ready_artifacts()
    assert [(a.hash, a.name) for a in artifacts] == [("a", "a")]


@pytest.mark.asyncio
async def test_mark_ready_requires_torrent_ready(store):
    await store.update_torrent_info([_torrent("a", TorrentStatus.DOWNLOADING)])
    await store.mark_artifact_ready("a")
    assert await store.list_ready_artifacts() == []


@pytest.mark.asyncio
async def test_artifact_paths(store, tmp_path):
    await store.update_torrent_info([_torrent("h1", TorrentStatus.SEEDING, name="Show")])
    await store.mark_artifact_ready("h1")
    artifacts = await store.list_ready_artifacts()
    assert artifacts == [ArtifactInfo(hash="h1", name="Show", path=str(tmp_path / "artifacts" / "h1"))]
    assert store.artifact_storage_path("h1") == tmp_path / "artifacts" / "h1"


@pytest.mark.asyncio
async def test_finalize_removes_directory(store):
    await store.update_torrent_info([_torrent("h", TorrentStatus.SEEDING)])
    await store.prepare_artifact_storage("h")
    directory = store.artifact_storage_path("h")
    (directory / "file.mkv").write_text("data")
    await store.mark_artifact_ready("h")

    await store.finalize_artifact("h")

    assert not directory.exists()
    assert await store.list_ready_artifacts() == []
    with pytest.raises(ArtifactAlreadyArchived):
        await store.finalize_artifact("h")


@pytest.mark.asyncio
async def test_finalize_unknown(store):
    with pytest.raises(ArtifactNotFound):
        await store.finalize_artifact("missing")


@pytest.mark.asyncio
async def test_finalize_not_ready(store):
    await store.update_torrent_info([_torrent("h", TorrentStatus.SEEDING)])
    with pytest.raises(ArtifactNotFound):
        await store.finalize_artifact("h")


@pytest.mark.asyncio
async def test_finalize_missing_directory(store):
    await store.update_torrent_info([_torrent("h", TorrentStatus.SEEDING)])
    await store.mark_artifact_ready("h")
    with pytest.raises(FinalizeArtifactError, match="Storage error"):
        await store.finalize_artifact("h")


@pytest.mark.asyncio
async def test_prepare_creates_nested_dirs(store):
    await store.prepare_artifact_storage("abc")
    await store.prepare_artifact_storage("abc")
    assert store.artifact_storage_path("abc").is_dir()


@pytest.mark.asyncio
async def test_open_missing_directory_fails(tmp_path):
    with pytest.raises(StorageManagerError, match="Database error"):
        await StorageManager.open(tmp_path / "nope" / "deeper")


@pytest.mark.asyncio
async def test_from_config(tmp_path):
    config = DaemonConfig(
        pull_cron="0 0/30 * * * *",
        qbit_url="http://localhost/",
        qbit_username="admin",
        qbit_password="password",
        no_transfer=False,
        stateless=True,
        storage_path=Path(tmp_path),
        transfer_cron="0 0 * * * *",
        seedbox_ssh_host="seedbox",
        seedbox_ssh_key=Path(tmp_path),
        rsync_speed_limit=None,
        telegram_bot_token="token",
        telegram_chat_id=1,
        api_addr=("0.0.0.0", 8080),
        api_key="placeholder",
    )
    async with await StorageManager.from_config(config) as manager:
        assert manager.storage_path == tmp_path
        assert await manager.list_ready_torrents() == []
    assert not (tmp_path / "storage.db").exists()