import asyncio
import os
import shlex
from pathlib import Path

import pytest

from anipler.config import DaemonConfig
from anipler.errors import OverlappingTransfer, RsyncFailed
from anipler.rsync import RsyncTransmitter, build_rsync_command


def _fake_rsync(tmp_path, monkeypatch, body):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    script = bindir / "rsync"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(0o755)
    monkeypatch.setenv("PATH", str(bindir) + os.pathsep + os.environ.get("PATH", ""))
    return bindir


def test_build_command_without_limit():
    command = build_rsync_command("seedbox", "/keys/id", None, "/data/show", "/store/h")
    assert command[:5] == ["rsync", "--delete", "--partial", "--recursive", "-s"]
    assert command[5] == "--rsh"
    assert shlex.split(command[6]) == [
        "ssh",
        "-i",
        "/keys/id",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "BatchMode=yes",
    ]
    assert command[7:] == ["seedbox:/data/show", "/store/h"]


def test_build_command_with_limit():
    command = build_rsync_command("host", "/k", 250, "src", "dst")
    index = command.index("--bwlimit")
    assert command[index + 1] == "250"
    assert index < command.index("--rsh")


def test_build_command_quotes_key_path():
    command = build_rsync_command("host", "/my keys/id", None, "src", "dst")
    assert "/my keys/id" in shlex.split(command[command.index("--rsh") + 1])


def test_from_config(tmp_path):
    config = DaemonConfig(
        pull_cron="0 0/30 * * * *",
        qbit_url="http://localhost/",
        qbit_username="admin",
        qbit_password="password",
        no_transfer=True,
        stateless=True,
        storage_path=Path(tmp_path),
        transfer_cron="0 0 * * * *",
        seedbox_ssh_host="seedbox",
        seedbox_ssh_key=tmp_path / "id",
        rsync_speed_limit=10,
        telegram_bot_token="token",
        telegram_chat_id=1,
        api_addr=("0.0.0.0", 8080),
        api_key="placeholder",
    )
    transmitter = RsyncTransmitter.from_config(config)
    assert transmitter.ssh_host == "seedbox"
    assert transmitter.ssh_key_path == str(tmp_path / "id")
    assert transmitter.speed_limit == 10
    assert transmitter.dry_run is True


def test_try_session_overlapping():
    transmitter = RsyncTransmitter("host", "/k")
    session = transmitter.try_session()
    with pytest.raises(OverlappingTransfer):
        transmitter.try_session()
    session.release()
    session.release()
    with transmitter.try_session():
        with pytest.raises(OverlappingTransfer):
            transmitter.try_session()
    with pytest.raises(OverlappingTransfer):
        with transmitter.try_session():
            transmitter.try_session()
    transmitter.try_session().release()


@pytest.mark.asyncio
async def test_session_waits_for_release():
    transmitter = RsyncTransmitter("host", "/k")
    first = await transmitter.session()
    waiter = asyncio.create_task(transmitter.session())
    await asyncio.sleep(0)
    assert not waiter.done()
    first.release()
    second = await asyncio.wait_for(waiter, 1)
    with pytest.raises(OverlappingTransfer):
        transmitter.try_session()
    second.release()


@pytest.mark.asyncio
async def test_transfer_after_release_fails():
    transmitter = RsyncTransmitter("host", "/k", dry_run=True)
    session = transmitter.try_session()
    session.release()
    with pytest.raises(RuntimeError):
        await session.transfer("a", "b")


@pytest.mark.asyncio
async def test_dry_run_does_not_spawn(tmp_path, monkeypatch):
    marker = tmp_path / "spawned.txt"
    _fake_rsync(tmp_path, monkeypatch, f'touch "{marker}"\nexit 0\n')
    transmitter = RsyncTransmitter("host", "/k", dry_run=True)
    with transmitter.try_session() as session:
        result = await session.transfer("/remote", str(tmp_path / "local"))
        with pytest.raises(OverlappingTransfer):
            transmitter.try_session()
    assert result is None
    assert not marker.exists()
    assert not (tmp_path / "local").exists()


@pytest.mark.asyncio
async def test_transfer_runs_rsync(tmp_path, monkeypatch):
    args_file = tmp_path / "args.txt"
    _fake_rsync(tmp_path, monkeypatch, f'printf "%s\\n" "$@" > "{args_file}"\nexit 0\n')
    transmitter = RsyncTransmitter("seedbox", "/k", speed_limit=5)
    with transmitter.try_session() as session:
        await session.transfer("/remote/show", str(tmp_path / "dest"))
    lines = args_file.read_text().splitlines()
    assert lines == build_rsync_command(
        "seedbox", "/k", 5, "/remote/show", str(tmp_path / "dest")
    )[1:]


@pytest.mark.asyncio
async def test_transfer_failure(tmp_path, monkeypatch):
    _fake_rsync(tmp_path, monkeypatch, "echo boom >&2\nexit 3\n")
    transmitter = RsyncTransmitter("seedbox", "/k")
    with transmitter.try_session() as session:
        with pytest.raises(RsyncFailed) as info:
            await session.transfer("/remote", "/dest")
    assert info.value.dest == "/dest"
    assert "3" in info.value.reason
    assert "boom" in info.value.reason


@pytest.mark.asyncio
async def test_transfer_missing_binary(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    transmitter = RsyncTransmitter("seedbox", "/k")
    with transmitter.try_session() as session:
        with pytest.raises(RsyncFailed, match="failed to execute rsync command"):
            await session.transfer("/remote", "/dest")