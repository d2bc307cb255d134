"""Pull finished torrents from the seedbox with rsync, one transfer at a time."""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections import deque
from typing import TYPE_CHECKING

from anipler.errors import OverlappingTransfer, RsyncFailed

if TYPE_CHECKING:
    from anipler.config import DaemonConfig

logger = logging.getLogger(__name__)


def build_rsync_command(
    ssh_host: str,
    ssh_key_path: str,
    speed_limit: int | None,
    source: str,
    dest: str,
) -> list[str]:
    """Build the argument list for pulling ``source`` from ``ssh_host`` into ``dest``."""
    # -s (protect args) means the remote path needs no manual escaping.
    command = ["rsync", "--delete", "--partial", "--recursive", "-s"]
    if speed_limit is not None:
        command += ["--bwlimit", str(speed_limit)]
    ssh_command = shlex.join(
        [
            "ssh",
            "-i",
            ssh_key_path,
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "BatchMode=yes",
        ]
    )
    command += ["--rsh", ssh_command, f"{ssh_host}:{source}", dest]
    return command


class RsyncTransmitter:
    """Runs rsync transfers, allowing only one session at a time."""

    def __init__(
        self,
        ssh_host: str,
        ssh_key_path: str,
        speed_limit: int | None = None,
        dry_run: bool = False,
    ) -> None:
        self.ssh_host = ssh_host
        self.ssh_key_path = str(ssh_key_path)
        self.speed_limit = speed_limit
        self.dry_run = dry_run
        self._busy = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @classmethod
    def from_config(cls, config: DaemonConfig) -> RsyncTransmitter:
        logger.debug(
            "Creating rsync transmitter for %s (dry_run=%s)",
            config.seedbox_ssh_host,
            config.no_transfer,
        )
        return cls(
            ssh_host=config.seedbox_ssh_host,
            ssh_key_path=str(config.seedbox_ssh_key),
            speed_limit=config.rsync_speed_limit,
            dry_run=config.no_transfer,
        )

    async def session(self) -> RsyncTransferSession:
        """Wait until no transfer is running, then take the session."""
        while self._busy:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if not self._busy:
                    self._wake_next()
                raise
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
        self._busy = True
        return RsyncTransferSession(self)

    def try_session(self) -> RsyncTransferSession:
        """Take the session now, or raise OverlappingTransfer if it is in use."""
        if self._busy:
            raise OverlappingTransfer()
        self._busy = True
        return RsyncTransferSession(self)

    def _release(self) -> None:
        self._busy = False
        self._wake_next()

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    async def _transfer(self, source: str, dest: str) -> None:
        logger.info("Transferring %s to %s", source, dest)
        command = build_rsync_command(
            self.ssh_host, self.ssh_key_path, self.speed_limit, source, dest
        )
        logger.debug("Executing rsync command: %s", shlex.join(command))
        if self.dry_run:
            logger.info("Skipping transfer of %s to %s in dry-run mode", source, dest)
            return

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as exc:
            raise RsyncFailed(dest, f"failed to execute rsync command: {exc}") from exc

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace")
            raise RsyncFailed(dest, f"rsync exited with code {process.returncode}: {message}")

        logger.info("Artifact available at %s", dest)


class RsyncTransferSession:
    """Exclusive right to run transfers; release it (or leave its with-block) when done."""

    def __init__(self, transmitter: RsyncTransmitter) -> None:
        self._transmitter: RsyncTransmitter | None = transmitter

    async def transfer(self, source: str, dest: str) -> None:
        """Copy ``source`` on the seedbox into ``dest``."""
        if self._transmitter is None:
            raise RuntimeError("transfer session already released")
        await self._transmitter._transfer(source, dest)

    def release(self) -> None:
        """Give the session back; calling it again does nothing."""
        if self._transmitter is not None:
            transmitter, self._transmitter = self._transmitter, None
            transmitter._release()

    def __enter__(self) -> RsyncTransferSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()