"""The relay daemon: tracks seedbox torrents, transfers them and answers bot commands."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable

from anipler.bot import BotCommand, TelegramBot
from anipler.config import DaemonConfig, parse_daemon_args
from anipler.cron import CronSchedule, run_on_schedule
from anipler.errors import ChannelClosed, ConfigError, OverlappingTransfer, TelegramBotError
from anipler.qbit import QBitSeedbox
from anipler.rsync import RsyncTransmitter
from anipler.storage import StorageManager

logger = logging.getLogger(__name__)


class AniplerDaemon:
    """Ties the seedbox, storage, rsync transmitter and Telegram bot together."""

    def __init__(
        self,
        config: DaemonConfig,
        seedbox: QBitSeedbox,
        store: StorageManager,
        transmitter: RsyncTransmitter,
        bot: TelegramBot,
    ) -> None:
        self.config = config
        self.seedbox = seedbox
        self.store = store
        self.transmitter = transmitter
        self.bot = bot
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    async def from_config(cls, config: DaemonConfig) -> AniplerDaemon:
        """Build every component from the configuration."""
        logger.info("Initializing Anipler daemon")
        seedbox = QBitSeedbox.from_config(config)
        store = await StorageManager.from_config(config)
        transmitter = RsyncTransmitter.from_config(config)
        bot = TelegramBot.from_config(config)
        logger.info("Anipler daemon initialized successfully")
        return cls(config, seedbox, store, transmitter, bot)

    @staticmethod
    def _install_signal_handlers(stop: asyncio.Event) -> Callable[[], None]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)

        def remove() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return remove

    async def _command_loop(self, stop: asyncio.Event) -> None:
        while True:
            receiver = asyncio.ensure_future(self.bot.recv_command())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait(
                {receiver, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
            if stopper in done:
                receiver.cancel()
                logger.info("Received shutdown signal")
                return
            stopper.cancel()
            try:
                command = receiver.result()
            except ChannelClosed:
                logger.error("Telegram bot command channel closed unexpectedly, shutting down")
                return
            except TelegramBotError as exc:
                logger.error("Failed to receive command: %s", exc)
                continue
            self.handle_command(command)

    async def run(self) -> None:
        """Run the scheduled jobs and the bot until a signal arrives or the bot stops."""
        stop = asyncio.Event()
        jobs = self.run_jobs(stop)
        remove_handlers = self._install_signal_handlers(stop)
        try:
            await self.run_pull_job()
            await self.bot.run()
            logger.info("Daemon main loop started")
            await self._command_loop(stop)
        finally:
            stop.set()
            remove_handlers()
            await jobs
        await self.bot.shutdown()
        logger.info("Daemon terminated")

    def run_jobs(self, stop: asyncio.Event) -> asyncio.Task[None]:
        """Start the pull and transfer schedules; they run until ``stop`` is set.

        Raises ValueError at once if either cron expression is malformed.
        """
        pull = CronSchedule.parse(self.config.pull_cron)
        transfer = CronSchedule.parse(self.config.transfer_cron)

        async def run_all() -> None:
            await asyncio.gather(
                run_on_schedule(pull, self.run_pull_job, stop),
                run_on_schedule(transfer, self.run_transfer_job, stop),
            )

        return asyncio.create_task(run_all())

    async def run_pull_job(self) -> None:
        """Update torrent status, logging instead of raising on failure."""
        logger.info("Starting torrent information pull from seedbox")
        try:
            await self.update_status()
        except Exception:
            logger.exception("Failed to pull torrents information")

    async def run_transfer_job(self) -> None:
        """Transfer ready torrents, logging instead of raising on failure."""
        logger.info("Starting transfer of ready torrents")
        try:
            await self.transfer_ready_torrents()
        except OverlappingTransfer:
            logger.warning("Another transfer job is already in progress, skipping")
        except Exception:
            logger.exception("Failed to transfer ready torrents")
        else:
            logger.info("Transfer job completed successfully")

    async def transfer_ready_torrents(self) -> None:
        """Copy every ready torrent from the seedbox into artifact storage.

        Raises OverlappingTransfer if another transfer holds the session.
        """
        with self.transmitter.try_session() as session:
            ready = await self.store.list_ready_torrents()
            logger.info("Found %d ready torrents for transfer", len(ready))
            for transferred, torrent in enumerate(ready, start=1):
                logger.info("Starting transfer of %s (%s)", torrent.name, torrent.hash)
                dest = str(self.store.artifact_storage_path(torrent.hash))
                await self.store.prepare_artifact_storage(torrent.hash)
                await session.transfer(torrent.content_path, dest)
                if not self.config.no_transfer:
                    await self.store.mark_artifact_ready(torrent.hash)
                logger.info("Transferred torrent %d/%d", transferred, len(ready))
            logger.info("Transferred all %d ready torrents", len(ready))

    async def update_status(self) -> None:
        """Fetch current torrent states from the seedbox and store them."""
        earliest = await self.store.earliest_import_date()
        torrents = await self.seedbox.query_torrents(earliest)
        logger.debug("Received %d torrent updates from seedbox", len(torrents))
        await self.store.update_torrent_info(torrents)
        logger.info("Updated torrent information in storage")

    async def _report(self) -> None:
        try:
            torrents = await self.store.list_ready_torrents()
            artifacts = await self.store.list_ready_artifacts()
            await self.bot.report_available(torrents, artifacts)
        except Exception:
            logger.exception("Failed to report available torrents/artifacts")

    def handle_command(self, cmd: BotCommand) -> asyncio.Task[None]:
        """Start the job a bot command asks for in the background and return its task."""
        if cmd is BotCommand.PULL_JOB:
            logger.info("User requested pull job via bot")
            job = self.run_pull_job()
        elif cmd is BotCommand.TRANSFER_JOB:
            logger.info("User requested transfer job via bot")
            job = self.run_transfer_job()
        else:
            logger.info("User requested report of available torrents/artifacts via bot")
            job = self._report()
        task = asyncio.create_task(job)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


async def _serve(config: DaemonConfig) -> None:
    daemon = await AniplerDaemon.from_config(config)
    try:
        await daemon.run()
    finally:
        await daemon.store.close()


def main(argv: list[str] | None = None) -> int:
    """Entry point of the daemon command."""
    logging.basicConfig(level=logging.INFO)
    args = parse_daemon_args(argv)
    try:
        config = DaemonConfig.from_env(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    logger.debug("Loaded daemon configuration")
    try:
        asyncio.run(_serve(config))
    except Exception as exc:
        logger.exception("Daemon failed")
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    logger.info("Daemon stopped")
    return 0