"""Telegram bot that receives commands from one chat and sends availability reports."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any, Sequence

import httpx

from anipler.errors import BotNotRunning, ChannelClosed, ShutdownFailed, TelegramBotError
from anipler.task import ArtifactInfo, TorrentTaskInfo

if TYPE_CHECKING:
    from anipler.config import DaemonConfig

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
MIN_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 60.0
POLL_TIMEOUT = 30
_QUEUE_SIZE = 16

_COMMANDS = (
    ("pull", "Pull torrents information from seedbox."),
    ("transfer", "Transfer torrents from seedbox to relay."),
    ("report", "Report available torrents and artifacts."),
)


class BotCommand(enum.Enum):
    """Commands a user can send to the bot."""

    PULL_JOB = "pull"
    TRANSFER_JOB = "transfer"
    REPORT_AVAILABLE = "report"

    @classmethod
    def parse(cls, text: str) -> BotCommand | None:
        """Parse a "/command [args]" message, returning None if it is not a known command."""
        if not text.startswith("/"):
            return None
        name = text[1:].split(" ", 1)[0]
        return next((command for command in cls if command.value == name), None)


def format_report(
    torrents: Sequence[TorrentTaskInfo], artifacts: Sequence[ArtifactInfo]
) -> str:
    """Render the availability report sent to the user."""
    sections = []
    if torrents:
        lines = ["Ready Torrents:\n"]
        lines += [f"\n- {t.name} \n  ({t.hash})\n" for t in torrents]
        sections.append("".join(lines))
    if artifacts:
        lines = ["Available Artifacts:\n"]
        lines += [f"\n- {a.name} \n  ({a.hash})\n" for a in artifacts]
        sections.append("".join(lines))
    if not sections:
        return "No torrents or artifacts available"
    return "\n".join(sections)


class TelegramBot:
    """Long-polls Telegram for commands from a single chat."""

    def __init__(
        self, token: str, chat_id: int, client: httpx.AsyncClient | None = None
    ) -> None:
        self._token = token
        self.chat_id = chat_id
        self._client = (
            client if client is not None else httpx.AsyncClient(timeout=POLL_TIMEOUT + 10)
        )
        self._queue: asyncio.Queue[BotCommand] | None = None
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: DaemonConfig) -> TelegramBot:
        logger.debug("Creating Telegram bot instance")
        return cls(config.telegram_bot_token, config.telegram_chat_id)

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        response = await self._client.post(
            f"{API_BASE}/bot{self._token}/{method}",
            json=payload,
            timeout=POLL_TIMEOUT + 10,
        )
        data = response.json()
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else data
            raise TelegramBotError(f"Telegram API error in {method}: {description}")
        return data.get("result")

    async def run(self) -> None:
        """Register the bot's commands and start polling in the background."""
        await self._register_commands()
        logger.info("Telegram bot started, listening for commands")
        queue: asyncio.Queue[BotCommand] = asyncio.Queue(maxsize=_QUEUE_SIZE)
        self._task = asyncio.create_task(self._poll(queue))
        self._queue = queue

    async def _register_commands(self) -> None:
        logger.info("Registering Telegram bot commands")
        await self._call(
            "setMyCommands",
            {
                "commands": [
                    {"command": command, "description": description}
                    for command, description in _COMMANDS
                ],
                "scope": {"type": "chat", "chat_id": self.chat_id},
            },
        )
        logger.info("Successfully registered Telegram bot commands")

    async def _poll(self, queue: asyncio.Queue[BotCommand]) -> None:
        params: dict[str, Any] = {"allowed_updates": ["message"], "timeout": POLL_TIMEOUT}
        delay = MIN_RETRY_DELAY
        while True:
            try:
                updates = await self._call("getUpdates", params)
                if not isinstance(updates, list):
                    raise TelegramBotError("getUpdates returned no list")
            except (httpx.HTTPError, TelegramBotError, ValueError) as exc:
                logger.error("Failed to get updates from Telegram: %s", exc)
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RETRY_DELAY)
                continue

            delay = MIN_RETRY_DELAY
            for update in updates:
                message = update.get("message") if isinstance(update, dict) else None
                if not isinstance(message, dict):
                    continue
                if (message.get("chat") or {}).get("id") != self.chat_id:
                    continue
                await self._handle_message(message, queue)
                params["offset"] = int(update["update_id"]) + 1

    @staticmethod
    async def _handle_message(message: dict[str, Any], queue: asyncio.Queue[BotCommand]) -> None:
        text = message.get("text")
        if text is None:
            logger.info("Received empty message from user")
            return
        command = BotCommand.parse(text)
        if command is None:
            logger.info("Received invalid command %r", text)
            return
        await queue.put(command)
        logger.info("Received command %r", text)

    async def recv_command(self) -> BotCommand:
        """Wait for the next command.

        Raises BotNotRunning if the bot is not running and ChannelClosed if polling stopped.
        """
        queue, task = self._queue, self._task
        if queue is None or task is None:
            raise BotNotRunning()
        if not queue.empty():
            return queue.get_nowait()
        if task.done():
            raise ChannelClosed()

        getter = asyncio.ensure_future(queue.get())
        try:
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            getter.cancel()
            raise
        if getter in done:
            return getter.result()
        getter.cancel()
        raise ChannelClosed()

    async def shutdown(self) -> None:
        """Stop polling; raises BotNotRunning if the bot was not started."""
        logger.info("Shutting down Telegram bot")
        task = self._task
        if task is None:
            raise BotNotRunning()
        self._task = None
        self._queue = None

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise ShutdownFailed(task.exception())
        logger.info("Telegram bot shut down successfully")

    async def report_available(
        self, torrents: Sequence[TorrentTaskInfo], artifacts: Sequence[ArtifactInfo]
    ) -> None:
        """Send the list of ready torrents and artifacts to the chat."""
        logger.debug(
            "Generating availability report: %d torrents, %d artifacts",
            len(torrents),
            len(artifacts),
        )
        text = format_report(torrents, artifacts)
        logger.info("Sending availability report to user")
        await self._call("sendMessage", {"chat_id": self.chat_id, "text": text})