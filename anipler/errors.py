"""Exceptions raised across the daemon, the storage layer, rsync and the bot."""

from __future__ import annotations


class ConfigError(Exception):
    """The configuration is missing or malformed."""


class AniplerDaemonError(Exception):
    """Base class for failures inside the daemon's jobs."""


class InvalidQBitApiResponse(AniplerDaemonError):
    """The qBittorrent API returned data the daemon cannot use."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"QBit API responded with an invalid response: {detail}")


class RsyncTransmitterError(AniplerDaemonError):
    """Base class for rsync transfer failures."""


class SemaphoreClosed(RsyncTransmitterError):
    """The transfer gate can no longer hand out sessions."""

    def __init__(self) -> None:
        super().__init__("semaphore closed")


class RsyncFailed(RsyncTransmitterError):
    """An rsync run could not be started or exited unsuccessfully."""

    def __init__(self, dest: str, reason: str) -> None:
        self.dest = dest
        self.reason = reason
        super().__init__(f"Rsync command failed for {dest}: {reason}")


class OverlappingTransfer(RsyncTransmitterError):
    """A transfer is already running."""

    def __init__(self) -> None:
        super().__init__("Another transfer job is already in progress")


class StorageManagerError(AniplerDaemonError):
    """Database, filesystem or parsing failure in the storage layer."""


class FinalizeArtifactError(Exception):
    """An artifact could not be finalized."""


class ArtifactNotFound(FinalizeArtifactError):
    """No artifact with the given hash is waiting to be pulled."""

    def __init__(self) -> None:
        super().__init__("Artifact not found")


class ArtifactAlreadyArchived(FinalizeArtifactError):
    """The artifact has already been pulled and archived."""

    def __init__(self) -> None:
        super().__init__("Artifact already archived")


class TelegramBotError(Exception):
    """Base class for Telegram bot failures."""


class BotNotRunning(TelegramBotError):
    """The bot has not been started or has been shut down."""

    def __init__(self) -> None:
        super().__init__("bot not running")


class ChannelClosed(TelegramBotError):
    """The command channel was closed."""

    def __init__(self) -> None:
        super().__init__("command channel closed")


class ShutdownFailed(TelegramBotError):
    """The bot's background task did not stop cleanly."""

    def __init__(self, cause: object) -> None:
        self.cause = cause
        super().__init__(f"shutdown failed: {cause}")