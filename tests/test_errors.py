import pytest

from anipler.errors import (
    AniplerDaemonError,
    ArtifactAlreadyArchived,
    ArtifactNotFound,
    BotNotRunning,
    ChannelClosed,
    FinalizeArtifactError,
    InvalidQBitApiResponse,
    OverlappingTransfer,
    RsyncFailed,
    RsyncTransmitterError,
    SemaphoreClosed,
    ShutdownFailed,
    StorageManagerError,
    TelegramBotError,
)


def test_invalid_qbit_response_message():
    err = InvalidQBitApiResponse("Missing field hash in torrent info")
    assert str(err) == (
        "QBit API responded with an invalid response: Missing field hash in torrent info"
    )
    assert err.detail == "Missing field hash in torrent info"


def test_rsync_failed_message_and_fields():
    err = RsyncFailed("/dest", "boom")
    assert str(err) == "Rsync command failed for /dest: boom"
    assert (err.dest, err.reason) == ("/dest", "boom")


@pytest.mark.parametrize(
    ("error", "message"),
    [
        (SemaphoreClosed(), "semaphore closed"),
        (OverlappingTransfer(), "Another transfer job is already in progress"),
        (ArtifactNotFound(), "Artifact not found"),
        (ArtifactAlreadyArchived(), "Artifact already archived"),
        (BotNotRunning(), "bot not running"),
        (ChannelClosed(), "command channel closed"),
    ],
)
def test_fixed_messages(error, message):
    assert str(error) == message


def test_shutdown_failed_wraps_cause():
    cause = RuntimeError("join failed")
    err = ShutdownFailed(cause)
    assert str(err) == "shutdown failed: join failed"
    assert err.cause is cause


def test_daemon_error_covers_overlapping_transfer():
    err = OverlappingTransfer()
    assert issubclass(OverlappingTransfer, AniplerDaemonError)
    assert issubclass(OverlappingTransfer, RsyncTransmitterError)
    assert str(err) == "Another transfer job is already in progress"


def test_daemon_error_covers_storage_error():
    err = StorageManagerError("Database error: x")
    assert issubclass(StorageManagerError, AniplerDaemonError)
    assert "Database error: x" in str(err)


def test_rsync_errors_share_base():
    err = RsyncFailed("d", "r")
    assert issubclass(RsyncFailed, RsyncTransmitterError)
    assert issubclass(SemaphoreClosed, RsyncTransmitterError)
    assert str(err) == "Rsync command failed for d: r"
    assert err.dest == "d"


def test_finalize_errors_share_base():
    err = ArtifactAlreadyArchived()
    assert issubclass(ArtifactAlreadyArchived, FinalizeArtifactError)
    assert issubclass(ArtifactNotFound, FinalizeArtifactError)
    assert str(err) == "Artifact already archived"


def test_bot_errors_share_base():
    err = ChannelClosed()
    assert issubclass(ChannelClosed, TelegramBotError)
    assert issubclass(BotNotRunning, TelegramBotError)
    assert issubclass(ShutdownFailed, TelegramBotError)
    assert str(err) == "command channel closed"