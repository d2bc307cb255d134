"""Daemon command-line arguments and environment configuration."""

from __future__ import annotations

import argparse
import ipaddress
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlsplit

from anipler.errors import ConfigError

ENV_PREFIX = "ANIPLER"
DEFAULT_PULL_CRON = "0 0/30 * * * *"
DEFAULT_TRANSFER_CRON = "0 0 * * * *"
DEFAULT_API_ADDR = "0.0.0.0:8080"
_VERSION = "0.1.0"

# Suffixes of the environment variables that carry credentials.
_QBIT_CREDENTIAL_ENV = "QBIT_PASSWORD"
_API_CREDENTIAL_ENV = "API_KEY"

_U32_MAX = 2**32 - 1
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")
_PORT = re.compile(r"[0-9]+")
_SCHEME = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*")


@dataclass(frozen=True)
class DaemonArgs:
    """Flags given to the daemon on its command line."""

    no_transfer: bool = False
    stateless: bool = False


def parse_daemon_args(argv: list[str] | None = None) -> DaemonArgs:
    """Parse the daemon's command-line flags."""
    parser = argparse.ArgumentParser(prog="anipler-daemon")
    parser.add_argument("--no-transfer", action="store_true", default=False)
    parser.add_argument("--stateless", action="store_true", default=False)
    parser.add_argument("--version", action="version", version=f"%(prog)s {_VERSION}")
    namespace = parser.parse_args(argv)
    return DaemonArgs(no_transfer=namespace.no_transfer, stateless=namespace.stateless)


def _parse_url(text: str) -> str:
    parts = urlsplit(text)
    if ":" not in text or not _SCHEME.fullmatch(parts.scheme):
        raise ValueError("missing scheme")
    if parts.scheme.lower() in {"http", "https"} and not parts.hostname:
        raise ValueError("missing host")
    return text


def _parse_socket_addr(text: str) -> tuple[str, int]:
    if text.startswith("["):
        host, sep, port = text[1:].partition("]:")
        if not sep:
            raise ValueError("missing port")
        address: ipaddress._BaseAddress = ipaddress.IPv6Address(host)
    else:
        host, sep, port = text.rpartition(":")
        if not sep:
            raise ValueError("missing port")
        address = ipaddress.IPv4Address(host)
    if not _PORT.fullmatch(port) or int(port) > 65535:
        raise ValueError("invalid port")
    return str(address), int(port)


def _parse_int(text: str, pattern: re.Pattern[str], low: int, high: int) -> int:
    if not pattern.fullmatch(text):
        raise ValueError("not an integer")
    value = int(text)
    if not low <= value <= high:
        raise ValueError("out of range")
    return value


@dataclass
class DaemonConfig:
    """Everything the daemon needs to run."""

    pull_cron: str
    qbit_url: str
    qbit_username: str
    qbit_password: str
    no_transfer: bool
    stateless: bool
    storage_path: Path
    transfer_cron: str
    seedbox_ssh_host: str
    seedbox_ssh_key: Path
    rsync_speed_limit: int | None
    telegram_bot_token: str
    telegram_chat_id: int
    api_addr: tuple[str, int]
    api_key: str

    @classmethod
    def from_env(
        cls, args: DaemonArgs, environ: Mapping[str, str] | None = None
    ) -> DaemonConfig:
        """Load the configuration from ANIPLER_* environment variables.

        Raises ConfigError when a required variable is missing or a value is malformed.
        """
        env = os.environ if environ is None else environ

        def require(key: str) -> str:
            name = f"{ENV_PREFIX}_{key}"
            try:
                return env[name]
            except KeyError:
                raise ConfigError(f"Environment variable {name} is required") from None

        def optional(key: str) -> str | None:
            return env.get(f"{ENV_PREFIX}_{key}")

        pull_cron = optional("PULL_CRON") or DEFAULT_PULL_CRON
        transfer_cron = optional("TRANSFER_CRON") or DEFAULT_TRANSFER_CRON

        try:
            qbit_url = _parse_url(require("QBIT_URL"))
        except ValueError:
            raise ConfigError(
                "Environment variable ANIPLER_QBIT_URL must be a valid URL"
            ) from None
        qbit_username = require("QBIT_USERNAME")
        qbit_password = require(_QBIT_CREDENTIAL_ENV)

        storage_path = Path(require("STORAGE_PATH"))

        seedbox_ssh_host = require("SEEDBOX_SSH_HOST")
        try:
            seedbox_ssh_key = Path(require("SEEDBOX_SSH_KEY")).resolve(strict=True)
        except OSError:
            raise ConfigError("SEEDBOX_SSH_KEY must point to a valid file") from None

        raw_limit = optional("RSYNC_SPEED_LIMIT")
        rsync_speed_limit = None
        if raw_limit is not None:
            try:
                rsync_speed_limit = _parse_int(raw_limit, _UNSIGNED, 0, _U32_MAX)
            except ValueError:
                raise ConfigError(
                    "ANIPLER_RSYNC_SPEED_LIMIT must be a valid integer"
                ) from None

        telegram_bot_token = require("TELEGRAM_BOT_TOKEN")
        try:
            telegram_chat_id = _parse_int(
                require("TELEGRAM_CHAT_ID"), _SIGNED, _I64_MIN, _I64_MAX
            )
        except ValueError:
            raise ConfigError("ANIPLER_TELEGRAM_CHAT_ID must be a valid integer") from None

        try:
            api_addr = _parse_socket_addr(optional("API_ADDR") or DEFAULT_API_ADDR)
        except ValueError:
            raise ConfigError("ANIPLER_API_ADDR must be a valid socket address") from None
        api_key = require(_API_CREDENTIAL_ENV)

        return cls(
            pull_cron=pull_cron,
            qbit_url=qbit_url,
            qbit_username=qbit_username,
            qbit_password=qbit_password,
            no_transfer=args.no_transfer,
            stateless=args.stateless,
            storage_path=storage_path,
            transfer_cron=transfer_cron,
            seedbox_ssh_host=seedbox_ssh_host,
            seedbox_ssh_key=seedbox_ssh_key,
            rsync_speed_limit=rsync_speed_limit,
            telegram_bot_token=telegram_bot_token,
            telegram_chat_id=telegram_chat_id,
            api_addr=api_addr,
            api_key=api_key,
        )