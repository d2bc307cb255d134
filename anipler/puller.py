"""Client that pulls finished artifacts from the relay to the local machine."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import shlex
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urljoin, urlsplit

import httpx
import platformdirs

from anipler.errors import ConfigError
from anipler.task import ArtifactInfo

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "ANIPLER_CONFIG_PATH"
_VAR = re.compile(r"\$(?:\{([^}]*)\}|([A-Za-z0-9_]+))")
# Fields read after the URL, in the order they are checked.
_ACCESS_FIELDS = ("api_key", "ssh_host")


def _expand_path(text: str, environ: Mapping[str, str]) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        try:
            return environ[name]
        except KeyError:
            raise ConfigError(
                f"Failed to expand path: environment variable `{name}` is not set"
            ) from None

    expanded = _VAR.sub(substitute, text)
    if expanded == "~" or expanded.startswith("~/"):
        expanded = str(Path.home()) + expanded[1:]
    return expanded


def _string_field(data: Mapping[str, object], name: str) -> str:
    if name not in data:
        raise ConfigError(f"Failed to parse config: missing field `{name}`")
    value = data[name]
    if not isinstance(value, str):
        raise ConfigError(f"Failed to parse config: field `{name}` must be a string")
    return value


@dataclass
class PullerConfig:
    """Settings read from the puller's TOML file."""

    api_url: str
    api_key: str
    ssh_host: str
    destination: Path

    @classmethod
    def from_path(cls, path: Path | str) -> PullerConfig:
        """Read and validate the TOML file at ``path``; the destination is shell-expanded."""
        content = Path(path).read_text(encoding="utf-8")
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Failed to parse config: {exc}") from exc

        api_url = _string_field(data, "api_url")
        parts = urlsplit(api_url)
        if not parts.scheme or not parts.netloc:
            raise ConfigError(f"Failed to parse config: invalid URL `{api_url}`")
        api_key, ssh_host = [_string_field(data, name) for name in _ACCESS_FIELDS]
        destination = (
            _string_field(data, "destination") if "destination" in data else os.getcwd()
        )
        return cls(
            api_url=api_url,
            api_key=api_key,
            ssh_host=ssh_host,
            destination=Path(_expand_path(destination, os.environ)),
        )


def default_config_path() -> Path:
    """The per-user configuration file location."""
    return platformdirs.user_config_path() / "anipler" / "puller.toml"


def resolve_config_path(
    cli_path: Path | str | None = None, environ: Mapping[str, str] | None = None
) -> Path:
    """Pick the config file: the environment variable, then the command line, then the default."""
    env = os.environ if environ is None else environ
    from_env = env.get(CONFIG_PATH_ENV)
    if from_env is not None:
        return Path(from_env)
    if cli_path is not None:
        return Path(cli_path)
    try:
        return default_config_path()
    except Exception as exc:
        raise ConfigError("Failed to determine config path") from exc


def build_pull_command(ssh_host: str, artifact_path: str, destination: Path | str) -> list[str]:
    """Argument list that copies an artifact from the relay into ``destination``."""
    return [
        "rsync",
        "--delete",
        "--partial",
        "--recursive",
        "-s",
        "--rsh",
        "ssh",
        f"{ssh_host}:{artifact_path}",
        str(destination),
    ]


class AniplerPuller:
    """Fetches the relay's artifact list and pulls artifacts one by one."""

    def __init__(self, config: PullerConfig, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = config.api_url
        self.ssh_host = config.ssh_host
        self.destination = config.destination
        self._auth_header = f"Bearer {config.api_key}"
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient()
        self._artifacts: list[ArtifactInfo] = []
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> AniplerPuller:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_artifacts_list(self) -> int:
        """Load the artifacts waiting on the relay and return how many there are."""
        response = await self._client.get(
            urljoin(self.base_url, "/api/artifacts"),
            headers={"authorization": self._auth_header},
        )
        if response.status_code != httpx.codes.OK:
            raise RuntimeError(f"Server error: {response.text}")
        data = response.json()
        if not isinstance(data, list):
            raise ValueError("artifact list must be an array")
        fetched = [ArtifactInfo.from_dict(item) for item in data]
        async with self._lock:
            self._artifacts = fetched
            return len(self._artifacts)

    async def confirm(self, hash: str) -> bool:
        """Tell the relay an artifact arrived; False if it was already archived."""
        response = await self._client.post(
            urljoin(self.base_url, f"/api/artifacts/{hash}/confirm"),
            headers={"authorization": self._auth_header},
        )
        if response.status_code == httpx.codes.OK:
            return True
        if response.status_code == httpx.codes.CONFLICT:
            return False
        raise RuntimeError(f"Server error: {response.text}")

    async def transfer_next(self) -> bool:
        """Pull the last artifact in the list and confirm it; False if none were left."""
        async with self._lock:
            if not self._artifacts:
                return False
            artifact = self._artifacts[-1]
            logger.info("Transferring artifact %s (%s)", artifact.name, artifact.hash)

            command = build_pull_command(self.ssh_host, artifact.path, self.destination)
            logger.debug("Executing rsync command: %s", shlex.join(command))
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise RuntimeError(
                    f"rsync failed: {stderr.decode('utf-8', errors='replace')}"
                )
            self._artifacts.pop()

        logger.info("Artifact %s transferred, confirming with server", artifact.hash)
        await self.confirm(artifact.hash)
        return True


async def _pull_all(config: PullerConfig) -> int:
    async with AniplerPuller(config) as puller:
        try:
            count = await puller.fetch_artifacts_list()
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        logger.info("Found %d artifacts to pull", count)

        while True:
            try:
                transferred = await puller.transfer_next()
            except Exception:
                logger.exception("Error occurred during artifact transfer, aborting")
                break
            if not transferred:
                logger.info("All artifacts transferred successfully")
                break
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point of the puller command."""
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(prog="puller")
    parser.add_argument("-c", "--config", type=Path, default=None)
    args = parser.parse_args(argv)

    try:
        config_path = resolve_config_path(args.config)
        try:
            config = PullerConfig.from_path(config_path)
        except (OSError, ConfigError) as exc:
            raise ConfigError(f"Failed to read config from {config_path}: {exc}") from exc
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.debug("Loaded puller configuration from %s", config_path)
    return asyncio.run(_pull_all(config))