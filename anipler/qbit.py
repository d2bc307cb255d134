"""Query the qBittorrent Web API for torrents managed by the daemon."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping
from urllib.parse import urljoin

import httpx

from anipler.errors import AniplerDaemonError, InvalidQBitApiResponse
from anipler.task import TorrentStatus, TorrentTaskInfo

if TYPE_CHECKING:
    from anipler.config import DaemonConfig

logger = logging.getLogger(__name__)

ANIPLER_TORRENT_TAG = "anipler"

_LOGIN_PATH = "api/v2/auth/login"
_TORRENTS_PATH = "api/v2/torrents/info"


def _require(entry: Mapping[str, Any], name: str) -> Any:
    value = entry.get(name)
    if value is None:
        raise InvalidQBitApiResponse(f"Missing field {name} in torrent info")
    return value


def parse_torrents(
    entries: Iterable[Mapping[str, Any]], earliest_import_date: datetime
) -> list[TorrentTaskInfo]:
    """Turn raw torrent entries into task records, dropping those added before the cut-off.

    Raises InvalidQBitApiResponse if an entry lacks a required field.
    """
    cutoff = math.floor(earliest_import_date.timestamp())
    torrents: list[TorrentTaskInfo] = []
    ignored = 0
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise InvalidQBitApiResponse("torrent info is not an object")
        hash_ = _require(entry, "hash")
        progress = _require(entry, "progress")
        status = TorrentStatus.DOWNLOADING if progress < 1.0 else TorrentStatus.SEEDING
        content_path = _require(entry, "content_path")
        name = _require(entry, "name")
        info = TorrentTaskInfo(hash=hash_, status=status, content_path=content_path, name=name)

        added_on = _require(entry, "added_on")
        if added_on < cutoff:
            ignored += 1
            logger.debug("Ignoring torrent %s", info)
            continue

        logger.debug("Tracking torrent %s", info)
        torrents.append(info)

    logger.debug("Queried torrents from API: tracked=%d ignored=%d", len(torrents), ignored)
    return torrents


class QBitSeedbox:
    """Client for the qBittorrent instance running on the seedbox."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.username = username
        self._password = password
        self._client = client if client is not None else httpx.AsyncClient()
        self._logged_in = False

    @classmethod
    def from_config(cls, config: DaemonConfig) -> QBitSeedbox:
        logger.debug("Creating qBittorrent seedbox client for %s", config.qbit_url)
        return cls(config.qbit_url, config.qbit_username, config.qbit_password)

    async def _login(self) -> None:
        response = await self._client.post(
            urljoin(self.url, _LOGIN_PATH),
            data={"username": self.username, "password": self._password},
        )
        response.raise_for_status()
        if response.text.strip() != "Ok.":
            raise AniplerDaemonError(f"qBittorrent login failed: {response.text.strip()}")
        self._logged_in = True

    async def _fetch_torrent_list(self) -> httpx.Response:
        return await self._client.get(
            urljoin(self.url, _TORRENTS_PATH), params={"tag": ANIPLER_TORRENT_TAG}
        )

    async def query_torrents(self, earliest_import_date: datetime) -> list[TorrentTaskInfo]:
        """Fetch every torrent tagged for the daemon that was added after the cut-off."""
        logger.debug("Querying qBittorrent API for torrents")
        if not self._logged_in:
            await self._login()
        response = await self._fetch_torrent_list()
        if response.status_code == httpx.codes.FORBIDDEN:
            self._logged_in = False
            await self._login()
            response = await self._fetch_torrent_list()
        response.raise_for_status()

        try:
            entries = response.json()
        except ValueError as exc:
            raise InvalidQBitApiResponse(f"torrent list is not valid JSON: {exc}") from exc
        if not isinstance(entries, list):
            raise InvalidQBitApiResponse("torrent list is not an array")
        return parse_torrents(entries, earliest_import_date)