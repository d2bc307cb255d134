"""Records describing torrents tracked on the seedbox and artifacts on the relay."""

from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass
from typing import Any, Mapping


class TorrentStatus(enum.Enum):
    """Download state of a torrent on the seedbox."""

    DOWNLOADING = "downloading"
    SEEDING = "seeding"


@dataclass
class TorrentTaskInfo:
    """A torrent managed by the daemon."""

    hash: str
    status: TorrentStatus
    content_path: str
    name: str

    def __str__(self) -> str:
        return f"({self.hash}:{json.dumps(self.name, ensure_ascii=False)})"


@dataclass
class ArtifactInfo:
    """A finished download stored on the relay, ready to be pulled."""

    hash: str
    name: str
    path: str

    def to_dict(self) -> dict[str, str]:
        """Return the JSON-ready form of this artifact."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArtifactInfo:
        """Build an artifact from its JSON form, rejecting missing or mistyped fields."""
        if not isinstance(data, Mapping):
            raise ValueError("artifact must be an object")
        values = {}
        for field in ("hash", "name", "path"):
            if field not in data:
                raise ValueError(f"missing field `{field}`")
            value = data[field]
            if not isinstance(value, str):
                raise ValueError(f"field `{field}` must be a string")
            values[field] = value
        return cls(**values)