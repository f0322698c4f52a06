from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from integrations.services import ApiError


STATE_DOWNLOADING = 'downloading'
STATE_SEEDING = 'seeding'
STATE_PAUSED = 'paused'
STATE_QUEUED = 'queued'
STATE_STALLED = 'stalled'
STATE_ERROR = 'error'


class DownloadClientError(ApiError):
    pass


@dataclass
class Torrent:
    hash: str
    name: str = ''
    state: str = STATE_QUEUED
    progress: float = 0.0
    size: int = 0
    downloaded: int = 0
    ratio: float = 0.0
    seed_time: int = 0
    tags: List[str] = field(default_factory=list)
    category: str = ''
    added_on: int = 0

    def has_tag(self, tag: str) -> bool:
        return bool(tag) and tag in self.tags


@dataclass
class TorrentProperties:
    is_private: bool = False
    ratio: float = 0.0
    ratio_limit: float = 0.0
    seed_time: int = 0
    seeding_time_limit: int = 0


class DownloadClient:
    """Capability surface every download-client adapter provides."""

    kind = ''

    def __init__(self, name: str) -> None:
        self.name = name

    async def get_torrents(self) -> List[Torrent]:
        raise NotImplementedError

    async def get_torrent(self, torrent_id: str) -> Optional[Torrent]:
        for torrent in await self.get_torrents():
            if torrent.hash.lower() == torrent_id.lower():
                return torrent
        return None

    async def delete_torrent(self, torrent_id: str, delete_files: bool = False) -> None:
        raise NotImplementedError

    async def add_tags(self, torrent_id: str, tags: List[str]) -> None:
        raise DownloadClientError(f'{self.name}: tags are not supported')

    async def is_private_tracker(self, torrent_id: str) -> bool:
        return False

    async def get_torrent_properties(self, torrent_id: str) -> TorrentProperties:
        raise DownloadClientError(f'{self.name}: torrent properties are not supported')
