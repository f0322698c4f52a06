from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from integrations.clients import (
    STATE_DOWNLOADING,
    STATE_PAUSED,
    STATE_QUEUED,
    DownloadClient,
    DownloadClientError,
    Torrent,
)
from integrations.services import RequestManager


_STATE_MAP = {
    'Paused': STATE_PAUSED,
    'Downloading': STATE_DOWNLOADING,
    'Fetching': STATE_DOWNLOADING,
    'Queued': STATE_QUEUED,
}


def slot_to_torrent(slot: Dict[str, Any]) -> Torrent:
    try:
        size_mb = float(slot.get('mb') or 0)
        left_mb = float(slot.get('mbleft') or 0)
        pct = float(slot.get('percentage') or 0)
    except (TypeError, ValueError):
        size_mb, left_mb, pct = 0.0, 0.0, 0.0
    size = int(size_mb * 1024 * 1024)
    return Torrent(
        hash=str(slot.get('nzo_id') or ''),
        name=str(slot.get('filename') or ''),
        state=_STATE_MAP.get(str(slot.get('status') or ''), STATE_QUEUED),
        progress=pct / 100.0,
        size=size,
        downloaded=size - int(left_mb * 1024 * 1024),
        category=str(slot.get('cat') or ''),
    )


class SabnzbdClient(DownloadClient):
    """Usenet queue exposed through the download-client surface; no tags, never private."""

    kind = 'sabnzbd'

    def __init__(
        self,
        session: aiohttp.ClientSession,
        requests: RequestManager,
        *,
        name: str,
        url: str,
        api_key: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(name)
        self.session = session
        self.requests = requests
        self.base_url = url.rstrip('/')
        self.api_key = api_key
        self.logger = logger or logging.getLogger(__name__)

    async def _api(self, params: Dict[str, Any]):
        full = {'apikey': self.api_key, 'output': 'json', **params}
        return await self.requests.throttled_request(self.session, self.name, self.base_url + '/api', params=full)

    async def get_torrents(self) -> List[Torrent]:
        data = await self._api({'mode': 'queue'})
        if not isinstance(data, dict):
            raise DownloadClientError(f'{self.name}: unexpected queue payload')
        if data.get('error'):
            raise DownloadClientError(f'{self.name}: {data["error"]}')
        queue = data.get('queue') or {}
        return [slot_to_torrent(s) for s in (queue.get('slots') or [])]

    async def delete_torrent(self, torrent_id: str, delete_files: bool = False) -> None:
        params = {'mode': 'queue', 'name': 'delete', 'value': torrent_id}
        if delete_files:
            params['del_files'] = 1
        data = await self._api(params)
        if isinstance(data, dict) and data.get('status') is False:
            raise DownloadClientError(f'{self.name}: delete of {torrent_id} rejected')
