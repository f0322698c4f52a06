from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from integrations.clients import (
    STATE_DOWNLOADING,
    STATE_ERROR,
    STATE_PAUSED,
    STATE_QUEUED,
    STATE_SEEDING,
    STATE_STALLED,
    DownloadClient,
    DownloadClientError,
    Torrent,
    TorrentProperties,
)
from integrations.services import ApiError, RequestManager


_STATE_MAP = {
    'downloading': STATE_DOWNLOADING,
    'metaDL': STATE_DOWNLOADING,
    'forcedDL': STATE_DOWNLOADING,
    'allocating': STATE_DOWNLOADING,
    'uploading': STATE_SEEDING,
    'stalledUP': STATE_SEEDING,
    'forcedUP': STATE_SEEDING,
    'pausedDL': STATE_PAUSED,
    'pausedUP': STATE_PAUSED,
    'stoppedDL': STATE_PAUSED,
    'stoppedUP': STATE_PAUSED,
    'stalledDL': STATE_STALLED,
    'error': STATE_ERROR,
    'missingFiles': STATE_ERROR,
}


def map_state(state: Optional[str]) -> str:
    return _STATE_MAP.get(state or '', STATE_QUEUED)


def parse_tags(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return [str(t).strip() for t in raw if str(t).strip()]
    return [t.strip() for t in str(raw or '').split(',') if t.strip()]


def to_torrent(info: Dict[str, Any]) -> Torrent:
    return Torrent(
        hash=str(info.get('hash') or ''),
        name=str(info.get('name') or ''),
        state=map_state(info.get('state')),
        progress=float(info.get('progress') or 0.0),
        size=int(info.get('size') or 0),
        downloaded=int(info.get('downloaded') or 0),
        ratio=float(info.get('ratio') or 0.0),
        seed_time=int(info.get('seeding_time') or 0),
        tags=parse_tags(info.get('tags')),
        category=str(info.get('category') or ''),
        added_on=int(info.get('added_on') or 0),
    )


class QBittorrentClient(DownloadClient):
    kind = 'qbittorrent'

    def __init__(
        self,
        session: aiohttp.ClientSession,
        requests: RequestManager,
        *,
        name: str,
        url: str,
        username: str = '',
        password: str = '',
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(name)
        self.session = session
        self.requests = requests
        self.base_url = url.rstrip('/')
        self.username = username
        self.password = password
        self.logger = logger or logging.getLogger(__name__)
        self._sid: Optional[str] = None
        self._logged_in = False

    async def login(self) -> None:
        login_url = self.base_url + '/api/v2/auth/login'
        form = aiohttp.FormData()
        form.add_field('username', self.username)
        form.add_field('password', self.password)
        try:
            async with self.session.post(
                login_url,
                data=form,
                headers={'Referer': self.base_url},
                timeout=aiohttp.ClientTimeout(total=self.requests.request_timeout),
            ) as resp:
                text = await resp.text()
                if resp.status != 200 or text.strip() != 'Ok.':
                    raise DownloadClientError(f'{self.name}: login failed (status {resp.status})', status=resp.status, url=login_url)
                sid = resp.cookies.get('SID')
                self._sid = sid.value if sid is not None else None
        except aiohttp.ClientError as e:
            raise DownloadClientError(f'{self.name}: login failed: {e}', url=login_url) from e
        self._logged_in = True
        self.logger.debug(f'Client {self.name}: logged in')

    async def _send(self, method: str, path: str, *, params=None, data=None):
        headers = {'Referer': self.base_url}
        if self._sid:
            headers['Cookie'] = f'SID={self._sid}'
        return await self.requests.throttled_request(
            self.session,
            self.name,
            f'{self.base_url}/api/v2/{path}',
            headers=headers,
            params=params,
            data=data,
            method=method,
        )

    async def _call(self, method: str, path: str, *, params=None, data=None):
        if not self._logged_in:
            await self.login()
        try:
            return await self._send(method, path, params=params, data=data)
        except ApiError as e:
            if e.status != 403:
                raise
        # Session expired
        self._logged_in = False
        await self.login()
        return await self._send(method, path, params=params, data=data)

    async def _info(self, hashes: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'hashes': hashes} if hashes else None
        data = await self._call('get', 'torrents/info', params=params)
        return data if isinstance(data, list) else []

    async def get_torrents(self) -> List[Torrent]:
        return [to_torrent(info) for info in await self._info()]

    async def get_torrent(self, torrent_id: str) -> Optional[Torrent]:
        infos = await self._info(torrent_id.lower())
        return to_torrent(infos[0]) if infos else None

    async def delete_torrent(self, torrent_id: str, delete_files: bool = False) -> None:
        await self._call(
            'post',
            'torrents/delete',
            data={'hashes': torrent_id.lower(), 'deleteFiles': 'true' if delete_files else 'false'},
        )

    async def add_tags(self, torrent_id: str, tags: List[str]) -> None:
        await self._call('post', 'torrents/addTags', data={'hashes': torrent_id.lower(), 'tags': ','.join(tags)})

    async def _properties(self, torrent_id: str) -> Dict[str, Any]:
        data = await self._call('get', 'torrents/properties', params={'hash': torrent_id.lower()})
        return data if isinstance(data, dict) else {}

    async def is_private_tracker(self, torrent_id: str) -> bool:
        props = await self._properties(torrent_id)
        if 'is_private' in props:
            return bool(props['is_private'])
        # Older releases only expose privacy through the DHT/PeX/LSD tracker rows
        trackers = await self._call('get', 'torrents/trackers', params={'hash': torrent_id.lower()})
        for tracker in (trackers if isinstance(trackers, list) else []):
            if 'private' in str(tracker.get('msg') or '').lower():
                return True
        return False

    async def get_torrent_properties(self, torrent_id: str) -> TorrentProperties:
        infos = await self._info(torrent_id.lower())
        if not infos:
            raise DownloadClientError(f'{self.name}: torrent {torrent_id} not found')
        info = infos[0]
        props = await self._properties(torrent_id)
        ratio_limit = _positive(info.get('max_ratio')) or _positive(info.get('ratio_limit'))
        # qBittorrent reports seeding limits in minutes
        seed_minutes = _positive(info.get('max_seeding_time')) or _positive(info.get('seeding_time_limit'))
        return TorrentProperties(
            is_private=bool(props.get('is_private', False)),
            ratio=float(info.get('ratio') or props.get('share_ratio') or 0.0),
            ratio_limit=float(ratio_limit),
            seed_time=int(props.get('seeding_time') or info.get('seeding_time') or 0),
            seeding_time_limit=int(seed_minutes * 60),
        )


def _positive(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    return v if v > 0 else 0.0
