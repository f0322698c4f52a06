from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from integrations.services import ApiError, RequestManager


API_VERSIONS = {
    'sonarr': 'v3',
    'radarr': 'v3',
    'whisparr': 'v3',
    'lidarr': 'v1',
    'readarr': 'v1',
}

# Queue items without a library match are only listed when asked for
UNKNOWN_ITEMS_PARAM = {
    'sonarr': 'includeUnknownSeriesItems',
    'whisparr': 'includeUnknownSeriesItems',
    'radarr': 'includeUnknownMovieItems',
    'lidarr': 'includeUnknownArtistItems',
    'readarr': 'includeUnknownAuthorItems',
}


class ArrClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        requests: RequestManager,
        *,
        name: str,
        kind: str,
        url: str,
        api_key: str,
        page_size: int = 200,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.requests = requests
        self.name = name
        self.kind = kind.lower()
        self.api_version = API_VERSIONS.get(self.kind, 'v3')
        self.base_url = url.rstrip('/')
        self.api_key = api_key
        self.page_size = page_size
        self.logger = logger or logging.getLogger(__name__)

    def _url(self, path: str) -> str:
        return f'{self.base_url}/api/{self.api_version}/{path.lstrip("/")}'

    async def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, json_data: Any = None):
        return await self.requests.throttled_request(
            self.session,
            self.name,
            self._url(path),
            api_key=self.api_key,
            params=params,
            json_data=json_data,
            method=method,
        )

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None):
        return await self._request('get', path, params=params)

    async def post(self, path: str, json_data: Any = None):
        return await self._request('post', path, json_data=json_data)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None):
        return await self._request('delete', path, params=params)

    async def get_queue(self) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        page = 1
        while True:
            params = {'page': page, 'pageSize': self.page_size}
            unknown = UNKNOWN_ITEMS_PARAM.get(self.kind)
            if unknown:
                params[unknown] = 'true'
            data = await self.get('queue', params=params)
            if not isinstance(data, dict):
                raise ApiError(f'{self.name}: unexpected queue payload', url=self._url('queue'))
            batch = data.get('records') or []
            records.extend(batch)
            total = int(data.get('totalRecords') or 0)
            if not batch or len(records) >= total:
                return records
            page += 1

    async def delete_queue_item(self, queue_id: Any, options) -> None:
        params = {
            'removeFromClient': _flag(options.remove_from_client),
            'blocklist': _flag(options.blocklist),
            'skipRedownload': _flag(options.skip_redownload),
        }
        await self.delete(f'queue/{queue_id}', params=params)

    async def get_system_status(self) -> Dict[str, Any]:
        data = await self.get('system/status')
        return data if isinstance(data, dict) else {}

    async def get_monitored_status(self, entity_type: str, entity_id: int) -> bool:
        data = await self.get(f'{entity_type}/{entity_id}')
        if not isinstance(data, dict):
            raise ApiError(f'{self.name}: unexpected {entity_type} payload', url=self._url(f'{entity_type}/{entity_id}'))
        return bool(data.get('monitored'))

    # Search helpers
    async def get_series(self) -> List[Dict[str, Any]]:
        data = await self.get('series')
        return data if isinstance(data, list) else []

    async def get_episodes(self, series_id: int) -> List[Dict[str, Any]]:
        data = await self.get('episode', params={'seriesId': series_id})
        return data if isinstance(data, list) else []

    async def get_movies(self) -> List[Dict[str, Any]]:
        data = await self.get('movie')
        return data if isinstance(data, list) else []

    async def get_cutoff_unmet(self, page_size: int = 1000) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self.get('wanted/cutoff', params={'page': page, 'pageSize': page_size})
            if not isinstance(data, dict):
                return records
            batch = data.get('records') or []
            records.extend(batch)
            total = int(data.get('totalRecords') or 0)
            if not batch or len(records) >= total:
                return records
            page += 1

    async def search_episodes(self, episode_ids: List[int]) -> None:
        await self.post('command', json_data={'name': 'EpisodeSearch', 'episodeIds': list(episode_ids)})

    async def search_movies(self, movie_ids: List[int]) -> None:
        await self.post('command', json_data={'name': 'MoviesSearch', 'movieIds': list(movie_ids)})


def _flag(value: bool) -> str:
    return 'true' if value else 'false'
