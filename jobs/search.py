from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.utils import parse_timestamp, utcnow
from integrations.services import ApiError
from jobs.base import JobError, StatsJob


class SearchJob(StatsJob):
    """Fans out one task per arr instance; search commands share a semaphore.

    `found` counts candidates, `removed` counts search commands sent.
    """

    def __init__(
        self,
        manager: Any,
        *,
        enabled: bool = True,
        max_concurrent_searches: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(enabled, logger)
        self.manager = manager
        self.max_concurrent_searches = max(1, int(max_concurrent_searches or 1))

    async def run(self) -> None:
        self._reset_stats()
        clients = self.manager.get_all_arr_clients()
        if not clients:
            return
        sem = asyncio.Semaphore(self.max_concurrent_searches)
        names = list(clients.keys())
        results = await asyncio.gather(
            *(self.search_instance(name, clients[name], sem) for name in names),
            return_exceptions=True,
        )
        errors = []
        for name, res in zip(names, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, Exception):
                self.logger.error(f'Service {name}: {self.name} failed: {res}')
                errors.append(f'{name}: {res}')
        if errors:
            raise JobError('; '.join(errors))

    async def search_instance(self, instance: str, client: Any, sem: asyncio.Semaphore) -> None:
        raise NotImplementedError

    async def trigger(self, instance: str, sem: asyncio.Semaphore, description: str, search) -> None:
        if self.manager.test_run:
            self.logger.info(f'[TEST RUN] Service {instance}: would search {description}')
            self.manager.events.log('dry_search', job=self.name, service=instance, target=description)
            return
        async with sem:
            try:
                await search()
            except ApiError as e:
                self.logger.error(f'Service {instance}: search for {description} failed: {e}')
                return
        self.removed += 1
        self.logger.info(f'Service {instance}: searching {description}')
        self.manager.events.log('search', job=self.name, service=instance, target=description)

    async def app_name(self, client: Any) -> str:
        status = await client.get_system_status()
        return str(status.get('appName') or '')


def _searched_recently(record: Dict[str, Any], now: datetime, min_days: float) -> bool:
    if min_days <= 0:
        return False
    last = parse_timestamp(record.get('lastSearchTime'))
    return last is not None and now - last < timedelta(days=min_days)


class MissingSearchJob(SearchJob):
    name = 'search_missing'

    def __init__(self, manager: Any, *, min_days_between_searches: float = 7, clock=None, **kwargs) -> None:
        super().__init__(manager, **kwargs)
        self.min_days_between_searches = float(min_days_between_searches or 0)
        self._clock = clock or utcnow

    async def search_instance(self, instance: str, client: Any, sem: asyncio.Semaphore) -> None:
        app = await self.app_name(client)
        if app == 'Sonarr':
            await self._search_sonarr(instance, client, sem)
        elif app == 'Radarr':
            await self._search_radarr(instance, client, sem)
        else:
            self.logger.debug(f'Service {instance}: missing search not supported for {app!r}')

    async def _search_sonarr(self, instance: str, client: Any, sem: asyncio.Semaphore) -> None:
        now = self._clock()
        tasks = []
        for series in await client.get_series():
            if not series.get('monitored'):
                continue
            episode_ids = []
            for ep in await client.get_episodes(series['id']):
                if not ep.get('monitored') or ep.get('hasFile'):
                    continue
                aired = parse_timestamp(ep.get('airDateUtc'))
                if aired is None or aired > now:
                    continue
                if _searched_recently(ep, now, self.min_days_between_searches):
                    continue
                episode_ids.append(ep['id'])
            if not episode_ids:
                continue
            self.found += len(episode_ids)
            description = f'{len(episode_ids)} missing episode(s) of {series.get("title")}'
            tasks.append(self.trigger(instance, sem, description, _bind(client.search_episodes, episode_ids)))
        await asyncio.gather(*tasks)

    async def _search_radarr(self, instance: str, client: Any, sem: asyncio.Semaphore) -> None:
        now = self._clock()
        tasks = []
        for movie in await client.get_movies():
            if not movie.get('monitored') or movie.get('hasFile') or not movie.get('isAvailable'):
                continue
            if _searched_recently(movie, now, self.min_days_between_searches):
                continue
            self.found += 1
            tasks.append(self.trigger(instance, sem, f'missing movie {movie.get("title")}', _bind(client.search_movies, [movie['id']])))
        await asyncio.gather(*tasks)


class CutoffUnmetSearchJob(SearchJob):
    name = 'search_unmet_cutoff'

    async def search_instance(self, instance: str, client: Any, sem: asyncio.Semaphore) -> None:
        app = await self.app_name(client)
        if app not in ('Sonarr', 'Radarr'):
            self.logger.debug(f'Service {instance}: cutoff search not supported for {app!r}')
            return
        records = await client.get_cutoff_unmet()
        self.found += len(records)
        tasks = []
        if app == 'Sonarr':
            groups: Dict[Tuple[Any, Any], List[int]] = OrderedDict()
            for rec in records:
                key = (rec.get('seriesId'), rec.get('seasonNumber'))
                groups.setdefault(key, []).append(rec['id'])
            for (series_id, season), ids in groups.items():
                description = f'{len(ids)} cutoff-unmet episode(s) of series {series_id} season {season}'
                tasks.append(self.trigger(instance, sem, description, _bind(client.search_episodes, ids)))
        else:
            for rec in records:
                movie_id = rec.get('movieId') or rec.get('id')
                tasks.append(self.trigger(instance, sem, f'cutoff-unmet movie {rec.get("title")}', _bind(client.search_movies, [movie_id])))
        await asyncio.gather(*tasks)


def _bind(fn, ids):
    async def _call():
        await fn(ids)
    return _call
