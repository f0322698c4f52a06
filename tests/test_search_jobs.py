import asyncio
import importlib
from datetime import datetime, timezone

import pytest

from core.config import ConfigAccessor, sanitize_config
from integrations.services import ApiError


pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeEvents:
    def __init__(self):
        self.events = []

    def log(self, event, level=None, **fields):
        self.events.append((event, fields))


class SearchArr:
    def __init__(self, app, series=None, episodes=None, movies=None, cutoff=None, fail_search=False, delay=0):
        self.app = app
        self.series = series or []
        self.episodes = episodes or {}
        self.movies = movies or []
        self.cutoff = cutoff or []
        self.fail_search = fail_search
        self.delay = delay
        self.episode_searches = []
        self.movie_searches = []
        self.active = 0
        self.peak = 0

    async def get_system_status(self):
        return {'appName': self.app}

    async def get_series(self):
        return self.series

    async def get_episodes(self, series_id):
        return self.episodes.get(series_id, [])

    async def get_movies(self):
        return self.movies

    async def get_cutoff_unmet(self):
        return self.cutoff

    async def _search(self, target, ids):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_search:
                raise ApiError('command rejected', status=500)
            target.append(list(ids))
        finally:
            self.active -= 1

    async def search_episodes(self, ids):
        await self._search(self.episode_searches, ids)

    async def search_movies(self, ids):
        await self._search(self.movie_searches, ids)


def _manager(test_run=False):
    runner = importlib.import_module('core.runner')
    config = ConfigAccessor(sanitize_config({}))
    return runner.Manager(config, events=FakeEvents(), test_run=test_run)


def _episode(ep_id, aired='2024-05-01T00:00:00Z', **kw):
    ep = {'id': ep_id, 'monitored': True, 'hasFile': False, 'airDateUtc': aired}
    ep.update(kw)
    return ep


async def test_missing_search_sonarr_filters_episodes():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr(
        'Sonarr',
        series=[
            {'id': 1, 'title': 'Show', 'monitored': True},
            {'id': 2, 'title': 'Ignored', 'monitored': False},
        ],
        episodes={
            1: [
                _episode(10),
                _episode(11, hasFile=True),
                _episode(12, monitored=False),
                _episode(13, aired='2025-01-01T00:00:00Z'),
                _episode(14, aired=None),
                _episode(15, lastSearchTime='2024-05-30T00:00:00Z'),
                _episode(16, lastSearchTime='2024-05-01T00:00:00Z'),
            ],
            2: [_episode(20)],
        },
    )
    manager.register_arr_client('sonarr', arr)
    job = search.MissingSearchJob(manager, min_days_between_searches=7, clock=lambda: NOW)
    await job.run()
    assert arr.episode_searches == [[10, 16]]
    assert job.stats() == (2, 1)
    assert ('search', {'job': 'search_missing', 'service': 'sonarr',
                       'target': '2 missing episode(s) of Show'}) in manager.events.events


async def test_missing_search_radarr_requires_available_movies():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Radarr', movies=[
        {'id': 1, 'title': 'A', 'monitored': True, 'hasFile': False, 'isAvailable': True},
        {'id': 2, 'title': 'B', 'monitored': True, 'hasFile': False, 'isAvailable': False},
        {'id': 3, 'title': 'C', 'monitored': True, 'hasFile': True, 'isAvailable': True},
        {'id': 4, 'title': 'D', 'monitored': True, 'hasFile': False, 'isAvailable': True,
         'lastSearchTime': '2024-05-31T00:00:00Z'},
    ])
    manager.register_arr_client('radarr', arr)
    job = search.MissingSearchJob(manager, clock=lambda: NOW)
    await job.run()
    assert arr.movie_searches == [[1]]


async def test_zero_min_days_searches_again():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Radarr', movies=[
        {'id': 4, 'title': 'D', 'monitored': True, 'hasFile': False, 'isAvailable': True,
         'lastSearchTime': '2024-06-01T11:00:00Z'},
    ])
    manager.register_arr_client('radarr', arr)
    await search.MissingSearchJob(manager, min_days_between_searches=0, clock=lambda: NOW).run()
    assert arr.movie_searches == [[4]]


async def test_cutoff_unmet_groups_sonarr_by_season():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Sonarr', cutoff=[
        {'id': 1, 'seriesId': 5, 'seasonNumber': 1},
        {'id': 2, 'seriesId': 5, 'seasonNumber': 1},
        {'id': 3, 'seriesId': 5, 'seasonNumber': 2},
        {'id': 4, 'seriesId': 6, 'seasonNumber': 1},
    ])
    manager.register_arr_client('sonarr', arr)
    job = search.CutoffUnmetSearchJob(manager)
    await job.run()
    assert sorted(arr.episode_searches) == [[1, 2], [3], [4]]
    assert job.stats() == (4, 3)


async def test_cutoff_unmet_radarr_uses_movie_id():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Radarr', cutoff=[{'id': 9, 'movieId': 90, 'title': 'M'}, {'id': 8, 'title': 'N'}])
    manager.register_arr_client('radarr', arr)
    await search.CutoffUnmetSearchJob(manager).run()
    assert sorted(arr.movie_searches) == [[8], [90]]


async def test_unsupported_apps_are_ignored():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Lidarr', cutoff=[{'id': 1}])
    manager.register_arr_client('lidarr', arr)
    job = search.CutoffUnmetSearchJob(manager)
    await job.run()
    assert job.stats() == (0, 0)


async def test_test_run_never_sends_commands():
    search = importlib.import_module('jobs.search')
    manager = _manager(test_run=True)
    arr = SearchArr('Radarr', cutoff=[{'id': 1, 'movieId': 10, 'title': 'M'}])
    manager.register_arr_client('radarr', arr)
    job = search.CutoffUnmetSearchJob(manager)
    await job.run()
    assert arr.movie_searches == []
    assert job.stats() == (1, 0)
    assert [e for e, _ in manager.events.events] == ['dry_search']


async def test_concurrent_searches_are_bounded():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Radarr', cutoff=[{'id': i, 'title': str(i)} for i in range(1, 9)], delay=0.01)
    manager.register_arr_client('radarr', arr)
    job = search.CutoffUnmetSearchJob(manager, max_concurrent_searches=2)
    await job.run()
    assert len(arr.movie_searches) == 8
    assert arr.peak <= 2


async def test_failed_search_command_is_not_counted():
    search = importlib.import_module('jobs.search')
    manager = _manager()
    arr = SearchArr('Radarr', cutoff=[{'id': 1, 'title': 'M'}], fail_search=True)
    manager.register_arr_client('radarr', arr)
    job = search.CutoffUnmetSearchJob(manager)
    await job.run()
    assert job.stats() == (1, 0)


async def test_instance_failure_raises_job_error():
    search = importlib.import_module('jobs.search')
    base = importlib.import_module('jobs.base')

    class BrokenArr(SearchArr):
        async def get_system_status(self):
            raise ApiError('unreachable')

    manager = _manager()
    good = SearchArr('Radarr', cutoff=[{'id': 1, 'title': 'M'}])
    manager.register_arr_client('broken', BrokenArr('Sonarr'))
    manager.register_arr_client('radarr', good)
    with pytest.raises(base.JobError, match='broken'):
        await search.CutoffUnmetSearchJob(manager).run()
    assert good.movie_searches == [[1]]
