import asyncio
import importlib
import json
from datetime import datetime, timedelta, timezone

import pytest

from core.config import ConfigAccessor, sanitize_config
from integrations.services import ApiError
from jobs.base import Job, StatsJob


pytestmark = pytest.mark.asyncio


class RecordingJob(StatsJob):
    def __init__(self, name, calls, *, enabled=True, fail=False, found=0, removed=0, manager=None):
        super().__init__(enabled)
        self.name = name
        self.calls = calls
        self.fail = fail
        self._found = found
        self._removed = removed
        self.manager = manager

    async def run(self):
        self.calls.append(self.name)
        self.found, self.removed = self._found, self._removed
        if self.manager is not None:
            self.manager.strikes.add(f'{self.name}-item', self.name)
        if self.fail:
            raise RuntimeError('collaborator unreachable')


class PlainJob(Job):
    name = 'plain'

    def __init__(self, calls):
        super().__init__(True)
        self.calls = calls

    async def run(self):
        self.calls.append(self.name)


class FakeEvents:
    def __init__(self):
        self.events = []

    def log(self, event, level=None, **fields):
        self.events.append((event, fields))


class FakeArr:
    def __init__(self, queue=None, fail=False):
        self.queue = queue or []
        self.fail = fail

    async def get_queue(self):
        if self.fail:
            raise ApiError('connection refused')
        return list(self.queue)


def _manager(tmp_path=None, **general):
    runner = importlib.import_module('core.runner')
    config = ConfigAccessor(sanitize_config({'general': general}))
    path = str(tmp_path / 'strikes.json') if tmp_path is not None else None
    return runner.Manager(config, strikes_path=path, events=FakeEvents())


async def test_jobs_run_in_registration_order_and_disabled_are_skipped():
    manager = _manager()
    calls = []
    manager.register_job(RecordingJob('b', calls))
    manager.register_job(RecordingJob('a', calls, enabled=False))
    manager.register_job(PlainJob(calls))
    manager.register_job(RecordingJob('c', calls))
    stats = await manager.run_all()
    assert calls == ['b', 'plain', 'c']
    assert stats.jobs_run == 3
    assert set(stats.job_stats) == {'b', 'c'}


async def test_failing_job_does_not_stop_the_cycle():
    runner = importlib.import_module('core.runner')
    manager = _manager()
    calls = []
    manager.register_job(RecordingJob('first', calls, fail=True, found=2))
    manager.register_job(RecordingJob('second', calls, found=1, removed=1))
    manager.register_job(RecordingJob('third', calls, fail=True))
    with pytest.raises(runner.CycleError) as exc:
        await manager.run_all()
    assert calls == ['first', 'second', 'third']
    assert exc.value.failed_jobs == ['first', 'third']
    assert 'first' in str(exc.value) and 'third' in str(exc.value)
    stats = manager.last_stats
    assert stats.jobs_failed == 2
    assert stats.errors == ['first: collaborator unreachable', 'third: collaborator unreachable']
    assert (stats.total_found, stats.total_removed) == (3, 1)


async def test_cycle_samples_strike_counters_once_and_saves(tmp_path):
    manager = _manager(tmp_path)
    calls = []
    manager.register_job(RecordingJob('one', calls, manager=manager))
    manager.register_job(RecordingJob('two', calls, manager=manager))
    stats = await manager.run_all()
    assert (stats.strikes_added, stats.strikes_reset, stats.total_strikes) == (2, 0, 2)
    assert manager.strikes.reset_cycle_counters() == (0, 0)
    saved = json.loads((tmp_path / 'strikes.json').read_text())
    assert set(saved) == {'one-item', 'two-item'}


async def test_cycle_summary_is_logged_with_nonzero_jobs():
    manager = _manager()
    calls = []
    manager.register_job(RecordingJob('busy', calls, found=4, removed=1))
    manager.register_job(RecordingJob('idle', calls))
    await manager.run_all()
    events = dict(manager.events.events)
    summary = events['cycle_complete']
    assert summary['cycle']['jobs_run'] == 2
    assert summary['totals'] == {'found': 4, 'removed': 1}
    assert summary['jobs'] == {'busy': {'found': 4, 'removed': 1}}
    assert 'cycle_errors' not in events


async def test_save_failure_is_logged_not_raised(tmp_path, monkeypatch):
    strikes = importlib.import_module('storage.strikes')
    manager = _manager(tmp_path)
    manager.register_job(RecordingJob('one', [], manager=manager))

    def broken_save():
        raise strikes.StrikeStoreError('read-only filesystem')

    monkeypatch.setattr(manager.strikes, 'save', broken_save)
    stats = await manager.run_all()
    assert stats.jobs_failed == 0


async def test_get_all_queues_returns_partial_results_and_errors():
    manager = _manager()
    manager.register_arr_client('sonarr', FakeArr([{'id': 1}]))
    manager.register_arr_client('radarr', FakeArr(fail=True))
    queues, errors = await manager.get_all_queues()
    assert queues == {'sonarr': [{'id': 1}]}
    assert list(errors) == ['radarr']


async def test_client_registries_are_copies():
    manager = _manager()
    manager.register_arr_client('sonarr', FakeArr())
    manager.get_all_arr_clients().clear()
    manager.get_all_download_clients()['x'] = object()
    assert list(manager.get_all_arr_clients()) == ['sonarr']
    assert manager.get_all_download_clients() == {}


async def test_close_saves_strikes(tmp_path):
    manager = _manager(tmp_path)
    manager.strikes.add('abc', 'remove_stalled', 'Title')
    manager.close()
    assert 'abc' in json.loads((tmp_path / 'strikes.json').read_text())


async def test_run_forever_logs_cycle_errors_and_stops():
    runner = importlib.import_module('core.runner')
    stop = asyncio.Event()

    class FlakyManager:
        def __init__(self):
            self.cycles = 0

        async def run_all(self):
            self.cycles += 1
            if self.cycles == 1:
                raise runner.CycleError(['remove_stalled'], ['remove_stalled: boom'])
            stop.set()

    manager = FlakyManager()
    await asyncio.wait_for(runner.run_forever(manager, 0.01, stop), timeout=5)
    assert manager.cycles == 2


async def test_cycle_drops_strikes_older_than_a_week():
    runner = importlib.import_module('core.runner')
    strikes = importlib.import_module('storage.strikes')
    now = {'t': datetime(2024, 1, 1, tzinfo=timezone.utc)}
    ledger = strikes.StrikeLedger(clock=lambda: now['t'])
    ledger.add('old', 'remove_stalled', 'Old')
    now['t'] += timedelta(days=6)
    ledger.add('recent', 'remove_stalled', 'Recent')
    now['t'] += timedelta(days=2)

    config = ConfigAccessor(sanitize_config({}))
    manager = runner.Manager(config, events=FakeEvents(), strikes=ledger)
    stats = await manager.run_all()
    assert ledger.get('old') == 0
    assert ledger.get('recent') == 1
    assert stats.total_strikes == 2


async def test_undecodable_strike_file_does_not_block_startup(tmp_path):
    path = tmp_path / 'strikes.json'
    path.write_bytes(b'\x80\x81\x82')
    manager = _manager(tmp_path)
    assert manager.strikes.count() == 0
    await manager.run_all()
    assert json.loads(path.read_text(encoding='utf-8')) == {}
