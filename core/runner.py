from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.events import EventBus
from core.policy import RemovalPolicy
from core.utils import utcnow
from integrations.services import ApiError
from jobs.base import Job, JobStats, StatsJob
from storage.strikes import StrikeLedger, StrikeStoreError


STRIKE_MAX_AGE = timedelta(days=7)


class CycleError(Exception):
    def __init__(self, failed_jobs: List[str], errors: List[str]) -> None:
        super().__init__(f'{len(failed_jobs)} jobs failed: {", ".join(failed_jobs)}')
        self.failed_jobs = failed_jobs
        self.errors = errors


@dataclass
class CycleStats:
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: timedelta = timedelta(0)
    jobs_run: int = 0
    jobs_failed: int = 0
    job_stats: Dict[str, JobStats] = field(default_factory=dict)
    total_found: int = 0
    total_removed: int = 0
    strikes_added: int = 0
    strikes_reset: int = 0
    total_strikes: int = 0
    errors: List[str] = field(default_factory=list)


class Manager:
    """Runs the registered jobs once per cycle and owns the strike ledger.

    Jobs run strictly in registration order. A job that raises is recorded
    and the cycle moves on; the failure surfaces once, as a `CycleError`,
    after the ledger has been saved.
    """

    def __init__(
        self,
        config: Any,
        *,
        strikes_path: Optional[str] = None,
        events: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        test_run: bool = False,
        strikes: Optional[StrikeLedger] = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.events = events or EventBus()
        self.test_run = test_run
        self.strikes = strikes if strikes is not None else StrikeLedger(strikes_path, logger=self.logger)
        self.jobs: List[Job] = []
        self._arr_clients: Dict[str, Any] = {}
        self._download_clients: Dict[str, Any] = {}
        self.policy = RemovalPolicy(
            self._download_clients,
            private_tracker_handling=config.general('private_tracker_handling', 'remove'),
            public_tracker_handling=config.general('public_tracker_handling', 'remove'),
            protected_tag=config.general('protected_tag', ''),
            obsolete_tag=config.general('obsolete_tag', ''),
            logger=self.logger,
        )
        self.last_stats: Optional[CycleStats] = None

    def register_job(self, job: Job) -> None:
        self.jobs.append(job)
        self.logger.debug(f'Registered job {job.name} (enabled={job.enabled})')

    def register_arr_client(self, name: str, client: Any) -> None:
        self._arr_clients[name] = client

    def register_download_client(self, name: str, client: Any) -> None:
        self._download_clients[name] = client

    def get_all_arr_clients(self) -> Dict[str, Any]:
        return dict(self._arr_clients)

    def get_all_download_clients(self) -> Dict[str, Any]:
        return dict(self._download_clients)

    async def get_all_queues(self) -> Tuple[Dict[str, List[Dict[str, Any]]], Dict[str, str]]:
        queues: Dict[str, List[Dict[str, Any]]] = {}
        errors: Dict[str, str] = {}
        for name, client in self._arr_clients.items():
            try:
                queues[name] = await client.get_queue()
            except ApiError as e:
                self.logger.error(f'Service {name}: failed to get queue: {e}')
                errors[name] = str(e)
        return queues, errors

    async def run_all(self) -> CycleStats:
        stats = CycleStats(start_time=utcnow())
        failed_jobs: List[str] = []

        for job in self.jobs:
            if not job.enabled:
                continue
            stats.jobs_run += 1
            self.logger.debug(f'Job {job.name}: starting')
            try:
                await job.run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f'Job {job.name}: failed: {e}')
                self.events.log('job_failed', level=logging.ERROR, job=job.name, error=str(e))
                stats.errors.append(f'{job.name}: {e}')
                failed_jobs.append(job.name)
            if isinstance(job, StatsJob):
                js = job.stats()
                stats.job_stats[job.name] = js
                stats.total_found += js.found
                stats.total_removed += js.removed

        stats.jobs_failed = len(failed_jobs)
        stats.strikes_added, stats.strikes_reset = self.strikes.reset_cycle_counters()
        stats.total_strikes = self.strikes.count()
        stats.end_time = utcnow()
        stats.duration = stats.end_time - stats.start_time

        try:
            self.strikes.save()
        except StrikeStoreError as e:
            self.logger.error(f'Strikes: failed to save: {e}')
        removed = self.strikes.cleanup(STRIKE_MAX_AGE)
        if removed:
            self.logger.info(f'Strikes: removed {removed} record(s) older than {STRIKE_MAX_AGE.days} days')

        self.last_stats = stats
        self.log_summary(stats)
        if failed_jobs:
            raise CycleError(failed_jobs, stats.errors)
        return stats

    def log_summary(self, stats: CycleStats) -> None:
        self.events.log(
            'cycle_complete',
            cycle={
                'duration': f'{stats.duration.total_seconds():.2f}s',
                'jobs_run': stats.jobs_run,
                'jobs_failed': stats.jobs_failed,
            },
            totals={'found': stats.total_found, 'removed': stats.total_removed},
            strikes={
                'added': stats.strikes_added,
                'cleared': stats.strikes_reset,
                'tracked': stats.total_strikes,
            },
            jobs={
                name: {'found': js.found, 'removed': js.removed}
                for name, js in stats.job_stats.items()
                if js.found or js.removed
            },
        )
        if stats.errors:
            self.events.log('cycle_errors', level=logging.WARNING, errors=stats.errors)

    def close(self) -> None:
        try:
            self.strikes.save()
        except StrikeStoreError as e:
            self.logger.error(f'Strikes: failed to save on shutdown: {e}')


async def run_forever(
    manager: Manager,
    interval: float,
    stop: asyncio.Event,
    logger: Optional[logging.Logger] = None,
) -> None:
    log = logger or logging.getLogger(__name__)
    while not stop.is_set():
        try:
            await manager.run_all()
        except CycleError as e:
            log.error(f'Cycle finished with errors: {e}')
        except Exception as e:
            log.exception(f'Unhandled error in cycle: {e}')
        if stop.is_set():
            break
        log.info(f'Next run in {interval}s')
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
