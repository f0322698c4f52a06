from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from core.actions import settle_strike
from core.rules import (
    bad_file_reason,
    download_speed,
    has_metadata_issue,
    has_missing_files,
    is_failed_download,
    is_failed_import,
    is_stalled,
    matches_seeding_targets,
    seeding_goal_met,
)
from core.utils import get_download_id, get_library_id, utcnow
from integrations.clients import STATE_PAUSED, STATE_SEEDING
from integrations.services import ApiError
from jobs.base import JobError, RemovalJob, StatsJob, actions_deps


ENTITY_TYPES = {
    'Sonarr': ('series', 'seriesId'),
    'Radarr': ('movie', 'movieId'),
    'Lidarr': ('artist', 'artistId'),
    'Readarr': ('author', 'authorId'),
}


class StalledJob(RemovalJob):
    name = 'remove_stalled'

    async def evaluate(self, instance, client, item):
        return is_stalled(item)


class SlowJob(RemovalJob):
    """Strikes downloads averaging below `min_download_speed` KB/s.

    A download back at or above the threshold loses its strikes right away.
    """

    name = 'remove_slow'

    def __init__(self, manager, *, min_download_speed: float = 100, clock=None, **kwargs) -> None:
        super().__init__(manager, **kwargs)
        self.min_download_speed = min_download_speed
        self._clock = clock or utcnow

    async def run(self) -> None:
        if self.min_download_speed <= 0:
            self._reset_stats()
            self.logger.debug(f'Job {self.name}: min_download_speed not set; skipping')
            return
        await super().run()

    async def evaluate(self, instance, client, item):
        speed = download_speed(item, self._clock())
        if speed is None:
            return False
        threshold = self.min_download_speed * 1024
        if speed < threshold:
            self.logger.debug(f'Service {instance}: {item.get("title")} at {speed / 1024:.1f} KB/s')
            return True
        download_id = get_download_id(item)
        if self.manager.strikes.get(download_id) > 0:
            self.logger.info(f'Service {instance}: {item.get("title")} recovered to {speed / 1024:.1f} KB/s; clearing strikes')
            self.manager.strikes.reset(download_id)
        return False


class FailedImportJob(RemovalJob):
    name = 'remove_failed_imports'

    def __init__(self, manager, *, message_patterns: Optional[List[str]] = None, **kwargs) -> None:
        super().__init__(manager, **kwargs)
        self.message_patterns = list(message_patterns or [])

    async def evaluate(self, instance, client, item):
        return is_failed_import(item, self.message_patterns)


class FailedDownloadJob(RemovalJob):
    name = 'remove_failed_downloads'

    async def evaluate(self, instance, client, item):
        return is_failed_download(item)


class MissingFilesJob(RemovalJob):
    name = 'remove_missing_files'

    async def evaluate(self, instance, client, item):
        return has_missing_files(item)


class BadFilesJob(RemovalJob):
    name = 'remove_bad_files'

    async def evaluate(self, instance, client, item):
        reason = bad_file_reason(item)
        if reason is None:
            return False
        self.logger.debug(f'Service {instance}: bad file {item.get("title")}: {reason}')
        return True


class MetadataMissingJob(RemovalJob):
    name = 'remove_metadata_failed'

    async def evaluate(self, instance, client, item):
        return has_metadata_issue(item)


class UnmonitoredJob(RemovalJob):
    name = 'remove_unmonitored'

    def __init__(self, manager, **kwargs) -> None:
        super().__init__(manager, **kwargs)
        self._entities: Dict[str, Tuple[str, str]] = {}

    async def prepare(self, instance, client) -> bool:
        status = await client.get_system_status()
        app = str(status.get('appName') or '')
        entity = ENTITY_TYPES.get(app)
        if entity is None:
            self.logger.warning(f'Service {instance}: unsupported application {app!r}; skipping unmonitored check')
            return False
        self._entities[instance] = entity
        return True

    async def evaluate(self, instance, client, item):
        entity_type, id_field = self._entities[instance]
        entity_id = get_library_id(item, id_field)
        if entity_id <= 0:
            return False
        try:
            monitored = await client.get_monitored_status(entity_type, entity_id)
        except ApiError as e:
            self.logger.error(f'Service {instance}: cannot read monitored state of {entity_type} {entity_id}: {e}')
            return False
        return not monitored


class OrphansJob(StatsJob):
    """Strikes download-client items that no arr queue references."""

    name = 'remove_orphans'

    def __init__(
        self,
        manager: Any,
        *,
        enabled: bool = True,
        max_strikes: int = 3,
        target_categories: Optional[List[str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(enabled, logger)
        self.manager = manager
        self.max_strikes = max_strikes
        self.target_categories = list(target_categories or [])

    async def run(self) -> None:
        self._reset_stats()
        queues, errors = await self.manager.get_all_queues()
        if errors:
            # A missing queue would make every one of its downloads look orphaned
            raise JobError(f'queue snapshot incomplete ({", ".join(errors)}); not checking orphans')
        tracked = set()
        for queue in queues.values():
            for item in queue:
                if item.get('downloadId'):
                    tracked.add(str(item['downloadId']).lower())
        self.logger.debug(f'Job {self.name}: {len(tracked)} tracked download(s)')

        clients = self.manager.get_all_download_clients()
        if not clients:
            self.logger.warning(f'Job {self.name}: no download clients registered; skipping orphan check')
            return

        deps = actions_deps(self.manager, self.logger)
        failed = []
        for client_name, client in clients.items():
            try:
                torrents = await client.get_torrents()
            except ApiError as e:
                self.logger.error(f'Client {client_name}: failed to list downloads: {e}')
                failed.append(client_name)
                continue
            for torrent in torrents:
                if not torrent.hash or torrent.hash.lower() in tracked:
                    continue
                if self.target_categories and torrent.category not in self.target_categories:
                    continue
                self.found += 1
                count = deps.ledger.add(torrent.hash, self.name, torrent.name)
                self.logger.info(f'Client {client_name}: orphan strike {count}/{self.max_strikes} for {torrent.name}')
                if not deps.ledger.has_exceeded(torrent.hash, self.max_strikes):
                    continue

                async def _remove(client=client, torrent_hash=torrent.hash) -> None:
                    await client.delete_torrent(torrent_hash, delete_files=False)

                if await settle_strike(torrent.hash, torrent.name, _remove, job_name=self.name, deps=deps):
                    self.removed += 1
        if failed:
            raise JobError(f'{len(failed)} download client(s) failed: {", ".join(failed)}')


class DoneSeedingJob(StatsJob):
    """Removes completed torrents whose ratio or seeding-time goal is met."""

    name = 'remove_done_seeding'

    def __init__(
        self,
        manager: Any,
        *,
        enabled: bool = True,
        target_tags: Optional[List[str]] = None,
        target_categories: Optional[List[str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(enabled, logger)
        self.manager = manager
        self.target_tags = list(target_tags or [])
        self.target_categories = list(target_categories or [])

    async def run(self) -> None:
        self._reset_stats()
        failed = []
        for client_name, client in self.manager.get_all_download_clients().items():
            if client.kind != 'qbittorrent':
                continue
            try:
                torrents = await client.get_torrents()
            except ApiError as e:
                self.logger.error(f'Client {client_name}: failed to list torrents: {e}')
                failed.append(client_name)
                continue
            for torrent in torrents:
                if not matches_seeding_targets(torrent.tags, torrent.category, self.target_tags, self.target_categories):
                    continue
                if torrent.progress < 1.0 or torrent.state not in (STATE_PAUSED, STATE_SEEDING):
                    continue
                try:
                    props = await client.get_torrent_properties(torrent.hash)
                except ApiError as e:
                    self.logger.warning(f'Client {client_name}: no properties for {torrent.name}: {e}')
                    continue
                if not seeding_goal_met(props.ratio, props.ratio_limit, props.seed_time, props.seeding_time_limit):
                    continue
                self.found += 1
                if self.manager.test_run:
                    self.logger.info(f'[TEST RUN] Job {self.name}: would remove {torrent.name} (ratio {props.ratio:.2f})')
                    self.manager.events.log('dry_remove', job=self.name, id=torrent.hash, title=torrent.name)
                    self.removed += 1
                    continue
                try:
                    await client.delete_torrent(torrent.hash, delete_files=False)
                except ApiError as e:
                    self.logger.error(f'Client {client_name}: failed to remove {torrent.name}: {e}')
                    continue
                self.removed += 1
                self.logger.info(f'Job {self.name}: removed {torrent.name} (ratio {props.ratio:.2f}, seeded {props.seed_time}s)')
                self.manager.events.log('remove', job=self.name, id=torrent.hash, title=torrent.name)
        if failed:
            raise JobError(f'{len(failed)} download client(s) failed: {", ".join(failed)}')
