from __future__ import annotations

import logging
from typing import Any, Dict, List, NamedTuple, Optional

from core.actions import DELETE_PROFILES, ActionsDeps, DeleteOptions, settle_strike
from core.utils import get_download_id
from integrations.services import ApiError


class JobError(Exception):
    pass


def actions_deps(manager: Any, logger: logging.Logger) -> ActionsDeps:
    return ActionsDeps(
        ledger=manager.strikes,
        policy=manager.policy,
        event_bus=manager.events,
        logger=logger,
        test_run=manager.test_run,
    )


class JobStats(NamedTuple):
    found: int = 0
    removed: int = 0


class Job:
    name = ''

    def __init__(self, enabled: bool = True, logger: Optional[logging.Logger] = None) -> None:
        self.enabled = enabled
        self.logger = logger or logging.getLogger(__name__)

    async def run(self) -> None:
        raise NotImplementedError


class StatsJob(Job):
    def __init__(self, enabled: bool = True, logger: Optional[logging.Logger] = None) -> None:
        super().__init__(enabled, logger)
        self.found = 0
        self.removed = 0

    def stats(self) -> JobStats:
        return JobStats(self.found, self.removed)

    def _reset_stats(self) -> None:
        self.found = 0
        self.removed = 0


class RemovalJob(StatsJob):
    """Strike-then-act template shared by the queue-based removal jobs.

    Subclasses implement `evaluate(instance, client, item)`; a truthy result
    adds a strike. `prepare` runs once per instance before its items.
    """

    def __init__(
        self,
        manager: Any,
        *,
        enabled: bool = True,
        max_strikes: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(enabled, logger)
        self.manager = manager
        self.max_strikes = max_strikes

    @property
    def delete_options(self) -> DeleteOptions:
        return DELETE_PROFILES.get(self.name, DeleteOptions())

    async def prepare(self, instance: str, client: Any) -> bool:
        return True

    async def evaluate(self, instance: str, client: Any, item: Dict[str, Any]) -> Optional[bool]:
        raise NotImplementedError

    async def run(self) -> None:
        self._reset_stats()
        queues, errors = await self.manager.get_all_queues()
        clients = self.manager.get_all_arr_clients()
        failed: List[str] = list(errors)
        deps = actions_deps(self.manager, self.logger)

        for instance, queue in queues.items():
            client = clients.get(instance)
            if client is None:
                continue
            try:
                if not await self.prepare(instance, client):
                    continue
            except ApiError as e:
                self.logger.error(f'Service {instance}: {self.name} setup failed: {e}')
                failed.append(instance)
                continue
            seen = set()
            for item in queue:
                download_id = get_download_id(item)
                if not download_id or download_id in seen:
                    continue
                seen.add(download_id)
                matched = await self.evaluate(instance, client, item)
                if not matched:
                    continue
                await self.strike(download_id, item, client, deps, instance=instance)

        if failed:
            raise JobError(f'{len(failed)} instance(s) failed: {", ".join(failed)}')

    async def strike(self, download_id: str, item: Dict[str, Any], client: Any, deps: ActionsDeps, *, instance: str) -> None:
        title = str(item.get('title') or '')
        self.found += 1
        count = deps.ledger.add(download_id, self.name, title)
        self.logger.info(f'Service {instance}: strike {count}/{self.max_strikes} for {title} ({self.name})')
        deps.event_bus.log('strike', job=self.name, service=instance, id=download_id, title=title, strikes=count)
        if not deps.ledger.has_exceeded(download_id, self.max_strikes):
            return

        async def _remove() -> None:
            await client.delete_queue_item(item['id'], self.delete_options)

        if await settle_strike(download_id, title, _remove, job_name=self.name, deps=deps):
            self.removed += 1
