from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from core.policy import ACTION_SKIP, ACTION_TAG, PolicyError
from integrations.services import ApiError


@dataclass(frozen=True)
class DeleteOptions:
    remove_from_client: bool = True
    blocklist: bool = False
    skip_redownload: bool = False


DELETE_PROFILES: Dict[str, DeleteOptions] = {
    'remove_stalled': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=True),
    'remove_slow': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=False),
    'remove_failed_downloads': DeleteOptions(remove_from_client=True, blocklist=True, skip_redownload=True),
    'remove_failed_imports': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=True),
    'remove_missing_files': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=True),
    'remove_bad_files': DeleteOptions(remove_from_client=True, blocklist=True, skip_redownload=False),
    'remove_metadata_failed': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=True),
    'remove_unmonitored': DeleteOptions(remove_from_client=True, blocklist=False, skip_redownload=True),
}


@dataclass
class ActionsDeps:
    ledger: Any  # StrikeLedger
    policy: Any  # RemovalPolicy
    event_bus: Any  # expects .log(event, **fields)
    logger: logging.Logger
    test_run: bool


async def settle_strike(
    download_id: str,
    title: str,
    remove: Callable[[], Awaitable[None]],
    *,
    job_name: str,
    deps: ActionsDeps,
) -> bool:
    """Act on an item whose strikes reached the limit.

    Returns True when the item counts as removed for this run. Strikes are
    only reset after a real delete or tag succeeded.
    """
    log = deps.logger
    action = await deps.policy.resolve(download_id)

    if action == ACTION_SKIP:
        log.info(f'Job {job_name}: skipping {title} ({download_id}), protected by tracker policy')
        deps.event_bus.log('skip', job=job_name, id=download_id, title=title)
        return False

    if action == ACTION_TAG:
        if deps.test_run:
            log.info(f'[TEST RUN] Job {job_name}: would tag {title} ({download_id}) as obsolete')
            deps.event_bus.log('dry_tag', job=job_name, id=download_id, title=title)
            return True
        try:
            await deps.policy.apply_obsolete_tag(download_id)
        except (PolicyError, ApiError) as e:
            log.error(f'Job {job_name}: failed to tag {title} ({download_id}): {e}')
            return False
        deps.ledger.reset(download_id)
        log.info(f'Job {job_name}: tagged {title} ({download_id}) as obsolete')
        deps.event_bus.log('tag', job=job_name, id=download_id, title=title)
        return True

    if deps.test_run:
        log.info(f'[TEST RUN] Job {job_name}: would remove {title} ({download_id})')
        deps.event_bus.log('dry_remove', job=job_name, id=download_id, title=title)
        return True
    try:
        await remove()
    except ApiError as e:
        log.error(f'Job {job_name}: failed to remove {title} ({download_id}): {e}')
        return False
    deps.ledger.reset(download_id)
    log.info(f'Job {job_name}: removed {title} ({download_id})')
    deps.event_bus.log('remove', job=job_name, id=download_id, title=title)
    return True
