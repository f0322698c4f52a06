import asyncio
import logging
import signal
from typing import Any, Dict, Optional

import aiohttp

from core.config import ConfigAccessor, find_config_path, load_config, validate_config
from core.events import EVENT_LOGGER_NAME, EventBus
from core.runner import CycleError, Manager, run_forever
from integrations.arr import ArrClient
from integrations.clients.qbittorrent import QBittorrentClient
from integrations.clients.sabnzbd import SabnzbdClient
from integrations.services import RequestManager
from jobs.removal import (
    BadFilesJob,
    DoneSeedingJob,
    FailedDownloadJob,
    FailedImportJob,
    MetadataMissingJob,
    MissingFilesJob,
    OrphansJob,
    SlowJob,
    StalledJob,
    UnmonitoredJob,
)
from jobs.search import CutoffUnmetSearchJob, MissingSearchJob


LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'


def setup_logging(level_name: str, structured_logs: bool) -> logging.Logger:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        format=LOG_FORMAT,
        level=level,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    # Dedicated non-propagating logger for structured event logs to avoid duplicates
    event_log = logging.getLogger(EVENT_LOGGER_NAME)
    event_log.setLevel(level)
    event_log.propagate = False
    for h in list(event_log.handlers):
        event_log.removeHandler(h)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(message)s' if structured_logs else LOG_FORMAT))
    event_log.addHandler(handler)
    return event_log


def build_request_manager(config: ConfigAccessor) -> RequestManager:
    return RequestManager(
        request_timeout=config.general('request_timeout'),
        retry_attempts=config.general('retry_attempts'),
        retry_backoff=config.general('retry_backoff'),
        min_interval_ms=config.general('min_request_interval_ms'),
        max_concurrent=config.general('max_concurrent_requests'),
        verify_ssl=config.general('ssl_verification'),
    )


def register_clients(manager: Manager, session: aiohttp.ClientSession, requests: RequestManager, config: ConfigAccessor) -> None:
    for inst in config.instances():
        if not inst.get('url') or not inst.get('api_key'):
            continue
        manager.register_arr_client(
            inst['name'],
            ArrClient(session, requests, name=inst['name'], kind=inst['kind'], url=inst['url'], api_key=inst['api_key']),
        )
        logging.info(f"Registered {inst['kind']} instance {inst['name']}")
    for dc in config.download_clients():
        if not dc.get('url'):
            continue
        if dc['kind'] == 'qbittorrent':
            client = QBittorrentClient(
                session, requests, name=dc['name'], url=dc['url'],
                username=dc.get('username') or '', password=dc.get('password') or '',
            )
        else:
            client = SabnzbdClient(session, requests, name=dc['name'], url=dc['url'], api_key=dc.get('api_key') or '')
        manager.register_download_client(dc['name'], client)
        logging.info(f"Registered {dc['kind']} download client {dc['name']}")


def register_jobs(manager: Manager, config: ConfigAccessor) -> None:
    def strike_kwargs(name: str) -> Dict[str, Any]:
        return {'enabled': config.job_enabled(name), 'max_strikes': config.max_strikes(name)}

    manager.register_job(StalledJob(manager, **strike_kwargs('remove_stalled')))
    manager.register_job(FailedImportJob(
        manager,
        message_patterns=config.job_setting('remove_failed_imports', 'message_patterns', []),
        **strike_kwargs('remove_failed_imports'),
    ))
    manager.register_job(FailedDownloadJob(manager, **strike_kwargs('remove_failed_downloads')))
    manager.register_job(OrphansJob(
        manager,
        target_categories=config.job_setting('remove_orphans', 'target_categories', []),
        **strike_kwargs('remove_orphans'),
    ))
    manager.register_job(MissingFilesJob(manager, **strike_kwargs('remove_missing_files')))
    manager.register_job(UnmonitoredJob(manager, **strike_kwargs('remove_unmonitored')))
    manager.register_job(SlowJob(
        manager,
        min_download_speed=config.min_download_speed('remove_slow'),
        **strike_kwargs('remove_slow'),
    ))
    manager.register_job(BadFilesJob(manager, **strike_kwargs('remove_bad_files')))
    manager.register_job(MetadataMissingJob(manager, **strike_kwargs('remove_metadata_failed')))
    manager.register_job(DoneSeedingJob(
        manager,
        enabled=config.job_enabled('remove_done_seeding'),
        target_tags=config.job_setting('remove_done_seeding', 'target_tags', []),
        target_categories=config.job_setting('remove_done_seeding', 'target_categories', []),
    ))
    manager.register_job(MissingSearchJob(
        manager,
        enabled=config.job_enabled('search_missing'),
        min_days_between_searches=config.job_setting('search_missing', 'min_days_between_searches'),
        max_concurrent_searches=config.job_setting('search_missing', 'max_concurrent_searches'),
    ))
    manager.register_job(CutoffUnmetSearchJob(
        manager,
        enabled=config.job_enabled('search_unmet_cutoff'),
        max_concurrent_searches=config.job_setting('search_unmet_cutoff', 'max_concurrent_searches'),
    ))


def build_manager(config: ConfigAccessor, event_log: Optional[logging.Logger] = None) -> Manager:
    events = EventBus(structured_logs=bool(config.general('structured_logs')), logger=event_log)
    manager = Manager(
        config,
        strikes_path=config.strikes_path(),
        events=events,
        logger=logging.getLogger('arr_declutter'),
        test_run=bool(config.general('test_run')),
    )
    register_jobs(manager, config)
    return manager


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logging.debug(f'Signal handler for {sig} not supported on this platform')


async def main(once: bool = False, config_path: Optional[str] = None) -> None:
    path = config_path or find_config_path()
    config = ConfigAccessor(load_config(path))
    event_log = setup_logging(config.general('log_level'), bool(config.general('structured_logs')))
    logging.info(f"Using configuration {path or '(defaults)'}")
    validate_config(config.cfg)
    if config.general('test_run'):
        logging.warning('running in TEST MODE: nothing will be removed, tagged or searched')

    requests = build_request_manager(config)
    async with aiohttp.ClientSession() as session:
        manager = build_manager(config, event_log)
        register_clients(manager, session, requests, config)
        try:
            if once:
                try:
                    await manager.run_all()
                except CycleError as e:
                    logging.error(f'Cycle finished with errors: {e}')
                return
            stop = asyncio.Event()
            _install_signal_handlers(stop)
            await run_forever(manager, config.general('timer'), stop)
            logging.info('Shutting down')
        finally:
            manager.close()


if __name__ == '__main__':
    asyncio.run(main())
