from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_CONFIG_PATHS = ('config.yaml', 'config.yml', '/app/config.yaml')
STRIKES_FILE_NAME = 'strikes.json'

ARR_KINDS = ('sonarr', 'radarr', 'lidarr', 'readarr', 'whisparr')
DOWNLOAD_CLIENT_KINDS = ('qbittorrent', 'sabnzbd')
TRACKER_MODES = ('remove', 'skip', 'obsolete_tag')

GENERAL_DEFAULTS: Dict[str, Any] = {
    'log_level': 'info',
    'structured_logs': False,
    'test_run': False,
    'timer': 300,
    'request_timeout': 30,
    'retry_attempts': 2,
    'retry_backoff': 1.0,
    'min_request_interval_ms': 0,
    'max_concurrent_requests': 0,
    'ssl_verification': True,
    'private_tracker_handling': 'remove',
    'public_tracker_handling': 'remove',
    'obsolete_tag': '',
    'protected_tag': '',
    'data_dir': './data',
}

JOB_DEFAULTS: Dict[str, Any] = {
    'max_strikes': 3,
    'min_download_speed': 100,
}

SEARCH_DEFAULTS: Dict[str, Any] = {
    'min_days_between_searches': 7,
    'max_concurrent_searches': 3,
}


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def get_env_var(key: str, default: Any = None, cast_to=str) -> Any:
    value = os.environ.get(key)
    if value is None or value == '':
        return default
    return cast_to(value)


def find_config_path() -> Optional[str]:
    explicit = get_env_var('DECLUTARR_CONFIG')
    if explicit:
        return explicit
    for path in DEFAULT_CONFIG_PATHS:
        if os.path.exists(path):
            return path
    return None


def load_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f'{path}: top-level YAML value must be a mapping')
    return data


def apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)
    general = dict(out.get('general') or {})
    overrides = {
        'log_level': get_env_var('LOG_LEVEL'),
        'test_run': get_env_var('TEST_RUN', cast_to=_truthy),
        'structured_logs': get_env_var('STRUCTURED_LOGS', cast_to=_truthy),
        'timer': get_env_var('TIMER'),
        'data_dir': get_env_var('DATA_DIR'),
        'strike_file_path': get_env_var('STRIKE_FILE_PATH'),
    }
    for key, value in overrides.items():
        if value is not None:
            general[key] = value
    out['general'] = general
    return out


def sanitize_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = dict(GENERAL_DEFAULTS)
    gen.update(out.get('general') if isinstance(out.get('general'), dict) else {})
    gen['test_run'] = _truthy(gen.get('test_run'))
    gen['structured_logs'] = _truthy(gen.get('structured_logs'))
    gen['ssl_verification'] = _truthy(gen.get('ssl_verification'))
    gen['timer'] = max(1, _nz(gen.get('timer'), float, GENERAL_DEFAULTS['timer']))
    gen['request_timeout'] = max(1, _nz(gen.get('request_timeout'), float, GENERAL_DEFAULTS['request_timeout']))
    gen['retry_attempts'] = max(0, _nz(gen.get('retry_attempts'), int, GENERAL_DEFAULTS['retry_attempts']))
    gen['retry_backoff'] = max(0, _nz(gen.get('retry_backoff'), float, GENERAL_DEFAULTS['retry_backoff']))
    gen['min_request_interval_ms'] = max(0, _nz(gen.get('min_request_interval_ms'), float, 0))
    gen['max_concurrent_requests'] = max(0, _nz(gen.get('max_concurrent_requests'), int, 0))
    for key in ('private_tracker_handling', 'public_tracker_handling', 'log_level'):
        gen[key] = str(gen.get(key) or GENERAL_DEFAULTS[key]).strip().lower()
    for key in ('obsolete_tag', 'protected_tag'):
        gen[key] = str(gen.get(key) or '').strip()
    out['general'] = gen

    jd = dict(JOB_DEFAULTS)
    jd.update(out.get('job_defaults') if isinstance(out.get('job_defaults'), dict) else {})
    jd['max_strikes'] = max(1, _nz(jd.get('max_strikes'), int, JOB_DEFAULTS['max_strikes']))
    jd['min_download_speed'] = max(0, _nz(jd.get('min_download_speed'), float, JOB_DEFAULTS['min_download_speed']))
    out['job_defaults'] = jd

    jobs = {}
    raw_jobs = out.get('jobs') if isinstance(out.get('jobs'), dict) else {}
    for name, jcfg in raw_jobs.items():
        jcfg = dict(jcfg) if isinstance(jcfg, dict) else {'enabled': jcfg}
        jcfg['enabled'] = _truthy(jcfg.get('enabled', False))
        if 'max_strikes' in jcfg:
            jcfg['max_strikes'] = max(1, _nz(jcfg['max_strikes'], int, jd['max_strikes']))
        if 'min_download_speed' in jcfg:
            jcfg['min_download_speed'] = max(0, _nz(jcfg['min_download_speed'], float, jd['min_download_speed']))
        for key in ('message_patterns', 'target_tags', 'target_categories'):
            if key in jcfg and not isinstance(jcfg[key], list):
                jcfg[key] = [] if jcfg[key] is None else [str(jcfg[key])]
        jobs[str(name)] = jcfg
    out['jobs'] = jobs
    return out


def validate_config(cfg: Dict[str, Any], logger: Optional[logging.Logger] = None) -> List[str]:
    log = logger or logging.getLogger(__name__)
    problems = []
    gen = cfg.get('general') or {}
    for key in ('private_tracker_handling', 'public_tracker_handling'):
        if gen.get(key) not in TRACKER_MODES:
            problems.append(f'general.{key}={gen.get(key)!r} is not one of {", ".join(TRACKER_MODES)}; remove will be used.')
        elif gen.get(key) == 'obsolete_tag' and not gen.get('obsolete_tag'):
            problems.append(f'general.{key} is obsolete_tag but general.obsolete_tag is empty; tagging will fail.')
    accessor = ConfigAccessor(cfg)
    for inst in accessor.instances():
        if not inst.get('url') or not inst.get('api_key'):
            problems.append(f"Instance {inst.get('name')} ({inst.get('kind')}) is missing url or api_key; it will be skipped.")
    for dc in accessor.download_clients():
        if not dc.get('url'):
            problems.append(f"Download client {dc.get('name')} ({dc.get('kind')}) is missing url; it will be skipped.")
    for p in problems:
        log.warning(p)
    return problems


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        if key in gen:
            return gen[key]
        if default is not None:
            return default
        return GENERAL_DEFAULTS.get(key)

    def job_defaults(self, key: str) -> Any:
        jd = self.cfg.get('job_defaults') if isinstance(self.cfg.get('job_defaults'), dict) else {}
        return jd.get(key, JOB_DEFAULTS.get(key))

    def job(self, name: str) -> Dict[str, Any]:
        jobs = self.cfg.get('jobs') if isinstance(self.cfg.get('jobs'), dict) else {}
        jcfg = jobs.get(name)
        return jcfg if isinstance(jcfg, dict) else {}

    def job_enabled(self, name: str) -> bool:
        return bool(self.job(name).get('enabled', False))

    def max_strikes(self, name: str) -> int:
        return int(self.job(name).get('max_strikes') or self.job_defaults('max_strikes'))

    def min_download_speed(self, name: str) -> float:
        jcfg = self.job(name)
        if 'min_download_speed' in jcfg:
            return float(jcfg['min_download_speed'])
        return float(self.job_defaults('min_download_speed'))

    def job_setting(self, name: str, key: str, default: Any = None) -> Any:
        jcfg = self.job(name)
        if key in jcfg:
            return jcfg[key]
        return SEARCH_DEFAULTS.get(key, default)

    def strikes_path(self) -> str:
        explicit = self.general('strike_file_path')
        if explicit:
            return str(explicit)
        return os.path.join(str(self.general('data_dir') or './data'), STRIKES_FILE_NAME)

    def instances(self) -> List[Dict[str, Any]]:
        section = self.cfg.get('instances') if isinstance(self.cfg.get('instances'), dict) else {}
        out = []
        for kind in ARR_KINDS:
            for idx, inst in enumerate(section.get(kind) or []):
                if not isinstance(inst, dict) or not _truthy(inst.get('enabled', True)):
                    continue
                name = str(inst.get('name') or f'{kind}-{idx + 1}')
                api_key = inst.get('api_key') or get_env_var(f'{_env_name(name)}_API_KEY')
                out.append({'kind': kind, 'name': name, 'url': inst.get('url'), 'api_key': api_key})
        return out

    def download_clients(self) -> List[Dict[str, Any]]:
        section = self.cfg.get('download_clients') if isinstance(self.cfg.get('download_clients'), dict) else {}
        out = []
        for kind in DOWNLOAD_CLIENT_KINDS:
            for idx, dc in enumerate(section.get(kind) or []):
                if not isinstance(dc, dict) or not _truthy(dc.get('enabled', True)):
                    continue
                entry = dict(dc)
                entry['kind'] = kind
                entry['name'] = str(dc.get('name') or f'{kind}-{idx + 1}')
                out.append(entry)
        return out


def _env_name(name: str) -> str:
    return ''.join(c if c.isalnum() else '_' for c in name).upper()


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    raw = load_yaml(path if path is not None else find_config_path())
    return sanitize_config(apply_env_overrides(raw))
