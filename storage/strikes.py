from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from core.utils import format_timestamp, parse_timestamp, utcnow


class StrikeStoreError(Exception):
    pass


@dataclass
class StrikeRecord:
    count: int
    first_seen: datetime
    last_seen: datetime
    job: str = ''
    name: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'first_seen': format_timestamp(self.first_seen),
            'last_seen': format_timestamp(self.last_seen),
            'job': self.job,
            'name': self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StrikeRecord':
        first_seen = parse_timestamp(data.get('first_seen'))
        last_seen = parse_timestamp(data.get('last_seen'))
        if first_seen is None or last_seen is None:
            raise ValueError(f'invalid timestamps in strike record: {data}')
        return cls(
            count=int(data['count']),
            first_seen=first_seen,
            last_seen=last_seen,
            job=str(data.get('job') or ''),
            name=str(data.get('name') or ''),
        )


class StrikeLedger:
    """Per-download strike counts shared by every removal job.

    A record exists only while its count is positive. The map and the two
    per-cycle counters are guarded by one lock so the ledger can be used from
    worker threads as well as asyncio tasks.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.path = path
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._records: Dict[str, StrikeRecord] = {}
        self._strikes_added = 0
        self._strikes_reset = 0
        try:
            self.load()
        except StrikeStoreError as e:
            self.logger.warning(f'Strikes: failed to load {self.path}: {e}; starting empty')

    def add(self, download_id: str, job: str, name: str = '') -> int:
        now = self._clock()
        with self._lock:
            record = self._records.get(download_id)
            if record is None:
                record = StrikeRecord(count=0, first_seen=now, last_seen=now)
                self._records[download_id] = record
            record.count += 1
            record.last_seen = now
            record.job = job
            if name:
                record.name = name
            self._strikes_added += 1
            return record.count

    def get(self, download_id: str) -> int:
        with self._lock:
            record = self._records.get(download_id)
            return record.count if record is not None else 0

    def has_exceeded(self, download_id: str, max_strikes: int) -> bool:
        return self.get(download_id) >= max_strikes

    def reset(self, download_id: str) -> None:
        with self._lock:
            if self._records.pop(download_id, None) is not None:
                self._strikes_reset += 1

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def cleanup(self, max_age: timedelta) -> int:
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [k for k, r in self._records.items() if r.last_seen < cutoff]
            for k in stale:
                del self._records[k]
        if stale:
            self.logger.debug(f'Strikes: cleaned up {len(stale)} stale record(s)')
        return len(stale)

    def reset_cycle_counters(self) -> Tuple[int, int]:
        with self._lock:
            added, reset = self._strikes_added, self._strikes_reset
            self._strikes_added = 0
            self._strikes_reset = 0
            return added, reset

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def get_record(self, download_id: str) -> Optional[StrikeRecord]:
        with self._lock:
            record = self._records.get(download_id)
            return replace(record) if record is not None else None

    def get_all_records(self) -> Dict[str, StrikeRecord]:
        with self._lock:
            return {k: replace(r) for k, r in self._records.items()}

    def save(self) -> None:
        if not self.path:
            return
        with self._lock:
            data = {k: r.to_dict() for k, r in self._records.items()}
            directory = os.path.dirname(self.path)
            try:
                if directory:
                    os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StrikeStoreError(f'cannot create directory {directory}: {e}') from e
            tmp_path = self.path + '.tmp'
            try:
                with open(tmp_path, 'w', encoding='utf-8') as file:
                    json.dump(data, file, indent=2)
            except (OSError, TypeError) as e:
                _remove_quietly(tmp_path)
                raise StrikeStoreError(f'cannot write {tmp_path}: {e}') from e
            try:
                os.replace(tmp_path, self.path)
            except OSError as e:
                _remove_quietly(tmp_path)
                raise StrikeStoreError(f'cannot replace {self.path}: {e}') from e

    def load(self) -> None:
        if not self.path:
            return
        try:
            with open(self.path, 'rb') as file:
                raw = file.read()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StrikeStoreError(f'cannot read {self.path}: {e}') from e

        try:
            text = raw.decode('utf-8')
            data = json.loads(text) if text.strip() else {}
            if not isinstance(data, dict):
                raise ValueError('top-level value is not an object')
            records = {str(k): StrikeRecord.from_dict(v) for k, v in data.items()}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.logger.warning(f'Strikes: {self.path} is invalid ({e}). Starting with an empty strike list.')
            records = {}
        with self._lock:
            self._records = {k: r for k, r in records.items() if r.count > 0}


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.getLogger(__name__).debug(f'Strikes: could not remove {path}: {e}')
