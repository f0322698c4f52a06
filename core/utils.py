from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


_FRACTION = re.compile(r'\.(\d+)')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    # Accepts '2024-01-01T10:00:00Z' and nanosecond fractions written by other tools
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def get_download_id(item: Dict[str, Any]) -> str:
    return str(item.get('downloadId') or item.get('downloadID') or '')


def get_downloaded_bytes(item: Dict[str, Any]) -> Optional[int]:
    size = item.get('size')
    sizeleft = item.get('sizeleft') if item.get('sizeleft') is not None else item.get('sizeLeft')
    try:
        if size is not None and sizeleft is not None:
            return int(size) - int(sizeleft)
    except (TypeError, ValueError):
        return None
    return None


def status_titles(item: Dict[str, Any]) -> List[str]:
    out = []
    for msg in (item.get('statusMessages') or []):
        if isinstance(msg, dict) and msg.get('title'):
            out.append(str(msg['title']))
    return out


def status_messages(item: Dict[str, Any]) -> List[str]:
    out = []
    for msg in (item.get('statusMessages') or []):
        if not isinstance(msg, dict):
            continue
        for text in (msg.get('messages') or []):
            if text:
                out.append(str(text))
    return out


def get_library_id(item: Dict[str, Any], key: str) -> int:
    try:
        return int(item.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def has_library_reference(item: Dict[str, Any]) -> bool:
    return any(get_library_id(item, k) > 0 for k in ('seriesId', 'movieId', 'artistId', 'authorId'))
