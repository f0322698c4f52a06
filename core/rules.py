from __future__ import annotations

import fnmatch
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.utils import (
    get_downloaded_bytes,
    has_library_reference,
    parse_timestamp,
    status_messages,
    status_titles,
)


SLOW_MIN_ELAPSED_SECONDS = 60

STALLED_TITLES = {'Download stalled', 'No files found', 'Sample'}

IMPORT_FAILURE_TITLES = {
    'Import failed',
    'No files found are eligible for import',
    'Not a valid video file',
    'Not an upgrade for existing file',
    'Sample',
}

DOWNLOAD_FAILURE_TITLES = {
    'Download client unavailable',
    'No files found are eligible for import',
    'Unable to determine if file is a sample',
}

MISSING_FILES_PHRASES = (
    'no files found',
    'missing files',
    'files are missing',
    "download folder doesn't contain",
)

BAD_FILE_KEYWORDS = (
    'sample',
    'corrupt',
    'wrong format',
    'invalid',
    'damaged',
    'incomplete',
    'verification failed',
    'crc mismatch',
    'checksum',
)

METADATA_KEYWORDS = (
    'unable to parse',
    'unknown series',
    'unknown movie',
    'unknown artist',
    'unknown author',
    'not found in library',
    'no match found',
    'parsing failed',
    'cannot identify',
    'metadata error',
    'series not found',
    'movie not found',
)


def _lower(value: Any) -> str:
    return str(value or '').lower()


def _contains_any(text: str, words: Iterable[str]) -> bool:
    return any(w in text for w in words)


def is_stalled(item: Dict[str, Any]) -> bool:
    if item.get('trackedDownloadState') == 'importPending':
        return True
    if item.get('trackedDownloadStatus') == 'warning':
        if any(t in STALLED_TITLES for t in status_titles(item)):
            return True
    return _lower(item.get('status')) in ('warning', 'stalled')


def download_speed(item: Dict[str, Any], now: datetime) -> Optional[float]:
    """Average bytes per second since the item was added.

    None when the item is not downloading or has been added less than a
    minute ago.
    """
    if _lower(item.get('status')) != 'downloading':
        return None
    added = parse_timestamp(item.get('added'))
    if added is None:
        return None
    elapsed = (now - added).total_seconds()
    if elapsed < SLOW_MIN_ELAPSED_SECONDS:
        return None
    downloaded = get_downloaded_bytes(item)
    if downloaded is None:
        return None
    return downloaded / elapsed


def matches_message_patterns(item: Dict[str, Any], patterns: List[str]) -> bool:
    if not patterns:
        return True
    texts = status_titles(item) + status_messages(item)
    if item.get('errorMessage'):
        texts.append(str(item['errorMessage']))
    lowered = [t.lower() for t in texts]
    for pattern in patterns:
        p = str(pattern).lower()
        for text in lowered:
            # Whole-message glob, so plain patterns need an exact match
            if text == p or fnmatch.fnmatchcase(text, p):
                return True
    return False


def is_failed_import(item: Dict[str, Any], patterns: Optional[List[str]] = None) -> bool:
    matched = False
    if item.get('trackedDownloadState') == 'importFailed':
        matched = True
    if not matched:
        for title in status_titles(item):
            low = title.lower()
            if 'import' in low and _contains_any(low, ('failed', 'error', 'unable')):
                matched = True
                break
            if title in IMPORT_FAILURE_TITLES:
                matched = True
                break
    if not matched:
        em = _lower(item.get('errorMessage'))
        matched = 'import' in em and 'failed' in em
    return matched and matches_message_patterns(item, patterns or [])


def is_failed_download(item: Dict[str, Any]) -> bool:
    if item.get('trackedDownloadStatus') in ('error', 'warning') and item.get('trackedDownloadState') != 'importFailed':
        return True
    for title in status_titles(item):
        low = title.lower()
        if 'download' in low and _contains_any(low, ('failed', 'error', 'missing', 'corrupt')):
            return True
        if title in DOWNLOAD_FAILURE_TITLES:
            return True
    em = _lower(item.get('errorMessage'))
    return 'download' in em and 'failed' in em


def has_missing_files(item: Dict[str, Any]) -> bool:
    for msg in status_messages(item):
        if _contains_any(msg.lower(), MISSING_FILES_PHRASES):
            return True
    for title in status_titles(item):
        if 'no files found' in title.lower():
            return True
    em = _lower(item.get('errorMessage'))
    return 'no files found' in em or 'missing files' in em


def bad_file_reason(item: Dict[str, Any]) -> Optional[str]:
    for msg in (item.get('statusMessages') or []):
        if not isinstance(msg, dict):
            continue
        title = str(msg.get('title') or '')
        if _contains_any(title.lower(), BAD_FILE_KEYWORDS):
            return title
        for text in (msg.get('messages') or []):
            if _contains_any(str(text).lower(), BAD_FILE_KEYWORDS):
                return f'{title}: {text}'
    em = str(item.get('errorMessage') or '')
    if _contains_any(em.lower(), BAD_FILE_KEYWORDS):
        return em
    return None


def has_metadata_issue(item: Dict[str, Any]) -> bool:
    if has_library_reference(item):
        return False
    if item.get('trackedDownloadStatus') not in ('warning', 'error'):
        return False
    texts = status_titles(item) + status_messages(item) + [str(item.get('errorMessage') or '')]
    return any(_contains_any(t.lower(), METADATA_KEYWORDS) for t in texts)


def matches_seeding_targets(tags: List[str], category: str, target_tags: List[str], target_categories: List[str]) -> bool:
    if not target_tags and not target_categories:
        return True
    if category and category in target_categories:
        return True
    return any(t in target_tags for t in tags)


def seeding_goal_met(ratio: float, ratio_limit: float, seed_time: int, seeding_time_limit: int) -> bool:
    if ratio_limit > 0 and ratio >= ratio_limit:
        return True
    return seeding_time_limit > 0 and seed_time >= seeding_time_limit
