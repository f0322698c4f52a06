from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import aiohttp


class ApiError(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class RequestManager:
    """Shared request core for every collaborator.

    Holds the retry and throttling settings; vendor clients keep a reference
    to one instance and call `throttled_request` with their service name.
    """

    def __init__(
        self,
        *,
        request_timeout: float = 30,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        verify_ssl: bool = True,
    ) -> None:
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self.verify_ssl = verify_ssl
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        *,
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        data: Any = None,
        method: str = 'get',
        expect_json: bool = True,
    ):
        # Rate limit by elapsed time between calls
        if self.min_interval_ms and self.min_interval_ms > 0:
            loop = asyncio.get_running_loop()
            last = self._service_last_request_at.get(service_name, 0.0)
            wait = (last + (self.min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = loop.time()

        kwargs = dict(
            api_key=api_key,
            headers=headers,
            params=params,
            json_data=json_data,
            data=data,
            method=method,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            expect_json=expect_json,
            ssl=self.verify_ssl,
        )
        # Limit concurrency per service
        if self.max_concurrent and self.max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(self.max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, **kwargs)
        return await make_api_request(session, url, **kwargs)


def _backoff(retry_backoff: float, attempt: int) -> float:
    return retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    *,
    api_key: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_data: Any = None,
    data: Any = None,
    method: str = 'get',
    request_timeout: float = 30,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    expect_json: bool = True,
    ssl: bool = True,
):
    """Perform one HTTP call with retries on 5xx/429 and network errors.

    Returns the decoded JSON body, the response text when `expect_json` is
    false, or `{'status': code}` for empty bodies. Raises `ApiError` once the
    retries are exhausted or on any other non-2xx status.
    """
    all_headers = dict(headers or {})
    if api_key:
        all_headers['X-Api-Key'] = api_key
    attempts = 0
    while True:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(
                method, url, headers=all_headers, params=params, json=json_data, data=data, timeout=timeout, ssl=ssl
            ) as response:
                response.raise_for_status()
                if not expect_json:
                    return await response.text()
                content_type = response.headers.get('Content-Type', '')
                if response.status != 204 and 'application/json' in content_type:
                    try:
                        return await response.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        pass
                logging.debug(f'HTTP {method.upper()} {url} -> {response.status} (no content)')
                return {'status': response.status}
        except aiohttp.ClientResponseError as e:
            if e.status and (500 <= e.status < 600 or e.status == 429) and attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            raise ApiError(f'HTTP {method.upper()} {url} failed with status {e.status}: {e.message}', status=e.status, url=url) from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            raise ApiError(f'HTTP {method.upper()} {url} network/timeout after {attempts} retries: {e}', url=url) from e
