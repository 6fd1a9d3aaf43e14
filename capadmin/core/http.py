from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx

from capadmin.core.errors import UpstreamError

_TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class CircuitState:
    failures: int = 0
    open_until: float = 0.0


class ResilientHTTPClient:
    def __init__(
        self,
        timeout: float = 10.0,
        retries: int = 2,
        backoff_base: float = 0.4,
        breaker_threshold: int = 4,
        breaker_cooldown: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self.breaker_threshold = breaker_threshold
        self.breaker_cooldown = breaker_cooldown
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._state: dict[str, CircuitState] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def _is_open(self, host: str) -> bool:
        state = self._state.setdefault(host, CircuitState())
        return state.open_until > time.time()

    def _record_failure(self, host: str) -> None:
        state = self._state.setdefault(host, CircuitState())
        state.failures += 1
        if state.failures >= self.breaker_threshold:
            state.open_until = time.time() + self.breaker_cooldown

    def _record_success(self, host: str) -> None:
        self._state[host] = CircuitState()

    async def _request_json(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> Any:
        host = httpx.URL(url).host or "unknown"
        if self._is_open(host):
            raise UpstreamError(f"Circuit open for {host}")

        max_retries = self.retries if retries is None else retries
        last_error: UpstreamError | None = None
        for attempt in range(max_retries + 1):
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    headers=headers,
                    json=json,
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.TimeoutException as exc:
                last_error = UpstreamError(f"{method} {url} timed out: {exc}")
            except httpx.HTTPError as exc:
                last_error = UpstreamError(f"{method} {url} failed: {exc}")
            else:
                if response.status_code in _TRANSIENT_STATUSES:
                    last_error = UpstreamError(
                        f"{method} {url} failed with HTTP {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                elif response.is_error:
                    # 4xx: no retry
                    self._record_success(host)
                    raise UpstreamError(
                        f"{method} {url} failed with HTTP {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                else:
                    self._record_success(host)
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise UpstreamError(
                            f"Failed to parse JSON response from {url}",
                            status_code=response.status_code,
                            body=response.text,
                        ) from exc

            self._record_failure(host)
            if attempt >= max_retries:
                break
            await asyncio.sleep(self.backoff_base * (2**attempt))

        raise last_error or UpstreamError(f"Failed to fetch {url}")

    async def get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        retries: int | None = None,
    ) -> Any:
        return await self._request_json("GET", url, params=params, headers=headers, timeout=timeout, retries=retries)

    async def post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None, retries: int | None = None
    ) -> Any:
        return await self._request_json("POST", url, headers=headers, json=payload, retries=retries)

    async def patch_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None, retries: int | None = None
    ) -> Any:
        return await self._request_json("PATCH", url, headers=headers, json=payload, retries=retries)
