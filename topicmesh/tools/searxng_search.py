"""Thin async client for a SearXNG instance.

One call, one outbound request. Failures are mapped onto the typed search
errors; retries and circuit breaking live in ``services.reliability``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from topicmesh.services.env_safety import sanitize_tls_environment
from topicmesh.services.errors import (
    ConfigurationError,
    InvalidQueryError,
    NetworkError,
    ParsingError,
    RateLimitError,
    SearchConnectionError,
    SearchTimeoutError,
    ServerError,
)
from topicmesh.services.logger import log_search_call

VALID_SAFESEARCH = (0, 1, 2)
VALID_TIME_RANGES = ("day", "week", "month", "year")


@dataclass(slots=True)
class SearchOptions:
    engines: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    language: str = "en"
    page: int = 1
    time_range: str | None = None
    safesearch: int = 1

    def to_params(self, query: str) -> dict[str, Any]:
        params: dict[str, Any] = {
            "q": query,
            "format": "json",
            "language": self.language,
            "safesearch": self.safesearch,
            "pageno": self.page,
        }
        if self.time_range:
            params["time_range"] = self.time_range
        if self.categories:
            params["categories"] = ",".join(self.categories)
        if self.engines:
            params["engines"] = ",".join(self.engines)
        return params

    def cache_options(self) -> dict[str, Any]:
        return {
            "engines": sorted(self.engines),
            "categories": sorted(self.categories),
            "language": self.language,
            "page": self.page,
            "time_range": self.time_range,
            "safesearch": self.safesearch,
        }


@dataclass(slots=True)
class SearxResponse:
    query: str
    results: list[dict[str, Any]]
    suggestions: list[str] = field(default_factory=list)
    total_results: int = 0


class SearxngTransport:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._client = client

    async def search(self, query: str, options: SearchOptions | None = None) -> SearxResponse:
        options = options or SearchOptions()
        query = (query or "").strip()
        if not query:
            raise InvalidQueryError("Search query must not be empty")
        if not self.base_url:
            raise ConfigurationError("SearXNG base URL is not configured")
        if options.safesearch not in VALID_SAFESEARCH:
            raise ConfigurationError(f"Invalid safesearch level: {options.safesearch}")
        if options.time_range and options.time_range not in VALID_TIME_RANGES:
            raise ConfigurationError(f"Invalid time range: {options.time_range}")

        started = time.perf_counter()
        context = {"query": query, "engines": options.engines}
        try:
            response = await self._get(options.to_params(query))
        except httpx.ConnectError as exc:
            self._log(query, options, started, error=str(exc))
            raise SearchConnectionError(f"Could not connect to search service: {exc}", context=context) from exc
        except httpx.TimeoutException as exc:
            self._log(query, options, started, error="timeout")
            raise SearchTimeoutError(
                f"Search request timed out after {self.timeout:g}s", context=context
            ) from exc
        except httpx.HTTPError as exc:
            self._log(query, options, started, error=str(exc))
            raise NetworkError(f"Search request failed: {exc}", context=context) from exc

        status = response.status_code
        if status >= 400:
            self._log(query, options, started, error=f"HTTP {status}")
            raise _status_error(status, response.text[:200], context)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParsingError("Search service returned invalid JSON", status_code=status, context=context) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("results", []), list):
            raise ParsingError("Unexpected search response shape", status_code=status, context=context)

        results = [item for item in payload.get("results", []) if isinstance(item, dict)]
        suggestions = [s for s in payload.get("suggestions", []) or [] if isinstance(s, str)]
        total = payload.get("number_of_results") or len(results)
        try:
            total = int(total)
        except (TypeError, ValueError):
            total = len(results)

        self._log(query, options, started, result_count=len(results))
        return SearxResponse(
            query=payload.get("query") or query,
            results=results,
            suggestions=suggestions,
            total_results=max(total, len(results)),
        )

    async def _get(self, params: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/search"
        headers = {"Accept": "application/json"}
        if self._client is not None:
            return await self._client.get(url, params=params, headers=headers, timeout=self.timeout)
        sanitize_tls_environment()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, params=params, headers=headers)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _log(
        self,
        query: str,
        options: SearchOptions,
        started: float,
        *,
        result_count: int = 0,
        error: str | None = None,
    ) -> None:
        log_search_call(
            query=query,
            engines=options.engines,
            result_count=result_count,
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=error,
        )


def _status_error(status: int, body: str, context: dict[str, Any]):
    if status == 400:
        return InvalidQueryError(f"Invalid search query: {body}", status_code=status, context=context)
    if status == 429:
        return RateLimitError("Search service rate limit exceeded", status_code=status, context=context)
    if status >= 500:
        return ServerError(f"Search service error (HTTP {status})", status_code=status, context=context)
    return NetworkError(
        f"Search request rejected (HTTP {status})", status_code=status, context=context, retryable=False
    )
