"""Error taxonomy for the search, agent and coordination layers."""
from __future__ import annotations

from enum import StrEnum
from typing import Any


class SearchErrorType(StrEnum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    INVALID_QUERY = "invalid_query"
    SERVER = "server"
    PARSING = "parsing"
    CONFIGURATION = "configuration"
    NETWORK = "network"


_ALWAYS_RETRYABLE = {
    SearchErrorType.CONNECTION,
    SearchErrorType.TIMEOUT,
    SearchErrorType.RATE_LIMIT,
    SearchErrorType.NETWORK,
}


class ResearchError(Exception):
    """Base class for every error raised by topicmesh."""


class SearchError(ResearchError):
    error_type: SearchErrorType = SearchErrorType.NETWORK

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.context = context or {}
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        if self.error_type in _ALWAYS_RETRYABLE:
            return True
        if self.error_type == SearchErrorType.SERVER:
            return self.status_code is None or self.status_code >= 500
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "context": self.context,
        }


class SearchConnectionError(SearchError):
    error_type = SearchErrorType.CONNECTION


class SearchTimeoutError(SearchError):
    error_type = SearchErrorType.TIMEOUT


class RateLimitError(SearchError):
    error_type = SearchErrorType.RATE_LIMIT


class InvalidQueryError(SearchError):
    error_type = SearchErrorType.INVALID_QUERY


class ServerError(SearchError):
    error_type = SearchErrorType.SERVER


class ServiceUnavailableError(ServerError):
    """Raised by an open circuit breaker without touching the dependency."""

    def __init__(self, message: str = "Search service is temporarily unavailable (circuit breaker open)", **kwargs: Any):
        kwargs.setdefault("status_code", 503)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class ParsingError(SearchError):
    error_type = SearchErrorType.PARSING


class ConfigurationError(SearchError):
    error_type = SearchErrorType.CONFIGURATION


class NetworkError(SearchError):
    error_type = SearchErrorType.NETWORK


class RetryExhaustedError(SearchError):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: Exception):
        last_message = getattr(last_error, "message", None) or str(last_error)
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_message}",
            status_code=getattr(last_error, "status_code", None),
            context={"attempts": attempts},
            retryable=False,
        )
        self.attempts = attempts
        self.last_error = last_error
        if isinstance(last_error, SearchError):
            self.error_type = last_error.error_type


class AgentTimeoutError(ResearchError):
    def __init__(self, agent_name: str, timeout_seconds: float):
        super().__init__(f"Agent {agent_name} timed out after {timeout_seconds:g}s")
        self.agent_name = agent_name
        self.timeout_seconds = timeout_seconds


class AgentExecutionError(ResearchError):
    def __init__(self, agent_name: str, message: str):
        super().__init__(f"Agent {agent_name} failed: {message}")
        self.agent_name = agent_name


class CriticalExecutionError(ResearchError):
    """A coordination round lacks the coverage required to be trusted."""

    def __init__(self, message: str, *, successful_general_queries: int = 0, total_results: int = 0):
        super().__init__(message)
        self.successful_general_queries = successful_general_queries
        self.total_results = total_results


class ResearchCancelledError(ResearchError):
    def __init__(self, message: str = "Research cancelled"):
        super().__init__(message)
