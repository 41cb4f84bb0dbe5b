"""Builds the long-lived research components from settings.

Shared state (circuit breaker, result cache, progress broadcaster, HTTP
client) is constructed once here and injected; ``ResearchRuntime.aclose``
tears it down.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

import httpx

from topicmesh import llm_client
from topicmesh.agents.coordinator import MultiAgentCoordinator
from topicmesh.agents.recursive import RecursiveResearchSystem
from topicmesh.agents.research_agents import build_default_agents
from topicmesh.config import Settings, settings as default_settings
from topicmesh.services.aggregation import ResultAggregator
from topicmesh.services.document_index import ChromaDocumentIndex
from topicmesh.services.env_safety import sanitize_tls_environment
from topicmesh.services.progress import ProgressBroadcaster
from topicmesh.services.reliability import CircuitBreaker, ResilientSearch, RetryHandler
from topicmesh.services.result_cache import ResultCache
from topicmesh.services.scoring import ResultScorer, ScoringConfig
from topicmesh.services.subtopics import SubtopicIdentifier
from topicmesh.services.synthesis import SummarySynthesizer
from topicmesh.tools.searxng_search import SearxngTransport


@dataclass
class ResearchRuntime:
    settings: Settings
    transport: SearxngTransport
    breaker: CircuitBreaker
    retry: RetryHandler
    cache: ResultCache
    broadcaster: ProgressBroadcaster
    coordinator: MultiAgentCoordinator
    research: RecursiveResearchSystem

    async def aclose(self) -> None:
        self.broadcaster.close()
        await self.cache.invalidate()
        await self.transport.aclose()


def build_runtime(config: Settings | None = None, *, http_client: httpx.AsyncClient | None = None) -> ResearchRuntime:
    config = config or default_settings
    sanitize_tls_environment()

    client = http_client or httpx.AsyncClient(timeout=config.searxng_timeout_seconds)
    transport = SearxngTransport(config.searxng_base_url, timeout=config.searxng_timeout_seconds, client=client)
    breaker = CircuitBreaker(
        failure_threshold=config.breaker_failure_threshold,
        recovery_timeout=config.breaker_recovery_timeout_seconds,
    )
    retry = RetryHandler(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
        backoff_multiplier=config.retry_backoff_multiplier,
        jitter=config.retry_jitter,
    )
    cache = ResultCache(
        ttl_seconds=config.cache_ttl_seconds,
        max_entries=config.cache_max_entries,
        enabled=config.cache_enabled,
    )
    broadcaster = ProgressBroadcaster(
        queue_size=config.progress_queue_size,
        queue_policy=config.progress_queue_policy,
        history_limit=config.progress_history_limit,
    )

    search = ResilientSearch(transport, breaker, retry)
    agents = build_default_agents(search, batch_size=config.agent_query_batch_size)
    for agent in agents:
        agent.config = replace(agent.config, language=config.searxng_language)
        if agent.critical:
            agent.config = replace(agent.config, safesearch=config.searxng_safesearch)

    synthesizer = None
    if config.synthesis_enabled and config.openrouter_api_key:
        synthesizer = SummarySynthesizer(
            llm_client.generate,
            temperature=config.synthesis_temperature,
            max_tokens=config.synthesis_max_tokens,
        )

    coordinator = MultiAgentCoordinator(
        agents,
        aggregator=ResultAggregator(),
        scorer=ResultScorer(ScoringConfig(diversity_top_k=config.scoring_diversity_top_k)),
        subtopics=SubtopicIdentifier(
            max_depth=config.max_depth,
            max_subtopics_per_level=config.max_subtopics_per_level,
        ),
        broadcaster=broadcaster,
        cache=cache,
        synthesizer=synthesizer,
        agent_timeout=config.agent_timeout_seconds,
        min_general_queries=config.min_general_queries,
        min_total_results=config.min_total_results,
    )

    document_index = None
    if config.document_index_enabled:
        document_index = ChromaDocumentIndex(config.chroma_persist_dir, config.chroma_collection)

    research = RecursiveResearchSystem(
        coordinator,
        broadcaster,
        max_depth=config.max_depth,
        max_subtopics_per_level=config.max_subtopics_per_level,
        document_index=document_index,
        history_limit=config.research_history_limit,
    )

    return ResearchRuntime(
        settings=config,
        transport=transport,
        breaker=breaker,
        retry=retry,
        cache=cache,
        broadcaster=broadcaster,
        coordinator=coordinator,
        research=research,
    )
