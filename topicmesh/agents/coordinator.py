from __future__ import annotations

import asyncio
import time
from dataclasses import replace

from loguru import logger

from topicmesh.agents.base import BaseResearchAgent
from topicmesh.models.research import (
    AgentCoordinationResult,
    AgentResult,
    AgentStatus,
    ResearchContext,
    ResearchPhase,
    ResearchStatus,
    RoundStatus,
)
from topicmesh.services import streaming
from topicmesh.services.aggregation import ResultAggregator
from topicmesh.services.errors import (
    AgentExecutionError,
    AgentTimeoutError,
    CriticalExecutionError,
    ResearchCancelledError,
)
from topicmesh.services.logger import log_research_step
from topicmesh.services.progress import ProgressBroadcaster
from topicmesh.services.reliability import CancellationToken
from topicmesh.services.result_cache import ResultCache
from topicmesh.services.scoring import ResultScorer
from topicmesh.services.subtopics import SubtopicIdentifier
from topicmesh.services.synthesis import SummarySynthesizer

AGENT_PROGRESS_SHARE = 70
AGGREGATION_PROGRESS = 80


class MultiAgentCoordinator:
    """Runs every agent for one topic concurrently and folds the results.

    A coordination round always completes: agents that fail or time out are
    recorded as ``AgentResult(status=error)``. Only missing coverage or a
    total wipe-out marks the round itself as ``error``.
    """

    def __init__(
        self,
        agents: list[BaseResearchAgent],
        *,
        aggregator: ResultAggregator,
        scorer: ResultScorer,
        subtopics: SubtopicIdentifier,
        broadcaster: ProgressBroadcaster,
        cache: ResultCache | None = None,
        synthesizer: SummarySynthesizer | None = None,
        agent_timeout: float = 30.0,
        min_general_queries: int = 3,
        min_total_results: int = 5,
        general_agent: str = "general",
    ):
        if not agents:
            raise ValueError("At least one agent is required")
        self.agents = agents
        self.aggregator = aggregator
        self.scorer = scorer
        self.subtopics = subtopics
        self.broadcaster = broadcaster
        self.cache = cache
        self.synthesizer = synthesizer
        self.agent_timeout = agent_timeout
        self.min_general_queries = min_general_queries
        self.min_total_results = min_total_results
        self.general_agent = general_agent

    async def coordinate_agents(
        self,
        topic: str,
        topic_id: str,
        depth: int = 0,
        context: ResearchContext | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AgentCoordinationResult:
        context = context or ResearchContext()
        started = time.perf_counter()
        self.broadcaster.begin(topic_id)
        status = ResearchStatus(
            topic_id=topic_id,
            current_depth=depth,
            total_agents=len(self.agents),
            active_agents=[agent.name for agent in self.agents],
        )

        cache_options = {"depth": depth, **context.cache_options()}
        if self.cache is not None:
            cached = await self.cache.get(topic, topic_id, cache_options)
            if cached is not None:
                logger.info(f"Coordination cache hit for '{topic}' ({topic_id})")
                status.completed_agents = status.total_agents
                status.active_agents = []
                status.status = ResearchPhase.COMPLETED
                status.progress = 100
                await self.broadcaster.publish_status(status)
                return replace(cached, from_cache=True)

        log_research_step(topic_id, "coordination", "started", {"topic": topic, "depth": depth})
        await self.broadcaster.publish_status(status)
        status.status = ResearchPhase.RESEARCHING
        await self.broadcaster.publish_status(status)

        agent_results = await self._run_agents(topic, topic_id, context, status, cancel_token)

        status.status = ResearchPhase.AGGREGATING
        status.progress = AGGREGATION_PROGRESS
        await self.broadcaster.publish_status(status)

        aggregated = self.aggregator.aggregate(agent_results, topic)
        if self.synthesizer is not None:
            synthesized = await self.synthesizer.synthesize(topic, aggregated)
            if synthesized:
                aggregated = replace(aggregated, summary=synthesized)
        scored = self.scorer.rank(self.aggregator.build_results(agent_results), context, topic)
        subtopics = self.subtopics.identify(agent_results, topic, depth)

        round_status, errors, warnings, critical = self._assess(agent_results)

        result = AgentCoordinationResult(
            topic=topic,
            topic_id=topic_id,
            depth=depth,
            status=round_status,
            agent_results=agent_results,
            aggregated=aggregated,
            scored_results=scored,
            subtopics=subtopics,
            errors=errors,
            warnings=warnings,
            critical_error=critical,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

        status.status = ResearchPhase.ERROR if round_status == RoundStatus.ERROR else ResearchPhase.COMPLETED
        status.progress = 100
        status.errors = list(errors)
        await self.broadcaster.publish_status(status)

        if self.cache is not None and round_status != RoundStatus.ERROR:
            await self.cache.set(topic, topic_id, result, cache_options)

        log_research_step(
            topic_id,
            "coordination",
            round_status.value,
            {
                "topic": topic,
                "sources": len(aggregated.sources),
                "subtopics": subtopics,
                "errors": len(errors),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _run_agents(
        self,
        topic: str,
        topic_id: str,
        context: ResearchContext,
        status: ResearchStatus,
        cancel_token: CancellationToken | None,
    ) -> dict[str, AgentResult]:
        tasks = [
            asyncio.create_task(self._run_agent(agent, topic, context, cancel_token), name=f"agent:{agent.name}")
            for agent in self.agents
        ]
        if cancel_token is not None:
            for task in tasks:
                cancel_token.register(task)

        completed: dict[str, AgentResult] = {}
        try:
            for finished in asyncio.as_completed(tasks):
                agent_result = await finished
                completed[agent_result.agent_name] = agent_result
                status.completed_agents += 1
                if agent_result.agent_name in status.active_agents:
                    status.active_agents.remove(agent_result.agent_name)
                if agent_result.status == AgentStatus.ERROR:
                    status.errors.append(f"{agent_result.agent_name}: {agent_result.error}")
                status.progress = round(status.completed_agents / status.total_agents * AGENT_PROGRESS_SHARE)
                await self.broadcaster.publish_status(status)
                await self.broadcaster.publish(
                    streaming.agent_completed(
                        topic_id,
                        agent_result.agent_name,
                        agent_result.status.value,
                        len(agent_result.results),
                    )
                )
        except asyncio.CancelledError:
            if cancel_token is not None and cancel_token.cancelled:
                raise ResearchCancelledError(cancel_token.reason or "Research cancelled") from None
            raise
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        # Stable agent order regardless of completion order.
        return {agent.name: completed[agent.name] for agent in self.agents if agent.name in completed}

    async def _run_agent(
        self,
        agent: BaseResearchAgent,
        topic: str,
        context: ResearchContext,
        cancel_token: CancellationToken | None,
    ) -> AgentResult:
        try:
            async with asyncio.timeout(self.agent_timeout):
                return await agent.execute(topic, context, cancel_token)
        except TimeoutError:
            error = AgentTimeoutError(agent.name, self.agent_timeout)
        except ResearchCancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Agent {agent.name} crashed for '{topic}'")
            error = AgentExecutionError(agent.name, str(exc))
        logger.warning(str(error))
        return AgentResult(agent_name=agent.name, topic=topic, status=AgentStatus.ERROR, error=str(error))

    def validate_round(self, agent_results: dict[str, AgentResult]) -> None:
        """Raise ``CriticalExecutionError`` when the round lacks trustworthy coverage."""
        total_results = sum(len(r.results) for r in agent_results.values() if r.succeeded)
        general = agent_results.get(self.general_agent)
        general_queries = general.successful_queries if general is not None else None
        if general_queries is not None and general_queries < self.min_general_queries:
            raise CriticalExecutionError(
                f"Insufficient general coverage: {general_queries}/{self.min_general_queries} "
                f"general queries succeeded ({total_results} results total)",
                successful_general_queries=general_queries,
                total_results=total_results,
            )
        if total_results < self.min_total_results:
            raise CriticalExecutionError(
                f"Insufficient results: {total_results} < {self.min_total_results}",
                successful_general_queries=general_queries or 0,
                total_results=total_results,
            )

    def _assess(
        self, agent_results: dict[str, AgentResult]
    ) -> tuple[RoundStatus, list[str], list[str], str | None]:
        results = list(agent_results.values())
        succeeded = [r for r in results if r.succeeded]
        if not succeeded:
            round_status = RoundStatus.ERROR
        elif len(succeeded) == len(self.agents) and all(r.status == AgentStatus.SUCCESS for r in results):
            round_status = RoundStatus.SUCCESS
        else:
            round_status = RoundStatus.PARTIAL

        errors = [f"{r.agent_name}: {r.error}" for r in results if r.status == AgentStatus.ERROR]
        warnings = [
            f"{r.agent_name}: degraded ({r.error or 'fallback results only'})"
            for r in results
            if r.status == AgentStatus.PARTIAL
        ]
        warnings.extend(
            f"{r.agent_name}: no coverage from this source"
            for r in results
            if r.status == AgentStatus.ERROR and r.agent_name != self.general_agent
        )

        critical: str | None = None
        try:
            self.validate_round(agent_results)
        except CriticalExecutionError as exc:
            critical = str(exc)
            general = agent_results.get(self.general_agent)
            general_degraded = general is not None and general.status != AgentStatus.SUCCESS
            if exc.total_results >= self.min_total_results and general_degraded:
                # The general agent's own failure is already on record.
                if round_status == RoundStatus.SUCCESS:
                    round_status = RoundStatus.PARTIAL
                warnings.append(critical)
            else:
                round_status = RoundStatus.ERROR
                errors.append(critical)
            logger.warning(f"Round validation failed: {critical}")
        return round_status, errors, warnings, critical
