from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Iterator


def utc_now() -> datetime:
    return datetime.now(UTC)


class AgentStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class RoundStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class NodeStatus(StrEnum):
    PENDING = "pending"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    ERROR = "error"


class ResearchPhase(StrEnum):
    INITIALIZING = "initializing"
    RESEARCHING = "researching"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    ERROR = "error"


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class Tier(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class UserLevel(StrEnum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


@dataclass(slots=True)
class ResearchContext:
    """Caller preferences that shape query phrasing and scoring."""
    user_level: UserLevel = UserLevel.INTERMEDIATE
    learning_style: str | None = None  # visual | reading | interactive | auditory
    content_types: list[str] = field(default_factory=list)  # article | video | academic | discussion | interactive
    prefer_recent: bool = False
    domain: str | None = None

    def cache_options(self) -> dict[str, Any]:
        return {
            "user_level": self.user_level.value,
            "learning_style": self.learning_style,
            "content_types": sorted(self.content_types),
            "prefer_recent": self.prefer_recent,
            "domain": self.domain,
        }


@dataclass(frozen=True, slots=True)
class SearchResult:
    title: str
    url: str
    snippet: str
    source_engine: str
    relevance_score: float
    published_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "source_engine": self.source_engine,
            "relevance_score": self.relevance_score,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class AgentResult:
    agent_name: str
    topic: str
    results: list[SearchResult] = field(default_factory=list)
    summary: str | None = None
    subtopics: list[str] = field(default_factory=list)
    status: AgentStatus = AgentStatus.SUCCESS
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    queries: list[str] = field(default_factory=list)
    successful_queries: int = 0
    used_fallback: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status != AgentStatus.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "topic": self.topic,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
            "subtopics": list(self.subtopics),
            "status": self.status.value,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "queries": list(self.queries),
            "successful_queries": self.successful_queries,
            "used_fallback": self.used_fallback,
        }


@dataclass(frozen=True, slots=True)
class AggregatedContent:
    summary: str
    key_points: list[str]
    sources: list[SearchResult]
    content_by_agent: dict[str, AgentResult]
    confidence: float
    completeness: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "key_points": list(self.key_points),
            "sources": [s.to_dict() for s in self.sources],
            "agents": sorted(self.content_by_agent),
            "confidence": self.confidence,
            "completeness": self.completeness,
        }


@dataclass(slots=True)
class QualityMetrics:
    content_quality: float = 0.5
    source_reliability: float = 0.5
    recency: float = 0.5
    uniqueness: float = 1.0
    engagement: float = 0.0


@dataclass(slots=True)
class AggregatedResult:
    """One deduplicated corpus entry, attributed to every agent that found it."""
    id: str
    title: str
    url: str
    snippet: str
    agents: list[str]
    engines: list[str]
    relevance: float
    confidence: float
    published_at: datetime | None = None
    duplicate_count: int = 0
    quality: QualityMetrics = field(default_factory=QualityMetrics)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    base: float
    context_boosts: float
    penalties: float
    adjustments: float
    factors: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredResult:
    result: AggregatedResult
    final_score: float
    score_breakdown: ScoreBreakdown
    rank: int = 0
    tier: Tier = Tier.POOR

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.result.id,
            "title": self.result.title,
            "url": self.result.url,
            "snippet": self.result.snippet,
            "agents": list(self.result.agents),
            "engines": list(self.result.engines),
            "relevance": self.result.relevance,
            "final_score": self.final_score,
            "rank": self.rank,
            "tier": self.tier.value,
            "score_breakdown": {
                "base": self.score_breakdown.base,
                "context_boosts": self.score_breakdown.context_boosts,
                "penalties": self.score_breakdown.penalties,
                "adjustments": self.score_breakdown.adjustments,
            },
        }


@dataclass(slots=True)
class ResearchStatus:
    topic_id: str
    current_depth: int
    total_agents: int
    completed_agents: int = 0
    active_agents: list[str] = field(default_factory=list)
    status: ResearchPhase = ResearchPhase.INITIALIZING
    progress: int = 0
    errors: list[str] = field(default_factory=list)

    def snapshot(self) -> "ResearchStatus":
        return ResearchStatus(
            topic_id=self.topic_id,
            current_depth=self.current_depth,
            total_agents=self.total_agents,
            completed_agents=self.completed_agents,
            active_agents=list(self.active_agents),
            status=self.status,
            progress=self.progress,
            errors=list(self.errors),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResearchStatus":
        return cls(
            topic_id=data["topic_id"],
            current_depth=data.get("current_depth", 0),
            total_agents=data.get("total_agents", 0),
            completed_agents=data.get("completed_agents", 0),
            active_agents=list(data.get("active_agents", [])),
            status=ResearchPhase(data.get("status", ResearchPhase.INITIALIZING)),
            progress=data.get("progress", 0),
            errors=list(data.get("errors", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic_id": self.topic_id,
            "current_depth": self.current_depth,
            "total_agents": self.total_agents,
            "completed_agents": self.completed_agents,
            "active_agents": list(self.active_agents),
            "status": self.status.value,
            "progress": self.progress,
            "errors": list(self.errors),
        }


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    state: BreakerState
    failure_count: int
    last_failure_time: float | None


@dataclass(slots=True)
class AgentCoordinationResult:
    topic: str
    topic_id: str
    depth: int
    status: RoundStatus
    agent_results: dict[str, AgentResult]
    aggregated: AggregatedContent
    scored_results: list[ScoredResult] = field(default_factory=list)
    subtopics: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    critical_error: str | None = None
    duration_ms: int = 0
    from_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "topic_id": self.topic_id,
            "depth": self.depth,
            "status": self.status.value,
            "agent_results": {k: v.to_dict() for k, v in self.agent_results.items()},
            "aggregated": self.aggregated.to_dict(),
            "scored_results": [s.to_dict() for s in self.scored_results],
            "subtopics": list(self.subtopics),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "critical_error": self.critical_error,
            "duration_ms": self.duration_ms,
            "from_cache": self.from_cache,
        }


@dataclass(slots=True)
class ResearchNode:
    topic: str
    topic_id: str
    depth: int
    result: AgentCoordinationResult | None = None
    children: list["ResearchNode"] = field(default_factory=list)
    status: NodeStatus = NodeStatus.PENDING
    error: str | None = None

    def walk(self) -> Iterator["ResearchNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "topic_id": self.topic_id,
            "depth": self.depth,
            "status": self.status.value,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(slots=True)
class RecursiveResearchResult:
    root_topic: str
    root_topic_id: str
    research_tree: ResearchNode
    total_nodes: int
    completed_nodes: int
    start_time: datetime
    end_time: datetime
    status: str  # completed | error
    error: str | None = None

    def iter_nodes(self) -> Iterator[ResearchNode]:
        return self.research_tree.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_topic": self.root_topic,
            "root_topic_id": self.root_topic_id,
            "research_tree": self.research_tree.to_dict(),
            "total_nodes": self.total_nodes,
            "completed_nodes": self.completed_nodes,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status,
            "error": self.error,
        }
