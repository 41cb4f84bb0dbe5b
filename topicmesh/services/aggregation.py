from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Callable

from topicmesh.models.research import (
    AgentResult,
    AggregatedContent,
    AggregatedResult,
    QualityMetrics,
    SearchResult,
)
from topicmesh.tools.web_utils import extract_domain, normalize_url, tokenize

MAX_KEY_POINTS = 10
MIN_SENTENCE_LENGTH = 20

HIGH_QUALITY_DOMAINS = {
    "wikipedia.org", "en.wikipedia.org", "britannica.com", "arxiv.org", "nature.com", "science.org",
    "sciencedirect.com", "springer.com", "ieee.org", "ieeexplore.ieee.org", "acm.org", "dl.acm.org",
    "ncbi.nlm.nih.gov", "pubmed.ncbi.nlm.nih.gov", "khanacademy.org", "coursera.org", "edx.org",
    "stackoverflow.com", "github.com", "developer.mozilla.org", "docs.python.org", "mathworld.wolfram.com",
}
RELIABLE_ENGINES = {"google scholar", "arxiv", "pubmed", "semantic scholar", "crossref", "wikipedia", "wolframalpha"}

RECENCY_BUCKETS = ((30, 1.0), (90, 0.9), (365, 0.7), (730, 0.5), (1825, 0.3))


def dedup_key(result: SearchResult) -> tuple[str, str]:
    return normalize_url(result.url), result.title.strip().lower()


def dedupe_sources(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Keep the highest-relevance entry per dedup key, sorted by relevance descending."""
    best: dict[tuple[str, str], SearchResult] = {}
    for result in results:
        key = dedup_key(result)
        current = best.get(key)
        if current is None or result.relevance_score > current.relevance_score:
            best[key] = result
    return sorted(best.values(), key=lambda r: r.relevance_score, reverse=True)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in re.split(r"[.!?]+", text or "") if len(s.strip()) > MIN_SENTENCE_LENGTH]


def content_quality(result: SearchResult) -> float:
    text = f"{result.title} {result.snippet}"
    lowered = text.lower()
    score = 0.5
    for threshold in (100, 300, 500):
        if len(text) > threshold:
            score += 0.1
    if re.search(r"\b(definition|defined as|refers to|explanation|explains|means)\b", lowered):
        score += 0.1
    if re.search(r"\b(example|for instance|tutorial|step-by-step|walkthrough)\b", lowered):
        score += 0.1
    return round(min(score, 1.0), 3)


def source_reliability(url: str, engines: Iterable[str]) -> float:
    domain = extract_domain(url)
    score = 0.5
    if domain in HIGH_QUALITY_DOMAINS or any(domain.endswith(f".{d}") for d in HIGH_QUALITY_DOMAINS):
        score += 0.3
    if domain.endswith((".edu", ".gov")) or ".edu." in domain or ".gov." in domain:
        score += 0.2
    if any(engine.lower() in RELIABLE_ENGINES for engine in engines):
        score += 0.2
    return round(min(score, 1.0), 3)


def recency_score(published_at: datetime | None, now: datetime) -> float:
    if published_at is None:
        return 0.5
    age_days = (now - published_at).days
    for max_days, score in RECENCY_BUCKETS:
        if age_days <= max_days:
            return score
    return 0.1


def engagement_score(metadata: Mapping[str, object]) -> float:
    """Log-scaled popularity from views, votes, comments or citations."""
    scales = {"view_count": 6.0, "upvotes": 4.0, "comment_count": 3.0, "citation_count": 3.0}
    best = 0.0
    for key, scale in scales.items():
        value = metadata.get(key)
        if isinstance(value, (int, float)) and value > 0:
            best = max(best, min(1.0, math.log10(1 + value) / scale))
    return round(best, 3)


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class ResultAggregator:
    """Merges per-agent result sets into one attributed corpus."""

    def __init__(self, now: Callable[[], datetime] | None = None):
        self._now = now or (lambda: datetime.now(UTC))

    def aggregate(
        self,
        agent_results: Mapping[str, AgentResult] | Iterable[AgentResult],
        topic: str | None = None,
    ) -> AggregatedContent:
        by_agent = _as_mapping(agent_results)
        all_results = list(by_agent.values())
        successful = [r for r in all_results if r.succeeded]
        topic = topic or (all_results[0].topic if all_results else "")

        sources = dedupe_sources(r for agent in successful for r in agent.results)

        result_counts = [len(agent.results) for agent in successful]
        relevances = [r.relevance_score for agent in successful for r in agent.results]
        avg_results = sum(result_counts) / len(result_counts) if result_counts else 0.0
        avg_relevance = sum(relevances) / len(relevances) if relevances else 0.0
        confidence = round(0.4 * min(avg_results / 5, 1.0) + 0.6 * avg_relevance, 2)
        completeness = round(len(successful) / len(all_results), 2) if all_results else 0.0

        return AggregatedContent(
            summary=self.build_summary(topic, successful),
            key_points=self.extract_key_points(successful),
            sources=sources,
            content_by_agent=dict(by_agent),
            confidence=confidence,
            completeness=completeness,
        )

    def build_summary(self, topic: str, agent_results: list[AgentResult]) -> str:
        lines = [f"{agent.agent_name}: {agent.summary}" for agent in agent_results if agent.summary]
        if not lines:
            return f"No research content could be gathered for {topic}."
        return f"Comprehensive research summary for {topic}:\n\n" + "\n\n".join(lines)

    def extract_key_points(self, agent_results: list[AgentResult]) -> list[str]:
        points: list[str] = []
        seen: set[str] = set()

        def add(sentence: str) -> None:
            key = sentence.lower()
            if key not in seen:
                seen.add(key)
                points.append(sentence)

        for agent in agent_results:
            for sentence in split_sentences(agent.summary or "")[:2]:
                add(sentence)
            for result in agent.results[:2]:
                sentences = split_sentences(result.snippet)
                if sentences:
                    add(sentences[0])
        return points[:MAX_KEY_POINTS]

    def build_results(
        self,
        agent_results: Mapping[str, AgentResult] | Iterable[AgentResult],
    ) -> list[AggregatedResult]:
        """Group duplicate hits across agents and attach quality metrics."""
        groups: dict[tuple[str, str], list[tuple[str, SearchResult]]] = {}
        for agent in _as_mapping(agent_results).values():
            if not agent.succeeded:
                continue
            for result in agent.results:
                groups.setdefault(dedup_key(result), []).append((agent.agent_name, result))

        now = self._now()
        built: list[AggregatedResult] = []
        for key, members in groups.items():
            best = max((r for _, r in members), key=lambda r: r.relevance_score)
            agents = list(dict.fromkeys(name for name, _ in members))
            engines = list(dict.fromkeys(r.source_engine for _, r in members if r.source_engine))
            metadata: dict[str, object] = {}
            for _, member in members:
                metadata.update({k: v for k, v in member.metadata.items() if v is not None})
            mean_relevance = sum(r.relevance_score for _, r in members) / len(members)
            published = next((r.published_at for _, r in members if r.published_at), None)
            built.append(
                AggregatedResult(
                    id=hashlib.sha1("|".join(key).encode("utf-8")).hexdigest()[:12],
                    title=best.title,
                    url=best.url,
                    snippet=best.snippet,
                    agents=agents,
                    engines=engines,
                    relevance=best.relevance_score,
                    confidence=round(min(1.0, mean_relevance + 0.1 * (len(agents) - 1)), 3),
                    published_at=published,
                    duplicate_count=len(members) - 1,
                    quality=QualityMetrics(
                        content_quality=content_quality(best),
                        source_reliability=source_reliability(best.url, engines),
                        recency=recency_score(published, now),
                        engagement=engagement_score(metadata),
                    ),
                    metadata=metadata,
                )
            )

        token_sets = [tokenize(f"{r.title} {r.snippet}") for r in built]
        for idx, result in enumerate(built):
            others = [jaccard(token_sets[idx], token_sets[j]) for j in range(len(built)) if j != idx]
            result.quality.uniqueness = round(1.0 - sum(others) / len(others), 3) if others else 1.0

        built.sort(key=lambda r: r.relevance, reverse=True)
        return built


def _as_mapping(agent_results: Mapping[str, AgentResult] | Iterable[AgentResult]) -> dict[str, AgentResult]:
    if isinstance(agent_results, Mapping):
        return dict(agent_results)
    return {result.agent_name: result for result in agent_results}
