"""Tests for result aggregation and corpus construction."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from topicmesh.models.research import AgentResult, AgentStatus, SearchResult
from topicmesh.services.aggregation import (
    ResultAggregator,
    dedupe_sources,
    engagement_score,
    recency_score,
    source_reliability,
    split_sentences,
)

NOW = datetime(2026, 6, 1, tzinfo=UTC)


def hit(url: str, relevance: float = 0.8, *, title: str = "Qubits explained", snippet: str = "", engine: str = "duckduckgo", **metadata):
    return SearchResult(
        title=title,
        url=url,
        snippet=snippet or f"A qubit is the basic unit of quantum information described at {url}.",
        source_engine=engine,
        relevance_score=relevance,
        metadata=metadata,
    )


def agent(name: str, results: list[SearchResult], *, status=AgentStatus.SUCCESS, summary: str | None = None):
    return AgentResult(agent_name=name, topic="qubits", results=results, status=status, summary=summary)


class TestAggregate:
    def test_cross_agent_duplicates_collapse(self):
        results = {
            "general": agent("general", [hit("https://x.com/a", 0.6), hit("https://y.com/b", 0.7)]),
            "academic": agent("academic", [hit("http://www.x.com/a/", 0.9)]),
            "video": agent("video", [hit("https://z.com/c", 0.5, title="Qubit lecture")]),
        }

        content = ResultAggregator(now=lambda: NOW).aggregate(results, "qubits")

        assert len(content.sources) == 3
        first = content.sources[0]
        assert first.relevance_score == 0.9
        assert [s.relevance_score for s in content.sources] == sorted(
            (s.relevance_score for s in content.sources), reverse=True
        )

    def test_aggregate_is_idempotent(self):
        results = [
            agent("general", [hit("https://x.com/a", 0.6), hit("https://x.com/a", 0.8)]),
            agent("community", [hit("https://y.com/b", 0.4)]),
        ]
        aggregator = ResultAggregator(now=lambda: NOW)

        first = aggregator.aggregate(results, "qubits")
        second = aggregator.aggregate(results, "qubits")

        assert first.sources == second.sources
        assert first.confidence == second.confidence
        assert dedupe_sources(first.sources) == first.sources

    def test_confidence_and_completeness(self):
        results = {
            "general": agent("general", [hit(f"https://s{i}.org", 0.8) for i in range(5)]),
            "video": agent("video", [], status=AgentStatus.ERROR),
        }

        content = ResultAggregator().aggregate(results, "qubits")

        assert content.confidence == pytest.approx(0.88)
        assert content.completeness == 0.5
        assert set(content.content_by_agent) == {"general", "video"}

    def test_partial_agents_count_as_successful(self):
        results = [
            agent("general", [hit("https://a.org")], status=AgentStatus.PARTIAL),
            agent("academic", [hit("https://b.org")]),
        ]
        assert ResultAggregator().aggregate(results, "qubits").completeness == 1.0

    def test_empty_round(self):
        content = ResultAggregator().aggregate({}, "qubits")

        assert content.summary == "No research content could be gathered for qubits."
        assert content.sources == []
        assert content.confidence == 0.0
        assert content.completeness == 0.0

    def test_summary_lists_agent_summaries(self):
        results = [
            agent("general", [hit("https://a.org")], summary="Found 1 results for qubits."),
            agent("video", [], status=AgentStatus.ERROR, summary="ignored"),
        ]

        summary = ResultAggregator().aggregate(results, "qubits").summary

        assert summary.startswith("Comprehensive research summary for qubits:")
        assert "general: Found 1 results" in summary
        assert "ignored" not in summary

    def test_key_points_are_capped(self):
        results = [
            agent(
                f"agent{i}",
                [
                    hit(f"https://s{i}-{j}.org", snippet=f"Result sentence number {j} from agent {i} is informative. Short.")
                    for j in range(3)
                ],
                summary=f"Agent {i} found several useful things. Agent {i} also noticed another pattern.",
            )
            for i in range(6)
        ]

        points = ResultAggregator().extract_key_points(results)

        assert len(points) == 10
        assert len({p.lower() for p in points}) == 10
        assert all(len(p) > 20 for p in points)


class TestBuildResults:
    def test_groups_duplicates_with_attribution(self):
        results = {
            "general": agent("general", [hit("https://x.com/a", 0.7)]),
            "academic": agent("academic", [hit("https://www.x.com/a", 0.9, engine="arxiv", citation_count=250)]),
        }

        built = ResultAggregator(now=lambda: NOW).build_results(results)

        assert len(built) == 1
        entry = built[0]
        assert entry.agents == ["general", "academic"]
        assert entry.engines == ["duckduckgo", "arxiv"]
        assert entry.relevance == 0.9
        assert entry.confidence == pytest.approx(0.9)
        assert entry.duplicate_count == 1
        assert entry.metadata["citation_count"] == 250
        assert entry.quality.uniqueness == 1.0
        assert entry.quality.engagement > 0

    def test_uniqueness_reflects_overlap(self):
        shared = "Superposition lets a qubit hold a blend of zero and one until measured."
        results = [
            agent(
                "general",
                [
                    hit("https://a.org", snippet=shared),
                    hit("https://b.org", snippet=shared),
                    hit("https://c.org", title="Cryogenic hardware", snippet="Dilution refrigerators cool superconducting chips."),
                ],
            )
        ]

        built = {r.url: r for r in ResultAggregator(now=lambda: NOW).build_results(results)}

        assert built["https://c.org"].quality.uniqueness > built["https://a.org"].quality.uniqueness

    def test_failed_agents_are_ignored(self):
        results = [agent("video", [hit("https://a.org")], status=AgentStatus.ERROR)]
        assert ResultAggregator().build_results(results) == []


class TestQualitySignals:
    def test_recency_buckets(self):
        assert recency_score(None, NOW) == 0.5
        assert recency_score(NOW - timedelta(days=10), NOW) == 1.0
        assert recency_score(NOW - timedelta(days=60), NOW) == 0.9
        assert recency_score(NOW - timedelta(days=200), NOW) == 0.7
        assert recency_score(NOW - timedelta(days=3000), NOW) == 0.1

    def test_source_reliability(self):
        assert source_reliability("https://en.wikipedia.org/wiki/Qubit", ["wikipedia"]) == 1.0
        assert source_reliability("https://cs.stanford.edu/q", []) == 0.7
        assert source_reliability("https://random.blog/post", ["duckduckgo"]) == 0.5

    def test_engagement_is_log_scaled(self):
        assert engagement_score({}) == 0.0
        low = engagement_score({"view_count": 100})
        high = engagement_score({"view_count": 1_000_000})
        assert 0 < low < high <= 1.0

    def test_split_sentences_drops_fragments(self):
        assert split_sentences("Tiny. This sentence is long enough to keep! Ok?") == [
            "This sentence is long enough to keep"
        ]
