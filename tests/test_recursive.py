"""Tests for depth-first recursive research."""
from __future__ import annotations

import pytest

from topicmesh.agents.recursive import RecursiveResearchSystem
from topicmesh.models.documents import StoreResult
from topicmesh.models.events import EventType
from topicmesh.models.research import (
    AgentCoordinationResult,
    AgentResult,
    AggregatedContent,
    NodeStatus,
    ResearchPhase,
    ResearchStatus,
    RoundStatus,
    SearchResult,
)
from topicmesh.services.errors import ResearchCancelledError
from topicmesh.services.progress import ProgressBroadcaster
from topicmesh.services.reliability import CancellationToken


class FakeCoordinator:
    """Returns a canned round per topic and publishes a final status like the real one."""

    def __init__(self, broadcaster, *, subtopics=None, failing=(), crashing=(), cancel_on=None):
        self.broadcaster = broadcaster
        self.subtopics = subtopics
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.cancel_on = cancel_on
        self.calls: list[tuple[str, str, int]] = []

    async def coordinate_agents(self, topic, topic_id, depth=0, context=None, cancel_token=None):
        self.calls.append((topic, topic_id, depth))
        if topic == self.cancel_on:
            cancel_token.cancel("stopped by user")
            raise ResearchCancelledError("stopped by user")
        if topic in self.crashing:
            raise RuntimeError("coordinator exploded")

        failed = topic in self.failing
        await self.broadcaster.publish_status(
            ResearchStatus(
                topic_id=topic_id,
                current_depth=depth,
                total_agents=1,
                completed_agents=1,
                status=ResearchPhase.ERROR if failed else ResearchPhase.COMPLETED,
                progress=100,
            )
        )
        if self.subtopics is not None:
            subtopics = list(self.subtopics.get(topic, []))
        else:
            subtopics = [f"{topic} a", f"{topic} b"]
        source = SearchResult(
            title=f"{topic} primer",
            url=f"https://example.org/{topic_id}",
            snippet=f"A primer on {topic} that is long enough to be stored as a search document.",
            source_engine="duckduckgo",
            relevance_score=0.8,
        )
        general = AgentResult(
            agent_name="general",
            topic=topic,
            results=[] if failed else [source],
            summary=None if failed else f"Found 1 results for {topic}.",
        )
        return AgentCoordinationResult(
            topic=topic,
            topic_id=topic_id,
            depth=depth,
            status=RoundStatus.ERROR if failed else RoundStatus.SUCCESS,
            agent_results={"general": general},
            aggregated=AggregatedContent(
                summary=f"Summary of {topic}",
                key_points=[f"{topic} matters"],
                sources=[] if failed else [source],
                content_by_agent={"general": general},
                confidence=0.7,
                completeness=1.0,
            ),
            subtopics=[] if failed else subtopics,
            errors=["general: down"] if failed else [],
            critical_error="Insufficient results: 0 < 5" if failed else None,
        )


class FakeIndex:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.docs = []

    async def store(self, docs):
        if self.fail:
            raise ConnectionError("vector store offline")
        self.docs.extend(docs)
        return StoreResult(stored=len(docs))

    async def search(self, query, topic_filter=None, score_threshold=0.0, limit=10):
        return []


def build(max_depth=3, max_subtopics=5, index=None, **coordinator_kwargs):
    broadcaster = ProgressBroadcaster()
    coordinator = FakeCoordinator(broadcaster, **coordinator_kwargs)
    system = RecursiveResearchSystem(
        coordinator,
        broadcaster,
        max_depth=max_depth,
        max_subtopics_per_level=max_subtopics,
        document_index=index,
    )
    return system, coordinator, broadcaster


class TestTreeShape:
    @pytest.mark.asyncio
    async def test_depth_bound_and_depth_first_order(self):
        system, coordinator, _ = build(max_depth=3)

        result = await system.start_recursive_research("root", "r")

        depths = [node.depth for node in result.iter_nodes()]
        assert max(depths) == 2
        assert result.total_nodes == 7
        assert result.completed_nodes == 7
        assert result.status == "completed"
        assert all(not n.children for n in result.iter_nodes() if n.depth == 2)
        assert [topic for topic, _, _ in coordinator.calls] == [
            "root", "root a", "root a a", "root a b", "root b", "root b a", "root b b",
        ]

    @pytest.mark.asyncio
    async def test_child_ids_extend_parent_id(self):
        system, _, _ = build(max_depth=2, subtopics={"Root Topic": ["Error Correction"]})

        result = await system.start_recursive_research("Root Topic", "r1")

        child = result.research_tree.children[0]
        assert child.topic_id == "r1-error-correction"
        assert child.depth == 1

    @pytest.mark.asyncio
    async def test_single_level_tree(self):
        system, coordinator, _ = build(max_depth=1)

        result = await system.start_recursive_research("root", "r")

        assert result.total_nodes == 1
        assert result.research_tree.children == []
        assert len(coordinator.calls) == 1

    @pytest.mark.asyncio
    async def test_subtopics_are_capped_per_level(self):
        system, _, _ = build(max_depth=2, max_subtopics=2, subtopics={"root": ["one", "two", "three"]})

        result = await system.start_recursive_research("root", "r")

        assert [c.topic for c in result.research_tree.children] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_ancestor_topics_are_not_revisited(self):
        subtopics = {"root": ["child"], "child": ["Root", "grandchild"]}
        system, coordinator, _ = build(max_depth=3, subtopics=subtopics)

        await system.start_recursive_research("root", "r")

        assert [topic for topic, _, _ in coordinator.calls] == ["root", "child", "grandchild"]

    def test_rejects_zero_depth(self):
        broadcaster = ProgressBroadcaster()
        with pytest.raises(ValueError):
            RecursiveResearchSystem(FakeCoordinator(broadcaster), broadcaster, max_depth=0)


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failed_child_does_not_stop_siblings(self):
        system, coordinator, _ = build(max_depth=3, failing={"root a"})

        result = await system.start_recursive_research("root", "r")

        failed = result.research_tree.children[0]
        assert failed.status == NodeStatus.ERROR
        assert failed.children == []
        assert failed.error == "Insufficient results: 0 < 5"
        assert result.research_tree.children[1].status == NodeStatus.COMPLETED
        assert result.status == "completed"
        assert result.total_nodes == 5
        assert result.completed_nodes == 4

    @pytest.mark.asyncio
    async def test_crashing_child_is_contained(self):
        system, _, _ = build(max_depth=2, crashing={"root b"})

        result = await system.start_recursive_research("root", "r")

        crashed = result.research_tree.children[1]
        assert crashed.status == NodeStatus.ERROR
        assert crashed.error == "coordinator exploded"
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_failed_root_fails_research(self):
        system, _, broadcaster = build(max_depth=3, failing={"root"})

        result = await system.start_recursive_research("root", "r")

        assert result.status == "error"
        assert result.total_nodes == 1
        assert result.error == "Insufficient results: 0 < 5"
        error_events = broadcaster.history("r", EventType.ERROR)
        assert error_events[0].data["message"] == result.error


class TestCallbacksAndEvents:
    @pytest.mark.asyncio
    async def test_depth_callback_fires_post_order(self):
        system, _, _ = build(max_depth=3)
        finished: list[str] = []

        await system.start_recursive_research("root", "r", on_depth_complete=lambda node: finished.append(node.topic))

        assert finished == ["root a a", "root a b", "root a", "root b a", "root b b", "root b", "root"]

    @pytest.mark.asyncio
    async def test_status_updates_reach_caller_and_root_stream(self):
        system, _, broadcaster = build(max_depth=2)
        statuses: list[ResearchStatus] = []

        async def on_status(status: ResearchStatus):
            statuses.append(status)

        await system.start_recursive_research("root", "r", on_status_update=on_status)

        assert [s.topic_id for s in statuses] == ["r", "r-root-a", "r-root-b"]
        child_progress = broadcaster.history("r", EventType.PROGRESS)
        assert [e.data["node_topic_id"] for e in child_progress] == ["r-root-a", "r-root-b"]
        assert broadcaster.subscriber_count("r") == 0

    @pytest.mark.asyncio
    async def test_node_and_complete_events_on_root_topic(self):
        system, _, broadcaster = build(max_depth=2)

        result = await system.start_recursive_research("root", "r")

        node_events = [e for e in broadcaster.history("r", EventType.CONTENT) if "node_topic_id" in e.data]
        assert [e.data["node_topic_id"] for e in node_events] == ["r-root-a", "r-root-b", "r"]
        complete = broadcaster.history("r", EventType.COMPLETE)
        assert complete[-1].data == {"status": "completed", "total_nodes": 3, "completed_nodes": 3}
        assert system.get_history("r") is result

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged_not_raised(self):
        system, _, _ = build(max_depth=1)

        def broken(node):
            raise RuntimeError("callback bug")

        result = await system.start_recursive_research("root", "r", on_depth_complete=broken)

        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_child_event_history_is_released(self):
        system, _, broadcaster = build(max_depth=2)

        await system.start_recursive_research("root", "r")

        assert broadcaster.history("r-root-a") == []
        assert broadcaster.history("r-root-b") == []
        assert broadcaster.history("r", EventType.COMPLETE)

    @pytest.mark.asyncio
    async def test_history_keeps_most_recent_trees(self):
        broadcaster = ProgressBroadcaster()
        system = RecursiveResearchSystem(FakeCoordinator(broadcaster), broadcaster, max_depth=1, history_limit=2)

        await system.start_recursive_research("first", "t1")
        await system.start_recursive_research("second", "t2")
        assert system.get_history("t1") is not None
        await system.start_recursive_research("third", "t3")

        assert system.get_history("t2") is None
        assert system.get_history("t1") is not None
        assert system.get_history("t3") is not None
        assert broadcaster.history("t2") == []

    @pytest.mark.asyncio
    async def test_child_ids_are_url_safe(self):
        system, _, _ = build(max_depth=2, subtopics={"networking": ["TCP/IP #basics?"]})

        result = await system.start_recursive_research("networking", "n")

        assert result.research_tree.children[0].topic_id == "n-tcp-ip-basics"

    @pytest.mark.asyncio
    async def test_clear_history(self):
        system, _, _ = build(max_depth=1)
        await system.start_recursive_research("root", "r")

        system.clear_history("r")

        assert system.get_history("r") is None


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_remaining_subtree(self):
        system, coordinator, _ = build(max_depth=3, cancel_on="root a a")
        token = CancellationToken()

        result = await system.start_recursive_research("root", "r", cancel_token=token)

        assert [topic for topic, _, _ in coordinator.calls] == ["root", "root a", "root a a"]
        assert result.status == "error"
        assert result.error == "stopped by user"
        cancelled = result.research_tree.children[0].children[0]
        assert cancelled.status == NodeStatus.ERROR

    @pytest.mark.asyncio
    async def test_already_cancelled_token_skips_research(self):
        system, coordinator, _ = build(max_depth=2)
        token = CancellationToken()
        token.cancel()

        result = await system.start_recursive_research("root", "r", cancel_token=token)

        assert coordinator.calls == []
        assert result.status == "error"
        assert result.completed_nodes == 0


class TestDocumentStorage:
    @pytest.mark.asyncio
    async def test_completed_nodes_are_indexed(self):
        index = FakeIndex()
        system, _, _ = build(max_depth=2, index=index)

        await system.start_recursive_research("root", "r")

        ids = {doc.id for doc in index.docs}
        assert "r-summary-0" in ids
        assert "r-root-a-summary-1" in ids
        assert "r-keypoint-0-0" in ids
        assert "r-agent-general-0" in ids
        assert "r-search-general-0-0" in ids
        assert all(doc.metadata["root_topic_id"] == "r" for doc in index.docs)

    @pytest.mark.asyncio
    async def test_failed_nodes_are_not_indexed(self):
        index = FakeIndex()
        system, _, _ = build(max_depth=2, index=index, failing={"root b"})

        await system.start_recursive_research("root", "r")

        assert not any(doc.metadata["topic_id"] == "r-root-b" for doc in index.docs)

    @pytest.mark.asyncio
    async def test_index_failure_does_not_fail_research(self):
        system, _, _ = build(max_depth=2, index=FakeIndex(fail=True))

        result = await system.start_recursive_research("root", "r")

        assert result.status == "completed"
        assert result.completed_nodes == 3
