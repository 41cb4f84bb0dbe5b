from __future__ import annotations

import inspect
from collections import OrderedDict
from typing import Any, Callable

from loguru import logger

from topicmesh.agents.coordinator import MultiAgentCoordinator
from topicmesh.models.events import EventType, ProgressEvent
from topicmesh.models.research import (
    NodeStatus,
    RecursiveResearchResult,
    ResearchContext,
    ResearchNode,
    ResearchStatus,
    RoundStatus,
    utc_now,
)
from topicmesh.services import streaming
from topicmesh.services.document_index import DocumentIndex, build_round_documents
from topicmesh.services.errors import ResearchCancelledError
from topicmesh.services.logger import log_event
from topicmesh.services.progress import ProgressBroadcaster
from topicmesh.services.reliability import CancellationToken
from topicmesh.tools.web_utils import slugify

StatusCallback = Callable[[ResearchStatus], Any]
NodeCallback = Callable[[ResearchNode], Any]


async def _maybe_await(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        logger.warning(f"Research callback {getattr(callback, '__name__', callback)!r} failed: {exc}")


class RecursiveResearchSystem:
    """Expands a topic into a depth-bounded research tree.

    Nodes are researched one at a time, depth first. A node's own round is
    resolved before any of its children start, and a failed child only
    marks itself as ``error``.
    """

    def __init__(
        self,
        coordinator: MultiAgentCoordinator,
        broadcaster: ProgressBroadcaster,
        *,
        max_depth: int = 3,
        max_subtopics_per_level: int = 5,
        document_index: DocumentIndex | None = None,
        history_limit: int = 100,
    ):
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self.coordinator = coordinator
        self.broadcaster = broadcaster
        self.max_depth = max_depth
        self.max_subtopics_per_level = max_subtopics_per_level
        self.document_index = document_index
        self.history_limit = history_limit
        self._history: OrderedDict[str, RecursiveResearchResult] = OrderedDict()

    async def start_recursive_research(
        self,
        root_topic: str,
        root_topic_id: str,
        context: ResearchContext | None = None,
        on_status_update: StatusCallback | None = None,
        on_depth_complete: NodeCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RecursiveResearchResult:
        context = context or ResearchContext()
        start_time = utc_now()
        log_event("recursive_research_started", "Recursive research started", topic=root_topic, topic_id=root_topic_id)

        tree = await self._research_node(
            topic=root_topic,
            topic_id=root_topic_id,
            depth=0,
            context=context,
            root_topic_id=root_topic_id,
            ancestors=frozenset(),
            on_status_update=on_status_update,
            on_depth_complete=on_depth_complete,
            cancel_token=cancel_token,
        )

        nodes = list(tree.walk())
        completed = sum(1 for node in nodes if node.status == NodeStatus.COMPLETED)
        error: str | None = None
        if tree.status == NodeStatus.ERROR:
            error = tree.error or "Research failed"
        elif cancel_token is not None and cancel_token.cancelled:
            error = cancel_token.reason or "Research cancelled"

        result = RecursiveResearchResult(
            root_topic=root_topic,
            root_topic_id=root_topic_id,
            research_tree=tree,
            total_nodes=len(nodes),
            completed_nodes=completed,
            start_time=start_time,
            end_time=utc_now(),
            status="error" if error else "completed",
            error=error,
        )
        self._remember(result)

        if error:
            await self.broadcaster.publish(streaming.error(root_topic_id, error))
        await self.broadcaster.publish(
            streaming.complete(
                root_topic_id,
                status=result.status,
                total_nodes=result.total_nodes,
                completed_nodes=result.completed_nodes,
            )
        )
        log_event(
            "recursive_research_finished",
            "Recursive research finished",
            topic_id=root_topic_id,
            status=result.status,
            total_nodes=result.total_nodes,
            completed_nodes=result.completed_nodes,
        )
        return result

    def get_history(self, root_topic_id: str) -> RecursiveResearchResult | None:
        result = self._history.get(root_topic_id)
        if result is not None:
            self._history.move_to_end(root_topic_id)
        return result

    def _remember(self, result: RecursiveResearchResult) -> None:
        """Keep the most recent results; evicted trees also drop their event history."""
        self._history.pop(result.root_topic_id, None)
        self._history[result.root_topic_id] = result
        while len(self._history) > self.history_limit:
            evicted_id, _ = self._history.popitem(last=False)
            self.broadcaster.clear(evicted_id)

    def clear_history(self, root_topic_id: str | None = None) -> None:
        if root_topic_id is None:
            self._history.clear()
        else:
            self._history.pop(root_topic_id, None)

    async def _research_node(
        self,
        *,
        topic: str,
        topic_id: str,
        depth: int,
        context: ResearchContext,
        root_topic_id: str,
        ancestors: frozenset[str],
        on_status_update: StatusCallback | None,
        on_depth_complete: NodeCallback | None,
        cancel_token: CancellationToken | None,
    ) -> ResearchNode:
        node = ResearchNode(topic=topic, topic_id=topic_id, depth=depth)
        subscription_id = self.broadcaster.subscribe(
            topic_id, self._status_listener(root_topic_id, topic_id, depth, on_status_update)
        )
        node.status = NodeStatus.RESEARCHING
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            result = await self.coordinator.coordinate_agents(topic, topic_id, depth, context, cancel_token)
        except ResearchCancelledError as exc:
            node.status = NodeStatus.ERROR
            node.error = str(exc)
            return node
        except Exception as exc:
            logger.exception(f"Research failed for node {topic_id}")
            node.status = NodeStatus.ERROR
            node.error = str(exc)
            await self.broadcaster.publish(streaming.node_completed(root_topic_id, node))
            await _maybe_await(on_depth_complete, node)
            return node
        finally:
            self.broadcaster.unsubscribe(subscription_id)
            if topic_id != root_topic_id:
                # Child progress is already forwarded to the root stream.
                self.broadcaster.clear(topic_id)

        node.result = result
        if result.status == RoundStatus.ERROR:
            node.status = NodeStatus.ERROR
            node.error = result.critical_error or "; ".join(result.errors) or "Research failed"
        else:
            node.status = NodeStatus.COMPLETED
            await self._store_documents(root_topic_id, node)

        if node.status == NodeStatus.COMPLETED and depth < self.max_depth - 1:
            lineage = ancestors | {topic.lower()}
            for subtopic in result.subtopics[: self.max_subtopics_per_level]:
                if cancel_token is not None and cancel_token.cancelled:
                    break
                if subtopic.lower() in lineage:
                    continue
                child = await self._research_node(
                    topic=subtopic,
                    topic_id=f"{topic_id}-{slugify(subtopic)}",
                    depth=depth + 1,
                    context=context,
                    root_topic_id=root_topic_id,
                    ancestors=lineage,
                    on_status_update=on_status_update,
                    on_depth_complete=on_depth_complete,
                    cancel_token=cancel_token,
                )
                node.children.append(child)

        await self.broadcaster.publish(streaming.node_completed(root_topic_id, node))
        await _maybe_await(on_depth_complete, node)
        return node

    def _status_listener(
        self,
        root_topic_id: str,
        topic_id: str,
        depth: int,
        on_status_update: StatusCallback | None,
    ) -> Callable[[ProgressEvent], Any]:
        async def listener(event: ProgressEvent) -> None:
            if event.type != EventType.STATUS:
                return
            research_status = ResearchStatus.from_dict(event.data)
            await _maybe_await(on_status_update, research_status)
            if topic_id != root_topic_id:
                await self.broadcaster.publish(
                    streaming.progress(
                        root_topic_id,
                        research_status.progress,
                        research_status.status.value,
                        node_topic_id=topic_id,
                        depth=depth,
                    )
                )

        return listener

    async def _store_documents(self, root_topic_id: str, node: ResearchNode) -> None:
        if self.document_index is None or node.result is None:
            return
        docs = build_round_documents(node.result, root_topic_id)
        try:
            stored = await self.document_index.store(docs)
        except Exception as exc:
            logger.warning(f"Document index store failed for {node.topic_id}: {exc}")
            return
        logger.debug(f"Stored {stored.stored} research documents for {node.topic_id}")
