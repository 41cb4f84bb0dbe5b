from __future__ import annotations

from typing import Any

from topicmesh.models.events import EventType, ProgressEvent
from topicmesh.models.research import ResearchNode, ResearchStatus


def status(research_status: ResearchStatus) -> ProgressEvent:
    return ProgressEvent(
        type=EventType.STATUS,
        topic_id=research_status.topic_id,
        data=research_status.to_dict(),
    )


def progress(topic_id: str, percent: int, phase: str, **kwargs: Any) -> ProgressEvent:
    return ProgressEvent(
        type=EventType.PROGRESS,
        topic_id=topic_id,
        data={"progress": percent, "phase": phase, **kwargs},
    )


def agent_completed(topic_id: str, agent: str, status_value: str, result_count: int, **kwargs: Any) -> ProgressEvent:
    return ProgressEvent(
        type=EventType.CONTENT,
        topic_id=topic_id,
        data={"agent": agent, "status": status_value, "result_count": result_count, **kwargs},
    )


def node_completed(root_topic_id: str, node: ResearchNode) -> ProgressEvent:
    data: dict[str, Any] = {
        "node_topic_id": node.topic_id,
        "topic": node.topic,
        "depth": node.depth,
        "status": node.status.value,
        "children": [child.topic_id for child in node.children],
    }
    if node.result is not None:
        data["subtopics"] = list(node.result.subtopics)
        data["summary"] = node.result.aggregated.summary[:500]
        data["source_count"] = len(node.result.aggregated.sources)
    if node.error:
        data["error"] = node.error
    return ProgressEvent(type=EventType.CONTENT, topic_id=root_topic_id, data=data)


def complete(topic_id: str, **kwargs: Any) -> ProgressEvent:
    return ProgressEvent(type=EventType.COMPLETE, topic_id=topic_id, data=kwargs)


def error(topic_id: str, message: str, agent: str | None = None) -> ProgressEvent:
    data: dict[str, Any] = {"message": message}
    if agent:
        data["agent"] = agent
    return ProgressEvent(type=EventType.ERROR, topic_id=topic_id, data=data)


def heartbeat(topic_id: str) -> ProgressEvent:
    return ProgressEvent(type=EventType.HEARTBEAT, topic_id=topic_id)
