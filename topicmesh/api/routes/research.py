from __future__ import annotations

import asyncio
import json
import uuid

from fastapi import APIRouter, HTTPException, Request
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from topicmesh.models.events import EventType
from topicmesh.models.schemas import ResearchRequest, ResearchResultResponse, ResearchStartResponse
from topicmesh.services import logger as log_service
from topicmesh.services import streaming
from topicmesh.services.reliability import CancellationToken
from topicmesh.services.runtime import ResearchRuntime
from topicmesh.tools.web_utils import slugify

router = APIRouter(prefix="/api/research", tags=["research"])


class ResearchJobs:
    """Background research tasks keyed by root topic id."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}

    def start(self, runtime: ResearchRuntime, topic_id: str, request: ResearchRequest) -> None:
        token = CancellationToken()
        task = asyncio.create_task(
            runtime.research.start_recursive_research(
                request.topic,
                topic_id,
                request.context.to_context(),
                cancel_token=token,
            ),
            name=f"research:{topic_id}",
        )
        self._tasks[topic_id] = task
        self._tokens[topic_id] = token
        task.add_done_callback(lambda done: self._forget(topic_id, done))

    def _forget(self, topic_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(topic_id) is task:
            del self._tasks[topic_id]
            self._tokens.pop(topic_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error(f"Research job {topic_id} crashed")

    def __len__(self) -> int:
        return len(self._tasks)

    def is_running(self, topic_id: str) -> bool:
        task = self._tasks.get(topic_id)
        return task is not None and not task.done()

    def cancel(self, topic_id: str) -> bool:
        token = self._tokens.get(topic_id)
        if token is None:
            return False
        token.cancel("Research cancelled by client")
        return True

    async def shutdown(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel("Server shutting down")
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _runtime(request: Request) -> ResearchRuntime:
    return request.app.state.runtime


def _jobs(request: Request) -> ResearchJobs:
    return request.app.state.jobs


@router.post("", response_model=ResearchStartResponse)
async def start_research(payload: ResearchRequest, request: Request):
    """Start recursive research in the background. Returns the topic id to stream."""
    jobs = _jobs(request)
    topic_id = payload.topic_id or f"{slugify(payload.topic)}-{uuid.uuid4().hex[:8]}"
    if jobs.is_running(topic_id):
        raise HTTPException(status_code=409, detail="Research already running for this topic")

    log_service.log_event(
        event_type="research_requested",
        message="Research requested",
        topic_id=topic_id,
        topic=payload.topic[:100],
    )
    jobs.start(_runtime(request), topic_id, payload)
    return ResearchStartResponse(topic_id=topic_id)


@router.get("/{topic_id}", response_model=ResearchResultResponse)
async def get_research(topic_id: str, request: Request):
    runtime = _runtime(request)
    result = runtime.research.get_history(topic_id)
    if result is not None:
        return ResearchResultResponse(topic_id=topic_id, status=result.status, result=result.to_dict())
    if _jobs(request).is_running(topic_id):
        return ResearchResultResponse(topic_id=topic_id, status="running")
    raise HTTPException(status_code=404, detail="Research not found")


@router.delete("/{topic_id}")
async def cancel_research(topic_id: str, request: Request):
    if not _jobs(request).cancel(topic_id):
        raise HTTPException(status_code=404, detail="No running research for this topic")
    return {"topic_id": topic_id, "status": "cancelling"}


@router.get("/{topic_id}/stream")
async def stream_research(topic_id: str, request: Request):
    """SSE endpoint that streams progress events for one research tree."""
    runtime = _runtime(request)
    jobs = _jobs(request)
    if not jobs.is_running(topic_id) and runtime.research.get_history(topic_id) is None:
        raise HTTPException(status_code=404, detail="Research not found")

    heartbeat_interval = runtime.settings.heartbeat_interval_seconds
    broadcaster = runtime.broadcaster

    async def event_generator():
        subscription = broadcaster.open_stream(topic_id)
        replay = broadcaster.history(topic_id)
        try:
            for event in replay:
                yield {"event": event.type.value, "data": json.dumps(event.to_dict())}
                if event.type == EventType.COMPLETE:
                    return

            while True:
                if await request.is_disconnected():
                    break
                event = await subscription.next(timeout=heartbeat_interval)
                if event is None:
                    if subscription.closed:
                        break
                    event = streaming.heartbeat(topic_id)
                yield {"event": event.type.value, "data": json.dumps(event.to_dict())}
                if event.type == EventType.COMPLETE:
                    break
        finally:
            subscription.close()

    return EventSourceResponse(event_generator())
