"""Publish/subscribe hub for research progress.

Subscribers are keyed by topic id. Each topic's subscriber list is an
immutable tuple swapped on subscribe/unsubscribe, so a publish in progress
always iterates a complete snapshot. Events reach each subscriber in
emission order.

Two subscriber kinds:
  * callbacks, invoked inline (sync or async) by ``publish``;
  * streams, each with a bounded ``asyncio.Queue`` and an explicit overflow
    policy: ``drop_oldest`` discards the oldest queued event, ``block``
    makes the publisher wait for room.
"""
from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import deque
from enum import StrEnum
from typing import Any, Callable

from loguru import logger

from topicmesh.models.events import EventType, ProgressEvent
from topicmesh.models.research import ResearchStatus
from topicmesh.services import streaming

EventCallback = Callable[[ProgressEvent], Any]


class QueuePolicy(StrEnum):
    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


class Subscription:
    def __init__(
        self,
        broadcaster: "ProgressBroadcaster",
        topic_id: str,
        *,
        callback: EventCallback | None = None,
        maxsize: int = 100,
        policy: QueuePolicy = QueuePolicy.DROP_OLDEST,
    ):
        self.id = uuid.uuid4().hex
        self.topic_id = topic_id
        self.callback = callback
        self.policy = policy
        self.queue: asyncio.Queue[ProgressEvent | None] | None = (
            None if callback is not None else asyncio.Queue(maxsize=max(1, maxsize))
        )
        self.dropped = 0
        self.closed = False
        self._closed_event = asyncio.Event()
        self._broadcaster = broadcaster

    async def deliver(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        if self.callback is not None:
            try:
                outcome = self.callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.warning(f"Progress subscriber {self.id} failed on {event.type.value}: {exc}")
            return

        if self.policy == QueuePolicy.BLOCK:
            await self._put_waiting(event)
        else:
            self._put_dropping(event)

    async def _put_waiting(self, event: ProgressEvent) -> None:
        """Wait for room in the queue; give up once the subscription closes."""
        queue = self._require_queue()
        while not self.closed:
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                pass
            put = asyncio.ensure_future(queue.put(event))
            closed = asyncio.ensure_future(self._closed_event.wait())
            try:
                await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                closed.cancel()
                if not put.done():
                    put.cancel()
            if put.done() and not put.cancelled():
                return

    def _put_dropping(self, event: ProgressEvent | None) -> None:
        queue = self._require_queue()
        while True:
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                queue.get_nowait()
                self.dropped += 1

    def _require_queue(self) -> asyncio.Queue[ProgressEvent | None]:
        if self.queue is None:
            raise RuntimeError("Callback subscriptions have no queue")
        return self.queue

    async def next(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next queued event; ``None`` on timeout or once the stream is closed."""
        queue = self._require_queue()
        if self.closed and queue.empty():
            return None
        try:
            if timeout is None:
                return await queue.get()
            async with asyncio.timeout(timeout):
                return await queue.get()
        except TimeoutError:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self._broadcaster.unsubscribe(self.id)

    def _mark_closed(self) -> None:
        self.closed = True
        self._closed_event.set()
        if self.queue is not None:
            # Discard undelivered events so the sentinel always fits and wakes
            # a reader blocked in next().
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event


class ProgressBroadcaster:
    def __init__(
        self,
        *,
        queue_size: int = 100,
        queue_policy: QueuePolicy | str = QueuePolicy.DROP_OLDEST,
        history_limit: int = 1000,
    ):
        self.queue_size = queue_size
        self.queue_policy = QueuePolicy(queue_policy)
        self.history_limit = history_limit
        self._subscribers: dict[str, tuple[Subscription, ...]] = {}
        self._by_id: dict[str, Subscription] = {}
        self._history: dict[str, deque[ProgressEvent]] = {}
        self._last_progress: dict[str, int] = {}

    def subscribe(self, topic_id: str, callback: EventCallback) -> str:
        subscription = Subscription(self, topic_id, callback=callback)
        self._add(subscription)
        return subscription.id

    def open_stream(
        self,
        topic_id: str,
        *,
        maxsize: int | None = None,
        policy: QueuePolicy | str | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            topic_id,
            maxsize=maxsize or self.queue_size,
            policy=QueuePolicy(policy) if policy else self.queue_policy,
        )
        self._add(subscription)
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._by_id.pop(subscription_id, None)
        if subscription is None:
            return False
        remaining = tuple(s for s in self._subscribers.get(subscription.topic_id, ()) if s.id != subscription_id)
        if remaining:
            self._subscribers[subscription.topic_id] = remaining
        else:
            self._subscribers.pop(subscription.topic_id, None)
        subscription._mark_closed()
        return True

    def subscriber_count(self, topic_id: str) -> int:
        return len(self._subscribers.get(topic_id, ()))

    async def publish(self, event: ProgressEvent) -> None:
        history = self._history.setdefault(event.topic_id, deque(maxlen=self.history_limit))
        history.append(event)
        for subscription in self._subscribers.get(event.topic_id, ()):
            await subscription.deliver(event)

    async def publish_status(self, research_status: ResearchStatus) -> ResearchStatus:
        """Publish a status snapshot, holding progress non-decreasing per topic."""
        snapshot = research_status.snapshot()
        last = self._last_progress.get(snapshot.topic_id, 0)
        snapshot.progress = max(last, min(100, snapshot.progress))
        self._last_progress[snapshot.topic_id] = snapshot.progress
        await self.publish(streaming.status(snapshot))
        return snapshot

    def begin(self, topic_id: str) -> None:
        """Start a new round for ``topic_id``; progress may restart from zero."""
        self._last_progress.pop(topic_id, None)

    async def heartbeat(self, topic_id: str) -> None:
        await self.publish(streaming.heartbeat(topic_id))

    def history(self, topic_id: str, event_type: EventType | None = None) -> list[ProgressEvent]:
        events = list(self._history.get(topic_id, ()))
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events

    def clear(self, topic_id: str) -> None:
        self._history.pop(topic_id, None)
        self._last_progress.pop(topic_id, None)

    def close(self) -> None:
        for subscription_id in list(self._by_id):
            self.unsubscribe(subscription_id)

    def _add(self, subscription: Subscription) -> None:
        self._by_id[subscription.id] = subscription
        self._subscribers[subscription.topic_id] = (
            *self._subscribers.get(subscription.topic_id, ()),
            subscription,
        )
