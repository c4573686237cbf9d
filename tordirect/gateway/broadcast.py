"""Fan-out of session state to connected observers.

Each observer gets a full snapshot when it attaches, then a stream of
per-session deltas. Deltas for the same session are throttled: publishes
inside ``throttle_window`` coalesce into one trailing delivery that carries
the session state at the moment the window elapses. Milestones (first
appearance, metadata ready, done, removal, a new error) skip the throttle
and cancel any pending trailing delivery.

Every observer has its own ordered queue drained by a writer task, so a slow
observer never blocks the publisher or the other observers. The writer
drops any delta whose revision is not newer than the last one it sent for
that session.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tordirect.gateway.protocol import EventType, WebSocketEvent
from tordirect.models import LifecycleState, Session
from tordirect.session.registry import SessionRegistry
from tordirect.utils.logging_config import get_logger

logger = get_logger(__name__)

ObserverSink = Callable[[dict[str, Any]], Awaitable[None]]
DropCallback = Callable[["ObserverHandle"], None]

_observer_ids = itertools.count(1)


@dataclass
class _Outgoing:
    message: dict[str, Any]
    content_id: str | None = None
    revision: int | None = None
    removal: bool = False


@dataclass
class ObserverHandle:
    """A connected observer."""

    sink: ObserverSink
    queue: asyncio.Queue
    id: int = field(default_factory=lambda: next(_observer_ids))
    task: asyncio.Task | None = None
    on_drop: DropCallback | None = None
    sent_revisions: dict[str, int] = field(default_factory=dict)
    closed: bool = False


@dataclass
class _Published:
    lifecycle_state: LifecycleState
    error_message: str | None


def _event(event_type: EventType, data: dict[str, Any]) -> dict[str, Any]:
    return WebSocketEvent(
        type=event_type,
        timestamp=time.time(),
        data=data,
    ).model_dump(mode="json")


class BroadcastChannel:
    """Throttled multi-observer publisher of session state."""

    def __init__(
        self,
        registry: SessionRegistry,
        throttle_window: float = 0.5,
        observer_queue_size: int = 1000,
    ):
        """Initialize the channel.

        Args:
            registry: Source of the session state that is published
            throttle_window: Per-session coalescing window in seconds
            observer_queue_size: Queue bound after which an observer is dropped

        """
        self.registry = registry
        self.throttle_window = throttle_window
        self.observer_queue_size = observer_queue_size

        self._observers: dict[int, ObserverHandle] = {}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._published: dict[str, _Published] = {}
        self._closed = False

        self.stats = {
            "publishes": 0,
            "deliveries": 0,
            "coalesced": 0,
            "observers_dropped": 0,
        }

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def attach(
        self, sink: ObserverSink, on_drop: DropCallback | None = None
    ) -> ObserverHandle:
        """Register an observer. A full snapshot is queued before any delta.

        Must be called from the dispatcher loop.

        Args:
            sink: Coroutine function receiving each outgoing message
            on_drop: Called once if the channel drops the observer because it
                fell behind or its sink failed. Not called on :meth:`detach`.

        """
        if self._closed:
            msg = "BroadcastChannel is closed"
            raise RuntimeError(msg)

        observer = ObserverHandle(
            sink=sink,
            queue=asyncio.Queue(maxsize=self.observer_queue_size),
            on_drop=on_drop,
        )
        sessions = self.registry.list_all()
        for session in sessions:
            observer.sent_revisions[session.content_id] = session.revision
        observer.queue.put_nowait(
            _Outgoing(
                _event(
                    EventType.SNAPSHOT,
                    {"sessions": [s.to_snapshot() for s in sessions]},
                )
            )
        )
        observer.task = asyncio.create_task(self._writer(observer))
        self._observers[observer.id] = observer
        logger.debug("Observer %d attached (%d sessions)", observer.id, len(sessions))
        return observer

    async def detach(self, observer: ObserverHandle) -> None:
        """Unregister an observer and stop its writer."""
        self._observers.pop(observer.id, None)
        observer.closed = True
        task = observer.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("Observer %d detached", observer.id)

    def publish(self, content_id: str) -> None:
        """Notify observers that a session changed (or disappeared).

        Must be called from the dispatcher loop.
        """
        if self._closed:
            return
        self.stats["publishes"] += 1
        session = self.registry.get(content_id)

        if session is None:
            self._cancel_pending(content_id)
            if self._published.pop(content_id, None) is not None:
                self._deliver_removal(content_id)
            return

        if self._is_milestone(session) or self.throttle_window <= 0:
            self._cancel_pending(content_id)
            self._deliver(session)
            return

        if content_id in self._pending:
            self.stats["coalesced"] += 1
            return

        loop = asyncio.get_running_loop()
        self._pending[content_id] = loop.call_later(
            self.throttle_window, self._flush, content_id
        )

    def _is_milestone(self, session: Session) -> bool:
        previous = self._published.get(session.content_id)
        if previous is None:
            return True
        state = session.lifecycle_state
        if state != previous.lifecycle_state and state in (
            LifecycleState.METADATA_READY,
            LifecycleState.DONE,
        ):
            return True
        if session.error.present and session.error.message != previous.error_message:
            return True
        return False

    def _cancel_pending(self, content_id: str) -> None:
        timer = self._pending.pop(content_id, None)
        if timer is not None:
            timer.cancel()

    def _flush(self, content_id: str) -> None:
        self._pending.pop(content_id, None)
        session = self.registry.get(content_id)
        if session is not None and not self._closed:
            self._deliver(session)

    def _deliver(self, session: Session) -> None:
        previous = self._published.get(session.content_id)
        self._published[session.content_id] = _Published(
            lifecycle_state=session.lifecycle_state,
            error_message=session.error.message if session.error.present else None,
        )

        messages = [
            _event(EventType.SESSION_UPDATED, {"session": session.to_snapshot()})
        ]
        if session.lifecycle_state == LifecycleState.DONE and (
            previous is None or previous.lifecycle_state != LifecycleState.DONE
        ):
            messages.append(
                _event(
                    EventType.SESSION_DONE,
                    {"content_id": session.content_id, "name": session.name},
                )
            )
        if session.error.present and (
            previous is None or previous.error_message != session.error.message
        ):
            messages.append(
                _event(
                    EventType.SESSION_ERROR,
                    {
                        "content_id": session.content_id,
                        "message": session.error.message,
                    },
                )
            )

        self.stats["deliveries"] += 1
        for message in messages:
            self._enqueue(
                _Outgoing(message, session.content_id, session.revision)
            )

    def _deliver_removal(self, content_id: str) -> None:
        self.stats["deliveries"] += 1
        self._enqueue(
            _Outgoing(
                _event(EventType.SESSION_REMOVED, {"content_id": content_id}),
                content_id,
                removal=True,
            )
        )

    def _enqueue(self, item: _Outgoing) -> None:
        for observer in list(self._observers.values()):
            try:
                observer.queue.put_nowait(item)
            except asyncio.QueueFull:
                logger.warning(
                    "Observer %d is not keeping up, dropping it", observer.id
                )
                if observer.task is not None:
                    observer.task.cancel()
                self._drop(observer)

    def _drop(self, observer: ObserverHandle) -> None:
        if self._observers.pop(observer.id, None) is None:
            return
        observer.closed = True
        self.stats["observers_dropped"] += 1
        if observer.on_drop is not None:
            try:
                observer.on_drop(observer)
            except Exception as e:
                logger.warning("Drop callback for observer %d failed: %s", observer.id, e)

    async def _writer(self, observer: ObserverHandle) -> None:
        while not observer.closed:
            item: _Outgoing = await observer.queue.get()
            if item.content_id is not None:
                last = observer.sent_revisions.get(item.content_id)
                if item.removal:
                    observer.sent_revisions.pop(item.content_id, None)
                elif item.revision is not None:
                    if last is not None and item.revision < last:
                        continue
                    if (
                        last is not None
                        and item.revision == last
                        and item.message["type"] == EventType.SESSION_UPDATED.value
                    ):
                        continue
                    observer.sent_revisions[item.content_id] = item.revision
            try:
                await observer.sink(item.message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Observer %d send failed: %s", observer.id, e)
                self._drop(observer)
                return

    async def close(self) -> None:
        """Cancel pending deliveries and stop every observer writer."""
        self._closed = True
        for timer in self._pending.values():
            timer.cancel()
        self._pending.clear()
        for observer in list(self._observers.values()):
            await self.detach(observer)

    def get_stats(self) -> dict[str, Any]:
        return {**self.stats, "observers": len(self._observers)}
