"""
Pipeline events.

The orchestrator emits one PipelineEvent per classification, solve attempt,
mitigation and final outcome. Sinks registered with the EventDispatcher
receive every event through their own queue; the orchestrator never waits
on a sink, and a sink that raises is logged and skipped.
"""

import asyncio
from abc import abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from .audit_logger import AuditLogger
from .enums import EventKind


@dataclass
class PipelineEvent:
    """A single structured event."""

    kind: EventKind
    host: str
    attempt: int
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "host": self.host,
            "attempt": self.attempt,
            "timestamp": self.timestamp,
            "data": self.data,
        }


@runtime_checkable
class EventSink(Protocol):
    """Protocol defining the interface for event sinks."""

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """
        Receive one event.

        Args:
            event: The event to handle
        """
        ...

    @abstractmethod
    def get_name(self) -> str:
        """
        Get the sink name.

        Returns:
            The name of this sink
        """
        ...


class AuditLogSink:
    """Writes every event to the audit logger at debug level."""

    def __init__(self, logger: AuditLogger) -> None:
        self._logger = logger

    async def emit(self, event: PipelineEvent) -> None:
        self._logger.debug("events", f"{event.kind.value} event", event.to_dict())

    def get_name(self) -> str:
        return "audit_log"


class CounterSink:
    """Counts events by kind and by (kind, key) pairs for quick metrics."""

    def __init__(self) -> None:
        self.by_kind: Counter = Counter()
        self.by_challenge_type: Counter = Counter()
        self.by_action: Counter = Counter()

    async def emit(self, event: PipelineEvent) -> None:
        self.by_kind[event.kind] += 1
        if event.kind == EventKind.CLASSIFICATION:
            self.by_challenge_type[event.data.get("challenge_type")] += 1
        elif event.kind == EventKind.MITIGATION:
            self.by_action[event.data.get("action")] += 1

    def get_name(self) -> str:
        return "counter"


class EventDispatcher:
    """
    Fans events out to registered sinks without waiting on them.

    Each sink has its own queue and delivery task, so a slow sink only
    delays its own events and every sink sees events in dispatch order.
    A sink that raises is logged and skipped; when a sink's queue is full
    the event is dropped for that sink and a warning is logged.
    """

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        max_pending: int = 1000,
        drain_timeout_seconds: float = 5.0,
    ) -> None:
        self._sinks: list[EventSink] = []
        self._logger = logger
        self._max_pending = max_pending
        self._drain_timeout = drain_timeout_seconds
        self._queues: dict[int, asyncio.Queue] = {}
        self._workers: dict[int, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def register_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def unregister_sink(self, sink_name: str) -> bool:
        """
        Unregister a sink by name. Events already queued for it are still delivered.

        Returns:
            True if the sink was found and removed, False otherwise
        """
        for i, sink in enumerate(self._sinks):
            if sink.get_name() == sink_name:
                self._sinks.pop(i)
                self._stop_worker(sink)
                return True
        return False

    @property
    def sinks(self) -> list[EventSink]:
        return self._sinks.copy()

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered, across all sinks."""
        return sum(queue.qsize() for queue in self._queues.values())

    def dispatch(self, event: PipelineEvent) -> None:
        """
        Queue event for every sink and return immediately.

        Must be called from a running event loop.
        """
        for sink in self._sinks:
            queue = self._queue_for(sink)
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                if self._logger:
                    self._logger.warn(
                        "events",
                        f"Event sink '{sink.get_name()}' is backlogged, dropping event",
                        {"event_kind": event.kind.value, "max_pending": self._max_pending},
                    )

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def aclose(self) -> None:
        """Deliver what is queued, within the drain timeout, then stop the delivery tasks."""
        workers = list(self._workers.values())
        if not workers:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            if self._logger:
                self._logger.warn(
                    "events",
                    "Event sinks did not drain in time, discarding queued events",
                    {"pending": self.pending, "timeout_seconds": self._drain_timeout},
                )
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._queues.clear()
            self._workers.clear()
            self._loop = None

    def _queue_for(self, sink: EventSink) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # Tasks from a previous loop can no longer run
            self._queues.clear()
            self._workers.clear()
            self._loop = loop
        key = id(sink)
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._max_pending)
            self._queues[key] = queue
            self._workers[key] = loop.create_task(self._deliver(sink, queue))
        return queue

    def _stop_worker(self, sink: EventSink) -> None:
        queue = self._queues.pop(id(sink), None)
        worker = self._workers.pop(id(sink), None)
        if worker is None:
            return
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            worker.cancel()

    async def _deliver(self, sink: EventSink, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await sink.emit(event)
            except Exception as e:
                if self._logger:
                    self._logger.log_error(
                        "events",
                        f"Event sink '{sink.get_name()}' failed",
                        error=e,
                        additional_data={"event_kind": event.kind.value},
                    )
            finally:
                queue.task_done()
