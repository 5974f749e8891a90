# almanac/core/gateway/ports.py
"""Boundary ports between producer modules and the engine.

Producers call the inbound port with recurrence events and subscribe to the
outbound port for execution results; they never reach into engine internals.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

from almanac.core.logging import get_logger
from almanac.core.models.events import ExecutionResultEvent, RecurrenceEvent
from almanac.core.models.schedule_task import ScheduleTask

logger = get_logger('gateway')

ResultCallback = Callable[[ExecutionResultEvent], Awaitable[None]]


class RecurrenceEventPort(Protocol):
    """Inbound: producers hand recurrence lifecycle events to the engine."""

    async def handle(
        self, event: Union[RecurrenceEvent, Mapping[str, Any]]
    ) -> Optional[ScheduleTask]: ...


class ExecutionResultPublisher(Protocol):
    """Outbound: execution results travel back to the originating producer."""

    async def publish(self, event: ExecutionResultEvent) -> None: ...


class RoutingResultPublisher:
    """
    Delivers each result to the callbacks subscribed for its source module.

    Results for modules nobody subscribed to are logged and dropped. A failing
    subscriber does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ResultCallback]] = {}

    def subscribe(self, source_module: str, callback: ResultCallback) -> None:
        self._subscribers.setdefault(source_module, []).append(callback)

    def unsubscribe(self, source_module: str, callback: ResultCallback) -> None:
        callbacks = self._subscribers.get(source_module, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def publish(self, event: ExecutionResultEvent) -> None:
        callbacks = self._subscribers.get(event.source_module, [])
        if not callbacks:
            logger.debug(
                f"No subscriber for '{event.source_module}', dropping {event.status.value} result"
            )
            return
        for callback in list(callbacks):
            try:
                await callback(event)
            except Exception as e:
                logger.error(
                    f"Subscriber for '{event.source_module}' failed on "
                    f"'{event.source_entity_id}': {e}",
                    exc_info=True,
                )


class CollectingResultPublisher:
    """Keeps every published result in order; handy for tests and local runs."""

    def __init__(self) -> None:
        self.events: list[ExecutionResultEvent] = []

    async def publish(self, event: ExecutionResultEvent) -> None:
        self.events.append(event)
