# almanac/core/scheduler/handlers.py
from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, Iterator, MutableMapping, Optional, Union

from almanac.core.errors import ErrorCode, ExecutionError
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.types.status import ExecutionStatus

HandlerResult = Optional[ExecutionStatus]
TaskHandler = Callable[
    [ScheduleTask], Union[Awaitable[HandlerResult], HandlerResult]
]


class HandlerNotRegistered(ExecutionError, KeyError):
    """Raised when no handler exists for a task type.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, task_type: str) -> None:
        ExecutionError.__init__(
            self,
            message=f"no handler registered for task type '{task_type}'",
            code=ErrorCode.TASK_HANDLER_NOT_REGISTERED,
            help_text='register one with @engine.handler(task_type)',
        )
        self.task_type = task_type


class HandlerRegistry(MutableMapping[str, TaskHandler]):
    """
    Maps task_type -> handler.

    A handler receives the task and performs its side effect. Returning None
    or SUCCESS counts as success, returning SKIPPED records a skip, and
    raising records a failure. Sync handlers run in a worker thread.
    """

    def __init__(self, initial: Dict[str, TaskHandler] | None = None) -> None:
        self._data: Dict[str, TaskHandler] = dict(initial or {})

    def __getitem__(self, key: str) -> TaskHandler:
        try:
            return self._data[key]
        except KeyError:
            raise HandlerNotRegistered(key)

    def __setitem__(self, key: str, value: TaskHandler) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(
        self, task_type: str
    ) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form: ``@registry.register('reminder')``."""

        def decorator(fn: TaskHandler) -> TaskHandler:
            self._data[task_type] = fn
            return fn

        return decorator

    async def run(self, task: ScheduleTask) -> ExecutionStatus:
        handler = self[task.basic.task_type]
        if inspect.iscoroutinefunction(handler):
            result = await handler(task)
        else:
            result = await asyncio.to_thread(handler, task)
            if inspect.isawaitable(result):
                result = await result
        if result is None:
            return ExecutionStatus.SUCCESS
        return ExecutionStatus(result)
