# almanac/core/models/events.py
"""Messages exchanged with producer modules (reminders, tasks, goals, notifications)."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from almanac.core.models.recurrence import RecurrenceSpec
from almanac.core.types.status import ExecutionStatus

RecurrenceEventType = Literal['recurrenceCreated', 'recurrenceChanged', 'recurrenceDeleted']


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class TaskOptions(_EventModel):
    """Optional per-task settings a producer may attach to a recurrence event.

    Bounds match the task fields they feed, so bad options are rejected with
    the event rather than when the task is built. Unknown keys are rejected.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra='forbid')

    name: Optional[Annotated[str, Field(min_length=1, max_length=200)]] = None
    description: Optional[str] = None
    task_type: Optional[str] = None
    timezone: Optional[str] = None
    priority: Optional[Literal['low', 'normal', 'high', 'urgent']] = None
    max_retries: Optional[Annotated[int, Field(ge=0, le=20)]] = None
    timeout_seconds: Optional[Annotated[int, Field(ge=1, le=86_400)]] = None
    catch_up_missed: bool = False
    tags: list[str] = Field(default_factory=list)
    end_at: Optional[int] = None
    max_occurrences: Optional[Annotated[int, Field(ge=1)]] = None
    created_by: Optional[str] = None


class RecurrenceEvent(_EventModel):
    """Inbound: a producer created, changed or deleted a recurring entity.

    ``recurrence_spec`` may be omitted on deletion.
    """

    type: RecurrenceEventType
    source_module: str
    source_entity_id: str
    account_id: str
    recurrence_spec: Optional[RecurrenceSpec] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    options: TaskOptions = Field(default_factory=TaskOptions)


class ExecutionResultEvent(_EventModel):
    """Outbound: emitted back to the producer on every execution attempt."""

    source_module: str
    source_entity_id: str
    status: ExecutionStatus
    timestamp: int
    task_id: Optional[str] = None
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode='json', exclude_none=True)
