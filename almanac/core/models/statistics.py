# almanac/core/models/statistics.py
from __future__ import annotations

from pydantic import BaseModel, Field

from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.types.status import ScheduleStatus

# Producer modules tracked individually; anything else counts under 'other'
KNOWN_MODULES: tuple[str, ...] = ('reminder', 'task', 'goal', 'notification')


class ModuleStatistics(BaseModel):
    total_tasks: int = 0
    active_tasks: int = 0
    paused_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0

    def add(self, task: ScheduleTask) -> None:
        self.total_tasks += 1
        match task.status:
            case ScheduleStatus.PENDING | ScheduleStatus.ACTIVE:
                self.active_tasks += 1
            case ScheduleStatus.PAUSED:
                self.paused_tasks += 1
            case ScheduleStatus.COMPLETED:
                self.completed_tasks += 1
            case ScheduleStatus.FAILED:
                self.failed_tasks += 1
            case ScheduleStatus.CANCELLED:
                self.cancelled_tasks += 1
        self.total_executions += task.execution.total_executions
        self.successful_executions += task.execution.successful_executions
        self.failed_executions += (
            task.execution.failed_executions + task.execution.timeout_executions
        )


class ScheduleStatistics(BaseModel):
    """Per-account snapshot, overall and split by producer module."""

    account_id: str
    overall: ModuleStatistics = Field(default_factory=ModuleStatistics)
    by_module: dict[str, ModuleStatistics] = Field(
        default_factory=lambda: {name: ModuleStatistics() for name in KNOWN_MODULES}
    )

    @classmethod
    def from_tasks(cls, account_id: str, tasks: list[ScheduleTask]) -> 'ScheduleStatistics':
        stats = cls(account_id=account_id)
        for task in tasks:
            stats.overall.add(task)
            module = task.source_module if task.source_module in KNOWN_MODULES else 'other'
            stats.by_module.setdefault(module, ModuleStatistics()).add(task)
        return stats

    @property
    def success_rate(self) -> float:
        total = self.overall.total_executions
        return self.overall.successful_executions / total if total else 0.0
