"""Almanac - recurrence translation, task dispatch and calendar conflict handling"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.engine import ScheduleEngine, CreateScheduleResult, BatchCreateResult
from .core.models.config import (
    EngineConfig,
    DispatcherConfig,
    ConflictConfig,
    StoreConfig,
)
from .core.models.recurrence import (
    Daily,
    Weekly,
    Monthly,
    EveryNMinutes,
    EveryNHours,
    AbsoluteOnce,
    RawCron,
    RecurrenceSpec,
    parse_recurrence,
)
from .core.models.retry import RetryPolicy
from .core.models.schedule_task import ScheduleTask, ExecutionRecord, AlertMethod
from .core.models.schedule_entry import (
    ScheduleEntry,
    ConflictDetail,
    ConflictSuggestion,
    ConflictDetectionResult,
    ResolutionStrategy,
    ResolutionRecord,
)
from .core.models.events import RecurrenceEvent, ExecutionResultEvent, TaskOptions
from .core.models.statistics import ScheduleStatistics, ModuleStatistics
from .core.conflicts.resolver import ResolutionOutcome
from .core.gateway.ports import (
    RecurrenceEventPort,
    ExecutionResultPublisher,
    RoutingResultPublisher,
    CollectingResultPublisher,
)
from .core.scheduler.translator import translate
from .core.scheduler.calculator import next_run, upcoming_runs
from .core.types.status import ScheduleStatus, ExecutionStatus
from .core.errors import (
    AlmanacError,
    ErrorCode,
    TranslationError,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    ScheduleValidationError,
    SnoozeNotAllowedError,
    ExecutionError,
    ConcurrencyConflict,
    ConflictPersistsWarning,
    ValidationReport,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'ScheduleEngine',
    'CreateScheduleResult',
    'BatchCreateResult',
    'EngineConfig',
    'DispatcherConfig',
    'ConflictConfig',
    'StoreConfig',
    # Recurrence
    'Daily',
    'Weekly',
    'Monthly',
    'EveryNMinutes',
    'EveryNHours',
    'AbsoluteOnce',
    'RawCron',
    'RecurrenceSpec',
    'parse_recurrence',
    'translate',
    'next_run',
    'upcoming_runs',
    # Tasks
    'RetryPolicy',
    'ScheduleTask',
    'ExecutionRecord',
    'AlertMethod',
    'ScheduleStatus',
    'ExecutionStatus',
    'RecurrenceEvent',
    'ExecutionResultEvent',
    'TaskOptions',
    'ScheduleStatistics',
    'ModuleStatistics',
    'RecurrenceEventPort',
    'ExecutionResultPublisher',
    'RoutingResultPublisher',
    'CollectingResultPublisher',
    # Calendar entries
    'ScheduleEntry',
    'ConflictDetail',
    'ConflictSuggestion',
    'ConflictDetectionResult',
    'ResolutionStrategy',
    'ResolutionRecord',
    'ResolutionOutcome',
    # Errors
    'AlmanacError',
    'ErrorCode',
    'TranslationError',
    'ConfigurationError',
    'InvalidTransitionError',
    'NotFoundError',
    'ScheduleValidationError',
    'SnoozeNotAllowedError',
    'ExecutionError',
    'ConcurrencyConflict',
    'ConflictPersistsWarning',
    'ValidationReport',
    'MultipleValidationErrors',
]
