"""Rust-style error display and the typed errors raised by the schedule engine."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

# Absolute path to the almanac package directory.
# Used by _find_user_frame to tell library frames apart from caller code.
_ALMANAC_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for engine errors.

    Organized by category:
    - E100-E199: Recurrence and cron errors
    - E200-E299: Configuration and CLI errors
    - E300-E399: Task lifecycle and execution errors
    - E400-E499: Calendar entry and resolution errors
    - E500-E599: Concurrency and storage errors
    """

    # Recurrence / cron (E100-E199)
    RECURRENCE_FIELD_OUT_OF_RANGE = 'E100'
    RECURRENCE_INVALID_CRON = 'E101'
    RECURRENCE_INVALID_TIMEZONE = 'E102'
    RECURRENCE_TIMESTAMP_OUT_OF_RANGE = 'E103'

    # Config / CLI (E200-E299)
    CONFIG_INVALID = 'E200'
    CONFIG_INVALID_RETRY = 'E201'
    CONFIG_INVALID_STORE_URL = 'E202'
    CLI_INVALID_ARGS = 'E203'
    CLI_INVALID_LOCATOR = 'E204'

    # Task lifecycle / execution (E300-E399)
    TASK_INVALID_TRANSITION = 'E300'
    TASK_NOT_FOUND = 'E301'
    TASK_EXECUTION_FAILED = 'E302'
    TASK_SNOOZE_NOT_ALLOWED = 'E303'
    TASK_HANDLER_NOT_REGISTERED = 'E304'
    TASK_INVALID_EVENT = 'E305'

    # Calendar entries / resolution (E400-E499)
    ENTRY_INVALID_TIME_RANGE = 'E400'
    ENTRY_DURATION_MISMATCH = 'E401'
    ENTRY_NOT_FOUND = 'E402'
    RESOLUTION_MISSING_FIELDS = 'E403'
    CONFLICT_PERSISTS = 'E404'
    ENTRY_INVALID_FIELDS = 'E405'
    ENTRY_INACTIVE = 'E406'

    # Concurrency / storage (E500-E599)
    CONCURRENCY_VERSION_MISMATCH = 'E500'
    STORE_DUPLICATE_ID = 'E501'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('ALMANAC_FORCE_COLOR'):
        return True

    # NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if verbose output (full traceback) should be shown."""
    return _env_flag('ALMANAC_VERBOSE')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return _env_flag('ALMANAC_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class AlmanacError(Exception):
    """Base exception for every error the engine raises.

    Provides Rust-style error formatting with:
    - Error code and category
    - Source location with code snippet
    - Notes and help text

    ``retryable`` tells callers whether repeating the same call after
    re-fetching state can succeed.
    """

    retryable: ClassVar[bool] = False

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    @property
    def kind(self) -> str:
        """Stable tag for branching without parsing messages."""
        return type(self).__name__

    def with_note(self, note: str) -> AlmanacError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> AlmanacError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                stripped = source_line.lstrip()
                indent = len(source_line) - len(stripped)
                underline = ' ' * indent + '^' * len(stripped)
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text (no ANSI colors), safe for logs and stored failure reasons."""
        return self.format_rust_style(use_colors=False)


# Store original excepthook
_original_excepthook = sys.excepthook


def _almanac_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for AlmanacError exceptions."""
    if _should_use_plain_errors() or not isinstance(exc_value, AlmanacError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)

    if _should_show_verbose():
        print(file=sys.stderr)
        c = _Colors if _should_use_colors() else _NoColors
        print(f'{c.DIM}Full traceback (ALMANAC_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _almanac_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class TranslationError(AlmanacError):
    """A recurrence description could not be turned into a cron expression."""

    pass


@dataclass
class ConfigurationError(AlmanacError):
    """Raised when engine, dispatcher or store configuration is invalid."""

    pass


@dataclass
class InvalidTransitionError(AlmanacError):
    """A lifecycle change that the task's current status does not allow."""

    pass


@dataclass
class NotFoundError(AlmanacError):
    """A task or calendar entry id did not resolve."""

    pass


@dataclass
class ScheduleValidationError(AlmanacError):
    """Calendar entry, resolution or recurrence event input violates its invariants."""

    pass


@dataclass
class SnoozeNotAllowedError(AlmanacError):
    """Snooze requested on a task whose alert settings forbid it."""

    pass


@dataclass
class ExecutionError(AlmanacError):
    """Failure inside a task's side effect.

    Handlers may raise it directly; any other exception escaping a handler is
    wrapped in one by the dispatcher. Absorbed by the retry policy.
    """

    retryable: ClassVar[bool] = True


@dataclass
class ConcurrencyConflict(AlmanacError):
    """Stored version differs from the version the caller loaded."""

    retryable: ClassVar[bool] = True

    entity_id: str = ''
    expected_version: int = 0
    actual_version: int | None = None


@dataclass
class ConflictPersistsWarning(AlmanacError, UserWarning):
    """Residual overlaps after a RESCHEDULE or ADJUST_DURATION.

    Returned alongside the resolution result instead of being raised.
    """

    conflict_count: int = 0


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple AlmanacError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[AlmanacError] = []

    def add(self, error: AlmanacError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(AlmanacError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report
        super(AlmanacError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op (returns normally)
    - 1 error: raises the original error (preserves except clauses)
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of almanac internals."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_ALMANAC_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None
