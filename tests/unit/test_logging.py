"""Unit tests for almanac logging module."""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator

import pytest

from almanac.core.logging import ColoredFormatter, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from almanac.core import logging as almanac_logging

    original = almanac_logging._default_level
    yield
    set_default_level(original)


def _record(name: str, msg: str, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, msg, None, exc_info)


class TestSetDefaultLevel:
    """Tests for set_default_level()."""

    def test_changes_module_variable(self) -> None:
        from almanac.core import logging as almanac_logging

        set_default_level(logging.DEBUG)
        assert almanac_logging._default_level == logging.DEBUG

        set_default_level(logging.WARNING)
        assert almanac_logging._default_level == logging.WARNING

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        logger = get_logger(f'test_{uuid.uuid4().hex[:8]}')
        assert logger.level == logging.WARNING

    def test_logger_handler_respects_default_level(self) -> None:
        set_default_level(logging.ERROR)
        logger = get_logger(f'test_{uuid.uuid4().hex[:8]}')

        assert len(logger.handlers) > 0
        for handler in logger.handlers:
            assert handler.level == logging.ERROR


class TestGetLogger:
    def test_namespaced_and_isolated(self) -> None:
        name = f'test_{uuid.uuid4().hex[:8]}'
        logger = get_logger(name)
        assert logger.name == f'almanac.{name}'
        assert logger.propagate is False

    def test_handler_not_duplicated(self) -> None:
        name = f'test_{uuid.uuid4().hex[:8]}'
        first = get_logger(name)
        second = get_logger(name)
        assert first is second
        assert len(second.handlers) == 1


class TestColoredFormatter:
    def test_plain_output_has_component_and_level(self) -> None:
        line = ColoredFormatter(use_colors=False).format(
            _record('almanac.dispatcher', 'claimed 2 tasks')
        )
        assert '[dispatcher]' in line
        assert '[INFO]' in line
        assert line.endswith('claimed 2 tasks')
        assert '\033[' not in line

    def test_colored_output(self) -> None:
        line = ColoredFormatter(use_colors=True).format(
            _record('almanac.tracker', 'retry scheduled', logging.WARNING)
        )
        assert '\033[93m' in line

    def test_exception_appended(self) -> None:
        try:
            raise RuntimeError('handler exploded')
        except RuntimeError:
            exc_info = sys.exc_info()
        line = ColoredFormatter(use_colors=False).format(
            _record('almanac.dispatcher', 'task failed', logging.ERROR, exc_info)
        )
        assert 'Traceback' in line
        assert 'RuntimeError: handler exploded' in line
