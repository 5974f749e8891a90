# almanac/core/logging.py
import logging
import os
import sys
from datetime import datetime

# Module-level default log level, can be changed by setup_logging()
_default_level: int = logging.INFO


class ColoredFormatter(logging.Formatter):
    """Colored formatter for engine components"""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def __init__(self, use_colors: bool | None = None) -> None:
        super().__init__()
        if use_colors is None:
            use_colors = _colors_enabled()
        self.use_colors = use_colors

    def _paint(self, color_key: str, text: str) -> str:
        if not self.use_colors:
            return text
        return f"{self.COLORS[color_key]}{text}{self.COLORS['RESET']}"

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'almanac.dispatcher' -> 'dispatcher'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [conflicts] = 11 chars, [dispatcher] = 12 chars
        component_padded = f'[{component}]'.ljust(14)
        level_padded = f'[{record.levelname}]'.ljust(10)

        level_text = level_padded
        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
            level_text = f"{level_color}{level_padded}{self.COLORS['RESET']}"

        formatted = (
            f"{self._paint('LIGHT_BLUE', f'[{time_str}]')} "
            f"{self._paint('WHITE', component_padded)}"
            f'{level_text}'
            f"{self._paint('WHITE', record.getMessage())}"
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def _colors_enabled() -> bool:
    if os.environ.get('ALMANAC_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'almanac.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
