# almanac/core/cli.py
"""
CLI for the almanac dispatcher and the recurrence/cron helpers.

Module path resolution follows Celery's approach:
1. User provides dotted module path: `almanac dispatcher app.schedule:engine`
2. User is responsible for PYTHONPATH / running from correct directory
3. Convenience: if cwd has pyproject.toml, we add cwd to sys.path
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone

from pydantic import ValidationError

from almanac.core.engine import ScheduleEngine
from almanac.core.errors import AlmanacError, ConfigurationError, ErrorCode
from almanac.core.logging import get_logger, set_default_level
from almanac.core.models.recurrence import parse_recurrence
from almanac.core.scheduler.calculator import load_timezone, upcoming_runs
from almanac.core.scheduler.translator import translate
from almanac.core.utils.imports import import_file_path, setup_sys_path_from_cwd

_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "app.schedule:engine" -> ("app.schedule", "engine")
    - "app/schedule.py" -> ("app/schedule.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def _invalid_locator(module_locator: str, note: str) -> ConfigurationError:
    return ConfigurationError(
        message=f"cannot load engine from '{module_locator}'",
        code=ErrorCode.CLI_INVALID_LOCATOR,
        notes=[note],
        help_text=(
            'provide the engine in one of these formats:\n'
            '  almanac dispatcher app.schedule:engine  (recommended)\n'
            '  almanac dispatcher app/schedule.py:engine  (file path)\n'
            '  almanac dispatcher app.schedule  (auto-discover engine variable)'
        ),
    )


def discover_engine(module_locator: str) -> tuple[ScheduleEngine, str]:
    """
    Import a module and return the ScheduleEngine it defines.

    Returns:
        (engine_instance, variable_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        try:
            module = import_file_path(module_path)
        except FileNotFoundError as e:
            raise _invalid_locator(module_locator, str(e)) from e
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise _invalid_locator(module_locator, str(e)) from e

    if attr_name:
        obj = getattr(module, attr_name, None)
        if obj is None:
            raise _invalid_locator(module_locator, f"module has no attribute '{attr_name}'")
        if not isinstance(obj, ScheduleEngine):
            raise _invalid_locator(
                module_locator,
                f"'{attr_name}' is not a ScheduleEngine (got {type(obj).__name__})",
            )
        return obj, attr_name

    found = [
        (obj, name)
        for name, obj in vars(module).items()
        if not name.startswith('_') and isinstance(obj, ScheduleEngine)
    ]
    if not found:
        raise _invalid_locator(module_locator, 'no ScheduleEngine instance found')
    if len(found) > 1:
        names = [name for _, name in found]
        raise _invalid_locator(
            module_locator, f'multiple ScheduleEngine instances found: {names}'
        )
    return found[0]


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('almanac.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def _fail(error: AlmanacError) -> None:
    print(error.format_rust_style(), file=sys.stderr)
    sys.exit(1)


def translate_command(args: argparse.Namespace) -> None:
    """Print the cron expression for a JSON recurrence description."""
    try:
        data = json.loads(args.recurrence)
        spec = parse_recurrence(data)
        print(translate(spec, args.tz))
    except json.JSONDecodeError as e:
        _fail(
            ConfigurationError(
                message='recurrence is not valid JSON',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[str(e)],
                help_text='example: \'{"kind": "DAILY", "hour": 9, "minute": 0}\'',
            )
        )
    except ValidationError as e:
        _fail(
            ConfigurationError(
                message='recurrence has missing or invalid fields',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            )
        )
    except AlmanacError as e:
        _fail(e)


def next_run_command(args: argparse.Namespace) -> None:
    """Print the next fire times of a cron expression in a timezone."""
    try:
        tz = load_timezone(args.tz)
        after = datetime.now(timezone.utc)
        if args.after:
            try:
                after = datetime.fromisoformat(args.after)
            except ValueError as e:
                raise ConfigurationError(
                    message=f"invalid --after value '{args.after}'",
                    code=ErrorCode.CLI_INVALID_ARGS,
                    notes=[str(e)],
                    help_text='use ISO 8601, e.g. 2024-03-10T06:00:00+00:00',
                ) from e
            if after.tzinfo is None:
                after = after.replace(tzinfo=tz)
        runs = upcoming_runs(args.cron, args.tz, after, args.count)
    except AlmanacError as e:
        _fail(e)
        return

    if not runs:
        print('no upcoming runs')
        return
    for instant in runs:
        print(instant.astimezone(tz).isoformat())


def dispatcher_command(args: argparse.Namespace) -> None:
    """Handle dispatcher command."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)
    logger.info(f'Starting almanac dispatcher with loglevel={loglevel}')

    try:
        engine, var_name = discover_engine(args.module)
    except AlmanacError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info(f"Discovered engine '{var_name}' from {args.module}")

    async def run_dispatcher() -> None:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping dispatcher...')
            engine.dispatcher.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        try:
            await engine.run_dispatcher()
        finally:
            await engine.close()

    try:
        asyncio.run(run_dispatcher())
    except KeyboardInterrupt:
        logger.info('Dispatcher interrupted by user')
        return
    except Exception as e:
        logger.error(f'Dispatcher failed: {e}', exc_info=True)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='almanac',
        description='Almanac schedule engine - dispatcher and cron tools',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Translate a recurrence description
  almanac translate '{"kind": "WEEKLY", "weekday": 1, "hour": 9, "minute": 0}'

  # Next three fire times in a timezone
  almanac next-run '30 2 * * *' --tz America/New_York --count 3

  # Run the dispatcher for an engine defined in app/schedule.py
  almanac dispatcher app.schedule:engine
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    translate_parser = subparsers.add_parser(
        'translate', help='Translate a JSON recurrence description to cron'
    )
    translate_parser.add_argument('recurrence', help='Recurrence as JSON')
    translate_parser.add_argument(
        '--tz', default='UTC', help='Task timezone (default: UTC)'
    )

    next_run_parser = subparsers.add_parser(
        'next-run', help='Show the next fire times of a cron expression'
    )
    next_run_parser.add_argument('cron', help="Cron expression, e.g. '0 9 * * 1'")
    next_run_parser.add_argument(
        '--tz', default='UTC', help='Timezone the cron is read in (default: UTC)'
    )
    next_run_parser.add_argument(
        '--after', help='ISO 8601 start point, exclusive (default: now)'
    )
    next_run_parser.add_argument(
        '--count', type=int, default=1, help='How many fire times (default: 1)'
    )

    dispatcher_parser = subparsers.add_parser(
        'dispatcher', help='Run the dispatcher loop for an engine'
    )
    dispatcher_parser.add_argument(
        'module', help='Engine locator (e.g., app.schedule:engine)'
    )
    dispatcher_parser.add_argument(
        '--loglevel',
        choices=_LOG_LEVELS,
        default='INFO',
        type=str.upper,
        help='Logging level (default: INFO)',
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)

        match args.command:
            case 'translate':
                translate_command(args)
            case 'next-run':
                next_run_command(args)
            case 'dispatcher':
                dispatcher_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
