"""Main entry point for YOLO mode.

Initializes logging in two phases (defaults then config-driven),
builds the AutonomousManager, and either runs the scheduler daemon
(``yolo run``) with graceful shutdown on SIGTERM/SIGINT, runs a single
tick (``yolo tick``, for cron), or executes one control-surface command
(``yolo start``, ``yolo status``, ``yolo approve <task-id>``, ...).

Key functions:
    main: Async entry point.
    run: Synchronous wrapper for the ``yolo`` console script.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from . import __version__
from .logging_config import setup_logging

COMMANDS_WITH_ARG = {"approve": "task_id", "reject": "task_id", "promote": "version_tag"}
SIMPLE_COMMANDS = {
    "start": "Start a run (validates configuration first)",
    "stop": "Stop the run",
    "pause": "Pause the run",
    "resume": "Resume a paused run and clear the error window",
    "status": "Show run status",
    "hold": "Put deployments on hold",
    "release": "Release the deployment hold",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="yolo", description="YOLO mode autonomous development loop")
    parser.add_argument("--config-dir", type=Path, default=None, help="Directory with settings.yaml/goals.yaml/.env")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon = subparsers.add_parser("run", help="Run the scheduler until SIGTERM/SIGINT")
    daemon.add_argument("--start", action="store_true", help="Start a run before entering the loop")

    subparsers.add_parser("tick", help="Run one scheduler tick now and exit")

    for name, help_text in SIMPLE_COMMANDS.items():
        subparsers.add_parser(name, help=help_text)

    for name, arg in COMMANDS_WITH_ARG.items():
        sub = subparsers.add_parser(name)
        sub.add_argument(arg)

    tasks = subparsers.add_parser("tasks", help="List tracked tasks")
    tasks.add_argument("filter", nargs="?", default="", help="'all' or a task status")
    return parser


async def _run_daemon(manager, start: bool, logger) -> int:
    from .autonomous.commands import AutonomousCommands

    if start:
        print(await AutonomousCommands(manager).dispatch("start"))

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    await manager.loop.start()
    await shutdown_event.wait()
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """Main async entry point."""
    args = _build_parser().parse_args(argv)

    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("yolo.loop")

    # Import here to ensure logging is configured first
    from .autonomous.commands import AutonomousCommands
    from .autonomous.manager import AutonomousManager
    from .config import Config, get_config

    config = Config(args.config_dir) if args.config_dir else get_config()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    manager = AutonomousManager(config)
    await manager.initialize()
    try:
        if args.command == "run":
            logger.info("yolo_starting", version=__version__)
            return await _run_daemon(manager, args.start, logger)

        if args.command == "tick":
            report = await manager.loop.tick()
            if report is None:
                print("Run is not active; nothing to do.")
            elif report.skipped_reason:
                print(f"Cycle skipped: {report.skipped_reason}")
            else:
                print(
                    f"Cycle {report.cycle_id}: {report.tasks_generated} generated, "
                    f"{len(report.succeeded)} succeeded, {len(report.failed)} failed, "
                    f"{len(report.approval_requested)} awaiting approval"
                )
            return 0

        if args.command in COMMANDS_WITH_ARG:
            arg = getattr(args, COMMANDS_WITH_ARG[args.command])
        elif args.command == "tasks":
            arg = args.filter
        else:
            arg = ""
        print(await AutonomousCommands(manager).dispatch(args.command, arg))
        return 0
    finally:
        await manager.close()
        logger.info("yolo_stopped", command=args.command)


def run():
    """Synchronous entry point for the ``yolo`` console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
