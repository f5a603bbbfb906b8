"""
Command-line entry points.

    forge-build <plan> [--task ID] [--workspace-toml PATH]
    forge-loop [SCOPE] [--scope PATH] [--max-iter N] [--threshold F] [--workspace-toml PATH]

Exit codes:
    0 = complete
    1 = error/failure (including bad arguments, missing dependency, lock held)
    2 = blocked (human input required)

Logs go to stderr; stdout is left clean.
"""

import argparse
import logging
import os
import signal
import sys
from typing import Callable, List, Optional

from .build_driver import BuildDriver
from .driver_base import DriverOutcome, DriverServices, ExitCode
from .errors import ConfigurationError, DependencyMissing, LockContention
from .improve_driver import ImproveDriver

logger = logging.getLogger("forge_cli")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


class ForgeArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit 1 (2 means blocked here)."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(ExitCode.FAILURE, f"{self.prog}: error: {message}\n")


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("FORGE_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stderr,
    )


def _handle_sigterm(signum, frame):
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    """Turn SIGTERM into SystemExit so lock release and cleanup run."""
    signal.signal(signal.SIGTERM, _handle_sigterm)


def _execute(services: DriverServices, run: Callable[[], DriverOutcome]) -> int:
    """Dependency check, then the run; preflight errors exit 1 without a record."""
    try:
        services.worker.check_available()
        outcome = run()
    except DependencyMissing as e:
        logger.error(f"{e}")
        logger.error("Install the Claude CLI and make sure it is on PATH")
        return int(ExitCode.FAILURE)
    except ConfigurationError as e:
        logger.error(f"{e}")
        return int(ExitCode.FAILURE)
    except LockContention as e:
        logger.error(f"Run not started: {e}")
        return int(ExitCode.FAILURE)
    return int(outcome.exit_code)


# -----------------------------------------------------------------------------
# forge-build
# -----------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = ForgeArgumentParser(
        prog="forge-build",
        description="Execute the tasks of a plan headlessly, one worker invocation per task.",
    )
    parser.add_argument("plan", help="Plan document with '### T001: Title' task headings")
    parser.add_argument("--task", dest="start_task", default=None,
                        help="Resume from this task id (earlier tasks are skipped)")
    parser.add_argument("--workspace-toml", default=None,
                        help="Group config file between project and global tiers")
    return parser


def build_main(argv: Optional[List[str]] = None, services: Optional[DriverServices] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    install_signal_handlers()

    services = services or DriverServices.create(group_config=args.workspace_toml)
    driver = BuildDriver(services)
    return _execute(services, lambda: driver.run(args.plan, start_task=args.start_task))


# -----------------------------------------------------------------------------
# forge-loop
# -----------------------------------------------------------------------------
def improve_parser() -> argparse.ArgumentParser:
    parser = ForgeArgumentParser(
        prog="forge-loop",
        description="Run the bounded improvement loop headlessly over a scope.",
    )
    parser.add_argument("scope_arg", nargs="?", default=None, metavar="SCOPE",
                        help="Scope to improve (shorthand for --scope)")
    parser.add_argument("--scope", default=None, help="Scope to improve (default: .)")
    parser.add_argument("--max-iter", dest="max_iterations", default=None,
                        help="Maximum iterations (default: config, then 10)")
    parser.add_argument("--threshold", default=None,
                        help="Minimum delta worth another iteration (default: config, then 0.05)")
    parser.add_argument("--workspace-toml", default=None,
                        help="Group config file between project and global tiers")
    return parser


def improve_main(argv: Optional[List[str]] = None, services: Optional[DriverServices] = None) -> int:
    args = improve_parser().parse_args(argv)
    configure_logging()
    install_signal_handlers()

    scope = args.scope or args.scope_arg or "."
    services = services or DriverServices.create(group_config=args.workspace_toml)
    driver = ImproveDriver(services)
    return _execute(
        services,
        lambda: driver.run(scope, max_iterations=args.max_iterations, threshold=args.threshold),
    )


def build_entry() -> None:
    sys.exit(build_main())


def improve_entry() -> None:
    sys.exit(improve_main())
