"""
Driver Base - Shared Invoke/Validate/Finish Plumbing

Both drivers follow the same shape:

    preflight (config, plan)  ->  hold lock  ->  loop:
        prompt -> worker -> SignalValidator -> driver-specific branch
    ->  RunRecord -> archive -> progress entry -> HALT notification

This module owns everything except the branch and the prompt text.

CRITICAL CONSTRAINTS:
- SINGLE VALIDATION BOUNDARY: drivers only ever see typed signals
- TOKEN THREADING: the token returned by invocation n is supplied to n+1
- ONE RECORD PER RUN: _finish() is called exactly once per locked run
- Invocation/validation failures end the run as `error`; they are logged
  with the unit label and the last known continuation token
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, List, Optional

from .archiver import RunArchiver, RunRecord
from .config_resolver import ConfigResolver
from .errors import SignalValidationError, WorkerInvocationFailure, best_effort
from .lock_manager import LockManager
from .notifier import NotificationDispatcher, NotificationSeverity
from .paths import ForgePaths
from .progress import ProgressLog, StateFile
from .signals import Signal, SignalKind, SignalValidator, signal_schema
from .worker import ClaudeWorker, Worker, parse_allowed_tools

logger = logging.getLogger("driver_base")

RUN_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
TRACE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
ALLOWED_TOOLS_KEY = "workflow.allowed_tools"


class FinalStatus(str, Enum):
    """Terminal state of a driver run."""
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    ERROR = "error"


class ExitCode(IntEnum):
    """Process exit codes shared by both entry points."""
    SUCCESS = 0
    FAILURE = 1
    BLOCKED = 2


def exit_code_for(status: FinalStatus) -> ExitCode:
    if status == FinalStatus.COMPLETE:
        return ExitCode.SUCCESS
    if status == FinalStatus.BLOCKED:
        return ExitCode.BLOCKED
    return ExitCode.FAILURE


# -----------------------------------------------------------------------------
# Service Bundle
# -----------------------------------------------------------------------------
@dataclass
class DriverServices:
    """Everything a driver talks to, injected so tests can swap any piece."""
    paths: ForgePaths
    lock_manager: LockManager
    config: ConfigResolver
    validator: SignalValidator
    archiver: RunArchiver
    notifier: NotificationDispatcher
    progress: ProgressLog
    state: StateFile
    worker: Worker

    @classmethod
    def create(
        cls,
        paths: Optional[ForgePaths] = None,
        group_config: Optional[str] = None,
        worker: Optional[Worker] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> "DriverServices":
        """Default production wiring for one layout."""
        paths = paths or ForgePaths()
        config = ConfigResolver.from_paths(paths, group_path=group_config)
        if worker is None:
            tools = parse_allowed_tools(config.resolve(ALLOWED_TOOLS_KEY))
            worker = ClaudeWorker(allowed_tools=tools)
        return cls(
            paths=paths,
            lock_manager=LockManager(paths),
            config=config,
            validator=SignalValidator(),
            archiver=RunArchiver(paths),
            notifier=notifier or NotificationDispatcher(),
            progress=ProgressLog(paths.progress_file),
            state=StateFile(paths.state_file),
            worker=worker,
        )


@dataclass(frozen=True)
class DriverOutcome:
    """What a driver run ended as."""
    final_status: FinalStatus
    exit_code: ExitCode
    record: RunRecord


@dataclass
class StepResult:
    """One invoke+validate step. `signal` is None when the step failed."""
    signal: Optional[Signal] = None
    continuation_token: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.signal is not None


@dataclass
class RunContext:
    """Mutable per-run bookkeeping, folded into the RunRecord at the end."""
    started_at: str
    trace_id: str
    continuation_token: Optional[str] = None
    session_id: Optional[str] = None
    completed: List[str] = field(default_factory=list)
    blockers: List[Any] = field(default_factory=list)

    def observe_token(self, token: Optional[str]) -> None:
        """Thread `token` to the next call; remember the last non-empty one."""
        self.continuation_token = token
        if token:
            self.session_id = token


class BaseDriver:
    """Common plumbing for the build and improve drivers."""

    kind: SignalKind
    lock_scope: str
    trace_prefix: str

    def __init__(self, services: DriverServices):
        self.services = services

    # -------------------------------------------------------------------------
    # Run Lifecycle
    # -------------------------------------------------------------------------
    def _new_context(self) -> RunContext:
        return RunContext(
            started_at=self._timestamp(),
            trace_id=f"{self.trace_prefix}-{datetime.now().strftime(TRACE_TIMESTAMP_FORMAT)}",
        )

    def _invoke_step(self, prompt: str, ctx: RunContext, label: str) -> StepResult:
        """
        Run the worker once and validate its output.

        Never raises for invocation or validation failures; the failure is
        logged and returned as a StepResult without a signal.
        """
        schema = signal_schema(self.kind, self.services.paths.schema_dir)
        try:
            invocation = self.services.worker.invoke(prompt, schema, ctx.continuation_token)
            result = self.services.validator.validate(invocation.raw_output, self.kind)
            signal = result.unwrap()
        except WorkerInvocationFailure as e:
            logger.error(f"Worker invocation failed on {label}: {e}")
            if e.stderr:
                logger.error(f"Worker stderr: {e.stderr}")
            self._log_session(ctx)
            return StepResult(error=str(e))
        except SignalValidationError as e:
            if e.continuation_token:
                ctx.observe_token(e.continuation_token)
            logger.error(f"Invalid worker output on {label}: {e}")
            if e.raw_excerpt:
                logger.error(f"Raw output excerpt: {e.raw_excerpt}")
            self._log_session(ctx)
            return StepResult(continuation_token=e.continuation_token, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure on {label}: {e}")
            self._log_session(ctx)
            return StepResult(error=str(e))

        ctx.observe_token(result.continuation_token)
        return StepResult(signal=signal, continuation_token=result.continuation_token)

    def _finish(
        self,
        record: RunRecord,
        final_status: FinalStatus,
        progress_message: str,
        alert_message: Optional[str] = None,
    ) -> DriverOutcome:
        """Archive, journal and (for HALT conditions) alert. Called once per run."""
        self.services.archiver.archive(record)
        self.services.progress.append(progress_message, record.session_id)
        if alert_message:
            self._notify(alert_message)
        return DriverOutcome(
            final_status=final_status,
            exit_code=exit_code_for(final_status),
            record=record,
        )

    @best_effort(logger, "Critical notification")
    def _notify(self, message: str) -> None:
        self.services.notifier.notify_critical(message, NotificationSeverity.HALT)

    def _log_session(self, ctx: RunContext) -> None:
        logger.error(f"Session ID for context: {ctx.session_id or 'none'}")

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).strftime(RUN_TIMESTAMP_FORMAT)

    def _command_file(self, name: str) -> Path:
        return self.services.paths.commands_dir / name

