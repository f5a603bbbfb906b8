"""
Forge Controller Errors

Exception taxonomy shared by the services and both drivers.

Raised before a run starts (CLI exits 1, no RunRecord):
- DependencyMissing: a required external tool is not on PATH
- ConfigurationError: bad threshold, bad plan, unknown resume task
- LockContention: another live process holds the scope

Raised inside a run (driver ends the run as `error`, RunRecord written):
- MalformedOutput: worker stdout is not a JSON object
- ContractMissing: envelope has no `structured_output`
- InvalidSignal: payload does not match the signal model
- WorkerInvocationFailure: the worker process itself failed

Stale locks and gate failures are NOT exceptions: a stale lock is
reclaimed with a warning, a gate failure is a normal terminal status.
"""

import functools
import logging
from typing import Any, Callable, Optional


class ForgeError(Exception):
    """Base class for all controller errors."""


class DependencyMissing(ForgeError):
    """A required external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f'"{tool}" is required but not installed')


class ConfigurationError(ForgeError):
    """Invalid driver input detected before the run starts."""


class LockContention(ForgeError):
    """Another live process holds the lock for this scope."""

    def __init__(self, lock_path: Any, owner_pid: int):
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        super().__init__(
            f"Another forge process is already running (PID: {owner_pid}), "
            f"lock file: {lock_path}"
        )


class WorkerInvocationFailure(ForgeError):
    """The worker subprocess could not complete."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class SignalValidationError(ForgeError):
    """
    Worker output could not be turned into a Signal.

    Carries the continuation token when the envelope was readable enough
    to recover one, so the failed run stays resumable.
    """

    def __init__(self, message: str, raw_excerpt: str = "", continuation_token: Optional[str] = None):
        self.raw_excerpt = raw_excerpt
        self.continuation_token = continuation_token
        super().__init__(message)


class MalformedOutput(SignalValidationError):
    """Worker output is not well-formed JSON."""


class ContractMissing(SignalValidationError):
    """Envelope parsed but `structured_output` is missing or null."""


class InvalidSignal(SignalValidationError):
    """`structured_output` does not conform to the signal contract."""


# -----------------------------------------------------------------------------
# Best-Effort Wrapper
# -----------------------------------------------------------------------------
def best_effort(logger: logging.Logger, what: str, default: Any = None) -> Callable:
    """
    Decorator for advisory side channels (notifications, archiving, state).

    Any Exception raised by the wrapped call is logged as a warning and
    `default` is returned instead. Used only where a failure must never
    reach the driver's control flow or exit code.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.warning(f"{what} failed (ignored): {e}")
                return default
        return wrapper
    return decorator
