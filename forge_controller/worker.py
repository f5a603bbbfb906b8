"""
Claude CLI Worker

Blocking subprocess adapter for the external reasoning worker.

One call = one `claude -p` run in print mode with JSON output and a
JSON-schema contract. The continuation token from the previous call is
passed as `--resume <token>` so the worker keeps its context.

IMPORTANT:
- No timeout: the driver suspends for the whole call; cancellation is external
- No retry: a non-zero exit raises WorkerInvocationFailure and ends the run
- stdout is returned verbatim; parsing belongs to the SignalValidator
"""

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from .errors import DependencyMissing, WorkerInvocationFailure

logger = logging.getLogger("worker")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
CLAUDE_BINARY = os.getenv("FORGE_CLAUDE_BIN", "claude")
DEFAULT_ALLOWED_TOOLS = ("Read", "Edit", "Bash", "Glob", "Grep")
STDERR_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class WorkerInvocation:
    """One request/response round trip with the worker."""
    prompt: str
    continuation_token: Optional[str]
    raw_output: str
    returncode: int = 0


class Worker(Protocol):
    """Anything that can run one blocking worker invocation."""

    def check_available(self) -> str:
        ...

    def invoke(
        self,
        prompt: str,
        schema: Dict[str, Any],
        continuation_token: Optional[str] = None,
    ) -> WorkerInvocation:
        ...


class ClaudeWorker:
    """Runs the `claude` CLI as a blocking subprocess."""

    def __init__(
        self,
        binary: str = CLAUDE_BINARY,
        allowed_tools: Sequence[str] = DEFAULT_ALLOWED_TOOLS,
        cwd: Optional[str] = None,
    ):
        self.binary = binary
        self.allowed_tools = tuple(allowed_tools)
        self.cwd = cwd

    def check_available(self) -> str:
        """
        Resolve the worker binary on PATH.

        Raises:
            DependencyMissing: binary not installed
        """
        resolved = shutil.which(self.binary)
        if resolved is None:
            raise DependencyMissing(self.binary)
        return resolved

    def build_command(
        self,
        prompt: str,
        schema: Dict[str, Any],
        continuation_token: Optional[str] = None,
    ) -> list:
        cmd = [
            self.binary,
            "-p", prompt,
            "--output-format", "json",
            "--json-schema", json.dumps(schema),
            "--allowedTools", ",".join(self.allowed_tools),
        ]
        if continuation_token:
            cmd.extend(["--resume", continuation_token])
        return cmd

    def invoke(
        self,
        prompt: str,
        schema: Dict[str, Any],
        continuation_token: Optional[str] = None,
    ) -> WorkerInvocation:
        cmd = self.build_command(prompt, schema, continuation_token)
        logger.debug(
            f"Invoking {self.binary} (resume={continuation_token or 'none'}, "
            f"prompt={len(prompt)} chars)"
        )

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise WorkerInvocationFailure(f"{self.binary} could not be started: {e}") from e
        except OSError as e:
            raise WorkerInvocationFailure(f"{self.binary} invocation failed: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                logger.debug(f"{self.binary} stderr: {stderr[:STDERR_EXCERPT_CHARS]}")
            raise WorkerInvocationFailure(
                f"{self.binary} exited with code {result.returncode}",
                returncode=result.returncode,
                stderr=stderr[:STDERR_EXCERPT_CHARS],
            )

        return WorkerInvocation(
            prompt=prompt,
            continuation_token=continuation_token,
            raw_output=result.stdout or "",
            returncode=result.returncode,
        )


def parse_allowed_tools(value: Any) -> Sequence[str]:
    """Accept a comma-separated string or a list from config."""
    if isinstance(value, str):
        tools = [t.strip() for t in value.split(",")]
    elif isinstance(value, (list, tuple)):
        tools = [str(t).strip() for t in value]
    else:
        return DEFAULT_ALLOWED_TOOLS
    tools = [t for t in tools if t]
    return tuple(tools) or DEFAULT_ALLOWED_TOOLS
