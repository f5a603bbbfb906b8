"""
Signal Contract & Validator

The worker answers every invocation with a JSON envelope:

    {"session_id": "...", "structured_output": {...signal payload...}, ...}

Validation runs three checks, in order:
1. stdout parses as a JSON object               -> else MalformedOutput
2. `structured_output` is present and non-null  -> else ContractMissing
3. payload matches the driver's signal model    -> else InvalidSignal

Past this boundary drivers only see BuildSignal / ImproveSignal instances,
never the raw payload. Status enums are closed: unknown values fail step 3.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ContractMissing, InvalidSignal, MalformedOutput, SignalValidationError

logger = logging.getLogger("signals")

RAW_EXCERPT_CHARS = 500


# -----------------------------------------------------------------------------
# Status Enums (closed per variant)
# -----------------------------------------------------------------------------
class BuildStatus(str, Enum):
    NEXT = "next"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"


class ImproveStatus(str, Enum):
    LOOP = "loop"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    ERROR = "error"


class SignalKind(str, Enum):
    """Which driver a signal belongs to."""
    BUILD = "build"
    IMPROVE = "improve"


Blocker = Union[str, Dict[str, Any]]


# -----------------------------------------------------------------------------
# Signal Models
# -----------------------------------------------------------------------------
class BuildSignal(BaseModel):
    """Result of one build task."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    status: BuildStatus
    task_id: str = Field(default="", description="Task executed in this invocation")
    completed_tasks: List[str] = Field(default_factory=list)
    next_task: Optional[str] = None
    blockers: List[Blocker] = Field(default_factory=list)
    tests_passed: bool = Field(default=False, description="Full test suite green after this task")
    commit_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("commit_ref", "commit_hash"),
    )
    summary: str = ""


class ImproveSignal(BaseModel):
    """Result of one improvement iteration."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    status: ImproveStatus
    iteration: int = 0
    delta: Optional[float] = Field(default=None, description="Estimated improvement this iteration")
    metrics: Optional[Dict[str, Any]] = None
    completed: List[str] = Field(default_factory=list)
    skipped: List[Any] = Field(default_factory=list)
    blockers: List[Blocker] = Field(default_factory=list)
    next_focus: str = ""
    summary: str = ""


Signal = Union[BuildSignal, ImproveSignal]

SIGNAL_MODELS: Dict[SignalKind, Type[BaseModel]] = {
    SignalKind.BUILD: BuildSignal,
    SignalKind.IMPROVE: ImproveSignal,
}

SCHEMA_FILE_NAMES: Dict[SignalKind, str] = {
    SignalKind.BUILD: "build-signal-schema.json",
    SignalKind.IMPROVE: "improve-signal-schema.json",
}


# -----------------------------------------------------------------------------
# Validation Result
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ValidationResult:
    """Either a signal or the error explaining why there is none."""
    signal: Optional[Signal] = None
    continuation_token: Optional[str] = None
    error: Optional[SignalValidationError] = None

    @property
    def ok(self) -> bool:
        return self.signal is not None and self.error is None

    def unwrap(self) -> Signal:
        """Return the signal or raise the validation error."""
        if self.error is not None:
            raise self.error
        assert self.signal is not None
        return self.signal


class SignalValidator:
    """Turns raw worker stdout into a typed Signal."""

    def validate(self, raw_output: str, kind: SignalKind) -> ValidationResult:
        excerpt = (raw_output or "")[:RAW_EXCERPT_CHARS]

        try:
            envelope = json.loads(raw_output)
        except (json.JSONDecodeError, TypeError) as e:
            return ValidationResult(error=MalformedOutput(
                f"Worker output is not valid JSON: {e}", raw_excerpt=excerpt,
            ))
        if not isinstance(envelope, dict):
            return ValidationResult(error=MalformedOutput(
                f"Worker output is not a JSON object (got {type(envelope).__name__})",
                raw_excerpt=excerpt,
            ))

        token = _session_id(envelope)
        payload = envelope.get("structured_output")
        if payload is None:
            return ValidationResult(
                continuation_token=token,
                error=ContractMissing(
                    "Worker output missing .structured_output; "
                    "--json-schema enforcement may have failed",
                    raw_excerpt=excerpt,
                    continuation_token=token,
                ),
            )

        model = SIGNAL_MODELS[kind]
        try:
            signal = model.model_validate(payload)
        except PydanticValidationError as e:
            return ValidationResult(
                continuation_token=token,
                error=InvalidSignal(
                    f"{kind.value} signal violates contract: {_summarize(e)}",
                    raw_excerpt=excerpt,
                    continuation_token=token,
                ),
            )

        return ValidationResult(signal=signal, continuation_token=token)


def signal_schema(kind: SignalKind, schema_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    JSON schema handed to the worker for `kind`.

    Prefers the installed schema file in `schema_dir`; falls back to the
    schema generated from the signal model.
    """
    if schema_dir is not None:
        path = Path(schema_dir) / SCHEMA_FILE_NAMES[kind]
        if path.is_file():
            try:
                with open(path, "r") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Installed schema {path} unreadable, using built-in schema: {e}")
    return SIGNAL_MODELS[kind].model_json_schema()


def _session_id(envelope: Dict[str, Any]) -> Optional[str]:
    value = envelope.get("session_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)
