"""
Run Archiver

Durable history of driver runs:
1. One pretty-printed JSON file per run under the history directory,
   named by a sortable timestamp (forge-2026-01-31T142501.json)
2. One compact line per run appended to the metrics JSONL stream

CRITICAL CONSTRAINTS:
- APPEND-ONLY: the metrics stream is only ever appended to
- ONE LINE PER CALL: archiving the same payload twice adds two lines, never
  a partial or merged line
- BEST-EFFORT: a failure here is logged and never fails the driver run
- If the payload cannot be pretty-printed it is written verbatim
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import best_effort
from .paths import ForgePaths

logger = logging.getLogger("archiver")

HISTORY_TIMESTAMP_FORMAT = "%Y-%m-%dT%H%M%S"


# -----------------------------------------------------------------------------
# Run Record (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RunRecord:
    """
    Immutable archive of one driver execution.

    Build runs carry `plan` and `completed`; improve runs carry `scope`,
    `completed`, `iterations`, the metric snapshots and the last delta.
    """
    timestamp: str
    trace_id: str
    span_type: str
    session_id: Optional[str]
    final_status: str
    completed: List[str] = field(default_factory=list)
    blockers: List[Any] = field(default_factory=list)
    plan: Optional[str] = None
    scope: Optional[str] = None
    iterations: Optional[int] = None
    metrics_start: Optional[Dict[str, Any]] = None
    metrics_end: Optional[Dict[str, Any]] = None
    delta: Optional[float] = None

    @property
    def is_build(self) -> bool:
        return self.plan is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the on-disk field names for each run kind."""
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "trace_id": self.trace_id,
            "span_type": self.span_type,
            "session_id": self.session_id or "",
        }
        if self.is_build:
            data["plan"] = self.plan
            data["final_status"] = self.final_status
            data["completed_tasks"] = list(self.completed)
        else:
            data["scope"] = self.scope
            data["iterations"] = self.iterations or 0
            data["final_status"] = self.final_status
            data["metrics"] = {"start": self.metrics_start, "end": self.metrics_end}
            data["delta"] = self.delta if self.delta is not None else 0.0
            data["improvements_made"] = list(self.completed)
        data["blockers"] = list(self.blockers)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        metrics = data.get("metrics") or {}
        is_build = "plan" in data
        return cls(
            timestamp=data["timestamp"],
            trace_id=data["trace_id"],
            span_type=data["span_type"],
            session_id=data.get("session_id") or None,
            final_status=data["final_status"],
            completed=list(data.get("completed_tasks" if is_build else "improvements_made", [])),
            blockers=list(data.get("blockers", [])),
            plan=data.get("plan"),
            scope=data.get("scope"),
            iterations=data.get("iterations"),
            metrics_start=metrics.get("start"),
            metrics_end=metrics.get("end"),
            delta=data.get("delta"),
        )


ArchivePayload = Union[RunRecord, Mapping[str, Any], str]


@dataclass(frozen=True)
class ArchiveResult:
    """Where a run ended up on disk."""
    history_file: Optional[Path]
    metrics_file: Optional[Path]


class RunArchiver:
    """Writes per-run history files and the metrics stream."""

    def __init__(self, paths: Optional[ForgePaths] = None):
        self._paths = paths or ForgePaths()

    @property
    def history_dir(self) -> Path:
        return self._paths.history_dir

    @property
    def metrics_file(self) -> Path:
        return self._paths.metrics_file

    def archive(self, record: ArchivePayload, now: Optional[datetime] = None) -> ArchiveResult:
        """
        Archive one run. Never raises.

        Args:
            record: RunRecord, plain mapping, or an already-serialized string
            now: timestamp for the history file name (defaults to now)
        """
        pretty, compact = _render(record)
        history_file = self._write_history(pretty, now or datetime.now())
        metrics_file = self._append_metrics(compact)
        return ArchiveResult(history_file=history_file, metrics_file=metrics_file)

    @best_effort(logger, "Run history write")
    def _write_history(self, content: str, now: datetime) -> Path:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        path = _unique_history_path(self.history_dir, now)
        with open(path, "x") as f:
            f.write(content)
            if not content.endswith("\n"):
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Run archived: {path}")
        return path

    @best_effort(logger, "Metrics append")
    def _append_metrics(self, line: str) -> Path:
        self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.metrics_file, "a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Metrics appended to JSONL: {self.metrics_file}")
        return self.metrics_file

    def read_metrics(self) -> List[Dict[str, Any]]:
        """All parseable records from the metrics stream, oldest first."""
        if not self.metrics_file.exists():
            return []
        records = []
        with open(self.metrics_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return records


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _render(record: ArchivePayload) -> Tuple[str, str]:
    """Return (pretty, compact) renderings; raw text when pretty-printing fails."""
    if isinstance(record, RunRecord):
        payload: Any = record.to_dict()
    elif isinstance(record, str):
        try:
            payload = json.loads(record)
        except json.JSONDecodeError:
            logger.warning("Run payload is not valid JSON, archiving raw text")
            return record, _single_line(record)
    else:
        payload = dict(record)

    try:
        pretty = json.dumps(payload, indent=2, ensure_ascii=False)
        compact = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.warning(f"Run payload not serializable ({e}), archiving raw form")
        raw = record if isinstance(record, str) else repr(payload)
        return raw, _single_line(raw)
    return pretty, compact


def _single_line(text: str) -> str:
    return " ".join(text.split())


def _unique_history_path(history_dir: Path, now: datetime) -> Path:
    stem = f"forge-{now.strftime(HISTORY_TIMESTAMP_FORMAT)}"
    path = history_dir / f"{stem}.json"
    counter = 1
    while path.exists():
        path = history_dir / f"{stem}-{counter}.json"
        counter += 1
    return path
