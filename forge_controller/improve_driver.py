"""
Improve Driver - Bounded Iteration Loop

Runs up to `max_iterations` improvement iterations over a scope, one
worker invocation each, threading the continuation token between them.

State machine (per iteration, after a valid ImproveSignal):

    status == loop      ->  delta < threshold ? COMPLETE (stop) : continue
    status == complete  ->  COMPLETE (stop, exit 0)
    status == blocked   ->  BLOCKED  (stop, record blockers, exit 2)
    status == error     ->  ERROR    (stop, exit 1)

Exhausting the iteration budget is COMPLETE. A `loop` signal without a
numeric delta is not comparable and continues.

Metrics: the first iteration's snapshot is the baseline, every
iteration's snapshot becomes the final one. `completed` items accumulate
across iterations into `improvements_made`.
"""

import logging
import re
from typing import Any, Optional, Tuple

from .archiver import RunRecord
from .driver_base import BaseDriver, DriverOutcome, FinalStatus, RunContext
from .errors import ConfigurationError
from .signals import ImproveSignal, ImproveStatus, SignalKind

logger = logging.getLogger("improve_driver")

IMPROVE_COMMAND_FILE = "forge--improve.md"
SPAN_TYPE = "forge_loop_run"

THRESHOLD_KEY = "workflow.improve.improvement_threshold"
MAX_ITERATIONS_KEY = "workflow.improve.max_iterations"
DEFAULT_THRESHOLD = "0.05"
DEFAULT_MAX_ITERATIONS = 10
THRESHOLD_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?$")


class ImproveDriver(BaseDriver):
    """Bounded improve loop gated on a delta threshold."""

    kind = SignalKind.IMPROVE
    lock_scope = "improve"
    trace_prefix = "forge-loop"

    def run(
        self,
        scope: str = ".",
        max_iterations: Optional[Any] = None,
        threshold: Optional[Any] = None,
    ) -> DriverOutcome:
        """
        Run the loop over `scope`.

        Args:
            scope: path (or other scope label) handed to the worker
            max_iterations: iteration budget; config, then 10, when omitted
            threshold: minimum delta worth another iteration; config, then
                0.05, when omitted

        Raises:
            ConfigurationError: non-numeric threshold or bad iteration budget
            LockContention: another improve loop is running
        """
        threshold_text, threshold_value = self.resolve_threshold(threshold)
        budget = self.resolve_max_iterations(max_iterations)

        with self.services.lock_manager.hold(self.lock_scope):
            return self._run_iterations(scope, budget, threshold_text, threshold_value)

    # -------------------------------------------------------------------------
    # Preflight
    # -------------------------------------------------------------------------
    def resolve_threshold(self, threshold: Optional[Any] = None) -> Tuple[str, float]:
        """Threshold as (text shown to the worker, numeric value)."""
        raw = threshold
        if raw is None or str(raw).strip() == "":
            raw = self.services.config.resolve(THRESHOLD_KEY, DEFAULT_THRESHOLD)
        text = str(raw).strip()
        if not THRESHOLD_PATTERN.match(text):
            logger.error(f"Invalid threshold: '{text}' - must be a decimal number (e.g., 0.05)")
            raise ConfigurationError(
                f"Invalid threshold: '{text}' - must be a decimal number (e.g., 0.05)"
            )
        return text, float(text)

    def resolve_max_iterations(self, max_iterations: Optional[Any] = None) -> int:
        raw = max_iterations
        if raw is None:
            raw = self.services.config.resolve(MAX_ITERATIONS_KEY, DEFAULT_MAX_ITERATIONS)
        try:
            value = int(str(raw).strip())
        except ValueError:
            raise ConfigurationError(f"Invalid max iterations: '{raw}' - must be a non-negative integer")
        if value < 0:
            raise ConfigurationError(f"Invalid max iterations: '{raw}' - must be a non-negative integer")
        return value

    def build_prompt(
        self,
        scope: str,
        iteration: int,
        max_iterations: int,
        threshold: str,
        timestamp: str,
    ) -> str:
        return (
            f"You are executing iteration {iteration} of the CC-Forge Forge Loop.\n"
            "\n"
            f"Scope: {scope}\n"
            f"Iteration: {iteration}\n"
            f"Max iterations: {max_iterations}\n"
            f"Improvement threshold: {threshold}\n"
            f"Timestamp: {timestamp}\n"
            "\n"
            f"Read the instructions in {self._command_file(IMPROVE_COMMAND_FILE)} and execute "
            "ONE improvement iteration for the scope above.\n"
            "\n"
            "You MUST output ONLY a valid JSON object. No markdown, no explanation, no other text.\n"
            "The output must conform to the improve-signal-schema.json contract.\n"
        )

    # -------------------------------------------------------------------------
    # Iteration Loop
    # -------------------------------------------------------------------------
    def _run_iterations(
        self,
        scope: str,
        max_iterations: int,
        threshold_text: str,
        threshold: float,
    ) -> DriverOutcome:
        ctx = self._new_context()
        logger.info(
            f"Forge Loop starting | Scope: {scope} | MaxIter: {max_iterations} | "
            f"Threshold: {threshold_text}"
        )
        self.services.state.update(phase="improving")

        iterations = 0
        final_status: Optional[FinalStatus] = None
        metrics_start = None
        metrics_end = None
        last_delta: Optional[float] = None
        summary = ""

        for iteration in range(1, max_iterations + 1):
            logger.info(f"--- Iteration {iteration}/{max_iterations} ---")
            prompt = self.build_prompt(
                scope, iteration, max_iterations, threshold_text, self._timestamp(),
            )
            iterations = iteration
            step = self._invoke_step(prompt, ctx, f"iteration {iteration}")
            if not step.ok:
                final_status = FinalStatus.ERROR
                break

            signal: ImproveSignal = step.signal
            summary = signal.summary or "(no summary)"
            if iteration == 1:
                metrics_start = signal.metrics
            metrics_end = signal.metrics
            last_delta = signal.delta
            ctx.completed.extend(item for item in signal.completed if item)

            self.services.progress.append(
                f"[iteration {iteration}] {signal.status.value} - {summary}", ctx.session_id,
            )
            final_status = self._apply_signal(signal, threshold_text, threshold, ctx)
            if final_status is not None:
                break
        else:
            logger.info(f"Max iterations ({max_iterations}) reached, stopping")
            final_status = FinalStatus.COMPLETE

        record = RunRecord(
            timestamp=ctx.started_at,
            trace_id=ctx.trace_id,
            span_type=SPAN_TYPE,
            session_id=ctx.session_id,
            final_status=final_status.value,
            completed=list(ctx.completed),
            blockers=list(ctx.blockers),
            scope=scope,
            iterations=iterations,
            metrics_start=metrics_start,
            metrics_end=metrics_end,
            delta=last_delta,
        )
        self.services.state.update(phase=final_status.value)
        outcome = self._finish(
            record,
            final_status,
            progress_message=(
                f"Forge Loop [{final_status.value}] - {iterations} iteration(s) - "
                f"Scope: {scope} - {summary}"
            ),
            alert_message=self._alert_message(final_status, iterations, scope, ctx),
        )
        logger.info(f"Forge Loop {final_status.value} | {iterations} iteration(s) | Scope: {scope}")
        return outcome

    def _apply_signal(
        self,
        signal: ImproveSignal,
        threshold_text: str,
        threshold: float,
        ctx: RunContext,
    ) -> Optional[FinalStatus]:
        """Branch on one iteration's signal. Returns a terminal status or None to continue."""
        delta_text = "n/a" if signal.delta is None else f"{signal.delta:g}"
        logger.info(f"Status: {signal.status.value} | Delta: {delta_text} | {signal.summary}")
        if signal.next_focus:
            logger.info(f"Next focus: {signal.next_focus}")

        if signal.status == ImproveStatus.LOOP:
            delta = signal.delta if signal.delta is not None else 0.0
            if delta < threshold:
                logger.info(
                    f"Delta ({delta_text}) is below threshold ({threshold_text}) "
                    f"despite 'loop' signal, stopping"
                )
                return FinalStatus.COMPLETE
            logger.info(f"Continuing (delta {delta_text} >= threshold {threshold_text})")
            return None

        if signal.status == ImproveStatus.COMPLETE:
            logger.info("Worker signaled completion")
            return FinalStatus.COMPLETE

        if signal.status == ImproveStatus.BLOCKED:
            ctx.blockers = list(signal.blockers)
            logger.warning(
                f"Forge loop blocked - {len(ctx.blockers)} blocker(s) require human input"
            )
            logger.warning(f"Summary: {signal.summary}")
            logger.warning(f"Session ID for resume: {ctx.session_id or 'none'}")
            return FinalStatus.BLOCKED

        logger.error(f"Worker reported error: {signal.summary}")
        self._log_session(ctx)
        return FinalStatus.ERROR

    def _alert_message(
        self,
        final_status: FinalStatus,
        iterations: int,
        scope: str,
        ctx: RunContext,
    ) -> Optional[str]:
        session = ctx.session_id or "none"
        if final_status == FinalStatus.ERROR:
            return f"Forge Loop ERROR after {iterations} iterations. Scope: {scope}. Session: {session}"
        if final_status == FinalStatus.BLOCKED:
            return f"Forge Loop BLOCKED - human input required. Scope: {scope}. Session: {session}"
        return None
