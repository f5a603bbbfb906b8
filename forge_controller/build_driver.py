"""
Build Driver - Task Sequencer

Executes the tasks of a plan in document order, one worker invocation
per task, threading the continuation token from task to task.

State machine (per task, after a valid BuildSignal):

    tests_passed == false  ->  FAILED   (stop, exit 1)
    status == next         ->  record task, continue
    status == complete     ->  record task, COMPLETE (stop, exit 0)
    status == blocked      ->  BLOCKED  (stop, record blockers, exit 2)
    status == failed       ->  FAILED   (stop, exit 1)

Running out of tasks without a terminal signal is COMPLETE. Invocation or
validation failures end the run as ERROR (exit 1).

Preflight (before the lock is touched): the plan must exist and contain
at least one task heading; a resume task id must be one of them.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from .archiver import RunRecord
from .driver_base import BaseDriver, DriverOutcome, FinalStatus, RunContext
from .plan_parser import load_plan_tasks, select_tasks
from .signals import BuildSignal, BuildStatus, SignalKind

logger = logging.getLogger("build_driver")

BUILD_COMMAND_FILE = "forge--build.md"
SPAN_TYPE = "build_run"


class BuildDriver(BaseDriver):
    """Multi-task build sequencer."""

    kind = SignalKind.BUILD
    lock_scope = "build"
    trace_prefix = "build"

    def run(self, plan_path: Union[str, Path], start_task: Optional[str] = None) -> DriverOutcome:
        """
        Execute the plan, optionally resuming at `start_task`.

        Raises:
            ConfigurationError: missing plan, no tasks, unknown resume id
            LockContention: another build is running
        """
        plan = str(plan_path)
        all_tasks = load_plan_tasks(plan_path)
        logger.info(f"Found {len(all_tasks)} task(s): {' '.join(all_tasks)}")
        tasks = select_tasks(all_tasks, start_task)

        with self.services.lock_manager.hold(self.lock_scope):
            return self._run_tasks(plan, tasks)

    def build_prompt(self, plan: str, task_id: str, timestamp: str) -> str:
        return (
            "You are executing BUILD mode for CC-Forge.\n"
            "\n"
            f"Plan file: {plan}\n"
            f"Current task: {task_id}\n"
            f"Timestamp: {timestamp}\n"
            "\n"
            f"Read the instructions in {self._command_file(BUILD_COMMAND_FILE)}.\n"
            f"Execute exactly the task marked as {task_id} in the plan.\n"
            "\n"
            "Follow TDD discipline: write failing test -> implement minimum code -> "
            "verify passing -> commit.\n"
            "\n"
            "You MUST output ONLY a valid JSON object. No markdown, no explanation, no other text.\n"
            "The output must conform to the build-signal-schema.json contract.\n"
        )

    # -------------------------------------------------------------------------
    # Task Loop
    # -------------------------------------------------------------------------
    def _run_tasks(self, plan: str, tasks: List[str]) -> DriverOutcome:
        ctx = self._new_context()
        logger.info(f"Build starting | Plan: {plan} | Tasks to run: {len(tasks)}")
        self.services.state.update(phase="building")

        final_status: Optional[FinalStatus] = None
        for task_id in tasks:
            logger.info(f"--- Task {task_id} ---")
            prompt = self.build_prompt(plan, task_id, self._timestamp())
            step = self._invoke_step(prompt, ctx, f"task {task_id}")
            if not step.ok:
                final_status = FinalStatus.ERROR
                break

            final_status = self._apply_signal(plan, task_id, step.signal, ctx)
            if final_status is not None:
                break

        if final_status is None:
            final_status = FinalStatus.COMPLETE

        if final_status == FinalStatus.COMPLETE:
            self.services.state.update(phase="idle", build__completed=True)

        record = RunRecord(
            timestamp=ctx.started_at,
            trace_id=ctx.trace_id,
            span_type=SPAN_TYPE,
            session_id=ctx.session_id,
            final_status=final_status.value,
            completed=list(ctx.completed),
            blockers=list(ctx.blockers),
            plan=plan,
        )
        outcome = self._finish(
            record,
            final_status,
            progress_message=(
                f"Build [{final_status.value}] - {len(ctx.completed)}/{len(tasks)} tasks - Plan: {plan}"
            ),
            alert_message=self._alert_message(final_status, plan, ctx),
        )
        logger.info(
            f"Build {final_status.value} | Completed: {' '.join(ctx.completed) or 'none'}"
        )
        return outcome

    def _apply_signal(
        self,
        plan: str,
        task_id: str,
        signal: BuildSignal,
        ctx: RunContext,
    ) -> Optional[FinalStatus]:
        """Branch on one task's signal. Returns a terminal status or None to continue."""
        summary = signal.summary or "(no summary)"
        logger.info(
            f"Status: {signal.status.value} | Tests: {str(signal.tests_passed).lower()} | {summary}"
        )
        if signal.commit_ref:
            logger.info(f"Commit: {signal.commit_ref}")

        commit_info = f" ({signal.commit_ref})" if signal.commit_ref else ""
        self.services.progress.append(
            f"[{task_id}] {signal.status.value} - {summary}{commit_info}", ctx.session_id,
        )

        if not signal.tests_passed:
            logger.error(f"Tests did not pass after task {task_id}, build halted")
            logger.error(f"Fix the test failures, then resume: forge-build {plan} --task {task_id}")
            self._log_session(ctx)
            return FinalStatus.FAILED

        if signal.status in (BuildStatus.NEXT, BuildStatus.COMPLETE):
            ctx.completed.append(task_id)
            self.services.state.update(
                build__current_task=task_id,
                build__completed_tasks=list(ctx.completed),
            )

        if signal.status == BuildStatus.NEXT:
            logger.info(f"Task {task_id} complete, proceeding to next task")
            return None

        if signal.status == BuildStatus.COMPLETE:
            logger.info(f"All tasks complete (worker signaled at {task_id})")
            return FinalStatus.COMPLETE

        if signal.status == BuildStatus.BLOCKED:
            ctx.blockers = list(signal.blockers)
            logger.warning(f"Build blocked at task {task_id} - {len(ctx.blockers)} blocker(s)")
            logger.warning(f"Summary: {summary}")
            logger.warning(
                f"To resume after resolving blockers: forge-build {plan} --task {task_id}"
            )
            logger.warning(f"Session ID: {ctx.session_id or 'none'}")
            return FinalStatus.BLOCKED

        logger.error(f"Build failed at task {task_id}: {summary}")
        logger.error(f"Session ID: {ctx.session_id or 'none'}")
        return FinalStatus.FAILED

    def _alert_message(self, final_status: FinalStatus, plan: str, ctx: RunContext) -> Optional[str]:
        session = ctx.session_id or "none"
        if final_status in (FinalStatus.FAILED, FinalStatus.ERROR):
            last_completed = ctx.completed[-1] if ctx.completed else "none"
            return (
                f"Build {final_status.value} at task after {last_completed}. "
                f"Plan: {plan}. Session: {session}"
            )
        if final_status == FinalStatus.BLOCKED:
            return f"Build BLOCKED - human input required. Plan: {plan}. Session: {session}"
        return None
