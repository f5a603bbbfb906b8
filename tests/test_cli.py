"""
CLI Tests

Test Categories:
1. forge-build Tests
2. forge-loop Tests
3. Preflight Exit Code Tests
"""

import os

import pytest

from forge_controller.cli import build_main, improve_main, improve_parser
from tests.conftest import FakeWorker, build_signal, envelope, improve_signal


# =============================================================================
# 1. forge-build Tests
# =============================================================================

class TestBuildCommand:
    """Exit codes follow the final status."""

    def test_complete_exits_0(self, make_services, sample_plan):
        worker = FakeWorker([envelope(build_signal("complete", "T001"))])
        assert build_main([str(sample_plan)], services=make_services(worker)) == 0

    def test_blocked_exits_2(self, make_services, sample_plan):
        worker = FakeWorker([envelope(build_signal("blocked", "T001", blockers=["creds"]))])
        assert build_main([str(sample_plan)], services=make_services(worker)) == 2

    def test_failed_exits_1(self, make_services, sample_plan):
        worker = FakeWorker([envelope(build_signal("next", "T001", tests_passed=False))])
        assert build_main([str(sample_plan)], services=make_services(worker)) == 1

    def test_resume_flag(self, make_services, sample_plan):
        worker = FakeWorker([envelope(build_signal("complete", "T003"))])
        build_main([str(sample_plan), "--task", "T003"], services=make_services(worker))
        assert "Current task: T003" in worker.calls[0]["prompt"]


# =============================================================================
# 2. forge-loop Tests
# =============================================================================

class TestLoopCommand:
    """Scope and flag handling."""

    def test_positional_scope(self):
        args = improve_parser().parse_args(["src/"])
        assert args.scope_arg == "src/"

    def test_flags(self, make_services):
        worker = FakeWorker([
            envelope(improve_signal("loop", i, 0.2), session_id=f"sess-{i}") for i in (1, 2, 3)
        ])
        code = improve_main(
            ["--scope", "src/api", "--max-iter", "2", "--threshold", "0.1"],
            services=make_services(worker),
        )
        assert code == 0
        assert len(worker.calls) == 2
        assert "Scope: src/api" in worker.calls[0]["prompt"]

    def test_default_scope(self, make_services):
        worker = FakeWorker([envelope(improve_signal("complete", 1, 0.0))])
        improve_main([], services=make_services(worker))
        assert "Scope: .\n" in worker.calls[0]["prompt"]

    def test_blocked_exits_2(self, make_services):
        worker = FakeWorker([envelope(improve_signal("blocked", 1, 0.0, blockers=["x"]))])
        assert improve_main(["src/"], services=make_services(worker)) == 2


# =============================================================================
# 3. Preflight Exit Code Tests
# =============================================================================

class TestPreflight:
    """Preflight failures exit 1 without touching the worker or history."""

    def test_missing_dependency(self, make_services, sample_plan, forge_paths):
        worker = FakeWorker([envelope(build_signal("complete", "T001"))], available=False)
        assert build_main([str(sample_plan)], services=make_services(worker)) == 1
        assert worker.calls == []
        assert not forge_paths.history_dir.exists()

    def test_invalid_threshold(self, make_services, forge_paths):
        worker = FakeWorker([envelope(improve_signal("complete", 1, 0.0))])
        assert improve_main(["--threshold", "abc"], services=make_services(worker)) == 1
        assert worker.calls == []
        assert not forge_paths.history_dir.exists()

    def test_lock_contention(self, make_services, sample_plan, forge_paths):
        lock_file = forge_paths.lock_file("build")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text(f"{os.getppid()}\n")

        worker = FakeWorker([envelope(build_signal("complete", "T001"))])
        assert build_main([str(sample_plan)], services=make_services(worker)) == 1
        assert worker.calls == []

    def test_missing_plan(self, make_services, tmp_path):
        worker = FakeWorker([])
        assert build_main([str(tmp_path / "nope.md")], services=make_services(worker)) == 1

    def test_zero_max_iter_exits_0(self, make_services):
        worker = FakeWorker([])
        assert improve_main(["--max-iter", "0"], services=make_services(worker)) == 0
        assert worker.calls == []

    def test_usage_error_exits_1(self):
        with pytest.raises(SystemExit) as exc_info:
            improve_main(["--bogus"])
        assert exc_info.value.code == 1
