"""
Plan Parser Tests

Test Categories:
1. Extraction Tests
2. Plan Loading Tests
3. Resume Selection Tests
"""

import logging

import pytest

from forge_controller.errors import ConfigurationError
from forge_controller.plan_parser import extract_task_ids, load_plan_tasks, select_tasks


# =============================================================================
# 1. Extraction Tests
# =============================================================================

class TestExtraction:
    """Task headings in document order."""

    def test_sample_plan_order(self, sample_plan_content):
        assert extract_task_ids(sample_plan_content) == ["T001", "T002", "T003"]

    def test_document_order_not_numeric_order(self):
        text = "### T010: later\n### T002: earlier\n"
        assert extract_task_ids(text) == ["T010", "T002"]

    def test_non_task_headings_ignored(self):
        text = "## T001: level two\n#### T002: level four\n### Task T003\n### T004: real\n"
        assert extract_task_ids(text) == ["T004"]

    def test_heading_must_end_id_cleanly(self):
        text = "### T001a: suffix\n### T002\n"
        assert extract_task_ids(text) == ["T002"]

    def test_duplicates_collapsed_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="plan_parser"):
            ids = extract_task_ids("### T001: a\n### T002: b\n### T001: again\n")
        assert ids == ["T001", "T002"]
        assert any("Duplicate" in r.getMessage() for r in caplog.records)


# =============================================================================
# 2. Plan Loading Tests
# =============================================================================

class TestLoadPlan:
    """File-level preflight."""

    def test_loads_tasks(self, sample_plan):
        assert load_plan_tasks(sample_plan) == ["T001", "T002", "T003"]

    def test_missing_plan(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_plan_tasks(tmp_path / "missing.md")

    def test_plan_without_tasks(self, tmp_path):
        plan = tmp_path / "empty.md"
        plan.write_text("# Plan\n\nNothing to do.\n")
        with pytest.raises(ConfigurationError, match="No tasks found"):
            load_plan_tasks(plan)


# =============================================================================
# 3. Resume Selection Tests
# =============================================================================

class TestSelectTasks:
    """Resuming skips earlier tasks."""

    def test_no_start_task(self):
        assert select_tasks(["T001", "T002"]) == ["T001", "T002"]

    def test_start_task_skips_earlier(self):
        assert select_tasks(["T001", "T002", "T003"], "T002") == ["T002", "T003"]

    def test_unknown_start_task(self):
        with pytest.raises(ConfigurationError, match="T009"):
            select_tasks(["T001", "T002"], "T009")
