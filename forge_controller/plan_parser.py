"""
Plan Parser

Task ids come from level-3 headings of the plan document:

    ### T001: Scaffold the project
    ### T002 Add login form

Ids are returned in document order. Anything else in the plan is opaque.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger("plan_parser")

TASK_HEADING = re.compile(r"^###\s+(T\d+)(?=[:\s]|$)", re.MULTILINE)


def extract_task_ids(text: str) -> List[str]:
    """Task ids in document order; repeated ids keep their first position."""
    task_ids: List[str] = []
    for match in TASK_HEADING.finditer(text):
        task_id = match.group(1)
        if task_id in task_ids:
            logger.warning(f"Duplicate task heading {task_id} in plan, ignoring repeat")
            continue
        task_ids.append(task_id)
    return task_ids


def load_plan_tasks(plan_path: Union[str, Path]) -> List[str]:
    """
    Read a plan file and extract its task ids.

    Raises:
        ConfigurationError: plan missing, unreadable, or has no task headings
    """
    path = Path(plan_path)
    if not path.is_file():
        raise ConfigurationError(f"Plan file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Plan file unreadable: {path}: {e}") from e

    task_ids = extract_task_ids(text)
    if not task_ids:
        raise ConfigurationError(
            f"No tasks found in plan: {path} "
            f"(expected task headers in format: ### T001: Task Title)"
        )
    return task_ids


def select_tasks(task_ids: List[str], start_task: Optional[str] = None) -> List[str]:
    """
    Tasks to execute, starting at `start_task` when resuming.

    Raises:
        ConfigurationError: `start_task` is not in the plan
    """
    if not start_task:
        return list(task_ids)
    if start_task not in task_ids:
        raise ConfigurationError(
            f"Task '{start_task}' not found in plan. Available: {' '.join(task_ids)}"
        )
    index = task_ids.index(start_task)
    if index:
        logger.info(f"Resuming from task {start_task} (skipping {index} already-completed task(s))")
    return task_ids[index:]
