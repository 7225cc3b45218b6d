"""
Run mode selection.

Exactly one mode is active per run. An explicit issue reference is the most
specific instruction a caller can give, so it wins over everything else.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class RunMode(str, Enum):
    BEADS_AUTO = "beads-auto"
    BEADS_PARENT = "beads-parent"
    PLAN = "plan"
    PRD = "prd"

    @property
    def uses_tracker(self) -> bool:
        """Beads modes track progress in the issue tracker, not the ledger."""
        return self in (RunMode.BEADS_AUTO, RunMode.BEADS_PARENT)


def resolve_mode(
    issue_id: str | None = None,
    requirements_file: str | Path | None = None,
    plan_file: str | Path | None = None,
) -> RunMode:
    """Priority: issue id > requirements file > plan file > auto-discovery."""
    if issue_id:
        return RunMode.BEADS_PARENT
    if requirements_file:
        return RunMode.PRD
    if plan_file:
        return RunMode.PLAN
    return RunMode.BEADS_AUTO
