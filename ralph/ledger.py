"""
Progress ledger (progress.txt).

Plain-text, append-only log used by plan and PRD runs, which have no issue
tracker to record progress in. The agent reads it at the start of each
iteration and appends its own notes; the controller adds one header, one
block per iteration, and one terminal block.

The file is opened in append mode for every write and never held open, so
`tail -f` from another terminal is safe.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from loguru import logger

from ralph.state import IterationRecord

COMPLETED = "COMPLETED"
MAX_ITERATIONS_REACHED = "MAX ITERATIONS REACHED"


class ProgressLedger:

    def __init__(self, path: Path):
        self.path = path

    def initialize(self, branch: str) -> bool:
        """Write the header unless the file already exists. Returns True if created."""
        if self.path.exists():
            logger.debug(f"[LEDGER] Reusing existing ledger {self.path}")
            return False
        self._append(
            "# Ralph Progress Log\n"
            f"Started: {_now()}\n"
            f"Branch: {branch}\n"
            "---\n"
        )
        logger.info(f"[LEDGER] Created {self.path}")
        return True

    def record_iteration(self, record: IterationRecord) -> None:
        lines = [
            "",
            f"### Iteration {record.ordinal} - {record.timestamp}",
            f"Agent exit status: {record.returncode}",
        ]
        if record.debug_log is not None:
            lines.append(f"Debug log: {record.debug_log}")
        self._append("\n".join(lines) + "\n")

    def record_completed(self) -> None:
        self._terminal(COMPLETED)

    def record_exhausted(self) -> None:
        self._terminal(MAX_ITERATIONS_REACHED)

    def _terminal(self, label: str) -> None:
        self._append(f"\n### {label} - {_now()}\n")

    def _append(self, text: str) -> None:
        with open(self.path, "a") as f:
            f.write(text)


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")
