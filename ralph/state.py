from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

EXIT_COMPLETED = 0
EXIT_EXHAUSTED = 1
EXIT_CONFIG_ERROR = 2


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return {
            LoopState.COMPLETED: EXIT_COMPLETED,
            LoopState.EXHAUSTED: EXIT_EXHAUSTED,
        }.get(self, EXIT_CONFIG_ERROR)


class IterationRecord(BaseModel):
    """One pass of the loop. Frozen once the agent invocation returns."""
    model_config = ConfigDict(frozen=True)

    ordinal: int
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    prompt: str
    output: str
    returncode: int
    completed: bool
    debug_log: Path | None = None


class RunOutcome(BaseModel):
    state: LoopState
    iterations: int = 0
    error: str = ""

    @property
    def exit_code(self) -> int:
        return self.state.exit_code
