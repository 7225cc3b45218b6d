from __future__ import annotations

from pathlib import Path

import pytest

from ralph.agent import AgentResult
from ralph.config_loader import RunConfiguration
from ralph.modes import RunMode


class StubAgent:
    """Stands in for the agent CLI. Replays `outputs`, repeating the last one."""

    def __init__(self, outputs: list[str], returncode: int = 0):
        self.outputs = outputs
        self.returncode = returncode
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def invoke(self, prompt: str, iteration: int) -> AgentResult:
        self.prompts.append(prompt)
        output = self.outputs[min(iteration, len(self.outputs)) - 1]
        return AgentResult(output=output, returncode=self.returncode)


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(**overrides) -> RunConfiguration:
        values = dict(
            mode=RunMode.BEADS_AUTO,
            workspace=tmp_path,
            install_root=tmp_path,
            max_iterations=3,
            iteration_delay=0,
            log_dir=tmp_path / ".ralph-logs",
        )
        values.update(overrides)
        return RunConfiguration(**values)
    return _make
