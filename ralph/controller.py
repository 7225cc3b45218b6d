"""
RALPH Controller — The Loop

It is NOT smart. It is deterministic.

Responsibilities:
  - Move into the resolved workspace
  - Build the prompt for each iteration
  - Invoke the agent, one invocation at a time
  - Record every iteration in the progress ledger (plan/PRD modes)
  - Scan output for the completion signal
  - Enforce the iteration cap

It never interprets the agent's work. It only counts and listens.

  IDLE -> RUNNING(1..cap) -> COMPLETED | EXHAUSTED | FAILED
"""

from __future__ import annotations

import os
import time
from typing import Callable, Protocol

from loguru import logger

from ralph.agent import AgentResult
from ralph.config_loader import ConfigurationError, RunConfiguration
from ralph.events import EventBus
from ralph.ledger import ProgressLedger
from ralph.prompts import COMPLETION_SIGNAL, PromptBuilder
from ralph.state import IterationRecord, LoopState, RunOutcome
from ralph.workspace import current_branch


class Agent(Protocol):
    def invoke(self, prompt: str, iteration: int) -> AgentResult: ...


class IterationController:

    def __init__(
        self,
        config: RunConfiguration,
        agent: Agent,
        bus: EventBus | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.config = config
        self.agent = agent
        self.bus = bus or EventBus()
        self._sleep = sleep or time.sleep
        self.builder = PromptBuilder(config)
        self.ledger = ProgressLedger(config.progress_file) if config.progress_file else None
        self.state = LoopState.IDLE
        self.records: list[IterationRecord] = []

    def run(self) -> RunOutcome:
        try:
            self._prepare()
        except ConfigurationError as e:
            return self._fail(e)

        self.bus.emit("run_started", "controller", self._summary())

        cap = self.config.max_iterations
        for n in range(1, cap + 1):
            self.state = LoopState.RUNNING
            self.bus.emit("iteration_started", "controller", {"iteration": n, "max_iterations": cap})

            try:
                record = self._iterate(n)
            except ConfigurationError as e:
                return self._fail(e, iterations=n)

            if record.completed:
                return self._finish(LoopState.COMPLETED, n)

            if n < cap:
                logger.info(f"[LOOP] Iteration {n} complete. Continuing...")
                self._sleep(self.config.iteration_delay)

        return self._finish(LoopState.EXHAUSTED, cap)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare(self) -> None:
        """Everything that can fail for configuration reasons, before RUNNING."""
        os.chdir(self.config.workspace)
        logger.debug(f"[LOOP] Working directory: {self.config.workspace}")

        # Surface template or file problems now rather than mid-run
        self.builder.build()

        if self.ledger is not None:
            self.ledger.initialize(current_branch(self.config.workspace))

    def _iterate(self, n: int) -> IterationRecord:
        prompt = self.builder.build()
        result = self.agent.invoke(prompt, n)

        record = IterationRecord(
            ordinal=n,
            prompt=prompt,
            output=result.output,
            returncode=result.returncode,
            completed=COMPLETION_SIGNAL in result.output,
            debug_log=result.debug_log,
        )
        self.records.append(record)
        if self.ledger is not None:
            self.ledger.record_iteration(record)

        self.bus.emit("iteration_finished", "controller", {
            "iteration": n,
            "returncode": record.returncode,
            "completed": record.completed,
            "debug_log": str(record.debug_log) if record.debug_log else None,
        })
        return record

    def _finish(self, state: LoopState, iterations: int) -> RunOutcome:
        if self.ledger is not None:
            if state is LoopState.COMPLETED:
                self.ledger.record_completed()
            else:
                self.ledger.record_exhausted()

        self.state = state
        outcome = RunOutcome(state=state, iterations=iterations)
        if state is LoopState.COMPLETED:
            logger.info(f"[LOOP] Completion signal detected after {iterations} iteration(s)")
        else:
            logger.warning(f"[LOOP] Reached max iterations ({iterations}) without completion")
        self._emit_finished(outcome)
        return outcome

    def _fail(self, error: ConfigurationError, iterations: int = 0) -> RunOutcome:
        logger.error(f"[LOOP] {error}")
        self.state = LoopState.FAILED
        outcome = RunOutcome(state=LoopState.FAILED, iterations=iterations, error=str(error))
        self._emit_finished(outcome)
        return outcome

    def _emit_finished(self, outcome: RunOutcome) -> None:
        self.bus.emit("run_finished", "controller", {
            "state": outcome.state.value,
            "iterations": outcome.iterations,
            "exit_code": outcome.exit_code,
            "error": outcome.error,
            "progress_file": str(self.config.progress_file) if self.config.progress_file else None,
        })

    def _summary(self) -> dict:
        cfg = self.config
        return {
            "mode": cfg.mode.value,
            "max_iterations": cfg.max_iterations,
            "workspace": str(cfg.workspace),
            "issue_id": cfg.issue_id,
            "plan_file": str(cfg.plan_file) if cfg.plan_file else None,
            "requirements_file": str(cfg.requirements_file) if cfg.requirements_file else None,
            "instructions_file": str(cfg.instructions_file) if cfg.instructions_file else None,
            "settings_file": str(cfg.settings_file) if cfg.settings_file else None,
            "completion_signal": COMPLETION_SIGNAL,
            "debug": cfg.debug,
        }
