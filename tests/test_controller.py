import os

import pytest

from conftest import StubAgent
from ralph.agent import AgentUnavailableError
from ralph.controller import IterationController
from ralph.events import EventBus
from ralph.modes import RunMode
from ralph.prompts import COMPLETION_SIGNAL
from ralph.state import EXIT_COMPLETED, EXIT_CONFIG_ERROR, EXIT_EXHAUSTED, LoopState


@pytest.fixture(autouse=True)
def _isolate(tmp_path, monkeypatch):
    # The controller chdirs into the workspace; monkeypatch restores it.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("ralph.controller.current_branch", lambda path: "main")


@pytest.fixture
def plan_config(make_config, tmp_path):
    plan = tmp_path / "plan.md"
    plan.write_text("# Plan\n1. step one\n")
    return lambda **kw: make_config(
        mode=RunMode.PLAN, plan_file=plan, progress_file=tmp_path / "progress.txt", **kw
    )


def test_exhausts_after_cap(plan_config):
    config = plan_config(max_iterations=3)
    agent = StubAgent(["still working"])
    sleeps = []

    outcome = IterationController(config, agent, sleep=sleeps.append).run()

    assert outcome.state is LoopState.EXHAUSTED
    assert outcome.exit_code == EXIT_EXHAUSTED
    assert outcome.iterations == 3
    assert agent.calls == 3
    assert len(sleeps) == 2

    ledger = config.progress_file.read_text()
    assert ledger.count("### Iteration ") == 3
    assert ledger.count("### MAX ITERATIONS REACHED") == 1
    assert "### COMPLETED" not in ledger


def test_completes_on_signal(plan_config):
    config = plan_config(max_iterations=5)
    agent = StubAgent(["working", f"all done {COMPLETION_SIGNAL}", "never sent"])

    controller = IterationController(config, agent, sleep=lambda s: None)
    outcome = controller.run()

    assert outcome.state is LoopState.COMPLETED
    assert outcome.exit_code == EXIT_COMPLETED
    assert outcome.iterations == 2
    assert agent.calls == 2
    assert [r.completed for r in controller.records] == [False, True]

    ledger = config.progress_file.read_text()
    assert ledger.count("### Iteration ") == 2
    assert ledger.count("### COMPLETED") == 1
    assert "MAX ITERATIONS" not in ledger


def test_nonzero_exit_still_scanned(plan_config):
    agent = StubAgent([COMPLETION_SIGNAL], returncode=1)

    outcome = IterationController(plan_config(), agent, sleep=lambda s: None).run()

    assert outcome.state is LoopState.COMPLETED
    assert agent.calls == 1


def test_nonzero_exit_counts_against_cap(plan_config):
    agent = StubAgent(["crash"], returncode=137)

    outcome = IterationController(plan_config(max_iterations=2), agent, sleep=lambda s: None).run()

    assert outcome.state is LoopState.EXHAUSTED
    assert agent.calls == 2


@pytest.mark.parametrize("output", [
    "<promise>complete</promise>",
    "<promise> COMPLETE </promise>",
    "promise COMPLETE",
])
def test_signal_match_is_exact(plan_config, output):
    outcome = IterationController(plan_config(max_iterations=1), StubAgent([output])).run()

    assert outcome.state is LoopState.EXHAUSTED


def test_single_iteration_cap_does_not_sleep(plan_config):
    sleeps = []
    IterationController(plan_config(max_iterations=1), StubAgent(["nope"]), sleep=sleeps.append).run()

    assert sleeps == []


def test_beads_mode_keeps_no_ledger(make_config, tmp_path):
    config = make_config(mode=RunMode.BEADS_AUTO, max_iterations=2)

    outcome = IterationController(config, StubAgent(["x"]), sleep=lambda s: None).run()

    assert outcome.exit_code == EXIT_EXHAUSTED
    assert not (tmp_path / "progress.txt").exists()


def test_existing_ledger_keeps_its_header(plan_config):
    config = plan_config(max_iterations=1)
    config.progress_file.write_text("# Ralph Progress Log\nStarted: yesterday\n---\n")

    IterationController(config, StubAgent([COMPLETION_SIGNAL])).run()

    ledger = config.progress_file.read_text()
    assert ledger.count("# Ralph Progress Log") == 1
    assert "Started: yesterday" in ledger
    assert "### Iteration 1" in ledger


def test_changes_into_workspace(make_config, tmp_path):
    workspace = tmp_path / "tree"
    workspace.mkdir()
    config = make_config(workspace=workspace, max_iterations=1)

    IterationController(config, StubAgent([COMPLETION_SIGNAL])).run()

    assert os.path.realpath(os.getcwd()) == os.path.realpath(workspace)


def test_prompt_errors_fail_before_running(make_config):
    config = make_config(mode=RunMode.BEADS_PARENT, issue_id=None)
    agent = StubAgent(["x"])

    controller = IterationController(config, agent)
    outcome = controller.run()

    assert outcome.state is LoopState.FAILED
    assert outcome.exit_code == EXIT_CONFIG_ERROR
    assert outcome.iterations == 0
    assert agent.calls == 0


def test_undecodable_plan_fails_with_config_error(plan_config, tmp_path):
    config = plan_config()
    config.plan_file.write_bytes(b"caf\xe9 plan")
    agent = StubAgent([COMPLETION_SIGNAL])

    outcome = IterationController(config, agent).run()

    assert outcome.state is LoopState.FAILED
    assert outcome.exit_code == EXIT_CONFIG_ERROR
    assert agent.calls == 0


def test_missing_agent_binary_fails(plan_config):
    class MissingAgent:
        def invoke(self, prompt, iteration):
            raise AgentUnavailableError("claude not found")

    config = plan_config()
    outcome = IterationController(config, MissingAgent()).run()

    assert outcome.state is LoopState.FAILED
    assert outcome.exit_code == EXIT_CONFIG_ERROR
    assert "claude not found" in outcome.error
    ledger = config.progress_file.read_text()
    assert "### COMPLETED" not in ledger
    assert "MAX ITERATIONS" not in ledger


def test_records_are_numbered_and_keep_prompts(plan_config):
    agent = StubAgent(["a", "b", COMPLETION_SIGNAL])
    controller = IterationController(plan_config(max_iterations=5), agent, sleep=lambda s: None)

    controller.run()

    assert [r.ordinal for r in controller.records] == [1, 2, 3]
    assert [r.prompt for r in controller.records] == agent.prompts
    assert len(set(agent.prompts)) == 1


def test_emits_lifecycle_events(plan_config):
    bus = EventBus()
    seen = []
    bus.subscribe(lambda e: seen.append(e.event_type))

    IterationController(plan_config(max_iterations=2), StubAgent(["x"]), bus=bus, sleep=lambda s: None).run()

    assert seen == [
        "run_started",
        "iteration_started", "iteration_finished",
        "iteration_started", "iteration_finished",
        "run_finished",
    ]
