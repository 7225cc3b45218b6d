import pytest
from pydantic import ValidationError

from ralph.config_loader import (
    ConfigurationError,
    RequirementsDocument,
    RequirementsFileError,
    build_run_configuration,
    load_config,
    load_requirements,
    resolve_input_file,
)
from ralph.modes import RunMode


def test_defaults():
    settings = load_config()

    assert settings.loop.max_iterations == 10
    assert settings.loop.iteration_delay == 2.0
    assert settings.agent.command == "claude"
    assert settings.agent.permission_mode == "acceptEdits"
    assert settings.paths.worktree_dir == ".worktree"
    assert settings.paths.requirements_file == "prd.json"


def test_repo_overrides_are_deep_merged(tmp_path):
    (tmp_path / ".ralph").mkdir()
    (tmp_path / ".ralph" / "config.yaml").write_text("loop:\n  max_iterations: 25\n")

    settings = load_config(tmp_path)

    assert settings.loop.max_iterations == 25
    assert settings.loop.iteration_delay == 2.0


def test_invalid_override_is_a_configuration_error(tmp_path):
    (tmp_path / ".ralph").mkdir()
    (tmp_path / ".ralph" / "config.yaml").write_text("loop:\n  max_iterations: lots\n")

    with pytest.raises(ConfigurationError):
        load_config(tmp_path)


# ---------------------------------------------------------------------------
# Requirements document
# ---------------------------------------------------------------------------

def test_requirements_items_and_flags(tmp_path):
    path = tmp_path / "prd.json"
    path.write_text(
        '{"branchName": "feature/x", "project": "demo",'
        ' "userStories": [{"id": "US-1", "passes": true}, {"id": "US-2", "passes": false}],'
        ' "features": [{"title": "Search", "passing": true}]}'
    )

    doc = load_requirements(path)

    assert doc.branch_name == "feature/x"
    assert len(doc.items) == 3
    assert [item.id for item in doc.pending] == ["US-2"]
    assert not doc.all_done


def test_requirements_yaml(tmp_path):
    path = tmp_path / "prd.yaml"
    path.write_text("branchName: main\nitems:\n  - title: one\n    passes: true\n")

    doc = load_requirements(path)

    assert doc.branch_name == "main"
    assert doc.all_done


def test_requirements_without_branch_name():
    doc = RequirementsDocument.model_validate({"userStories": []})

    assert doc.branch_name is None
    assert doc.items == []
    assert not doc.all_done


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", '{"branchName": 42}'])
def test_malformed_requirements_file(tmp_path, content):
    path = tmp_path / "prd.json"
    path.write_text(content)

    with pytest.raises(RequirementsFileError):
        load_requirements(path)


def test_unreadable_requirements_file(tmp_path):
    with pytest.raises(RequirementsFileError, match="Cannot read"):
        load_requirements(tmp_path / "missing.json")


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def layout(tmp_path):
    root = tmp_path / "root"
    workspace = tmp_path / "ws"
    root.mkdir()
    workspace.mkdir()
    return root, workspace


def test_resolve_prefers_workspace_then_root(layout):
    root, workspace = layout
    (root / "plan.md").write_text("root plan")
    assert resolve_input_file("plan.md", workspace, root) == root / "plan.md"

    (workspace / "plan.md").write_text("workspace plan")
    assert resolve_input_file("plan.md", workspace, root) == workspace / "plan.md"


@pytest.mark.parametrize("cap", [0, -3])
def test_non_positive_cap_rejected(layout, cap):
    root, workspace = layout
    with pytest.raises(ConfigurationError, match="positive integer"):
        build_run_configuration(
            load_config(), mode=RunMode.BEADS_AUTO, workspace=workspace, install_root=root, max_iterations=cap,
        )


def test_missing_plan_file_rejected(layout):
    root, workspace = layout
    with pytest.raises(ConfigurationError, match="Prompt file 'plan.md' not found"):
        build_run_configuration(
            load_config(), mode=RunMode.PLAN, workspace=workspace, install_root=root, plan_file="plan.md",
        )


def test_missing_instructions_file_rejected(layout):
    root, workspace = layout
    with pytest.raises(ConfigurationError, match="instructions"):
        build_run_configuration(
            load_config(), mode=RunMode.BEADS_AUTO, workspace=workspace, install_root=root,
            instructions_file="custom.md",
        )


def test_plan_configuration(layout):
    root, workspace = layout
    (workspace / "plan.md").write_text("plan")

    config = build_run_configuration(
        load_config(), mode=RunMode.PLAN, workspace=workspace, install_root=root, plan_file="plan.md",
    )

    assert config.plan_file == workspace / "plan.md"
    assert config.progress_file == workspace / "progress.txt"
    assert config.log_dir == workspace / ".ralph-logs"
    assert config.max_iterations == 10
    assert config.settings_file is None


def test_beads_configuration_has_no_ledger(layout):
    root, workspace = layout
    config = build_run_configuration(
        load_config(), mode=RunMode.BEADS_PARENT, workspace=workspace, install_root=root,
        issue_id="EPIC-1", max_iterations=4,
    )

    assert config.progress_file is None
    assert config.issue_id == "EPIC-1"
    assert config.max_iterations == 4


def test_settings_file_found_in_root(layout):
    root, workspace = layout
    (root / ".claude").mkdir()
    (root / ".claude" / "settings.local.json").write_text("{}")

    config = build_run_configuration(
        load_config(), mode=RunMode.BEADS_AUTO, workspace=workspace, install_root=root,
    )

    assert config.settings_file == root / ".claude" / "settings.local.json"


def test_run_configuration_is_frozen(layout):
    root, workspace = layout
    config = build_run_configuration(
        load_config(), mode=RunMode.BEADS_AUTO, workspace=workspace, install_root=root,
    )

    with pytest.raises(ValidationError):
        config.max_iterations = 99
