"""
Configuration loader for RALPH.

Merges built-in defaults with per-repo .ralph/config.yaml overrides, parses
the requirements document (prd.json), and freezes everything a run needs
into a single RunConfiguration.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    ValidationError,
    model_validator,
)

from ralph.modes import RunMode


class ConfigurationError(Exception):
    """Fatal problem with the run's inputs. Always detected before the loop."""
    pass


class RequirementsFileError(ConfigurationError):
    """Raised when the requirements document cannot be read or parsed."""
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LoopConfig(BaseModel):
    max_iterations: int = 10
    iteration_delay: float = 2.0


class AgentConfig(BaseModel):
    command: str = "claude"
    permission_mode: str = "acceptEdits"
    settings_file: str = ".claude/settings.local.json"


class PathsConfig(BaseModel):
    worktree_dir: str = ".worktree"
    requirements_file: str = "prd.json"
    progress_file: str = "progress.txt"
    log_dir: str = ".ralph-logs"


class RalphSettings(BaseModel):
    loop: LoopConfig = Field(default_factory=LoopConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ---------------------------------------------------------------------------
# Requirements document (prd.json)
# ---------------------------------------------------------------------------

class RequirementItem(BaseModel):
    """One item of work. Everything but the completion flag is freeform."""
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    title: str | None = None
    passes: bool | None = None
    passing: bool | None = None

    @property
    def done(self) -> bool:
        flag = self.passes if self.passes is not None else self.passing
        return bool(flag)


class RequirementsDocument(BaseModel):
    """
    Structured requirements file.

    Every top-level array of objects is treated as a list of items, so both
    `userStories` and `features` style documents work. `branchName` is the
    optional worktree hint consumed by the workspace resolver.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    branch_name: str | None = Field(default=None, alias="branchName")
    items: list[RequirementItem] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def collect_items(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("requirements document must be a mapping at the top level")
        items: list[Any] = list(data.get("items") or [])
        for key, value in data.items():
            if key == "items" or not isinstance(value, list):
                continue
            if value and all(isinstance(v, dict) for v in value):
                items.extend(value)
        return {**data, "items": items}

    @property
    def pending(self) -> list[RequirementItem]:
        return [item for item in self.items if not item.done]

    @property
    def all_done(self) -> bool:
        return bool(self.items) and not self.pending


def load_requirements(path: Path) -> RequirementsDocument:
    """Parse a requirements file. JSON unless the extension says YAML."""
    try:
        text = path.read_text()
    except OSError as e:
        raise RequirementsFileError(f"Cannot read requirements file {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RequirementsFileError(f"Requirements file {path} is not valid structured data: {e}") from e

    try:
        return RequirementsDocument.model_validate(data)
    except ValidationError as e:
        raise RequirementsFileError(f"Requirements file {path} is malformed: {e}") from e


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(root: Path | None = None) -> RalphSettings:
    """
    Load settings by merging:
      1. Built-in defaults (ralph/config.yaml)
      2. Repo-level overrides (<root>/.ralph/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if root:
        repo_config = root / ".ralph" / "config.yaml"
        if repo_config.exists():
            try:
                with open(repo_config, "r") as f:
                    overrides: dict[str, Any] = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid config file {repo_config}: {e}") from e
            base = _deep_merge(base, overrides)
            logger.debug(f"[CONFIG] Merged overrides from {repo_config}")

    try:
        return RalphSettings(**base)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

class RunConfiguration(BaseModel):
    """Everything a run needs, resolved and validated once."""
    model_config = ConfigDict(frozen=True)

    mode: RunMode
    workspace: Path
    install_root: Path
    max_iterations: PositiveInt
    iteration_delay: float = 2.0
    issue_id: str | None = None
    plan_file: Path | None = None
    requirements_file: Path | None = None
    instructions_file: Path | None = None
    settings_file: Path | None = None
    progress_file: Path | None = None
    log_dir: Path
    agent_command: str = "claude"
    permission_mode: str = "acceptEdits"
    debug: bool = False


def resolve_input_file(value: str | Path, workspace: Path, root: Path) -> Path:
    """
    Resolve a caller-supplied file argument.

    Relative paths are looked up in the workspace first, then the install
    root. Whatever is found (or the original value) is returned; callers
    decide whether absence is fatal.
    """
    candidate = Path(value)
    if candidate.is_absolute():
        return candidate
    for base in (workspace, root):
        if (base / candidate).is_file():
            return base / candidate
    return candidate


def _require_file(value: str | Path | None, label: str, workspace: Path, root: Path) -> Path | None:
    if not value:
        return None
    resolved = resolve_input_file(value, workspace, root)
    if not resolved.is_file():
        raise ConfigurationError(f"{label} '{value}' not found")
    return resolved


def build_run_configuration(
    settings: RalphSettings,
    *,
    mode: RunMode,
    workspace: Path,
    install_root: Path,
    max_iterations: int | None = None,
    issue_id: str | None = None,
    plan_file: str | Path | None = None,
    requirements_file: str | Path | None = None,
    instructions_file: str | Path | None = None,
    settings_file: str | Path | None = None,
    debug: bool = False,
) -> RunConfiguration:
    """Resolve every file argument against the workspace and freeze the result."""
    cap = settings.loop.max_iterations if max_iterations is None else max_iterations
    if cap < 1:
        raise ConfigurationError("max-iterations must be a positive integer")

    plan = _require_file(plan_file, "Prompt file", workspace, install_root)
    requirements = _require_file(requirements_file, "Requirements file", workspace, install_root)
    instructions = _require_file(instructions_file, "Ralph instructions file", workspace, install_root)

    # The settings file is optional: use it only if it exists somewhere.
    settings_value = settings_file or settings.agent.settings_file
    settings_path = resolve_input_file(settings_value, workspace, install_root) if settings_value else None
    if settings_path is not None and not settings_path.is_file():
        logger.debug(f"[CONFIG] No settings file at {settings_value}, continuing without")
        settings_path = None

    progress = None if mode.uses_tracker else workspace / settings.paths.progress_file

    try:
        return RunConfiguration(
            mode=mode,
            workspace=workspace,
            install_root=install_root,
            max_iterations=cap,
            iteration_delay=settings.loop.iteration_delay,
            issue_id=issue_id or None,
            plan_file=plan,
            requirements_file=requirements,
            instructions_file=instructions,
            settings_file=settings_path,
            progress_file=progress,
            log_dir=workspace / settings.paths.log_dir,
            agent_command=settings.agent.command,
            permission_mode=settings.agent.permission_mode,
            debug=debug,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run configuration: {e}") from e
