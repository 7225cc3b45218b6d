"""
RALPH Workspace Resolution

Picks the single directory the agent works in. RALPH never creates
worktrees; it only locates an existing one under <root>/.worktree,
consulting (in order) an explicit worktree name, the `branchName` of the
requirements document, and finally the caller's current directory.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger

from ralph.config_loader import ConfigurationError, load_requirements
from ralph.paths import validate_component, validate_within_base


class WorkspaceError(ConfigurationError):
    pass


class WorkspaceResolver:
    """
    Resolves the workspace for one run.

    `install_root` is where `.worktree/` and the default requirements file
    live; `cwd` is the fallback when no worktree applies.
    """

    def __init__(
        self,
        install_root: Path,
        cwd: Path | None = None,
        worktree_dir: str = ".worktree",
        default_requirements: str = "prd.json",
    ):
        self.install_root = install_root.resolve()
        self.cwd = (cwd or Path.cwd()).resolve()
        self.worktree_base = self.install_root / worktree_dir
        self.default_requirements = default_requirements

    def resolve(self, worktree: str | None = None, requirements_file: str | Path | None = None) -> Path:
        # 1. Explicit worktree name: must exist
        if worktree:
            path = self._worktree_path(worktree, "worktree name")
            if not path.is_dir():
                raise WorkspaceError(f"Worktree not found at {path}")
            logger.info(f"[WORKSPACE] Using worktree: {path}")
            return path

        # 2. branchName from the requirements document: fall through if absent
        source = self._requirements_source(requirements_file)
        if source is not None:
            branch = load_requirements(source).branch_name
            if branch:
                path = self._worktree_path(branch, f"branchName in {source.name}")
                if path.is_dir():
                    logger.info(f"[WORKSPACE] Using worktree from {source.name}: {path}")
                    return path
                logger.debug(f"[WORKSPACE] No worktree for branch {branch!r} at {path}")

        # 3. Current directory
        logger.info(f"[WORKSPACE] Using current directory: {self.cwd}")
        return self.cwd

    def _worktree_path(self, name: str, context: str) -> Path:
        validate_component(name, context)
        path = self.worktree_base / name
        validate_within_base(path, self.worktree_base, context)
        return path

    def _requirements_source(self, requirements_file: str | Path | None) -> Path | None:
        if not requirements_file:
            candidate = self.install_root / self.default_requirements
            return candidate if candidate.is_file() else None

        candidate = Path(requirements_file)
        if candidate.is_absolute():
            return candidate if candidate.is_file() else None
        for base in (self.install_root, self.cwd):
            if (base / candidate).is_file():
                return base / candidate
        return None


def resolve_workspace(
    install_root: Path,
    worktree: str | None = None,
    requirements_file: str | Path | None = None,
    cwd: Path | None = None,
    worktree_dir: str = ".worktree",
    default_requirements: str = "prd.json",
) -> Path:
    resolver = WorkspaceResolver(
        install_root,
        cwd=cwd,
        worktree_dir=worktree_dir,
        default_requirements=default_requirements,
    )
    return resolver.resolve(worktree=worktree, requirements_file=requirements_file)


def current_branch(path: Path) -> str:
    """Branch checked out at `path`, or "unknown" outside a git repo."""
    try:
        out = _run_cmd(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=path)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"[WORKSPACE] Could not detect branch: {e}")
        return "unknown"
    return out.strip() or "unknown"


def _run_cmd(cmd: list[str], cwd: Path) -> str:
    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
    if result.returncode != 0:
        return ""
    return result.stdout
