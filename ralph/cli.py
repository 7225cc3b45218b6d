"""
RALPH CLI — The Interface

Four ways to feed the loop:
  1. ralph, or ralph run           (beads auto-discovery via `bd ready`)
  2. ralph run -b EPIC-001         (children of a beads parent issue)
  3. ralph run -c prd.json         (requirements file, one item per iteration)
  4. ralph run -p plan.md          (plan file, one step per iteration)

Exit codes: 0 completed, 1 max iterations reached, 2 configuration error.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from ralph.agent import ClaudeAgent
from ralph.config_loader import (
    ConfigurationError,
    RunConfiguration,
    build_run_configuration,
    load_config,
    load_requirements,
)
from ralph.controller import IterationController
from ralph.events import EventBus, LoopEvent
from ralph.identity import __codename__, __tagline__, __version__, BANNER
from ralph.modes import RunMode, resolve_mode
from ralph.state import EXIT_CONFIG_ERROR
from ralph.workspace import resolve_workspace

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".ralph" / ".env")

app = typer.Typer(
    name="ralph",
    help=f"{__codename__} — {__tagline__}\nRuns a coding agent until the work is done.",
    invoke_without_command=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    # Bare `ralph` runs beads auto-discovery with the defaults
    if ctx.invoked_subcommand is None:
        env_root = os.environ.get("RALPH_ROOT")
        _run_loop(root=Path(env_root) if env_root else None)


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

class ConsoleRenderer:
    """Event bus subscriber that turns loop events into terminal output."""

    def __init__(self, out: Console):
        self.out = out

    def __call__(self, event: LoopEvent) -> None:
        handler = getattr(self, f"_on_{event.event_type}", None)
        if handler is not None:
            handler(event.payload)

    def _on_run_started(self, p: dict) -> None:
        lines = [
            f"Max iterations:     {p['max_iterations']}",
            f"Working dir:        {escape(p['workspace'])}",
        ]
        if p.get("plan_file"):
            lines.append(f"Prompt file:        {escape(p['plan_file'])}")
        if p.get("requirements_file"):
            lines.append(f"Requirements file:  {escape(p['requirements_file'])}")
        if p["mode"] == RunMode.BEADS_PARENT.value:
            lines.append(f"Beads mode:         parent ({escape(p['issue_id'])})")
        elif p["mode"] == RunMode.BEADS_AUTO.value:
            lines.append("Beads mode:         auto-discovery")
        if p.get("instructions_file"):
            lines.append(f"Instructions:       {escape(p['instructions_file'])}")
        if p.get("settings_file"):
            lines.append(f"Settings file:      {escape(p['settings_file'])}")
        lines.append(f"Completion signal:  {escape(p['completion_signal'])}")
        if p.get("debug"):
            lines.append("Debug mode:         enabled")
        self.out.print(Panel("\n".join(lines), title="Ralph - Agentic Coding Loop", border_style="cyan"))

    def _on_iteration_started(self, p: dict) -> None:
        self.out.rule(f"[bold]Iteration {p['iteration']} of {p['max_iterations']}[/]")

    def _on_agent_event(self, p: dict) -> None:
        prefix = {"text": "\n>>> ", "tool_use": "[tool] ", "tool_result": "[result] "}[p["kind"]]
        style = {"text": None, "tool_use": "cyan", "tool_result": "dim"}[p["kind"]]
        self.out.print(prefix + p["text"], style=style, markup=False, highlight=False)

    def _on_iteration_finished(self, p: dict) -> None:
        if p.get("debug_log"):
            self.out.print(f"[dim]Debug log: {escape(p['debug_log'])}[/]")

    def _on_run_finished(self, p: dict) -> None:
        state = p["state"]
        if state == "completed":
            self.out.print(Panel(
                f"Detected: {escape('<promise>COMPLETE</promise>')}\n"
                f"Finished after {p['iterations']} iteration(s)",
                title="✅ Ralph completed!",
                border_style="green",
            ))
        elif state == "exhausted":
            hint = (
                f"Check {escape(p['progress_file'])} for status"
                if p.get("progress_file")
                else "Check beads status with: bd list"
            )
            self.out.print(Panel(
                hint,
                title=f"Ralph reached max iterations ({p['iterations']})",
                border_style="yellow",
            ))
        else:
            self.out.print(f"[red]Error: {escape(p.get('error', ''))}[/]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Plan/prompt file"),
    beads: Optional[str] = typer.Option(None, "--beads", "-b", help="Beads epic or parent issue to work through"),
    prd: Optional[str] = typer.Option(None, "--prd", "-c", help="Requirements file (e.g. prd.json)"),
    instructions: Optional[str] = typer.Option(
        None, "--ralph-instructions", "-r", help="Custom instructions file (replaces the defaults)",
    ),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-i", help="Maximum number of iterations"),
    worktree: Optional[str] = typer.Option(None, "--worktree", "-w", help="Git worktree to run in (.worktree/<name>)"),
    settings_file: Optional[str] = typer.Option(None, "--settings", "-s", help="Path to Claude settings JSON file"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Stream agent events and keep raw logs"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    root: Optional[Path] = typer.Option(
        None, "--root", envvar="RALPH_ROOT", help="Install root holding .worktree/ and prd.json (default: cwd)",
    ),
):
    """Run the agent loop until it reports <promise>COMPLETE</promise>."""
    _run_loop(
        root=root,
        prompt=prompt,
        beads=beads,
        prd=prd,
        instructions=instructions,
        max_iterations=max_iterations,
        worktree=worktree,
        settings_file=settings_file,
        debug=debug,
        verbose=verbose,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _run_loop(
    root: Path | None = None,
    prompt: str | None = None,
    beads: str | None = None,
    prd: str | None = None,
    instructions: str | None = None,
    max_iterations: int | None = None,
    worktree: str | None = None,
    settings_file: str | None = None,
    debug: bool = False,
    verbose: bool = False,
) -> None:
    _print_banner()
    _configure_logging(verbose)

    bus = EventBus()
    bus.subscribe(ConsoleRenderer(console))

    try:
        config = _resolve_run(
            root=(root or Path.cwd()).resolve(),
            prompt=prompt,
            beads=beads,
            prd=prd,
            instructions=instructions,
            max_iterations=max_iterations,
            worktree=worktree,
            settings_file=settings_file,
            debug=debug,
        )
        agent = ClaudeAgent(config, bus)
        agent.check_available()
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    outcome = IterationController(config, agent, bus).run()
    raise typer.Exit(outcome.exit_code)


def _resolve_run(
    root: Path,
    prompt: str | None,
    beads: str | None,
    prd: str | None,
    instructions: str | None,
    max_iterations: int | None,
    worktree: str | None,
    settings_file: str | None,
    debug: bool,
) -> RunConfiguration:
    """Startup: settings, mode, workspace, then the frozen run configuration."""
    settings = load_config(root)
    mode = resolve_mode(issue_id=beads, requirements_file=prd, plan_file=prompt)
    logger.debug(f"[CLI] Mode: {mode.value}")

    workspace = resolve_workspace(
        root,
        worktree=worktree,
        requirements_file=prd,
        cwd=Path.cwd(),
        worktree_dir=settings.paths.worktree_dir,
        default_requirements=settings.paths.requirements_file,
    )

    config = build_run_configuration(
        settings,
        mode=mode,
        workspace=workspace,
        install_root=root,
        max_iterations=max_iterations,
        issue_id=beads,
        plan_file=prompt,
        requirements_file=prd if mode is RunMode.PRD else None,
        instructions_file=instructions,
        settings_file=settings_file,
        debug=debug,
    )

    if config.requirements_file is not None:
        doc = load_requirements(config.requirements_file)
        if not doc.items:
            logger.warning(f"[CLI] {config.requirements_file.name} has no items")
        else:
            logger.info(f"[CLI] {len(doc.pending)} of {len(doc.items)} items still pending")
    return config


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
