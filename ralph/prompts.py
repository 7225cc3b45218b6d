"""
RALPH Prompt Assembly

Each iteration sends the agent one prompt:
  1. The task-source documents (plan file, and the requirements file in
     PRD mode), verbatim.
  2. Instructions: the custom instructions file verbatim if configured,
     otherwise the mode's built-in template.

User content is never run through any formatting step. Only the built-in
templates are substituted, and substitution must be complete.
"""

from __future__ import annotations

from pathlib import Path
from string import Template

from loguru import logger

from ralph.config_loader import ConfigurationError, RunConfiguration
from ralph.modes import RunMode

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

SECTION_SEPARATOR = "\n\n"


class PromptAssemblyError(ConfigurationError):
    pass


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

BEADS_PARENT_TEMPLATE = Template("""\
## Beads Workflow (parent: ${issue_id})

1. `bd list --status in_progress --parent ${issue_id}` - finish in-progress first
2. `bd ready --parent ${issue_id}` - if none, pick next unblocked task
3. `bd show <id>` -> `bd update <id> --status in_progress` -> work -> `bd update <id> --notes "..."` -> `bd close <id>`

## Instructions

### Workflow
1. **Find your task** - in-progress tasks under ${issue_id} first, then ready ones
2. **Read it** - `bd show <id>` for full context
3. **Claim it** - `bd update <id> --status in_progress`
4. **Do the work** - make atomic commits
5. **Document and close** - `bd update <id> --notes "Summary of work done"` then `bd close <id>`
6. **Stop** - do not continue to the next task

Work ONE task, then stop.

### Completion Signal
Only when no ready or in-progress tasks remain under ${issue_id}: `bd close ${issue_id}`, then output `${signal}`.

**CRITICAL**: The signal means ALL work is finished. Do NOT output it prematurely.""")

BEADS_AUTO_TEMPLATE = Template("""\
## Beads Workflow

1. `bd list --status in_progress` - finish in-progress first
2. `bd ready` - if none, pick next unblocked task
3. `bd show <id>` -> `bd update <id> --status in_progress` -> work -> `bd update <id> --notes "..."` -> `bd close <id>`

## Instructions

### Workflow
1. **Find your task** - `bd list --status in_progress` first, then `bd ready`
2. **Read it** - `bd show <id>` for full context
3. **Claim it** - `bd update <id> --status in_progress`
4. **Do the work** - make atomic commits
5. **Document and close** - `bd update <id> --notes "Summary of work done"` then `bd close <id>`
6. **Stop** - do not continue to the next task

Work ONE task, then stop.

### Completion Signal
Only when no ready or in-progress tasks remain (`bd ready` returns nothing), output `${signal}`.

**CRITICAL**: The signal means ALL work is finished. Do NOT output it prematurely.""")

PLAN_TEMPLATE = Template("""\
## Instructions

**Read ${progress_file} first** - see what is done, skip re-exploration.

### Workflow
1. **Read the plan** - ${plan_file}
2. **Find your task** - read ${progress_file}, find the next incomplete step
3. **Do the work** - that step only, make atomic commits
4. **Log to ${progress_file}** - task, decisions, files changed
5. **Stop** - do not continue to the next task

Work ONE task, then stop.

### Completion Signal
Only when ALL steps in ${plan_file} are done, output `${signal}`.

**CRITICAL**: The signal means ALL work is finished. Do NOT output it prematurely.""")

PRD_TEMPLATE = Template("""\
## Instructions

**Read ${progress_file} first** - see what is done, skip re-exploration.

### Workflow
1. **Read the requirements** - ${requirements_file}
2. **Find your task** - read ${progress_file}, pick the next item in ${requirements_file} whose `passes` is false
3. **Do the work** - that item only, make atomic commits
4. **Log to ${progress_file}** - item, decisions, files changed
5. **Mark it done** - set `passes` to true for that item in ${requirements_file}
6. **Stop** - do not continue to the next item

Work ONE item, then stop.

### Completion Signal
Only when EVERY item in ${requirements_file} has `passes` set to true, output `${signal}`.

**CRITICAL**: The signal means ALL work is finished. Do NOT output it prematurely.""")

MODE_TEMPLATES: dict[RunMode, Template] = {
    RunMode.BEADS_PARENT: BEADS_PARENT_TEMPLATE,
    RunMode.BEADS_AUTO: BEADS_AUTO_TEMPLATE,
    RunMode.PLAN: PLAN_TEMPLATE,
    RunMode.PRD: PRD_TEMPLATE,
}


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class PromptBuilder:
    """Assembles the per-iteration prompt for one RunConfiguration."""

    def __init__(self, config: RunConfiguration):
        self.config = config

    def build(self) -> str:
        sections: list[str] = []

        for source in self._source_documents():
            sections.append(self._read(source))

        if self.config.instructions_file is not None:
            # Custom instructions replace the built-in ones entirely
            sections.append(self._read(self.config.instructions_file))
        else:
            sections.append(self.render(self.config.mode, self.variables()))

        prompt = SECTION_SEPARATOR.join(sections)
        logger.debug(f"[PROMPT] Built {len(prompt)} chars for mode {self.config.mode.value}")
        return prompt

    def variables(self) -> dict[str, str]:
        """Substitution values for the built-in templates. Unset paths are omitted."""
        values = {"signal": COMPLETION_SIGNAL}
        if self.config.issue_id:
            values["issue_id"] = self.config.issue_id
        for name in ("plan_file", "requirements_file", "progress_file"):
            path = getattr(self.config, name)
            if path is not None:
                values[name] = self._display(path)
        return values

    @staticmethod
    def render(mode: RunMode, values: dict[str, str]) -> str:
        """Substitute a mode template, failing on any unfilled or malformed placeholder."""
        template = MODE_TEMPLATES[mode]
        try:
            return template.substitute(values)
        except KeyError as e:
            raise PromptAssemblyError(
                f"Instructions for mode {mode.value} need {e.args[0]!r}, which is not configured"
            ) from e
        except ValueError as e:
            raise PromptAssemblyError(f"Malformed placeholder in {mode.value} instructions: {e}") from e

    def _source_documents(self) -> list[Path]:
        """A given plan file always leads; the requirements file only in PRD mode."""
        sources = []
        if self.config.plan_file is not None:
            sources.append(self.config.plan_file)
        if self.config.mode is RunMode.PRD and self.config.requirements_file is not None:
            sources.append(self.config.requirements_file)
        return sources

    def _display(self, path: Path) -> str:
        """Workspace-relative when the file lives inside the workspace, absolute otherwise."""
        try:
            return str(path.relative_to(self.config.workspace))
        except ValueError:
            return str(path.resolve())

    @staticmethod
    def _read(path: Path) -> str:
        """File content exactly as written; line endings are not translated."""
        try:
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except OSError as e:
            raise PromptAssemblyError(f"Cannot read {path}: {e}") from e
        except UnicodeDecodeError as e:
            raise PromptAssemblyError(f"{path} is not valid UTF-8: {e}") from e
