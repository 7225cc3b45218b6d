"""
RALPH Agent Collaborator

Runs the coding agent CLI once per iteration and hands back everything it
printed plus its exit status. The exit status is informational only: the
controller decides success by scanning the output for the completion
signal.

Debug mode asks the agent for its stream-json event feed, renders each
event as it arrives, and keeps the raw capture under .ralph-logs/.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel

from ralph.config_loader import ConfigurationError, RunConfiguration
from ralph.events import EventBus
from ralph.paths import PathRejectedError, validate_component

PREVIEW_CHARS = 200


class AgentUnavailableError(ConfigurationError):
    """The agent binary could not be started at all."""
    pass


@dataclass
class AgentResult:
    output: str
    returncode: int
    debug_log: Path | None = None


class StreamEvent(BaseModel):
    kind: Literal["text", "tool_use", "tool_result"]
    text: str


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------

def parse_stream_line(line: str) -> list[StreamEvent]:
    """
    Decode one stream-json line into displayable events.

    Lines that are not JSON objects (stderr noise, truncated writes) decode to
    nothing; they still count as captured output.
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return []
    if not isinstance(record, dict):
        return []

    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []

    events: list[StreamEvent] = []
    record_type = record.get("type")
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if record_type == "assistant" and block_type == "text":
            events.append(StreamEvent(kind="text", text=block.get("text", "")))
        elif record_type == "assistant" and block_type == "tool_use":
            args = json.dumps(block.get("input", {}))[:PREVIEW_CHARS]
            events.append(StreamEvent(kind="tool_use", text=f"{block.get('name', '?')}: {args}"))
        elif record_type == "user" and block_type == "tool_result":
            events.append(StreamEvent(kind="tool_result", text=_stringify(block.get("content"))[:PREVIEW_CHARS]))
    return events


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def find_session_id(lines: list[str], scan: int = 5) -> str | None:
    """Session id from the first few stream records, if the agent reported one."""
    for line in lines[:scan]:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict) and isinstance(record.get("session_id"), str):
            return record["session_id"]
    return None


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class ClaudeAgent:
    """Invokes the `claude` CLI in print mode with edits auto-accepted."""

    def __init__(self, config: RunConfiguration, bus: EventBus | None = None):
        self.config = config
        self.bus = bus or EventBus()

    def check_available(self) -> str:
        path = shutil.which(self.config.agent_command)
        if path is None:
            raise AgentUnavailableError(f"Agent command '{self.config.agent_command}' not found on PATH")
        return path

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.config.agent_command]
        if self.config.settings_file is not None:
            cmd += ["--settings", str(self.config.settings_file)]
        cmd += ["--permission-mode", self.config.permission_mode, "-p", prompt]
        if self.config.debug:
            cmd += ["--verbose", "--output-format", "stream-json"]
        return cmd

    def invoke(self, prompt: str, iteration: int) -> AgentResult:
        cmd = self.build_command(prompt)
        shown = " ".join("<prompt>" if part is prompt else part for part in cmd)
        logger.debug(f"[AGENT] Iteration {iteration}: {shown}")
        try:
            if self.config.debug:
                result = self._run_streaming(cmd, iteration)
            else:
                result = self._run(cmd)
        except OSError as e:
            raise AgentUnavailableError(f"Cannot start agent '{self.config.agent_command}': {e}") from e
        except ValueError as e:
            # argv cannot carry NUL bytes
            raise AgentUnavailableError(f"Cannot pass prompt to agent '{self.config.agent_command}': {e}") from e

        if result.returncode != 0:
            logger.warning(f"[AGENT] Iteration {iteration} exited with status {result.returncode}")
        return result

    def _run(self, cmd: list[str]) -> AgentResult:
        proc = subprocess.run(
            cmd,
            cwd=self.config.workspace,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
        )
        return AgentResult(output=proc.stdout or "", returncode=proc.returncode)

    def _run_streaming(self, cmd: list[str], iteration: int) -> AgentResult:
        log_dir = self.config.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix="tmp.", dir=log_dir)

        lines: list[str] = []
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as capture, subprocess.Popen(
                cmd,
                cwd=self.config.workspace,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            ) as proc:
                try:
                    for line in proc.stdout:
                        lines.append(line)
                        capture.write(line)
                        for event in parse_stream_line(line):
                            self.bus.emit("agent_event", "agent", {"kind": event.kind, "text": event.text})
                except BaseException:
                    proc.kill()
                    raise
                returncode = proc.wait()
        except BaseException:
            os.unlink(tmp_name)
            raise

        name = f"iteration-{iteration}.json"
        session_id = find_session_id(lines)
        if session_id:
            try:
                validate_component(session_id, "session id")
                if "/" not in session_id:
                    name = f"{session_id}.json"
            except PathRejectedError:
                logger.warning(f"[AGENT] Ignoring unusable session id {session_id!r}")
        debug_log = log_dir / name
        os.replace(tmp_name, debug_log)
        logger.info(f"[AGENT] Debug log: {debug_log}")

        return AgentResult(output="".join(lines), returncode=returncode, debug_log=debug_log)
