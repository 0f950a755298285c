"""External analysis collaborator.

The analyzer itself is an opaque process: it receives the recent
conversation as JSON and prints ``{"summary": ..., "title": ...}``. This
module prepares that input and runs the process; scheduling, quota and
caching live in ``sessiondex.admission``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Protocol

from sessiondex import config
from sessiondex.errors import AnalysisFailed

logger = logging.getLogger("sessiondex.analysis")

UNTITLED = "Untitled Session"
_MAX_TITLE_LENGTH = 120


@dataclass(frozen=True)
class AnalysisOutput:
    summary: str
    title: str = UNTITLED
    model: str = ""


@dataclass
class AnalysisOptions:
    session_id: str
    timeout_ms: int = config.ANALYSIS_TIMEOUT_MS
    custom_instructions: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class Analyzer(Protocol):
    async def analyze(self, content: list[dict[str, Any]], options: AnalysisOptions) -> AnalysisOutput:
        ...


def extract_text_content(content: Any) -> str:
    """Flatten message content (plain string or list of typed blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "\n".join(p for p in parts if p)
    return ""


def prepare_analysis_content(events: list[dict[str, Any]], max_messages: int = 20) -> list[dict[str, Any]]:
    """Most recent user/assistant messages, at most ``max_messages // 2`` per role, oldest first."""
    filtered = []
    for event in events:
        message = event.get("message")
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        text = extract_text_content(message.get("content"))
        if not text.strip():
            continue
        filtered.append({"role": role, "content": text, "timestamp": event.get("timestamp")})

    per_role = max(1, max_messages // 2)
    counts = {"user": 0, "assistant": 0}
    recent: list[dict[str, Any]] = []
    for item in reversed(filtered):
        role = item["role"]
        if counts[role] >= per_role:
            continue
        counts[role] += 1
        recent.append(item)
        if counts["user"] + counts["assistant"] >= max_messages:
            break
    recent.reverse()
    return recent


def title_from_summary(summary: str) -> str:
    for line in summary.splitlines():
        cleaned = line.strip().lstrip("#").strip().strip("\"'")
        if cleaned:
            return cleaned[:_MAX_TITLE_LENGTH]
    return UNTITLED


def parse_analyzer_output(session_id: str, stdout: str) -> AnalysisOutput:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise AnalysisFailed(session_id, f"could not parse analyzer output: {e.msg}") from e
    if not isinstance(payload, dict) or not str(payload.get("summary") or "").strip():
        raise AnalysisFailed(session_id, "analyzer returned no summary")

    summary = str(payload["summary"]).strip()
    title = str(payload.get("title") or "").strip() or title_from_summary(summary)
    model = str(payload.get("model") or "")
    return AnalysisOutput(summary=summary, title=title[:_MAX_TITLE_LENGTH], model=model)


class SubprocessAnalyzer:
    """Runs the configured analyzer command once per session."""

    def __init__(self, command: str | list[str] = config.ANALYZER_COMMAND, model: str = config.ANALYSIS_MODEL):
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("Analyzer command must not be empty")
        self.model = model

    def build_args(self, content: list[dict[str, Any]], options: AnalysisOptions) -> list[str]:
        args = [*self.argv, "--session-id", options.session_id, "--content", json.dumps(content)]
        if options.custom_instructions:
            args.extend(["--custom-instructions", options.custom_instructions])
        return args

    async def analyze(self, content: list[dict[str, Any]], options: AnalysisOptions) -> AnalysisOutput:
        args = self.build_args(content, options)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AnalysisFailed(options.session_id, f"could not start analyzer: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeouts and cancellations arrive here; never leave the process behind.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:500]
            raise AnalysisFailed(options.session_id, f"analyzer exited with code {proc.returncode}: {detail}")

        output = parse_analyzer_output(options.session_id, stdout.decode("utf-8", errors="replace"))
        if not output.model:
            output = AnalysisOutput(summary=output.summary, title=output.title, model=self.model)
        logger.debug(f"Analyzer finished for {options.session_id}")
        return output
