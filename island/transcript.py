"""Claude Code transcript (JSONL) locations and record parsing."""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from .models import (
    ChatMessage,
    FileUpdatePayload,
    SubagentToolInfo,
    ToolResult,
    ToolUse,
)

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_HOME = "~/.claude"
CLEAR_COMMAND_MARKER = "<command-name>/clear</command-name>"
TOOL_RESULT_INTERRUPT_MARKERS = (
    "Interrupted by user",
    "interrupted by user",
    "user doesn't want to proceed",
    "[Request interrupted by user",
)


def project_dir_name(cwd: str) -> str:
    """Claude's per-project directory name: '/', '.' and '_' become '-'."""
    return cwd.replace("/", "-").replace(".", "-").replace("_", "-")


def project_dir(cwd: str, claude_home: str = DEFAULT_CLAUDE_HOME) -> Path:
    return Path(os.path.expanduser(claude_home)) / "projects" / project_dir_name(cwd)


def session_file_path(session_id: str, cwd: str, claude_home: str = DEFAULT_CLAUDE_HOME) -> Path:
    return project_dir(cwd, claude_home) / f"{session_id}.jsonl"


def agent_file_path(agent_id: str, cwd: str, claude_home: str = DEFAULT_CLAUDE_HOME) -> Path:
    return project_dir(cwd, claude_home) / f"agent-{agent_id}.jsonl"


@dataclass
class TranscriptRecord:
    """What one transcript line contributes."""
    message: Optional[ChatMessage] = None
    tool_results: list[ToolResult] = field(default_factory=list)
    agent_ids: dict[str, str] = field(default_factory=dict)  # tool_use_id -> agentId
    is_clear: bool = False

    @property
    def entity_id(self) -> Optional[str]:
        return self.message.id if self.message else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _block_text(content: Any) -> str:
    """Flatten string or [{type: text, text}] content to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return ""


def _is_interrupt_text(text: str) -> bool:
    return any(marker in text for marker in TOOL_RESULT_INTERRUPT_MARKERS)


def parse_record(data: dict) -> Optional[TranscriptRecord]:
    """Interpret one decoded transcript object. Non-message records yield None."""
    record_type = data.get("type")
    if record_type not in ("user", "assistant"):
        return None

    message = data.get("message")
    if not isinstance(message, dict):
        return None

    message_id = data.get("uuid") or message.get("id")
    if not message_id:
        return None

    content = message.get("content")
    record = TranscriptRecord()
    text_parts: list[str] = []
    tool_uses: list[ToolUse] = []

    if isinstance(content, str):
        text_parts.append(content)
    elif isinstance(content, list):
        structured = data.get("toolUseResult")
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(str(block.get("text", "")))
            elif block_type == "tool_use" and block.get("id"):
                tool_input = block.get("input")
                tool_uses.append(ToolUse(
                    id=str(block["id"]),
                    name=str(block.get("name", "")),
                    input=tool_input if isinstance(tool_input, dict) else {},
                ))
            elif block_type == "tool_result" and block.get("tool_use_id"):
                result_text = _block_text(block.get("content"))
                is_error = bool(block.get("is_error"))
                tool_use_id = str(block["tool_use_id"])
                record.tool_results.append(ToolResult(
                    tool_use_id=tool_use_id,
                    content=result_text,
                    is_error=is_error,
                    is_interrupted=(is_error and _is_interrupt_text(result_text))
                    or bool(isinstance(structured, dict) and structured.get("interrupted")),
                    structured=structured if isinstance(structured, dict) else None,
                ))
                if isinstance(structured, dict) and structured.get("agentId"):
                    record.agent_ids[tool_use_id] = str(structured["agentId"])

    text = "\n".join(p for p in text_parts if p)
    record.is_clear = record_type == "user" and CLEAR_COMMAND_MARKER in text
    record.message = ChatMessage(
        id=str(message_id),
        role=str(message.get("role") or record_type),
        text=text,
        timestamp=_parse_timestamp(data.get("timestamp")),
        tool_uses=tuple(tool_uses),
    )
    return record


def parse_line(line: str) -> Optional[TranscriptRecord]:
    """Parse one JSONL line. Blank or undecodable lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping undecodable transcript line: {line[:80]}")
        return None
    if not isinstance(data, dict):
        return None
    return parse_record(data)


def parse_lines(lines: Iterable[str]) -> list[TranscriptRecord]:
    records = []
    for line in lines:
        record = parse_line(line)
        if record is not None:
            records.append(record)
    return records


def build_payload(
    session_id: str,
    cwd: str,
    records: Iterable[TranscriptRecord],
    is_incremental: bool,
) -> FileUpdatePayload:
    """Fold parsed records into one store delta."""
    messages: list[ChatMessage] = []
    tool_results: dict[str, ToolResult] = {}
    agent_ids: dict[str, str] = {}
    for record in records:
        if record.message is not None:
            messages.append(record.message)
        for result in record.tool_results:
            tool_results[result.tool_use_id] = result
        agent_ids.update(record.agent_ids)
    return FileUpdatePayload(
        session_id=session_id,
        cwd=cwd,
        messages=tuple(messages),
        is_incremental=is_incremental,
        completed_tool_ids=frozenset(tool_results),
        tool_results=tool_results,
        agent_ids=agent_ids,
    )


def merge_subagent_tools(tools: dict[str, SubagentToolInfo], records: Iterable[TranscriptRecord]) -> int:
    """
    Fold subagent transcript records into a tool map, in place.

    New tool calls are added as running; results update the status of
    calls already seen. Returns how many entries were added or changed.
    """
    changed = 0
    for record in records:
        if record.message is not None:
            for use in record.message.tool_uses:
                if use.id not in tools:
                    tools[use.id] = SubagentToolInfo(id=use.id, name=use.name, input=use.input)
                    changed += 1
        for result in record.tool_results:
            existing = tools.get(result.tool_use_id)
            if existing is None or existing.status == result.status:
                continue
            tools[result.tool_use_id] = SubagentToolInfo(
                id=existing.id, name=existing.name, input=existing.input, status=result.status
            )
            changed += 1
    return changed
