"""Chat surface interface and message rendering."""

from __future__ import annotations

import logging
from typing import Protocol

from taskfleet.dispatch.models import TaskStatus, TaskView
from taskfleet.relay.models import StreamResult, ToolUse

logger = logging.getLogger(__name__)

_TOOL_TARGET_KEYS = ("file_path", "path", "pattern")


class ChatSurface(Protocol):
    """Human-facing channel sink. Methods raise StreamChannelUnavailable on failure."""

    def open_channel(self, task_id: str, title: str) -> str:
        """Create a channel for the task and return its reference."""

    def send(self, channel_ref: str, text: str) -> None:
        """Post one message to the channel."""

    def close_channel(self, channel_ref: str, summary: str) -> None:
        """Post the final summary and close the channel."""


class LoggingChatSurface:
    """Chat surface that writes every message to the log."""

    def open_channel(self, task_id: str, title: str) -> str:
        channel_ref = f"log:{task_id}"
        logger.info("[%s] opened: %s", channel_ref, title)
        return channel_ref

    def send(self, channel_ref: str, text: str) -> None:
        logger.info("[%s] %s", channel_ref, text)

    def close_channel(self, channel_ref: str, summary: str) -> None:
        logger.info("[%s] closed: %s", channel_ref, summary)


def render_tool_use(tool_use: ToolUse) -> str:
    target = ""
    for key in _TOOL_TARGET_KEYS:
        value = tool_use.input.get(key)
        if value:
            target = str(value)
            break
    return f"\n[tool] {tool_use.name}: {target}\n" if target else f"\n[tool] {tool_use.name}\n"


def render_result(result: StreamResult) -> str:
    """Render the closing summary of a finished session."""

    if result.is_error:
        return f"Failed\n{result.error or result.summary or 'no error details'}"

    header = "Completed"
    if result.cost_units is not None:
        header += f" (cost {result.cost_units:.2f})"
    if result.changed_artifacts:
        header += f" | {len(result.changed_artifacts)} artifacts"
    lines = [header]
    if result.external_ref_url:
        lines.append(f"Ref: {result.external_ref_url}")
    if result.summary:
        lines.append(result.summary)
    return "\n".join(lines)


def render_task_outcome(task: TaskView) -> str:
    """Closing summary for a task that finished outside the stream."""

    if task.status == TaskStatus.CANCELLED:
        return "Cancelled"
    return render_result(
        StreamResult(
            is_error=task.status == TaskStatus.FAILED,
            summary=task.result.summary,
            cost_units=task.result.cost_units,
            changed_artifacts=list(task.result.changed_artifacts),
            external_ref_url=task.result.external_ref_url,
            error=task.result.error_message,
        ),
    )


def split_message(text: str, max_chars: int) -> list[str]:
    """Split text into pieces of at most max_chars, preferring line breaks."""

    pieces: list[str] = []
    remaining = text
    while len(remaining) > max_chars:
        cut = remaining.rfind("\n", max_chars // 2, max_chars)
        if cut <= 0:
            cut = max_chars
        pieces.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        pieces.append(remaining)
    return pieces
