"""Stream event and pending input models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StreamEventType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    RESULT = "result"


@dataclass(slots=True)
class ToolUse:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StreamResult:
    """Final outcome carried by a `result` stream event."""

    is_error: bool = False
    summary: str | None = None
    cost_units: float | None = None
    changed_artifacts: list[str] = field(default_factory=list)
    external_ref_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class StreamEvent:
    """One event from a remote execution session."""

    event_type: StreamEventType
    text: str | None = None
    tool_use: ToolUse | None = None
    result: StreamResult | None = None


@dataclass(slots=True)
class ChannelInfo:
    task_id: str
    channel_ref: str | None
    buffered_chars: int
    buffered_since: datetime | None
    messages_sent: int
    closed: bool


@dataclass(slots=True)
class PendingInput:
    task_id: str
    text: str
    enqueued_at: datetime
