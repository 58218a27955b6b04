from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskfleet.dispatch.models import (
    MachineRegistration,
    ResultOutcome,
    TaskCreate,
    TaskResultPayload,
)
from taskfleet.dispatch.registry import MachineRegistry
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.errors import StreamChannelUnavailable
from taskfleet.relay.models import StreamEvent, StreamEventType, StreamResult, ToolUse
from taskfleet.relay.stream import RelayCompletionNotifier, StreamRelay
from taskfleet.relay.surfaces import render_result, render_tool_use, split_message

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Stream Relay"),
]


class _RecordingSurface:
    def __init__(self) -> None:
        self.opened: list[tuple[str, str]] = []
        self.messages: list[tuple[str, str]] = []
        self.closed: list[tuple[str, str]] = []

    def open_channel(self, task_id: str, title: str) -> str:
        self.opened.append((task_id, title))
        return f"chan-{task_id}"

    def send(self, channel_ref: str, text: str) -> None:
        self.messages.append((channel_ref, text))

    def close_channel(self, channel_ref: str, summary: str) -> None:
        self.closed.append((channel_ref, summary))

    def texts(self) -> list[str]:
        return [text for _, text in self.messages]


def _text(value: str) -> StreamEvent:
    return StreamEvent(event_type=StreamEventType.TEXT, text=value)


@pytest.fixture()
def surface() -> _RecordingSurface:
    return _RecordingSurface()


def test_chunks_are_batched_until_window_elapses(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, flush_interval_seconds=1.5, clock=clock)

    assert relay.push_event("t1", _text("hello ")) is True
    clock.advance(0.5)
    relay.push_event("t1", _text("world"))
    clock.advance(0.5)

    assert relay.tick() == 0
    assert surface.messages == []
    info = relay.channel_info("t1")
    assert info is not None
    assert info.buffered_chars == len("hello world")

    clock.advance(0.5)
    assert relay.tick() == 1
    assert surface.messages == [("chan-t1", "hello world")]
    assert surface.opened == [("t1", "Task t1")]


def test_push_after_window_flushes_immediately(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, flush_interval_seconds=1.5, clock=clock)

    relay.push_event("t1", _text("a"))
    clock.advance(2)
    relay.push_event("t1", _text("b"))

    assert surface.texts() == ["ab"]
    assert relay.channel_info("t1").buffered_since is None


def test_buffer_never_exceeds_message_ceiling(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, max_message_chars=10, clock=clock)

    relay.push_event("t1", _text("12345678"))
    relay.push_event("t1", _text("abcd"))
    relay.push_event("t1", _text("x" * 25))

    assert surface.texts() == ["12345678", "abcd", "x" * 10, "x" * 10]
    assert relay.channel_info("t1").buffered_chars == 5
    assert all(len(text) <= 10 for text in surface.texts())


def test_result_flushes_then_closes_channel(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(
        surface=surface,
        clock=clock,
        describe_task=lambda task_id: f"[alpha] {task_id}",
    )
    relay.push_event("t1", _text("partial output"))
    relay.push_event(
        "t1",
        StreamEvent(
            event_type=StreamEventType.TOOL_USE,
            tool_use=ToolUse(name="Edit", input={"file_path": "src/app.py"}),
        ),
    )

    relay.push_event(
        "t1",
        StreamEvent(
            event_type=StreamEventType.RESULT,
            result=StreamResult(
                summary="Fixed the form",
                cost_units=0.42,
                external_ref_url="https://example.com/pr/1",
            ),
        ),
    )

    assert surface.opened == [("t1", "[alpha] t1")]
    assert surface.texts() == ["partial output\n[tool] Edit: src/app.py\n"]
    assert surface.closed == [
        ("chan-t1", "Completed (cost 0.42)\nRef: https://example.com/pr/1\nFixed the form"),
    ]
    info = relay.channel_info("t1")
    assert info is not None
    assert info.closed is True
    assert relay.push_event("t1", _text("late")) is False
    assert len(surface.messages) == 1


def test_unavailable_channel_drops_events_without_raising(clock) -> None:
    class _DownSurface(_RecordingSurface):
        def open_channel(self, task_id: str, title: str) -> str:
            raise StreamChannelUnavailable("chat is down")

    relay = StreamRelay(surface=_DownSurface(), clock=clock)

    assert relay.push_event("t1", _text("lost")) is False
    assert relay.channel_info("t1") is None


def test_send_failure_is_logged_and_skipped(clock) -> None:
    class _FlakySurface(_RecordingSurface):
        def send(self, channel_ref: str, text: str) -> None:
            raise StreamChannelUnavailable("rate limited")

    surface = _FlakySurface()
    relay = StreamRelay(surface=surface, flush_interval_seconds=0, clock=clock)

    assert relay.push_event("t1", _text("dropped")) is True
    assert relay.channel_info("t1").messages_sent == 0


def test_channels_are_independent_per_task(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, flush_interval_seconds=1, clock=clock)

    relay.push_event("t1", _text("one"))
    relay.push_event("t2", _text("two"))
    clock.advance(1)
    relay.tick()

    assert sorted(surface.messages) == [("chan-t1", "one"), ("chan-t2", "two")]


def test_rejects_non_positive_ceiling(surface: _RecordingSurface) -> None:
    with pytest.raises(ValueError, match="max_message_chars"):
        StreamRelay(surface=surface, max_message_chars=0)


def test_render_helpers() -> None:
    assert render_tool_use(ToolUse(name="Bash")) == "\n[tool] Bash\n"
    assert render_tool_use(ToolUse(name="Grep", input={"pattern": "TODO"})) == (
        "\n[tool] Grep: TODO\n"
    )
    assert render_result(StreamResult(is_error=True, error="boom")) == "Failed\nboom"
    assert render_result(StreamResult(changed_artifacts=["a", "b"])) == "Completed | 2 artifacts"


def test_split_message_prefers_line_breaks() -> None:
    text = "first line\nsecond line\nthird"

    pieces = split_message(text, 15)

    assert pieces == ["first line", "\nsecond line", "\nthird"]
    assert "".join(pieces) == text


def test_close_task_flushes_buffer_and_closes_once(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, clock=clock)
    relay.push_event("t1", _text("still working"))

    assert relay.close_task("t1", "Cancelled") is True
    assert relay.close_task("t1", "Cancelled") is False

    assert surface.texts() == ["still working"]
    assert surface.closed == [("chan-t1", "Cancelled")]
    assert relay.channel_info("t1").closed is True
    assert relay.push_event("t1", _text("late")) is False


def test_close_task_without_channel_blocks_late_events(
    surface: _RecordingSurface,
    clock,
) -> None:
    relay = StreamRelay(surface=surface, clock=clock)

    assert relay.close_task("t9", "Completed") is False
    assert relay.push_event("t9", _text("after the fact")) is False

    info = relay.channel_info("t9")
    assert info is not None
    assert info.closed is True
    assert info.channel_ref is None
    assert surface.opened == []
    assert surface.closed == []


def test_long_closing_summary_respects_ceiling(surface: _RecordingSurface, clock) -> None:
    relay = StreamRelay(surface=surface, max_message_chars=3_500, clock=clock)
    relay.push_event("t1", _text("progress"))

    relay.push_event(
        "t1",
        StreamEvent(event_type=StreamEventType.RESULT, result=StreamResult(summary="s" * 6_000)),
    )

    closing = surface.closed[0][1]
    assert len(closing) <= 3_500
    assert all(len(text) <= 3_500 for text in surface.texts())
    assert surface.texts()[0] == "progress"
    assert "".join([*surface.texts()[1:], closing]) == "Completed\n" + "s" * 6_000


def test_store_completion_closes_stream_channel(
    surface: _RecordingSurface,
    clock,
    tmp_path: Path,
) -> None:
    relay = StreamRelay(surface=surface, clock=clock)
    tasks = TaskRepository(
        tmp_path / "relay.db",
        clock=clock,
        notifier=RelayCompletionNotifier(relay),
    )
    tasks.init_schema()
    registry = MachineRegistry(tmp_path / "relay.db", clock=clock)
    try:
        registry.register(MachineRegistration(machine_id="m1", max_concurrent=3))
        done = tasks.create(TaskCreate(project="alpha", description="reported"))
        dropped = tasks.create(TaskCreate(project="alpha", description="abandoned"))
        cancelled = tasks.create(TaskCreate(project="alpha", description="cancelled"))
        for task in (done, dropped, cancelled):
            tasks.claim_task(task.task_id, "m1")
            relay.push_event(task.task_id, _text(f"output of {task.description}"))

        tasks.report_result(
            done.task_id,
            ResultOutcome.COMPLETED,
            TaskResultPayload(summary="Fixed", cost_units=0.5),
        )
        tasks.fail_abandoned(dropped.task_id, reason="machine went away")
        tasks.cancel(cancelled.task_id)
        tasks.report_result(done.task_id, ResultOutcome.FAILED, TaskResultPayload())
    finally:
        registry.close()
        tasks.close()

    assert sorted(surface.texts()) == [
        "output of abandoned",
        "output of cancelled",
        "output of reported",
    ]
    assert sorted(summary for _, summary in surface.closed) == [
        "Cancelled",
        "Completed (cost 0.50)\nFixed",
        "Failed\nmachine went away",
    ]
    for task in (done, dropped, cancelled):
        assert relay.channel_info(task.task_id).closed is True
