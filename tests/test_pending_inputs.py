from __future__ import annotations

import allure
import pytest

from taskfleet.relay.inputs import PendingInputQueue

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Pending Inputs"),
]


def test_replies_are_polled_in_order(clock) -> None:
    inputs = PendingInputQueue(clock=clock)

    assert inputs.enqueue("t1", "first") == 1
    assert inputs.enqueue("t1", "  second  ") == 2
    assert inputs.enqueue("t2", "other task") == 1

    first = inputs.poll("t1")
    second = inputs.poll("t1")

    assert first is not None
    assert first.text == "first"
    assert first.enqueued_at == clock.now
    assert second is not None
    assert second.text == "second"
    assert inputs.poll("t1") is None
    assert inputs.pending_count("t2") == 1


def test_poll_unknown_task_returns_none(clock) -> None:
    assert PendingInputQueue(clock=clock).poll("nobody") is None


def test_blank_reply_is_rejected(clock) -> None:
    inputs = PendingInputQueue(clock=clock)

    with pytest.raises(ValueError, match="empty"):
        inputs.enqueue("t1", "   ")
    assert inputs.pending_count("t1") == 0


def test_expired_replies_are_skipped_on_poll(clock) -> None:
    inputs = PendingInputQueue(ttl_seconds=60, clock=clock)
    inputs.enqueue("t1", "stale")
    clock.advance(45)
    inputs.enqueue("t1", "fresh")
    clock.advance(30)

    entry = inputs.poll("t1")

    assert entry is not None
    assert entry.text == "fresh"
    assert inputs.pending_count("t1") == 0


def test_sweep_discards_expired_replies(clock) -> None:
    inputs = PendingInputQueue(ttl_seconds=60, clock=clock)
    inputs.enqueue("t1", "old")
    inputs.enqueue("t2", "old too")
    clock.advance(50)
    inputs.enqueue("t2", "recent")
    clock.advance(20)

    assert inputs.sweep() == 2
    assert inputs.pending_count("t1") == 0
    assert inputs.pending_count("t2") == 1
    assert inputs.sweep() == 0
