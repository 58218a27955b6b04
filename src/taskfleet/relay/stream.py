"""Buffered relay from remote execution sessions to the chat surface."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from taskfleet.dispatch.models import TaskView
from taskfleet.errors import StreamChannelUnavailable
from taskfleet.relay.models import ChannelInfo, StreamEvent, StreamEventType
from taskfleet.relay.surfaces import (
    ChatSurface,
    render_result,
    render_task_outcome,
    render_tool_use,
    split_message,
)
from taskfleet.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)

_CLOSED_HISTORY = 1_000


@dataclass(slots=True)
class _Channel:
    channel_ref: str
    chunks: list[str] = field(default_factory=list)
    buffered_chars: int = 0
    buffered_since: datetime | None = None
    messages_sent: int = 0


class StreamRelay:
    """Batches stream chunks per task and forwards them in order.

    A buffer is flushed when its oldest chunk has waited for the flush interval
    or when the next chunk would push it over the message ceiling. All surface
    calls for a task happen under one lock, so messages keep event order.
    """

    def __init__(
        self,
        *,
        surface: ChatSurface,
        flush_interval_seconds: float = 1.5,
        max_message_chars: int = 3_500,
        clock: Clock = utc_now,
        describe_task: Callable[[str], str] | None = None,
    ) -> None:
        if max_message_chars <= 0:
            raise ValueError("max_message_chars must be > 0")
        self.surface = surface
        self.flush_interval_seconds = flush_interval_seconds
        self.max_message_chars = max_message_chars
        self.clock = clock
        self.describe_task = describe_task or (lambda task_id: f"Task {task_id[:8]}")
        self._channels: dict[str, _Channel] = {}
        self._closed: OrderedDict[str, str | None] = OrderedDict()
        self._lock = threading.Lock()

    def push_event(self, task_id: str, event: StreamEvent) -> bool:
        """Relay one event; returns False when it was dropped."""

        with self._lock:
            if task_id in self._closed:
                logger.debug("Stream event for closed channel of task %s dropped", task_id)
                return False
            channel = self._channels.get(task_id)
            if channel is None:
                channel = self._open(task_id)
                if channel is None:
                    return False

            now = self.clock()
            if event.event_type == StreamEventType.TEXT:
                if event.text:
                    self._append(channel, event.text, now)
            elif event.event_type == StreamEventType.TOOL_USE:
                if event.tool_use is not None:
                    self._append(channel, render_tool_use(event.tool_use), now)
            elif event.event_type == StreamEventType.RESULT:
                self._flush(channel)
                summary = render_result(event.result) if event.result is not None else "Finished"
                self._close(task_id, channel, summary)
                return True
            else:
                return False

            since = channel.buffered_since
            if since is not None and self._window_elapsed(since, now):
                self._flush(channel)
            return True

    def close_task(self, task_id: str, summary: str) -> bool:
        """Flush and close the channel of a finished task.

        Returns False when the channel is already closed or was never opened. A
        task without a channel is still remembered as closed, so stream events
        arriving after it finished are dropped.
        """

        with self._lock:
            if task_id in self._closed:
                return False
            channel = self._channels.get(task_id)
            if channel is None:
                self._remember_closed(task_id, None)
                return False
            self._flush(channel)
            self._close(task_id, channel, summary)
            return True

    def tick(self) -> int:
        """Flush every buffer whose window elapsed; returns number of flushed channels."""

        flushed = 0
        with self._lock:
            now = self.clock()
            for channel in self._channels.values():
                since = channel.buffered_since
                if since is not None and self._window_elapsed(since, now):
                    self._flush(channel)
                    flushed += 1
        return flushed

    def channel_info(self, task_id: str) -> ChannelInfo | None:
        with self._lock:
            channel = self._channels.get(task_id)
            if channel is not None:
                return ChannelInfo(
                    task_id=task_id,
                    channel_ref=channel.channel_ref,
                    buffered_chars=channel.buffered_chars,
                    buffered_since=channel.buffered_since,
                    messages_sent=channel.messages_sent,
                    closed=False,
                )
            if task_id not in self._closed:
                return None
            return ChannelInfo(
                task_id=task_id,
                channel_ref=self._closed[task_id],
                buffered_chars=0,
                buffered_since=None,
                messages_sent=0,
                closed=True,
            )

    def _open(self, task_id: str) -> _Channel | None:
        try:
            channel_ref = self.surface.open_channel(task_id, self.describe_task(task_id))
        except StreamChannelUnavailable as error:
            logger.warning(
                "Stream channel for task %s unavailable, event dropped: %s",
                task_id,
                error,
            )
            return None
        channel = _Channel(channel_ref=channel_ref)
        self._channels[task_id] = channel
        return channel

    def _append(self, channel: _Channel, text: str, now: datetime) -> None:
        if channel.buffered_chars + len(text) > self.max_message_chars:
            self._flush(channel)
        pieces = split_message(text, self.max_message_chars)
        for piece in pieces[:-1]:
            self._send(channel, piece)
        last = pieces[-1]
        channel.chunks.append(last)
        channel.buffered_chars += len(last)
        if channel.buffered_since is None:
            channel.buffered_since = now

    def _flush(self, channel: _Channel) -> None:
        if not channel.chunks:
            return
        text = "".join(channel.chunks)
        channel.chunks.clear()
        channel.buffered_chars = 0
        channel.buffered_since = None
        self._send(channel, text)

    def _send(self, channel: _Channel, text: str) -> None:
        if not text.strip():
            return
        try:
            self.surface.send(channel.channel_ref, text)
        except StreamChannelUnavailable as error:
            logger.warning(
                "Dropped %d chars for channel %s: %s",
                len(text),
                channel.channel_ref,
                error,
            )
            return
        channel.messages_sent += 1

    def _close(self, task_id: str, channel: _Channel, summary: str) -> None:
        # The surface limit applies to the closing summary too.
        pieces = split_message(summary, self.max_message_chars) or [summary]
        for piece in pieces[:-1]:
            self._send(channel, piece)
        try:
            self.surface.close_channel(channel.channel_ref, pieces[-1])
        except StreamChannelUnavailable as error:
            logger.warning("Could not close channel %s: %s", channel.channel_ref, error)
        del self._channels[task_id]
        self._remember_closed(task_id, channel.channel_ref)

    def _remember_closed(self, task_id: str, channel_ref: str | None) -> None:
        self._closed[task_id] = channel_ref
        while len(self._closed) > _CLOSED_HISTORY:
            self._closed.popitem(last=False)

    def _window_elapsed(self, since: datetime, now: datetime) -> bool:
        return (now - since).total_seconds() >= self.flush_interval_seconds


class RelayCompletionNotifier:
    """Closes the stream channel of a task once the store reports it finished."""

    def __init__(self, relay: StreamRelay) -> None:
        self.relay = relay

    def task_finished(self, task: TaskView) -> None:
        if self.relay.close_task(task.task_id, render_task_outcome(task)):
            logger.debug("Stream channel of task %s closed on %s", task.task_id, task.status.value)
