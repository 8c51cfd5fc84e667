"""Tests for worker/demux.py -- ordered request queue and frame splitting.

Responses must reach callbacks in submission order however the output is
chunked, and every frame must be delivered exactly once.
"""

import asyncio
from typing import Any

import pytest
from fakes import FakeProcess, Recorder, drain_events

from ghcworker.errors import ProcessNotRunningError, SessionDestroyedError
from ghcworker.events import EventBus, EventType
from ghcworker.metrics import MetricsCollector
from ghcworker.worker.demux import ResponseDemultiplexer

KEY = "backend:/src/app"


@pytest.fixture()
def process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture()
def demux(process: FakeProcess, event_bus: EventBus) -> ResponseDemultiplexer:
    d = ResponseDemultiplexer(KEY, event_bus=event_bus)
    d.attach(process)
    return d


# =========================================================================
# Submission
# =========================================================================


class TestSubmit:
    async def test_writes_line_and_queues(
        self, demux: ResponseDemultiplexer, process: FakeProcess
    ) -> None:
        demux.submit(":t map", "s1", Recorder())
        assert process.written == [b":t map\n"]
        assert demux.pending_count == 1

    async def test_rejects_multiline_command(
        self, demux: ResponseDemultiplexer, process: FakeProcess
    ) -> None:
        with pytest.raises(ValueError, match="newline"):
            demux.submit(":t map\n:q")
        assert process.written == []
        assert demux.pending_count == 0

    async def test_rejects_marker_in_command(self, demux: ResponseDemultiplexer) -> None:
        with pytest.raises(ValueError, match="frame marker"):
            demux.submit(":t \x04")

    async def test_no_process_raises(self) -> None:
        d = ResponseDemultiplexer(KEY)
        with pytest.raises(ProcessNotRunningError):
            d.submit(":t map")
        assert d.pending_count == 0

    async def test_closed_stdin_raises(
        self, demux: ResponseDemultiplexer, process: FakeProcess
    ) -> None:
        process.exit(1)
        with pytest.raises(ProcessNotRunningError, match="stdin"):
            demux.submit(":t map")
        assert demux.pending_count == 0

    async def test_detach_stops_submission(self, demux: ResponseDemultiplexer) -> None:
        demux.detach()
        assert demux.is_attached is False
        with pytest.raises(ProcessNotRunningError):
            demux.submit(":r")

    def test_marker_must_be_one_byte(self) -> None:
        with pytest.raises(ValueError):
            ResponseDemultiplexer(KEY, marker=b"\x04\x04")


# =========================================================================
# Frame delivery
# =========================================================================


class TestFeed:
    async def test_fifo_delivery(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":t a", "first", recorder)
        demux.submit(":t b", "second", recorder)
        demux.submit(":t c", "third", recorder)

        assert demux.feed(b"a :: Int\n\x04b :: Bool\n\x04c :: Char\n\x04") == 3
        assert recorder.calls == [
            ("first", "a :: Int\n"),
            ("second", "b :: Bool\n"),
            ("third", "c :: Char\n"),
        ]
        assert demux.pending_count == 0

    async def test_fragmented_chunks(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":t a", 1, recorder)
        demux.submit(":t b", 2, recorder)

        stream = b"a :: Int\n\x04b :: Bool\n\x04"
        for i in range(len(stream)):
            demux.feed(stream[i : i + 1])

        assert recorder.calls == [(1, "a :: Int\n"), (2, "b :: Bool\n")]

    async def test_partial_frame_is_buffered(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":t a", None, recorder)

        assert demux.feed(b"a :: ") == 0
        assert recorder.calls == []
        assert demux.buffered_bytes == 5

        assert demux.feed(b"Int\n\x04") == 1
        assert recorder.calls == [(None, "a :: Int\n")]
        assert demux.buffered_bytes == 0

    async def test_multibyte_character_split_across_reads(
        self, demux: ResponseDemultiplexer
    ) -> None:
        recorder = Recorder()
        demux.submit(":t x", None, recorder)
        encoded = "x :: λ\n".encode()
        split = encoded.index("λ".encode()) + 1
        demux.feed(encoded[:split])
        demux.feed(encoded[split:] + b"\x04")
        assert recorder.calls == [(None, "x :: λ\n")]

    async def test_crlf_sanitized(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":t a", None, recorder)
        demux.feed(b"a :: Int\r\n\x04")
        assert recorder.calls == [(None, "a :: Int\n")]

    async def test_empty_frame(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":set -Wall", None, recorder)
        demux.feed(b"\x04")
        assert recorder.calls == [(None, "")]

    async def test_each_frame_delivered_once(self, demux: ResponseDemultiplexer) -> None:
        recorder = Recorder()
        demux.submit(":t a", None, recorder)
        demux.feed(b"a\n\x04")
        demux.feed(b"")
        assert len(recorder.calls) == 1

    async def test_callback_error_does_not_stop_dispatch(
        self, demux: ResponseDemultiplexer
    ) -> None:
        recorder = Recorder()

        def broken(state: Any, body: str) -> None:
            raise RuntimeError("boom")

        demux.submit(":t a", None, broken)
        demux.submit(":t b", None, recorder)
        demux.feed(b"a\n\x04b\n\x04")
        assert recorder.calls == [(None, "b\n")]

    async def test_custom_marker(self, process: FakeProcess) -> None:
        d = ResponseDemultiplexer(KEY, marker=b"\x07")
        d.attach(process)
        recorder = Recorder()
        d.submit(":t a", None, recorder)
        d.feed(b"a \x04 b\n\x07")
        assert recorder.calls == [(None, "a \x04 b\n")]


class TestProtocolViolation:
    async def test_unsolicited_frame_is_discarded(
        self, demux: ResponseDemultiplexer, event_bus: EventBus
    ) -> None:
        assert demux.feed(b"stray\n\x04") == 1
        assert demux.pending_count == 0

        events = drain_events(event_bus, KEY)
        assert [e.type for e in events] == [EventType.PROTOCOL_VIOLATION]
        assert events[0].data["preview"] == "stray\n"
        assert events[0].data["error"] == "Unsolicited response frame (6 chars)"

    async def test_queue_keeps_working_after_violation(
        self, demux: ResponseDemultiplexer
    ) -> None:
        demux.feed(b"stray\x04")
        recorder = Recorder()
        demux.submit(":t a", None, recorder)
        demux.feed(b"a\n\x04")
        assert recorder.calls == [(None, "a\n")]

    async def test_violation_is_counted(self, process: FakeProcess) -> None:
        collector = MetricsCollector()
        collector.start(KEY)
        d = ResponseDemultiplexer(KEY, metrics=collector)
        d.attach(process)
        d.submit(":t a")
        d.feed(b"a\n\x04extra\x04")

        data = collector.get(KEY)
        assert data is not None
        assert data.requests == 1
        assert data.frames == 1
        assert data.protocol_violations == 1
        assert data.bytes_received == len(b"a\n\x04extra\x04")


# =========================================================================
# Blocking calls
# =========================================================================


class TestBlockingCall:
    async def test_returns_own_body(
        self, demux: ResponseDemultiplexer, process: FakeProcess
    ) -> None:
        loop = asyncio.get_running_loop()
        # Reply on the next loop iteration, after the request is queued.
        process.responder = lambda p, line: loop.call_soon(
            demux.feed, f"<{line}>\x04".encode()
        )
        assert await demux.blocking_call(":t map") == "<:t map>"

    async def test_concurrent_calls_get_their_own_bodies(
        self, demux: ResponseDemultiplexer
    ) -> None:
        first = asyncio.create_task(demux.blocking_call(":t a"))
        second = asyncio.create_task(demux.blocking_call(":t b"))
        await asyncio.sleep(0)
        demux.feed(b"A\x04B\x04")
        assert await asyncio.wait_for(first, 1.0) == "A"
        assert await asyncio.wait_for(second, 1.0) == "B"

    async def test_timeout_keeps_queue_slot(self, demux: ResponseDemultiplexer) -> None:
        with pytest.raises(TimeoutError):
            await demux.blocking_call(":l Slow.hs", timeout=0.01)
        assert demux.pending_count == 1

        recorder = Recorder()
        demux.submit(":t a", None, recorder)
        demux.feed(b"late load output\x04a\x04")
        assert recorder.calls == [(None, "a")]


# =========================================================================
# Queue management
# =========================================================================


class TestAbandon:
    async def test_waiters_receive_error_and_callbacks_are_skipped(
        self, demux: ResponseDemultiplexer
    ) -> None:
        recorder = Recorder()
        demux.submit(":t a", None, recorder)
        call = asyncio.create_task(demux.blocking_call(":t b"))
        await asyncio.sleep(0)

        assert demux.abandon_pending(SessionDestroyedError("gone")) == 2
        with pytest.raises(SessionDestroyedError):
            await asyncio.wait_for(call, 1.0)
        assert recorder.calls == []
        assert demux.pending_count == 0

    async def test_take_pending_preserves_order(self, demux: ResponseDemultiplexer) -> None:
        demux.register("startup", None, "<startup>", internal=True)
        demux.submit(":t a")
        demux.submit(":t b")
        taken = demux.take_pending()
        assert [p.command for p in taken] == ["<startup>", ":t a", ":t b"]
        assert [p.internal for p in taken] == [True, False, False]
        assert demux.pending_count == 0

    async def test_requeue_writes_again(self, process: FakeProcess) -> None:
        d = ResponseDemultiplexer(KEY)
        d.attach(process)
        recorder = Recorder()
        pending = d.submit(":l Foo.hs", "load", recorder)
        d.take_pending()

        replacement = FakeProcess(pid=2)
        d.attach(replacement)
        d.requeue(pending)
        assert replacement.written == [b":l Foo.hs\n"]

        d.feed(b"Ok, one module loaded.\n\x04")
        assert recorder.calls == [("load", "Ok, one module loaded.\n")]

    async def test_attach_discards_residual_output(self, demux: ResponseDemultiplexer) -> None:
        demux.feed(b"half a fra")
        demux.attach(FakeProcess(pid=3))
        assert demux.buffered_bytes == 0
