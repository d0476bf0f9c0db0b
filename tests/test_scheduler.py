"""
Unit tests for the tick-driven frame scheduler.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereo_calib.disparity import FrameOutput
from stereo_calib.frame import CompositeFrame
from stereo_calib.scheduler import FrameScheduler
from stereo_calib.state import SessionState


class RecordingEngine:
    """Engine stand-in that records which frames it was given."""

    def __init__(self, fail_on=()):
        self.frames = []
        self.fail_on = set(fail_on)

    def process_frame(self, frame):
        self.frames.append(frame)
        if len(self.frames) - 1 in self.fail_on:
            raise RuntimeError("matcher exploded")
        return FrameOutput(left_view=frame, right_view=frame)


class RecordingSink:
    def __init__(self):
        self.outputs = []

    def show(self, output):
        self.outputs.append(output)


class FakeHost:
    """Host frame-scheduling primitive with numbered handles."""

    def __init__(self):
        self.callbacks = {}
        self.cancelled = []
        self.events = []
        self._next = 0

    def request_frame(self, callback):
        self._next += 1
        self.callbacks[self._next] = callback
        return self._next

    def cancel_frame(self, handle):
        self.cancelled.append(handle)
        self.events.append(("cancel", handle))
        self.callbacks.pop(handle, None)


def counting_source():
    ticks = iter(range(1000))
    return lambda: next(ticks)


@pytest.fixture
def state():
    return SessionState()


class TestCadence:
    """Tests for the processing cadence."""

    def test_processes_every_fourth_tick(self, state):
        engine = RecordingEngine()
        housekeeping = []
        scheduler = FrameScheduler(
            state, counting_source(), engine=engine,
            housekeeping=lambda: housekeeping.append(state.tick_count)
        )
        scheduler.attach()

        processed = [tick for tick in range(12) if scheduler.tick() is not None]

        assert processed == [0, 4, 8]
        assert len(engine.frames) == 3
        assert housekeeping == list(range(12))
        assert state.tick_count == 12

    def test_custom_cadence(self, state):
        scheduler = FrameScheduler(state, counting_source(), cadence=2, engine=RecordingEngine())
        assert [t for t in range(6) if scheduler.should_process(t)] == [0, 2, 4]

    def test_default_cadence_from_config(self, state):
        scheduler = FrameScheduler(state, counting_source(), engine=RecordingEngine())
        assert scheduler.cadence == 4

    def test_invalid_cadence(self, state):
        with pytest.raises(ValueError):
            FrameScheduler(state, counting_source(), cadence=0)


class TestFailureBoundary:
    """Tests for dropped frames."""

    def test_failure_dropped_and_loop_continues(self, state, caplog):
        engine = RecordingEngine(fail_on={1})
        sink = RecordingSink()
        scheduler = FrameScheduler(state, counting_source(), sink=sink, engine=engine)
        scheduler.attach()

        outputs = [scheduler.tick() for _ in range(12)]

        assert outputs[0] is not None
        assert outputs[4] is None
        assert outputs[8] is not None
        assert scheduler.dropped_frames == 1
        assert len(sink.outputs) == 2
        assert state.tick_count == 12
        assert "dropping frame" in caplog.text

    def test_bad_readback_dropped_and_loop_continues(self, state):
        """Test a frame source error drops the frame instead of ending the loop."""
        calls = []

        def source():
            calls.append(state.tick_count)
            if len(calls) == 1:
                return CompositeFrame.from_pixels(b"\x00" * 10, 4, 4)
            return len(calls)

        host = FakeHost()
        engine = RecordingEngine()
        scheduler = FrameScheduler(
            state, source, engine=engine,
            request_frame=host.request_frame, cancel_frame=host.cancel_frame
        )
        scheduler.attach()

        outputs = [scheduler.tick() for _ in range(8)]

        assert outputs[0] is None
        assert outputs[4] is not None
        assert calls == [0, 4]
        assert scheduler.dropped_frames == 1
        assert state.tick_count == 8
        assert state.frame_handle in host.callbacks

    def test_sink_failure_is_dropped(self, state):
        class BrokenSink:
            def show(self, output):
                raise RuntimeError("window closed")

        scheduler = FrameScheduler(state, counting_source(), sink=BrokenSink(), engine=RecordingEngine())
        scheduler.attach()

        assert scheduler.tick() is None
        assert scheduler.dropped_frames == 1


class TestHostScheduling:
    """Tests for attach/detach with a host frame primitive."""

    def test_tick_rearms(self, state):
        host = FakeHost()
        scheduler = FrameScheduler(
            state, counting_source(), engine=RecordingEngine(),
            request_frame=host.request_frame, cancel_frame=host.cancel_frame
        )
        scheduler.attach()
        first = state.frame_handle

        host.callbacks[first]()

        assert state.frame_handle != first
        assert state.frame_handle in host.callbacks

    def test_reattach_cancels_before_reset(self, state):
        """Test the outstanding tick is cancelled before state is reset."""
        host = FakeHost()
        original_reset = state.reset

        def recording_reset():
            host.events.append(("reset", None))
            original_reset()

        state.reset = recording_reset
        scheduler = FrameScheduler(
            state, counting_source(), engine=RecordingEngine(),
            request_frame=host.request_frame, cancel_frame=host.cancel_frame
        )
        scheduler.attach()
        pending = state.frame_handle
        host.events.clear()

        scheduler.attach()

        assert host.events[0] == ("cancel", pending)
        assert host.events[1] == ("reset", None)
        assert state.frame_handle is not None
        assert state.frame_handle != pending

    def test_detach_stops_loop(self, state):
        host = FakeHost()
        scheduler = FrameScheduler(
            state, counting_source(), engine=RecordingEngine(),
            request_frame=host.request_frame, cancel_frame=host.cancel_frame
        )
        scheduler.attach()
        pending = state.frame_handle

        scheduler.detach()
        scheduler.tick()

        assert not scheduler.attached
        assert pending in host.cancelled
        assert state.frame_handle is None

    def test_reattach_resets_session(self, state):
        scheduler = FrameScheduler(state, counting_source(), engine=RecordingEngine())
        scheduler.attach()
        state.toggle_calibration_mode()
        scheduler.run(5)

        scheduler.attach()

        assert state.tick_count == 0
        assert not state.calibration_mode


class TestRun:
    """Tests for the synchronous run loop."""

    def test_stops_when_source_exhausted(self, state):
        frames = iter(["a", "b"])
        engine = RecordingEngine()
        scheduler = FrameScheduler(state, lambda: next(frames, None), engine=engine)
        scheduler.attach()

        ticks = scheduler.run()

        # frames on ticks 0 and 4, source empty on tick 8
        assert ticks == 9
        assert engine.frames == ["a", "b"]

    def test_max_ticks(self, state):
        scheduler = FrameScheduler(state, counting_source(), engine=RecordingEngine())
        scheduler.attach()

        assert scheduler.run(max_ticks=7) == 7
        assert state.tick_count == 7
