"""
Frame Scheduler Module
======================

Runs the disparity engine inside a continuous render loop. Every tick runs the
host's housekeeping; only every Nth tick (4 by default) runs vision
processing, so the pipeline's cost stays bounded relative to the display
refresh rate. A failing frame (bad readback or processing error) is logged
and dropped; the loop keeps going.
"""

import logging
from typing import Any, Callable, Optional

from .disparity import FrameOutput, StereoEngine
from .frame import CompositeFrame
from .state import SessionState

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Optional[CompositeFrame]]


class FrameScheduler:
    """
    Tick-driven integration of the stereo engine.

    Ticks are 0-indexed: with a cadence of 4, frames are processed on ticks
    0, 4, 8, ...

    The host may provide a frame-scheduling primitive (request_frame taking a
    callback and returning a handle, cancel_frame taking that handle). With
    it, every tick re-arms the next one. Without it, the caller drives ticks
    itself (tick() or run()).
    """

    def __init__(
        self,
        state: SessionState,
        frame_source: FrameSource,
        sink: Optional[Any] = None,
        housekeeping: Optional[Callable[[], None]] = None,
        cadence: Optional[int] = None,
        request_frame: Optional[Callable[[Callable[[], None]], Any]] = None,
        cancel_frame: Optional[Callable[[Any], None]] = None,
        engine: Optional[StereoEngine] = None
    ):
        """
        Args:
            state: Session state shared with the engine
            frame_source: Returns the current composite frame, or None
            sink: Display collaborator with a show(FrameOutput) method
            housekeeping: Called on every tick before vision processing
            cadence: Process every Nth tick (config value if None)
            request_frame: Host primitive that schedules the next tick
            cancel_frame: Host primitive that cancels a scheduled tick
            engine: Engine to drive (built from state if None)
        """
        cadence = cadence if cadence is not None else state.config.process_every_n_ticks
        if cadence < 1:
            raise ValueError("cadence must be at least 1")
        self.state = state
        self.frame_source = frame_source
        self.sink = sink
        self.housekeeping = housekeeping
        self.cadence = cadence
        self.request_frame = request_frame
        self.cancel_frame = cancel_frame
        self.engine = engine or StereoEngine(state)
        self.dropped_frames = 0
        self._attached = False
        self._exhausted = False

    def attach(self) -> None:
        """
        (Re)attach to the host: cancel any outstanding tick, reset the
        session, then arm the first tick.
        """
        self._cancel_pending()
        self.state.reset()
        self.dropped_frames = 0
        self._exhausted = False
        self._attached = True
        self._schedule_next()

    def detach(self) -> None:
        """Stop the loop; no scheduled tick survives."""
        self._attached = False
        self._cancel_pending()

    @property
    def attached(self) -> bool:
        return self._attached

    def should_process(self, tick: int) -> bool:
        return tick % self.cadence == 0

    def tick(self) -> Optional[FrameOutput]:
        """
        Run one tick of the loop.

        Returns:
            The frame output when vision processing ran and succeeded
        """
        tick = self.state.tick_count
        if self.housekeeping is not None:
            self.housekeeping()

        output = None
        if self.should_process(tick):
            output = self._process(tick)

        self.state.advance_tick()
        if self._attached:
            self._schedule_next()
        return output

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Drive ticks synchronously until the frame source runs dry.

        Args:
            max_ticks: Stop after this many ticks (None = until no frames)

        Returns:
            Number of ticks run
        """
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            if self._exhausted:
                break
            self.tick()
            ticks += 1
        return ticks

    def _process(self, tick: int) -> Optional[FrameOutput]:
        try:
            frame = self.frame_source()
            if frame is None:
                logger.debug("No frame available on tick %d", tick)
                self._exhausted = True
                return None
            output = self.engine.process_frame(frame)
            if self.sink is not None:
                self.sink.show(output)
            return output
        except Exception:
            self.dropped_frames += 1
            logger.exception("Stereo processing failed on tick %d, dropping frame", tick)
            return None

    def _schedule_next(self) -> None:
        if self.request_frame is None:
            return
        self.state.set_frame_handle(self.request_frame(self.tick))

    def _cancel_pending(self) -> None:
        handle = self.state.frame_handle
        if handle is not None and self.cancel_frame is not None:
            self.cancel_frame(handle)
        self.state.set_frame_handle(None)
