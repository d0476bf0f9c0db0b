"""
Session State Module
====================

The single owner of everything that outlives one frame: calibration mode and
capture flags, captured calibration pairs, calibration results, the disparity
matcher, the scalar buffer cache and the frame counters.

The host constructs one SessionState and passes it to the engine and the
scheduler. reset() must run whenever the host view is (re)attached, since a
host that navigates away and back would otherwise reuse stale buffers.
"""

import logging
from enum import Enum
from typing import Any, Optional, Tuple

from .buffers import ImageBuffer, ScalarBufferCache
from .calibration import (
    CalibrationOutcome,
    CalibrationPair,
    CalibrationSession,
    RectificationMaps,
)
from .config import PipelineConfig, create_default_config
from .disparity import DisparityMatcher

logger = logging.getLogger(__name__)


class CalibrationState(Enum):
    """Gates disparity computation; the matcher exists only when CALIBRATED."""
    UNCALIBRATED = "uncalibrated"
    CALIBRATED = "calibrated"


class SessionState:
    """
    Process-wide pipeline state, passed explicitly.

    Fields are read through properties and changed only through the mutators
    below, so calibration results and captured pairs have one writer.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or create_default_config()
        self.config.validate()
        self._viewer_size: Tuple[int, int] = tuple(self.config.viewer_size)
        self._eye_separation: float = self.config.eye_separation
        self._init_fields()

    def _init_fields(self) -> None:
        self._calibration_mode = False
        self._capture_requested = False
        self._calibration = CalibrationSession(self.config)
        self._results: Optional[RectificationMaps] = None
        self._calibration_state = CalibrationState.UNCALIBRATED
        self._matcher: Optional[DisparityMatcher] = None
        self._scalar_cache = ScalarBufferCache()
        self._tick_count = 0
        self._frame_handle: Any = None

    def reset(self) -> None:
        """
        Release held buffers and restore construction-time defaults.

        Viewer size and eye separation are user settings and survive.
        Safe to call repeatedly.
        """
        if self._results is not None:
            self._results.release()
        self._calibration.discard_pairs()
        self._scalar_cache.clear()
        self._init_fields()
        logger.debug("Session state reset")

    # -- read access ---------------------------------------------------------

    @property
    def calibration_mode(self) -> bool:
        return self._calibration_mode

    @property
    def capture_requested(self) -> bool:
        return self._capture_requested

    @property
    def captured_pairs(self) -> Tuple[CalibrationPair, ...]:
        return self._calibration.pairs

    @property
    def calibration_state(self) -> CalibrationState:
        return self._calibration_state

    @property
    def calibration_results(self) -> Optional[RectificationMaps]:
        return self._results

    @property
    def have_calibration_results(self) -> bool:
        return self._calibration_state == CalibrationState.CALIBRATED

    @property
    def matcher(self) -> Optional[DisparityMatcher]:
        return self._matcher

    @property
    def scalar_cache(self) -> ScalarBufferCache:
        return self._scalar_cache

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def frame_handle(self) -> Any:
        return self._frame_handle

    @property
    def viewer_size(self) -> Tuple[int, int]:
        return self._viewer_size

    @property
    def eye_separation(self) -> float:
        return self._eye_separation

    # -- commands ------------------------------------------------------------

    def toggle_calibration_mode(self) -> bool:
        """Switch between chessboard capture mode and normal mode."""
        self._calibration_mode = not self._calibration_mode
        logger.info("Calibration mode %s", "on" if self._calibration_mode else "off")
        return self._calibration_mode

    def set_calibration_mode(self, enabled: bool) -> None:
        self._calibration_mode = bool(enabled)

    def request_capture_pair(self) -> int:
        """
        Capture a calibration pair on the next processed frame.

        Returns:
            Number of pairs there will be once the request is served
        """
        self._capture_requested = True
        return self._calibration.pair_count + 1

    def clear_capture_request(self) -> None:
        self._capture_requested = False

    def take_capture_request(self) -> bool:
        """
        Consume a pending capture request.

        Requests are only served in calibration mode; outside it the request
        stays pending.

        Returns:
            True if the current frame should be captured
        """
        if self._calibration_mode and self._capture_requested:
            self._capture_requested = False
            return True
        return False

    def record_pair(self, left: ImageBuffer, right: ImageBuffer) -> CalibrationPair:
        """Move two eye buffers into a new calibration pair."""
        return self._calibration.record_pair(left, right)

    def run_calibration(self) -> CalibrationOutcome:
        """
        Calibrate from the captured pairs and install the results on success.

        Previous results stay in place when the run is skipped or fails.
        """
        outcome = self._calibration.run()
        if outcome.succeeded:
            self.install_calibration_results(outcome.maps)
        return outcome

    def install_calibration_results(self, maps: RectificationMaps) -> None:
        """
        Replace the calibration results as one unit.

        The matcher is built on the UNCALIBRATED -> CALIBRATED transition and
        reused after that.
        """
        if maps is None or maps.released:
            raise ValueError("Cannot install missing or released calibration results")
        previous = self._results
        self._results = maps
        if previous is not None and previous is not maps:
            previous.release()
        if self._calibration_state == CalibrationState.UNCALIBRATED:
            self._matcher = DisparityMatcher.from_config(self.config)
            self._calibration_state = CalibrationState.CALIBRATED
        logger.info("Installed calibration results for %dx%d", *maps.image_size)

    def set_viewer_dimensions(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("Viewer size must be positive")
        self._viewer_size = (int(width), int(height))

    def set_eye_separation(self, separation: float) -> None:
        if separation < 0:
            raise ValueError("Eye separation must not be negative")
        self._eye_separation = float(separation)

    def advance_tick(self) -> int:
        self._tick_count += 1
        return self._tick_count

    def set_frame_handle(self, handle: Any) -> None:
        self._frame_handle = handle
