"""
Disparity Module
================

Per-frame rectification, block-matching disparity and 3D reprojection for a
calibrated stereo composite.

Processing steps for one frame:
1. Flip the composite upright and split it into eye views
2. Capture a calibration pair if one was requested
3. Rectify both eyes through the calibration remap tables
4. Compute raw disparity with the stereo matcher
5. Normalize it to the matcher's configured disparity range
6. Reproject the normalized disparity to a per-pixel (x, y, z) field

References:
- OpenCV Stereo Matching: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Block Matching: K. Konolige, "Small Vision Systems: Hardware and Implementation,"
  Robotics Research, 1997
- Semi-Global Block Matching: H. Hirschmuller, "Stereo Processing by Semiglobal Matching
  and Mutual Information," IEEE TPAMI, 2008
"""

import logging
import cv2
import numpy as np
import time
from enum import Enum
from typing import Optional, TYPE_CHECKING
from dataclasses import dataclass

from .buffers import BufferScope, ImageBuffer, ScalarBufferCache
from .config import PipelineConfig, DISPARITY_SCALE
from .frame import CompositeFrame, split_eyes, to_gray

if TYPE_CHECKING:
    from .state import SessionState

logger = logging.getLogger(__name__)


class MatcherType(Enum):
    """
    Available stereo matchers.

    BM: Block Matching - fastest, good for textured scenes
    SGBM: Semi-Global Block Matching - better edges, slower
    """
    BM = "bm"
    SGBM = "sgbm"


class DisparityMatcher:
    """
    Stateful stereo matcher reused across frames.

    min_disparity and num_disparities are read back from the OpenCV object so
    normalization always uses the values the matcher actually runs with.

    Reference: OpenCV StereoBM / StereoSGBM
    https://docs.opencv.org/4.x/d9/dba/classcv_1_1StereoBM.html
    """

    def __init__(
        self,
        matcher_type: MatcherType = MatcherType.BM,
        num_disparities: int = 64,
        block_size: int = 21,
        min_disparity: int = 0
    ):
        """
        Args:
            matcher_type: Which OpenCV matcher to build
            num_disparities: Disparity search range (must be divisible by 16)
            block_size: Matching block size (must be odd)
            min_disparity: Minimum possible disparity value
        """
        self.matcher_type = matcher_type
        if matcher_type == MatcherType.BM:
            self._matcher = cv2.StereoBM_create(
                numDisparities=num_disparities,
                blockSize=block_size
            )
            self._matcher.setMinDisparity(min_disparity)
        else:
            # P1 and P2 control smoothness penalty
            self._matcher = cv2.StereoSGBM_create(
                minDisparity=min_disparity,
                numDisparities=num_disparities,
                blockSize=block_size,
                P1=8 * block_size ** 2,
                P2=32 * block_size ** 2,
                disp12MaxDiff=1,
                uniquenessRatio=10,
                speckleWindowSize=100,
                speckleRange=32
            )

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "DisparityMatcher":
        return cls(
            matcher_type=MatcherType(config.matcher_type),
            num_disparities=config.num_disparities,
            block_size=config.block_size,
            min_disparity=config.min_disparity
        )

    @property
    def min_disparity(self) -> int:
        return self._matcher.getMinDisparity()

    @property
    def num_disparities(self) -> int:
        return self._matcher.getNumDisparities()

    def compute(self, left_gray: np.ndarray, right_gray: np.ndarray) -> np.ndarray:
        """
        Compute raw disparity between two rectified single-channel images.

        Returns:
            int16 disparity in 1/16 pixel units
        """
        return self._matcher.compute(left_gray, right_gray)


def normalize_disparity(
    raw: np.ndarray,
    min_disparity: float,
    num_disparities: float,
    cache: ScalarBufferCache,
    scale: float = DISPARITY_SCALE
) -> np.ndarray:
    """
    Scale raw matcher output to the matcher's configured disparity range.

        normalized = (raw / scale - min_disparity) / num_disparities

    The order matters: min_disparity is in pixels, so it is subtracted after
    the fixed-point scale is removed.

    Args:
        raw: Raw fixed-point disparity
        min_disparity: Matcher minimum disparity (pixels)
        num_disparities: Matcher disparity search range (pixels)
        cache: Source of the constant operands
        scale: Fixed-point scale of raw

    Returns:
        float32 normalized disparity
    """
    size = raw.shape[:2]
    normalized = raw.astype(np.float32)
    cv2.divide(normalized, cache.get_buffer(size, scale, np.float32), dst=normalized)
    cv2.subtract(normalized, cache.get_buffer(size, min_disparity, np.float32), dst=normalized)
    cv2.divide(normalized, cache.get_buffer(size, num_disparities, np.float32), dst=normalized)
    return normalized


def reproject_to_3d(disparity: np.ndarray, q: np.ndarray) -> np.ndarray:
    """
    Reproject a disparity map to a per-pixel (x, y, z) field.

    Pixels at the matcher's invalid disparity are mapped to a very large z
    instead of inf/nan (handleMissingValues).

    Args:
        disparity: float32 disparity map
        q: 4x4 disparity-to-depth matrix from stereoRectify

    Returns:
        HxWx3 float32 point field
    """
    return cv2.reprojectImageTo3D(disparity, q, handleMissingValues=True)


@dataclass
class FrameOutput:
    """
    Views produced by one processed frame, for the display sink.

    The caller owns the output and must drop it before the next processed
    frame. left_view/right_view are read-only.

    Attributes:
        left_view: Rectified left eye (raw eye view before calibration)
        right_view: Rectified right eye (raw eye view before calibration)
        disparity: Normalized disparity map (None before calibration)
        point_cloud: HxWx3 reprojected point field (None before calibration)
        captured_pair: True if this frame was captured for calibration
        computation_time_ms: Time spent in process_frame
    """
    left_view: np.ndarray
    right_view: np.ndarray
    disparity: Optional[np.ndarray] = None
    point_cloud: Optional[np.ndarray] = None
    captured_pair: bool = False
    computation_time_ms: float = 0.0


def _move_out(scope: BufferScope, buffer: ImageBuffer) -> np.ndarray:
    """
    Hand a buffer's pixels to the frame output as a read-only array.

    Buffers owned by the scope are detached; anything else (a captured
    calibration pair) stays with its owner.
    """
    if scope.owns(buffer):
        scope.detach(buffer)
    view = buffer.data.view()
    view.flags.writeable = False
    return view


class StereoEngine:
    """
    Rectification/disparity engine driven once per processed tick.

    Every buffer created while processing a frame lives in a BufferScope and
    is released when the frame is done. Captured eye views move into the
    session's calibration pair instead; the normalized disparity and point
    field move into the returned FrameOutput.
    """

    def __init__(self, state: "SessionState"):
        self.state = state

    def process_frame(self, frame: CompositeFrame) -> FrameOutput:
        """
        Process one composite frame.

        Exceptions propagate; the frame scheduler drops the frame and keeps
        running.

        Args:
            frame: Side-by-side composite from the frame source

        Returns:
            FrameOutput for the display sink
        """
        state = self.state
        start_time = time.perf_counter()
        captured = False

        with BufferScope("frame") as scope:
            upright = scope.adopt(frame.upright(), "composite")
            left_view, right_view = split_eyes(upright.data)
            left_eye = scope.adopt(left_view, "left_eye")
            right_eye = scope.adopt(right_view, "right_eye")

            if state.take_capture_request():
                pair = state.record_pair(scope.detach(left_eye), scope.detach(right_eye))
                left_eye, right_eye = pair.left, pair.right
                captured = True

            maps = state.calibration_results
            if maps is None:
                # Disparity is undefined until calibrated; show the raw eyes
                output = FrameOutput(
                    left_view=_move_out(scope, left_eye),
                    right_view=_move_out(scope, right_eye),
                    captured_pair=captured
                )
                output.computation_time_ms = (time.perf_counter() - start_time) * 1000
                return output

            gray_left = scope.adopt(to_gray(left_eye.data), "gray_left")
            gray_right = scope.adopt(to_gray(right_eye.data), "gray_right")
            rect_left = scope.adopt(cv2.remap(
                gray_left.data,
                maps.left.map1.data,
                maps.left.map2.data,
                cv2.INTER_LANCZOS4,
                borderMode=cv2.BORDER_CONSTANT
            ), "rect_left")
            rect_right = scope.adopt(cv2.remap(
                gray_right.data,
                maps.right.map1.data,
                maps.right.map2.data,
                cv2.INTER_LANCZOS4,
                borderMode=cv2.BORDER_CONSTANT
            ), "rect_right")

            matcher = state.matcher
            raw = scope.adopt(matcher.compute(rect_left.data, rect_right.data), "raw_disparity")
            disparity = scope.adopt(normalize_disparity(
                raw.data,
                matcher.min_disparity,
                matcher.num_disparities,
                state.scalar_cache,
                state.config.disparity_scale
            ), "disparity")
            point_cloud = scope.adopt(reproject_to_3d(disparity.data, maps.q.data), "point_cloud")

            output = FrameOutput(
                left_view=_move_out(scope, rect_left),
                right_view=_move_out(scope, rect_right),
                disparity=_move_out(scope, disparity),
                point_cloud=_move_out(scope, point_cloud),
                captured_pair=captured
            )

        output.computation_time_ms = (time.perf_counter() - start_time) * 1000
        logger.debug("Stereo frame took %.2f ms", output.computation_time_ms)
        return output
