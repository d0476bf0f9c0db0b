"""
Stereo Calibration Module
=========================

Accumulates captured stereo pairs of a chessboard target and solves single-
and dual-camera calibration to produce rectification maps.

The calibration run:
1. Detect the chessboard in every captured image and refine the corners
2. Calibrate each camera on its own observations
3. Compute each camera's optimal camera matrix for the captured image size
4. Jointly calibrate the pair (rotation, translation, essential, fundamental)
5. Compute stereo rectification and the disparity-to-depth matrix Q
6. Build per-eye remap tables

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
- OpenCV calib3d: https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html
- Z. Zhang, "A Flexible New Technique for Camera Calibration," IEEE TPAMI, 2000
"""

import logging
import zipfile
import cv2
import numpy as np
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from .buffers import BufferScope, ImageBuffer
from .config import PipelineConfig, SUBPIX_ZERO_ZONE
from .frame import to_gray

logger = logging.getLogger(__name__)


@dataclass
class CalibrationPair:
    """
    Retained copies of one composite frame's two eyes.

    Owned by the calibration session from capture until a successful
    calibration run releases it.
    """
    left: Optional[ImageBuffer]
    right: Optional[ImageBuffer]

    @property
    def is_complete(self) -> bool:
        """False if a side is missing or has already been released."""
        return (
            self.left is not None and self.right is not None
            and not self.left.released and not self.right.released
        )

    def release(self) -> None:
        for side in (self.left, self.right):
            if side is not None and not side.released:
                side.release()


@dataclass
class ChessboardObservation:
    """
    Refined chessboard corners found in one image.

    Attributes:
        image_index: Index of the pair the image came from
        corners: (rows*cols)x1x2 float32 corner coordinates, row-major
    """
    image_index: int
    corners: np.ndarray


@dataclass
class CameraIntrinsics:
    """
    Result of a single-camera calibration.

    Attributes:
        camera_matrix: 3x3 intrinsic matrix
        dist_coeffs: Distortion coefficients (k1, k2, p1, p2, k3)
        optimal_camera_matrix: Refined camera matrix for the captured image size
        rms: RMS reprojection error in pixels
    """
    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray
    optimal_camera_matrix: np.ndarray
    rms: float


@dataclass
class StereoExtrinsics:
    """
    Result of the joint stereo calibration.

    Attributes:
        R: 3x3 rotation from the left to the right camera frame
        T: 3x1 translation from the left to the right camera frame
        E: Essential matrix
        F: Fundamental matrix
        rms: RMS reprojection error in pixels
    """
    R: np.ndarray
    T: np.ndarray
    E: np.ndarray
    F: np.ndarray
    rms: float


@dataclass
class MapPair:
    """Remap tables for one eye (cv2.remap map1/map2)."""
    map1: ImageBuffer
    map2: ImageBuffer

    def release(self) -> None:
        for buffer in (self.map1, self.map2):
            if not buffer.released:
                buffer.release()


@dataclass
class RectificationMaps:
    """
    Calibration results consumed by the disparity engine.

    Maps only exist as a matched set for both eyes plus Q.

    Attributes:
        left: Remap tables for the left eye
        right: Remap tables for the right eye
        q: 4x4 disparity-to-depth matrix shared by both eyes
        image_size: (width, height) of one eye
    """
    left: MapPair
    right: MapPair
    q: ImageBuffer
    image_size: Tuple[int, int]

    @property
    def released(self) -> bool:
        return any(
            buffer.released
            for buffer in (self.left.map1, self.left.map2, self.right.map1, self.right.map2, self.q)
        )

    def release(self) -> None:
        self.left.release()
        self.right.release()
        if not self.q.released:
            self.q.release()


class CalibrationStatus(Enum):
    SKIPPED = "skipped"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass
class CalibrationOutcome:
    """
    Result of one calibration run.

    Attributes:
        status: Whether the run was skipped, failed or succeeded
        maps: Rectification maps (only when the run succeeded)
        errors: RMS reprojection errors keyed by "left", "right", "stereo"
        message: Human-readable summary
    """
    status: CalibrationStatus
    maps: Optional[RectificationMaps] = None
    errors: Dict[str, float] = field(default_factory=dict)
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == CalibrationStatus.SUCCEEDED


def object_point_template(rows: int, cols: int) -> np.ndarray:
    """
    Planar chessboard corner grid in board units, z = 0.

    Same layout as the OpenCV tutorial's
    objp[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2)

    Returns:
        (rows*cols)x3 float32 array, x = column index, y = row index
    """
    template = np.zeros((rows * cols, 3), np.float32)
    template[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2)
    return template


def detect_chessboard(
    image: np.ndarray,
    config: PipelineConfig,
    scope: BufferScope,
    image_index: int = 0
) -> Optional[ChessboardObservation]:
    """
    Find and refine chessboard corners in one image.

    A missed detection is expected (the board may be out of view, or the
    image too small to search) and returns None rather than raising.

    Args:
        image: Eye image (RGBA, BGR or grayscale)
        config: Pipeline configuration (board geometry, sub-pixel criteria)
        scope: Scope that owns the grayscale temporary
        image_index: Index recorded on the observation

    Returns:
        ChessboardObservation or None if the board was not found
    """
    gray = scope.adopt(to_gray(image), "calib_gray")
    try:
        found, corners = cv2.findChessboardCorners(gray.data, config.pattern_size)
    except cv2.error as e:
        # Raised for images smaller than the detector's thresholding window
        logger.debug("Chessboard detection failed on image %d: %s", image_index, e)
        return None
    if not found:
        logger.debug("Chessboard not found in image %d", image_index)
        return None

    corners = cv2.cornerSubPix(
        gray.data,
        corners,
        config.subpix_window,
        SUBPIX_ZERO_ZONE,
        config.subpix_criteria
    )
    return ChessboardObservation(image_index=image_index, corners=corners)


def calibrate_single_camera(
    object_points: List[np.ndarray],
    image_points: List[np.ndarray],
    image_size: Tuple[int, int]
) -> CameraIntrinsics:
    """
    Calibrate one camera and compute its optimal camera matrix.

    Args:
        object_points: Per-image object point templates
        image_points: Per-image refined corners
        image_size: (width, height) of the images

    Returns:
        CameraIntrinsics for the camera
    """
    rms, camera_matrix, dist_coeffs, _, _ = cv2.calibrateCamera(
        object_points, image_points, image_size, None, None
    )
    optimal, _ = cv2.getOptimalNewCameraMatrix(camera_matrix, dist_coeffs, image_size, 0)
    return CameraIntrinsics(
        camera_matrix=camera_matrix,
        dist_coeffs=dist_coeffs,
        optimal_camera_matrix=optimal,
        rms=float(rms)
    )


def calibrate_stereo_pair(
    object_points: List[np.ndarray],
    image_points_left: List[np.ndarray],
    image_points_right: List[np.ndarray],
    left: CameraIntrinsics,
    right: CameraIntrinsics,
    image_size: Tuple[int, int]
) -> StereoExtrinsics:
    """
    Solve the left-to-right transform with intrinsics held fixed.

    Args:
        object_points: Object point templates for images seen by both cameras
        image_points_left: Left corners, index-aligned with object_points
        image_points_right: Right corners, index-aligned with object_points
        left: Left camera intrinsics
        right: Right camera intrinsics
        image_size: (width, height) of the images

    Returns:
        StereoExtrinsics of the pair
    """
    rms, _, _, _, _, R, T, E, F = cv2.stereoCalibrate(
        object_points,
        image_points_left,
        image_points_right,
        left.optimal_camera_matrix,
        left.dist_coeffs,
        right.optimal_camera_matrix,
        right.dist_coeffs,
        image_size,
        flags=cv2.CALIB_FIX_INTRINSIC
    )
    return StereoExtrinsics(R=R, T=T, E=E, F=F, rms=float(rms))


def build_rectification_maps(
    left: CameraIntrinsics,
    right: CameraIntrinsics,
    extrinsics: StereoExtrinsics,
    image_size: Tuple[int, int]
) -> RectificationMaps:
    """
    Compute stereo rectification and per-eye remap tables.

    Reference: OpenCV stereoRectify / initUndistortRectifyMap
    https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html#ga617b1685d4059c6040827800e72ad2b6
    """
    R1, R2, P1, P2, Q, _, _ = cv2.stereoRectify(
        left.optimal_camera_matrix,
        left.dist_coeffs,
        right.optimal_camera_matrix,
        right.dist_coeffs,
        image_size,
        extrinsics.R,
        extrinsics.T
    )
    map1_left, map2_left = cv2.initUndistortRectifyMap(
        left.optimal_camera_matrix, left.dist_coeffs, R1, P1, image_size, cv2.CV_16SC2
    )
    map1_right, map2_right = cv2.initUndistortRectifyMap(
        right.optimal_camera_matrix, right.dist_coeffs, R2, P2, image_size, cv2.CV_16SC2
    )
    return RectificationMaps(
        left=MapPair(ImageBuffer(map1_left, "map1_left"), ImageBuffer(map2_left, "map2_left")),
        right=MapPair(ImageBuffer(map1_right, "map1_right"), ImageBuffer(map2_right, "map2_right")),
        q=ImageBuffer(Q, "q"),
        image_size=tuple(image_size)
    )


class CalibrationSession:
    """
    Captured chessboard pairs and the calibration run over them.

    The session owns every captured pair until a successful run consumes
    them. The session state is the only caller; it installs the resulting
    maps.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config
        self._pairs: List[CalibrationPair] = []

    @property
    def pairs(self) -> Tuple[CalibrationPair, ...]:
        return tuple(self._pairs)

    @property
    def pair_count(self) -> int:
        return len(self._pairs)

    def record_pair(self, left: ImageBuffer, right: ImageBuffer) -> CalibrationPair:
        """
        Take ownership of both eye buffers as a new calibration pair.

        The incoming handles are released; the pair holds contiguous copies,
        so views into a composite frame do not pin the whole frame.
        """
        pair = CalibrationPair(
            left=left.into_owned(f"pair{len(self._pairs)}_left"),
            right=right.into_owned(f"pair{len(self._pairs)}_right")
        )
        self._pairs.append(pair)
        logger.info("Captured calibration pair %d", len(self._pairs))
        return pair

    def discard_pairs(self) -> None:
        """Release every captured pair."""
        for pair in self._pairs:
            pair.release()
        self._pairs.clear()

    def run(self) -> CalibrationOutcome:
        """
        Calibrate the stereo pair from the captured images.

        Returns:
            CalibrationOutcome; maps are only present when the run succeeded.
            Captured pairs are released only on success.
        """
        if not self._pairs:
            logger.info("No calibration pairs, skipping calibration")
            return CalibrationOutcome(CalibrationStatus.SKIPPED, message="no calibration pairs")

        incomplete = [i for i, pair in enumerate(self._pairs) if not pair.is_complete]
        if incomplete:
            message = f"pairs {incomplete} are missing a side or were already released"
            logger.error("Cannot calibrate: %s", message)
            return CalibrationOutcome(CalibrationStatus.FAILED, message=message)

        image_size = self._pairs[0].left.size
        # Odd composite widths give the right eye one extra column
        right_size = self._pairs[0].right.size
        template = object_point_template(self.config.chessboard_rows, self.config.chessboard_cols)

        with BufferScope("calibration") as scope:
            left_obs: List[ChessboardObservation] = []
            right_obs: List[ChessboardObservation] = []
            for i, pair in enumerate(self._pairs):
                observation = detect_chessboard(pair.left.data, self.config, scope, i)
                if observation is not None:
                    left_obs.append(observation)
                observation = detect_chessboard(pair.right.data, self.config, scope, i)
                if observation is not None:
                    right_obs.append(observation)

        logger.info(
            "Captured %d calibration pairs. Results from left camera: %d, from right camera: %d",
            len(self._pairs), len(left_obs), len(right_obs)
        )

        if not left_obs or not right_obs:
            message = "chessboard not found in any image of at least one camera"
            logger.error("Calibration failed: %s", message)
            return CalibrationOutcome(CalibrationStatus.FAILED, message=message)

        # The joint solve needs corners of the same board pose from both eyes
        right_by_index = {obs.image_index: obs for obs in right_obs}
        shared = [(obs, right_by_index[obs.image_index])
                  for obs in left_obs if obs.image_index in right_by_index]
        if not shared:
            message = "no pair has the chessboard visible in both eyes"
            logger.error("Calibration failed: %s", message)
            return CalibrationOutcome(CalibrationStatus.FAILED, message=message)

        try:
            left = calibrate_single_camera(
                [template] * len(left_obs), [obs.corners for obs in left_obs], image_size
            )
            right = calibrate_single_camera(
                [template] * len(right_obs), [obs.corners for obs in right_obs], right_size
            )
            extrinsics = calibrate_stereo_pair(
                [template] * len(shared),
                [l.corners for l, _ in shared],
                [r.corners for _, r in shared],
                left,
                right,
                image_size
            )
            errors = {"left": left.rms, "right": right.rms, "stereo": extrinsics.rms}
            logger.info("Calibration errors: %s", errors)
            maps = build_rectification_maps(left, right, extrinsics, image_size)
        except Exception as e:
            logger.exception("Stereo calibration failed with %d pairs", len(self._pairs))
            return CalibrationOutcome(CalibrationStatus.FAILED, message=str(e))

        self.discard_pairs()
        return CalibrationOutcome(
            CalibrationStatus.SUCCEEDED,
            maps=maps,
            errors=errors,
            message=f"calibrated from {len(shared)} stereo views"
        )


def save_rectification_maps(maps: RectificationMaps, output_path: str) -> None:
    """
    Save calibration results to a compressed .npz file.

    Args:
        maps: Rectification maps to save
        output_path: Path for the output file
    """
    np.savez_compressed(
        output_path,
        map1_left=maps.left.map1.data,
        map2_left=maps.left.map2.data,
        map1_right=maps.right.map1.data,
        map2_right=maps.right.map2.data,
        q=maps.q.data,
        image_size=np.array(maps.image_size, dtype=np.int32)
    )
    logger.info("Saved rectification maps to %s", output_path)


def load_rectification_maps(input_path: str) -> RectificationMaps:
    """
    Load calibration results saved by save_rectification_maps.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is missing fields or has inconsistent shapes
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Calibration file not found: {input_path}")

    required = ['map1_left', 'map2_left', 'map1_right', 'map2_right', 'q', 'image_size']
    try:
        data = np.load(path)
    except (OSError, EOFError, zipfile.BadZipFile) as e:
        raise ValueError(f"Unreadable calibration file {input_path}: {e}") from e
    if not isinstance(data, np.lib.npyio.NpzFile):
        raise ValueError(f"Calibration file is not an .npz archive: {input_path}")

    with data:
        for name in required:
            if name not in data.files:
                raise ValueError(f"Missing required field in calibration file: {name}")
        arrays = {name: data[name] for name in required}

    if arrays['q'].shape != (4, 4):
        raise ValueError("q must be 4x4")
    width, height = (int(v) for v in arrays['image_size'])
    for name in ('map1_left', 'map1_right'):
        if arrays[name].shape[:2] != (height, width):
            raise ValueError(f"{name} does not match image size {width}x{height}")

    return RectificationMaps(
        left=MapPair(ImageBuffer(arrays['map1_left'], "map1_left"),
                     ImageBuffer(arrays['map2_left'], "map2_left")),
        right=MapPair(ImageBuffer(arrays['map1_right'], "map1_right"),
                      ImageBuffer(arrays['map2_right'], "map2_right")),
        q=ImageBuffer(arrays['q'], "q"),
        image_size=(width, height)
    )
