"""
Shared fixtures: synthetic side-by-side chessboard composites.

The board is rendered through a known pinhole stereo rig (identical cameras,
horizontal baseline) with cv2.warpPerspective, so calibration on these frames
behaves like calibration on a real rig without lens distortion.
"""

import pytest
import numpy as np
import cv2
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereo_calib.frame import CompositeFrame

EYE_SIZE = (640, 480)          # (width, height) of one eye
FOCAL_LENGTH = 500.0
BASELINE = 2.0                 # in board squares
SQUARE_PX = 40                 # texture pixels per board square
BOARD_SQUARES = 8              # 8x8 squares -> 7x7 inner corners
BACKGROUND = 128

# (rvec, distance) for the calibration captures
CALIBRATION_POSES = [
    ((0.30, 0.00, 0.00), 20.0),
    ((-0.30, 0.00, 0.00), 21.0),
    ((0.00, 0.30, 0.00), 19.0),
    ((0.00, -0.30, 0.00), 20.0),
    ((0.20, 0.20, 0.10), 22.0),
    ((-0.20, 0.25, -0.10), 18.0),
]


def _board_texture() -> np.ndarray:
    """Chessboard with a one-square white margin."""
    n = BOARD_SQUARES + 2
    texture = np.full((n * SQUARE_PX, n * SQUARE_PX), 255, dtype=np.uint8)
    for row in range(BOARD_SQUARES):
        for col in range(BOARD_SQUARES):
            if (row + col) % 2 == 0:
                y0 = (row + 1) * SQUARE_PX
                x0 = (col + 1) * SQUARE_PX
                texture[y0:y0 + SQUARE_PX, x0:x0 + SQUARE_PX] = 0
    return texture


def _camera_matrix() -> np.ndarray:
    w, h = EYE_SIZE
    return np.array([
        [FOCAL_LENGTH, 0.0, w / 2],
        [0.0, FOCAL_LENGTH, h / 2],
        [0.0, 0.0, 1.0]
    ])


def render_eye(rvec, distance: float, camera_offset: float = 0.0) -> np.ndarray:
    """
    Render the board as seen by a camera shifted camera_offset squares along x.

    Board units are squares; the board's squares span [0, 8] in x and y and
    its center sits on the optical axis of the left camera at `distance`.
    """
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
    center = np.array([BOARD_SQUARES / 2, BOARD_SQUARES / 2, 0.0])
    t = np.array([0.0, 0.0, distance]) - R @ center
    t = t - np.array([camera_offset, 0.0, 0.0])

    world_to_image = _camera_matrix() @ np.column_stack([R[:, 0], R[:, 1], t])
    texture_to_world = np.array([
        [1.0 / SQUARE_PX, 0.0, -1.0],
        [0.0, 1.0 / SQUARE_PX, -1.0],
        [0.0, 0.0, 1.0]
    ])
    H = world_to_image @ texture_to_world

    return cv2.warpPerspective(
        _board_texture(),
        H,
        EYE_SIZE,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=BACKGROUND
    )


def make_composite(left: np.ndarray, right: np.ndarray, flipped: bool = True) -> CompositeFrame:
    """Pack two gray eyes into an RGBA side-by-side composite."""
    composite = cv2.cvtColor(np.hstack([left, right]), cv2.COLOR_GRAY2RGBA)
    if flipped:
        composite = cv2.flip(composite, 0)
    return CompositeFrame(
        pixels=composite,
        width=composite.shape[1],
        height=composite.shape[0],
        flipped=flipped
    )


def render_composite(rvec=(0.0, 0.0, 0.0), distance: float = 20.0) -> CompositeFrame:
    """Render a flipped RGBA composite of the board seen by both eyes."""
    left = render_eye(rvec, distance)
    right = render_eye(rvec, distance, camera_offset=BASELINE)
    return make_composite(left, right)


def blank_composite(value: int = BACKGROUND) -> CompositeFrame:
    w, h = EYE_SIZE
    eye = np.full((h, w), value, dtype=np.uint8)
    return make_composite(eye, eye)


@pytest.fixture
def board_frame():
    """Composite with the board facing both cameras."""
    return render_composite()


@pytest.fixture
def calibration_frames():
    """Composites of the board in the calibration poses."""
    return [render_composite(rvec, distance) for rvec, distance in CALIBRATION_POSES]


@pytest.fixture
def blank_frame():
    """Composite with no board in view."""
    return blank_composite()


@pytest.fixture
def one_eye_frames():
    """Board seen only by the left eye in half the poses, only by the right in the rest."""
    w, h = EYE_SIZE
    empty = np.full((h, w), BACKGROUND, dtype=np.uint8)
    frames = []
    for i, (rvec, distance) in enumerate(CALIBRATION_POSES):
        if i % 2 == 0:
            frames.append(make_composite(render_eye(rvec, distance), empty))
        else:
            frames.append(make_composite(empty, render_eye(rvec, distance, camera_offset=BASELINE)))
    return frames


@pytest.fixture
def odd_width_frames():
    """Calibration composites one column wider than two eyes, extra column on the right."""
    frames = []
    for rvec, distance in CALIBRATION_POSES:
        right = render_eye(rvec, distance, camera_offset=BASELINE)
        right = np.pad(right, ((0, 0), (0, 1)), constant_values=BACKGROUND)
        frames.append(make_composite(render_eye(rvec, distance), right))
    return frames
