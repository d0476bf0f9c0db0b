"""
Pipeline Configuration Module
=============================

Holds the fixed calibration/disparity constants and the tunable matcher and
viewer parameters. Supports JSON configuration files.

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
- OpenCV StereoBM: https://docs.opencv.org/4.x/d9/dba/classcv_1_1StereoBM.html
"""

import json
import cv2
from dataclasses import dataclass, asdict
from typing import Tuple
from pathlib import Path

# Chessboard target: inner corners per row and column
CHESSBOARD_ROWS = 7
CHESSBOARD_COLS = 7

# cornerSubPix search window and termination criteria
SUBPIX_WINDOW = (5, 5)
SUBPIX_ZERO_ZONE = (-1, -1)
SUBPIX_MAX_ITER = 30
SUBPIX_EPSILON = 0.001

# StereoBM/SGBM return disparities as 16-bit fixed point with 4 fractional bits
DISPARITY_SCALE = 16

# Vision processing runs on every Nth tick of the render loop
PROCESS_EVERY_N_TICKS = 4

MATCHER_TYPES = ("bm", "sgbm")


@dataclass
class PipelineConfig:
    """
    Parameters for calibration and per-frame disparity processing.

    Attributes:
        chessboard_rows: Inner corners along the board's vertical axis
        chessboard_cols: Inner corners along the board's horizontal axis
        subpix_window: Half-size of the cornerSubPix search window
        subpix_max_iter: Maximum cornerSubPix iterations
        subpix_epsilon: cornerSubPix convergence threshold
        disparity_scale: Fixed-point scale of raw matcher output
        process_every_n_ticks: Vision-processing cadence of the frame scheduler
        matcher_type: "bm" (block matching) or "sgbm" (semi-global)
        num_disparities: Disparity search range (must be divisible by 16)
        block_size: Matching block size (must be odd)
        min_disparity: Minimum possible disparity value
        viewer_size: (width, height) of the composite viewer
        eye_separation: Baseline of the rendered stereo camera (scene units)
    """
    chessboard_rows: int = CHESSBOARD_ROWS
    chessboard_cols: int = CHESSBOARD_COLS
    subpix_window: Tuple[int, int] = SUBPIX_WINDOW
    subpix_max_iter: int = SUBPIX_MAX_ITER
    subpix_epsilon: float = SUBPIX_EPSILON
    disparity_scale: int = DISPARITY_SCALE
    process_every_n_ticks: int = PROCESS_EVERY_N_TICKS
    matcher_type: str = "bm"
    num_disparities: int = 64
    block_size: int = 21
    min_disparity: int = 0
    viewer_size: Tuple[int, int] = (1280, 720)
    eye_separation: float = 0.5

    @property
    def pattern_size(self) -> Tuple[int, int]:
        """Chessboard size as passed to cv2.findChessboardCorners."""
        return (self.chessboard_cols, self.chessboard_rows)

    @property
    def subpix_criteria(self) -> Tuple[int, int, float]:
        """Termination criteria for cv2.cornerSubPix."""
        return (
            cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER,
            self.subpix_max_iter,
            self.subpix_epsilon
        )

    def validate(self) -> None:
        """
        Check parameter constraints.

        Raises:
            ValueError: If any parameter is out of range
        """
        if self.chessboard_rows < 2 or self.chessboard_cols < 2:
            raise ValueError("Chessboard must have at least 2x2 inner corners")
        if self.num_disparities <= 0 or self.num_disparities % 16 != 0:
            raise ValueError("num_disparities must be a positive multiple of 16")
        if self.block_size < 5 or self.block_size % 2 == 0:
            raise ValueError("block_size must be odd and at least 5")
        if self.matcher_type not in MATCHER_TYPES:
            raise ValueError(f"matcher_type must be one of {MATCHER_TYPES}")
        if self.process_every_n_ticks < 1:
            raise ValueError("process_every_n_ticks must be at least 1")
        if self.disparity_scale <= 0:
            raise ValueError("disparity_scale must be positive")
        if self.viewer_size[0] <= 0 or self.viewer_size[1] <= 0:
            raise ValueError("viewer_size must be positive")


def load_config_from_json(config_path: str) -> PipelineConfig:
    """
    Load pipeline configuration from a JSON file.

    Any field that is absent keeps its default value. Unknown fields are
    rejected so that typos do not silently fall back to defaults.

    Args:
        config_path: Path to the JSON configuration file

    Returns:
        Validated PipelineConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError("Configuration must be a JSON object")

    known = set(PipelineConfig.__dataclass_fields__)
    for field in data:
        if field not in known:
            raise ValueError(f"Unknown field in config: {field}")

    # JSON has no tuples
    for field in ('subpix_window', 'viewer_size'):
        if field in data:
            if len(data[field]) != 2:
                raise ValueError(f"{field} must have 2 elements")
            data[field] = tuple(data[field])

    config = PipelineConfig(**data)
    config.validate()
    return config


def create_default_config(
    num_disparities: int = 64,
    block_size: int = 21,
    min_disparity: int = 0,
    matcher_type: str = "bm"
) -> PipelineConfig:
    """
    Create a configuration with the default chessboard and cadence constants.

    Args:
        num_disparities: Disparity search range (must be divisible by 16)
        block_size: Matching block size (must be odd)
        min_disparity: Minimum possible disparity value
        matcher_type: "bm" or "sgbm"

    Returns:
        Validated PipelineConfig
    """
    config = PipelineConfig(
        num_disparities=num_disparities,
        block_size=block_size,
        min_disparity=min_disparity,
        matcher_type=matcher_type
    )
    config.validate()
    return config


def save_config_to_json(config: PipelineConfig, output_path: str) -> None:
    """
    Save pipeline configuration to a JSON file.

    Args:
        config: PipelineConfig object to save
        output_path: Path for the output JSON file
    """
    data = asdict(config)
    data['subpix_window'] = list(config.subpix_window)
    data['viewer_size'] = list(config.viewer_size)

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=4)
