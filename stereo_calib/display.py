"""
Display Module
==============

Turns frame outputs into displayable 8-bit images and shows them:
- Eye views (raw before calibration, rectified after)
- Normalized disparity map
- Reprojected point field (depth channel)

Also writes the point field to PLY for inspection in external viewers.

References:
- Turbo colormap: https://ai.googleblog.com/2019/08/turbo-improved-rainbow-colormap-for.html
- PLY file format: https://en.wikipedia.org/wiki/PLY_(file_format)
"""

import logging
import cv2
import numpy as np
from typing import Optional

from .disparity import FrameOutput

logger = logging.getLogger(__name__)

# reprojectImageTo3D puts invalid pixels at this depth
MISSING_DEPTH = 10000.0


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Convert an eye view (gray, BGR or RGBA) to 8-bit BGR."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2BGR)
    return image.copy()


def colorize_disparity(disparity: np.ndarray) -> np.ndarray:
    """
    Apply colormap to a normalized disparity map.

    Normalized disparity covers [0, 1] over the matcher's search range;
    values outside (including the matcher's invalid marker) are drawn black.

    Args:
        disparity: Normalized disparity map

    Returns:
        Colorized disparity map (BGR format)
    """
    normalized = np.clip(disparity, 0, 1)
    normalized = (normalized * 255).astype(np.uint8)

    colorized = cv2.applyColorMap(normalized, cv2.COLORMAP_TURBO)

    invalid_mask = (disparity <= 0) | (disparity > 1)
    colorized[invalid_mask] = [0, 0, 0]

    return colorized


def colorize_point_cloud(
    point_cloud: np.ndarray,
    max_depth: Optional[float] = None
) -> np.ndarray:
    """
    Colorize the z channel of a reprojected point field.

    Closer points are warmer. Missing points are drawn black.

    Args:
        point_cloud: HxWx3 point field
        max_depth: Depth mapped to the far end of the colormap (auto if None)

    Returns:
        Colorized depth image (BGR format)
    """
    z = point_cloud[:, :, 2]
    valid = np.isfinite(z) & (z > 0) & (z < MISSING_DEPTH)
    if max_depth is None:
        max_depth = float(np.percentile(z[valid], 95)) if np.any(valid) else 1.0
    max_depth = max(max_depth, 1e-6)

    normalized = np.zeros(z.shape, dtype=np.uint8)
    normalized[valid] = (255 * (1 - np.clip(z[valid] / max_depth, 0, 1))).astype(np.uint8)

    colorized = cv2.applyColorMap(normalized, cv2.COLORMAP_TURBO)
    colorized[~valid] = [0, 0, 0]
    return colorized


def create_visualization_grid(output: FrameOutput) -> np.ndarray:
    """
    Create a grid of all views for display.

    Layout:
    +----------------+----------------+
    |   Left Eye     |   Right Eye    |
    +----------------+----------------+
    |   Disparity    |  Point Depth   |
    +----------------+----------------+

    The second row is only present once calibrated.
    """
    left = to_bgr(output.left_view)
    right = to_bgr(output.right_view)
    h, w = left.shape[:2]
    if right.shape[:2] != (h, w):
        right = cv2.resize(right, (w, h))

    row1 = np.hstack([left, right])
    if output.disparity is None or output.point_cloud is None:
        return row1

    disparity_viz = colorize_disparity(output.disparity)
    depth_viz = colorize_point_cloud(output.point_cloud)
    if disparity_viz.shape[:2] != (h, w):
        disparity_viz = cv2.resize(disparity_viz, (w, h))
        depth_viz = cv2.resize(depth_viz, (w, h))

    row2 = np.hstack([disparity_viz, depth_viz])
    return np.vstack([row1, row2])


class WindowSink:
    """Display sink that shows frame outputs in an OpenCV window."""

    def __init__(self, window_name: str = "Stereo Calibration", max_height: int = 900):
        self.window_name = window_name
        self.max_height = max_height
        self.save_point_cloud_to: Optional[str] = None

    def show(self, output: FrameOutput) -> None:
        if self.save_point_cloud_to and output.point_cloud is not None:
            save_point_cloud_ply(output.point_cloud, output.left_view, self.save_point_cloud_to)
            self.save_point_cloud_to = None

        grid = create_visualization_grid(output)

        label = "captured pair" if output.captured_pair else f"{output.computation_time_ms:.1f} ms"
        cv2.putText(grid, label, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 255, 0), 2)

        # Resize if too large
        if grid.shape[0] > self.max_height:
            scale = self.max_height / grid.shape[0]
            grid = cv2.resize(grid, None, fx=scale, fy=scale)

        cv2.imshow(self.window_name, grid)

    def close(self) -> None:
        cv2.destroyAllWindows()


def save_point_cloud_ply(
    point_cloud: np.ndarray,
    image: Optional[np.ndarray],
    output_path: str,
    subsample: int = 4
) -> int:
    """
    Save the valid points of a reprojected point field to an ASCII PLY file.

    Args:
        point_cloud: HxWx3 point field
        image: Eye view used for point colors (None for white)
        output_path: Output file path (.ply)
        subsample: Keep every Nth pixel in both directions

    Returns:
        Number of points written
    """
    points = point_cloud[::subsample, ::subsample].reshape(-1, 3)
    if image is not None:
        colors = to_bgr(image)[::subsample, ::subsample].reshape(-1, 3)[:, ::-1]
    else:
        colors = np.full(points.shape, 255, dtype=np.uint8)

    z = points[:, 2]
    valid = np.isfinite(points).all(axis=1) & (np.abs(z) < MISSING_DEPTH)
    points = points[valid]
    colors = colors[valid]

    with open(output_path, 'w') as f:
        # Header
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"element vertex {len(points)}\n")
        f.write("property float x\n")
        f.write("property float y\n")
        f.write("property float z\n")
        f.write("property uchar red\n")
        f.write("property uchar green\n")
        f.write("property uchar blue\n")
        f.write("end_header\n")

        # Data
        for p, c in zip(points, colors):
            f.write(f"{p[0]:.4f} {p[1]:.4f} {p[2]:.4f} {c[0]} {c[1]} {c[2]}\n")

    logger.info("Saved %d points to %s", len(points), output_path)
    return len(points)
