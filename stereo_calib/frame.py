"""
Composite Frame Module
======================

Handles the side-by-side stereo composite: one pixel buffer holding both eyes,
split at the horizontal midpoint into left and right views.

The host's frame source reads pixels bottom-up (as glReadPixels does), so
composite frames are vertically flipped relative to the scene by default.

References:
- OpenCV VideoCapture: https://docs.opencv.org/4.x/dd/d43/tutorial_py_video_display.html
- glReadPixels row order: https://registry.khronos.org/OpenGL-Refpages/es3.0/html/glReadPixels.xhtml
"""

import logging
import cv2
import numpy as np
from typing import Generator, Optional, Tuple, Union
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CompositeFrame:
    """
    A single pixel buffer holding both eyes side by side.

    Attributes:
        pixels: HxWxC image (RGBA from the host frame source)
        width: Composite width in pixels
        height: Composite height in pixels
        flipped: True if rows are stored bottom-up
    """
    pixels: np.ndarray
    width: int
    height: int
    flipped: bool = True

    def __post_init__(self):
        if self.pixels.shape[0] != self.height or self.pixels.shape[1] != self.width:
            raise ValueError(
                f"Pixel buffer shape {self.pixels.shape[:2]} does not match "
                f"{self.height}x{self.width}"
            )
        if self.width < 2:
            raise ValueError("Composite frame must be at least 2 pixels wide")

    @classmethod
    def from_pixels(
        cls,
        pixels: Union[bytes, bytearray, np.ndarray],
        width: int,
        height: int,
        channels: int = 4,
        flipped: bool = True
    ) -> "CompositeFrame":
        """
        Build a frame from a flat pixel buffer (e.g. an RGBA readback).

        Args:
            pixels: Flat or already-shaped uint8 buffer
            width: Composite width
            height: Composite height
            channels: Channels per pixel (4 for RGBA)
            flipped: True if rows are stored bottom-up

        Returns:
            CompositeFrame wrapping the buffer without copying
        """
        array = np.frombuffer(pixels, dtype=np.uint8) if isinstance(pixels, (bytes, bytearray)) \
            else np.asarray(pixels, dtype=np.uint8)
        expected = width * height * channels
        if array.size != expected:
            raise ValueError(f"Expected {expected} bytes for {width}x{height}x{channels}, got {array.size}")
        return cls(
            pixels=array.reshape(height, width, channels),
            width=width,
            height=height,
            flipped=flipped
        )

    def upright(self) -> np.ndarray:
        """Return the composite in natural (top-down) orientation."""
        if self.flipped:
            return cv2.flip(self.pixels, 0)
        return self.pixels


def split_eyes(composite: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split a side-by-side composite at the horizontal midpoint.

    For odd widths the right eye gets the extra column, so the two widths
    always add up to the composite width.

    Args:
        composite: HxW[xC] upright composite image

    Returns:
        (left, right) views into the composite (no copy)
    """
    mid_x = composite.shape[1] // 2
    return composite[:, :mid_x], composite[:, mid_x:]


def to_gray(image: np.ndarray) -> np.ndarray:
    """
    Convert an eye view to a single channel.

    4-channel input is treated as RGBA (the host frame source), 3-channel
    input as BGR (OpenCV capture); single-channel input is returned as is.
    """
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if channels == 1:
        return image[:, :, 0]
    raise ValueError(f"Unsupported channel count: {channels}")


class CompositeVideoSource:
    """
    Frame source for a side-by-side stereo video file or a single webcam that
    delivers both eyes in one image.

    Frames are converted to RGBA so they match the host frame source. OpenCV
    decodes top-down, so frames are produced with flipped=False.
    """

    def __init__(
        self,
        source: Union[str, int],
        downsample_factor: float = 1.0
    ):
        """
        Args:
            source: Path to a side-by-side video file or webcam index
            downsample_factor: Factor to downsample frames (1.0 = no downsampling)
        """
        self.source = source
        self.downsample_factor = downsample_factor

        self.cap: Optional[cv2.VideoCapture] = None
        self.frame_count = 0
        self._original_fps: float = 30.0
        self._frame_width: int = 0
        self._frame_height: int = 0

    def open(self) -> bool:
        """
        Open the video source.

        Returns:
            True if the source opened successfully
        """
        self.cap = cv2.VideoCapture(self.source)
        if not self.cap.isOpened():
            logger.error("Could not open video source: %s", self.source)
            return False

        self._original_fps = self.cap.get(cv2.CAP_PROP_FPS)
        self._frame_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._frame_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(
            "Opened %s (%dx%d @ %.1f fps)",
            self.source, self._frame_width, self._frame_height, self._original_fps
        )
        return True

    def read(self) -> Optional[CompositeFrame]:
        """
        Read the next composite frame.

        Returns:
            CompositeFrame or None if no more frames
        """
        if self.cap is None:
            return None

        ret, frame = self.cap.read()
        if not ret:
            return None

        # Downsample if needed for performance
        if self.downsample_factor > 1.0:
            new_size = (
                int(frame.shape[1] / self.downsample_factor),
                int(frame.shape[0] / self.downsample_factor)
            )
            frame = cv2.resize(frame, new_size, interpolation=cv2.INTER_AREA)

        rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
        self.frame_count += 1
        return CompositeFrame(
            pixels=rgba,
            width=rgba.shape[1],
            height=rgba.shape[0],
            flipped=False
        )

    def frames(self) -> Generator[CompositeFrame, None, None]:
        """
        Generator that yields all frames from the video source.

        Yields:
            CompositeFrame objects until the video ends
        """
        while True:
            frame = self.read()
            if frame is None:
                break
            yield frame

    def close(self) -> None:
        """Release the video capture."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    @property
    def fps(self) -> float:
        """Get the original FPS of the video."""
        return self._original_fps

    @property
    def frame_size(self) -> Tuple[int, int]:
        """Get composite dimensions (width, height)."""
        return (self._frame_width, self._frame_height)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
