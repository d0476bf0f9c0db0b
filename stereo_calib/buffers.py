"""
Image Buffer Module
===================

Ownership helpers for the pixel buffers that flow through calibration and
per-frame processing.

- ImageBuffer: a handle around one numpy array that can be explicitly
  released. Reading a released handle raises instead of returning stale data.
- BufferScope: an arena for one processing run. Everything adopted into the
  scope is released when the scope closes, on success or on exception, unless
  it was detached first.
- ScalarBufferCache: constant-filled arrays keyed by (height, width, value,
  dtype), used as the second operand of OpenCV elementwise arithmetic.

References:
- OpenCV arithmetic on arrays: https://docs.opencv.org/4.x/d2/de8/group__core__array.html
"""

import logging
import numpy as np
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[int, int, float, str]


class BufferReleasedError(RuntimeError):
    """Raised when a buffer is read or released after it was already released."""


class ImageBuffer:
    """
    Handle around a single image array.

    The handle may wrap a view into a larger array (e.g. one eye of a
    composite frame). Call into_owned() to turn it into an independent copy
    that can outlive the array it was cut from.

    Attributes:
        label: Short name used in log and error messages
    """

    __slots__ = ("_data", "label")

    def __init__(self, data: np.ndarray, label: str = "buffer"):
        if data is None:
            raise ValueError(f"Cannot wrap a missing array ({label})")
        self._data: Optional[np.ndarray] = data
        self.label = label

    @property
    def data(self) -> np.ndarray:
        if self._data is None:
            raise BufferReleasedError(f"Buffer '{self.label}' used after release")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def is_view(self) -> bool:
        """True if the array shares memory with another array."""
        return self.data.base is not None

    @property
    def size(self) -> Tuple[int, int]:
        """Image size as (width, height), the order OpenCV expects."""
        h, w = self.data.shape[:2]
        return (w, h)

    def into_owned(self, label: Optional[str] = None) -> "ImageBuffer":
        """
        Move the pixels into a new contiguous buffer.

        This handle is released; the returned handle is the only owner.
        """
        owned = ImageBuffer(np.array(self.data, copy=True, order="C"), label or self.label)
        self.release()
        return owned

    def release(self) -> None:
        if self._data is None:
            raise BufferReleasedError(f"Buffer '{self.label}' released twice")
        self._data = None

    def __repr__(self) -> str:
        if self._data is None:
            return f"ImageBuffer({self.label!r}, released)"
        return f"ImageBuffer({self.label!r}, shape={self._data.shape}, dtype={self._data.dtype})"


class BufferScope:
    """
    Arena that releases every buffer it owns when it closes.

    Usage:
        with BufferScope("frame") as scope:
            gray = scope.adopt(cv2.cvtColor(img, cv2.COLOR_RGBA2GRAY), "gray")
            ...
            keep = scope.detach(result)   # survives the scope
    """

    def __init__(self, label: str = "scope"):
        self.label = label
        self._owned: List[ImageBuffer] = []
        self._closed = False

    def adopt(self, data, label: str = "buffer") -> ImageBuffer:
        """Wrap an array (or take an existing handle) and own it."""
        if self._closed:
            raise RuntimeError(f"Scope '{self.label}' is already closed")
        buffer = data if isinstance(data, ImageBuffer) else ImageBuffer(data, label)
        self._owned.append(buffer)
        return buffer

    def detach(self, buffer: ImageBuffer) -> ImageBuffer:
        """Move a buffer out of the scope; the caller becomes its owner."""
        for i, owned in enumerate(self._owned):
            if owned is buffer:
                del self._owned[i]
                return buffer
        raise ValueError(f"Buffer '{buffer.label}' is not owned by scope '{self.label}'")

    def owns(self, buffer: ImageBuffer) -> bool:
        return any(owned is buffer for owned in self._owned)

    def __len__(self) -> int:
        return len(self._owned)

    def close(self) -> None:
        # Release in reverse allocation order; views go before their parents
        while self._owned:
            buffer = self._owned.pop()
            if not buffer.released:
                buffer.release()
        self._closed = True

    def __enter__(self) -> "BufferScope":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ScalarBufferCache:
    """
    Cache of constant-filled arrays.

    OpenCV's divide/subtract take two arrays of the same shape and type, so a
    scalar operand has to be materialized as a full array. Building those every
    frame would dominate per-frame allocation, so they are built once per
    (height, width, value, dtype) and reused. The key space is small (a few
    normalization constants at one image size).
    """

    def __init__(self):
        self._buffers: Dict[CacheKey, np.ndarray] = {}

    def get_buffer(
        self,
        size: Tuple[int, int],
        fill_value: float,
        dtype=np.float32
    ) -> np.ndarray:
        """
        Get a read-only array filled with fill_value.

        Args:
            size: (height, width) of the array
            fill_value: Value of every element
            dtype: numpy dtype of the array

        Returns:
            Cached array; identical arguments return the same instance
        """
        height, width = int(size[0]), int(size[1])
        key: CacheKey = (height, width, float(fill_value), np.dtype(dtype).str)
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = np.full((height, width), fill_value, dtype=dtype)
            buffer.flags.writeable = False
            self._buffers[key] = buffer
            logger.debug("Cached scalar buffer %s", key)
        return buffer

    def __len__(self) -> int:
        return len(self._buffers)

    def clear(self) -> None:
        self._buffers.clear()
