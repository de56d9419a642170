"""
Layer 1 — ImageOps Adapter
Thin wrapper around the OpenCV primitives the pipeline consumes, plus the
scratch buffers that are allocated once per stream and reused every frame.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..error_handlers import InvalidFrameError, ResourceUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class ScratchBuffers:
    """
    Pre-allocated per-stream working images.

    All arrays share the processing resolution. The frame loop owns the
    pool; OpenCV writes into these arrays through its ``dst`` arguments.
    """
    height: int
    width: int
    channels: int
    resized: np.ndarray
    gray: np.ndarray
    blurred: np.ndarray
    edges: np.ndarray
    laplacian: np.ndarray

    @classmethod
    def allocate(cls, height: int, width: int, channels: int) -> 'ScratchBuffers':
        """
        Allocate buffers for a processing frame of the given size.

        Raises:
            ResourceUnavailableError: If the buffers cannot be allocated
        """
        if height <= 0 or width <= 0:
            raise ResourceUnavailableError((height, width, channels), "frame has no pixels")
        try:
            color_shape = (height, width) if channels == 1 else (height, width, channels)
            buffers = cls(
                height=height,
                width=width,
                channels=channels,
                resized=np.empty(color_shape, dtype=np.uint8),
                gray=np.empty((height, width), dtype=np.uint8),
                blurred=np.empty((height, width), dtype=np.uint8),
                edges=np.empty((height, width), dtype=np.uint8),
                laplacian=np.empty((height, width), dtype=np.float64),
            )
        except (MemoryError, ValueError) as e:
            raise ResourceUnavailableError((height, width, channels), e) from e
        logger.debug(f"Scratch buffers allocated: {width}x{height}x{channels}")
        return buffers

    def matches(self, height: int, width: int, channels: int) -> bool:
        return (self.height, self.width, self.channels) == (height, width, channels)


class ImageOps:
    """
    Synchronous image primitives used by detection, scoring and rectification.

    Frames are numpy arrays in OpenCV layout: BGR, BGRA or single-channel
    grayscale, dtype uint8.
    """

    @staticmethod
    def validate_frame(frame) -> Tuple[int, int, int]:
        """
        Check that a frame is a usable image.

        Returns:
            Tuple of (height, width, channels)

        Raises:
            InvalidFrameError: For None, empty or oddly shaped input
        """
        if frame is None:
            raise InvalidFrameError("frame is None")
        if not isinstance(frame, np.ndarray):
            raise InvalidFrameError(f"expected numpy array, got {type(frame).__name__}")
        if frame.size == 0 or frame.ndim not in (2, 3):
            raise InvalidFrameError(f"unsupported frame shape {frame.shape}")
        channels = 1 if frame.ndim == 2 else frame.shape[2]
        if channels not in (1, 3, 4):
            raise InvalidFrameError(f"unsupported channel count {channels}")
        return frame.shape[0], frame.shape[1], channels

    def resize(self, frame: np.ndarray, size: Tuple[int, int], dst: Optional[np.ndarray] = None) -> np.ndarray:
        """Resize to (width, height) with area interpolation."""
        if (frame.shape[1], frame.shape[0]) == tuple(size):
            if dst is not None and dst.shape == frame.shape:
                np.copyto(dst, frame)
                return dst
            return frame
        return cv2.resize(frame, tuple(size), dst=dst, interpolation=cv2.INTER_AREA)

    def to_grayscale(self, frame: np.ndarray, dst: Optional[np.ndarray] = None) -> np.ndarray:
        if frame.dtype != np.uint8:
            frame = cv2.convertScaleAbs(frame)
        if frame.ndim == 2:
            if dst is None:
                return frame.copy()
            np.copyto(dst, frame)
            return dst
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY, dst=dst)
        if frame.shape[2] == 1:
            return self.to_grayscale(frame[:, :, 0], dst)
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY, dst=dst)

    def gaussian_blur(self, gray: np.ndarray, kernel_size: int = 5, dst: Optional[np.ndarray] = None) -> np.ndarray:
        return cv2.GaussianBlur(gray, (kernel_size, kernel_size), 0, dst=dst)

    def edge_detect(self, gray: np.ndarray, low: float, high: float, dst: Optional[np.ndarray] = None) -> np.ndarray:
        return cv2.Canny(gray, low, high, edges=dst)

    def find_external_contours(self, edges: np.ndarray) -> List[np.ndarray]:
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        return list(contours)

    def contour_area(self, contour: np.ndarray) -> float:
        return float(cv2.contourArea(contour))

    def arc_length(self, contour: np.ndarray, closed: bool = True) -> float:
        return float(cv2.arcLength(contour, closed))

    def approx_polygon(self, contour: np.ndarray, epsilon: float) -> np.ndarray:
        return cv2.approxPolyDP(contour, epsilon, True)

    def is_convex(self, polygon: np.ndarray) -> bool:
        return bool(cv2.isContourConvex(polygon))

    def laplacian(self, gray: np.ndarray, dst: Optional[np.ndarray] = None) -> np.ndarray:
        return cv2.Laplacian(gray, cv2.CV_64F, dst=dst)

    def mean_std_dev(self, image: np.ndarray) -> Tuple[float, float]:
        mean, stddev = cv2.meanStdDev(image)
        return float(mean[0][0]), float(stddev[0][0])

    def median(self, gray: np.ndarray, max_samples: int = 5000) -> float:
        """
        Approximate median intensity from an evenly strided sample.

        Uses the upper median of the sample so the result is always an
        actual pixel value.
        """
        flat = gray.reshape(-1)
        if flat.size == 0:
            return 0.0
        step = max(1, flat.size // max_samples)
        sample = flat[::step]
        middle = sample.size // 2
        return float(np.partition(sample, middle)[middle])

    def saturation_ratios(self, gray: np.ndarray, dark_max: int = 5, bright_min: int = 250) -> Tuple[float, float]:
        """Fraction of near-black and near-white pixels."""
        total = gray.size
        if total == 0:
            return 0.0, 0.0
        dark = np.count_nonzero(gray <= dark_max)
        bright = np.count_nonzero(gray >= bright_min)
        return dark / total, bright / total

    def perspective_transform(self, src_quad: Sequence[Sequence[float]], dst_quad: Sequence[Sequence[float]]) -> np.ndarray:
        src = np.asarray(src_quad, dtype=np.float32).reshape(4, 2)
        dst = np.asarray(dst_quad, dtype=np.float32).reshape(4, 2)
        return cv2.getPerspectiveTransform(src, dst)

    def warp(self, frame: np.ndarray, transform: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
        """Warp through a 3x3 perspective matrix into an image of (width, height)."""
        return cv2.warpPerspective(frame, transform, tuple(size), flags=cv2.INTER_LINEAR)
