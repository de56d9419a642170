"""
Frame Source — Camera Handler
Camera or video-file acquisition feeding the frame loop.
"""
import cv2
import logging
import os
import time
from typing import Iterator, Optional, Tuple, Union

import numpy as np

from .error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)


class CameraHandler:
    """
    OpenCV capture wrapper yielding (frame, timestamp_ms) pairs.

    ``source`` is a device index or a path to a video file. Timestamps come
    from the capture position for files and from the monotonic clock for
    live devices.
    """

    # Requested live-device settings; files keep their native format
    DEFAULT_CONFIG = {
        'width': 1280,
        'height': 720,
        'fps': 30,
        'buffer_size': 1,  # Drop stale frames
    }

    def __init__(self, source: Union[int, str] = 0, config: Optional[dict] = None):
        """
        Create a handler; nothing is opened until initialize().

        Args:
            source: Device index (e.g. 0) or video file path
            config: Overrides for DEFAULT_CONFIG (live devices only)
        """
        self.source = source
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_initialized = False

        self.actual_width = 0
        self.actual_height = 0
        self.actual_fps = 0.0

        logger.info(f"CameraHandler created for source {source}")

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, str) and not self.source.isdigit()

    def initialize(self) -> bool:
        """
        Open and configure the source.

        Returns:
            bool: True once the source is open

        Raises:
            CameraNotFoundError: If a video file doesn't exist
            CameraInitError: If the source fails to open
        """
        if self._is_initialized and self.camera is not None:
            logger.debug(f"Source {self.source} already open")
            return True

        if self.is_file and not os.path.exists(self.source):
            raise CameraNotFoundError(self.source)

        source = self.source if self.is_file else int(self.source)
        logger.info(f"Opening video source {source}")
        self.camera = cv2.VideoCapture(source)

        if not self.camera.isOpened():
            self.camera.release()
            self.camera = None
            raise CameraInitError(self.source, reason="Failed to open video source")

        if not self.is_file:
            self._configure_camera()

        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.actual_fps = float(self.camera.get(cv2.CAP_PROP_FPS) or 0.0)
        self._is_initialized = True

        logger.info(f"Source opened: {self.actual_width}x{self.actual_height} @ {self.actual_fps}fps")
        return True

    def _configure_camera(self):
        """Apply capture settings to a live device."""
        cfg = self.config
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])
        logger.debug(f"Requested {cfg['width']}x{cfg['height']} @ {cfg['fps']}fps from device {self.source}")

    def get_frame(self) -> Tuple[np.ndarray, float]:
        """
        Read one frame.

        Returns:
            Tuple of (BGR frame, timestamp_ms)

        Raises:
            CameraNotInitializedError: If the source is not open
            FrameCaptureError: If the read fails
        """
        if not self._is_initialized or self.camera is None:
            raise CameraNotInitializedError()

        ret, frame = self.camera.read()
        if not ret or frame is None:
            raise FrameCaptureError()

        if self.is_file:
            timestamp_ms = float(self.camera.get(cv2.CAP_PROP_POS_MSEC))
        else:
            timestamp_ms = time.monotonic() * 1000.0
        return frame, timestamp_ms

    def frames(self, max_frames: Optional[int] = None) -> Iterator[Tuple[np.ndarray, float]]:
        """
        Yield frames until the source ends or max_frames is reached.

        A failed read ends a file; on a live device it is logged and retried.
        """
        count = 0
        while max_frames is None or count < max_frames:
            try:
                frame, timestamp_ms = self.get_frame()
            except FrameCaptureError:
                if self.is_file:
                    logger.info("End of video file")
                    return
                logger.warning("Frame read failed, retrying")
                time.sleep(0.05)
                continue
            count += 1
            yield frame, timestamp_ms

    def is_opened(self) -> bool:
        """Check if the source is currently open and initialized."""
        return self._is_initialized and self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release capture resources."""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        self._is_initialized = False
        logger.info(f"Source {self.source} released")

    def __enter__(self):
        """Context manager entry."""
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.release()
        return False
