"""
Auto-Capture Engine
Single-threaded frame loop tying detection, scoring, the countdown state
machine and rectification together.

Features:
- Contour-based document detection on a downscaled processing frame
- Corner history stability tracking
- Sharpness / lighting scoring and score fusion
- Countdown-driven auto capture plus manual capture
- Perspective correction to a flat document
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Tuple

import numpy as np

from .config import ScannerConfig
from .error_handlers import CaptureError, InvalidGeometryError, ScannerError
from .layer1_detection import ImageOps, QuadrilateralDetector, ScratchBuffers
from .layer2_quality import CornerHistory, QualityScorer
from .layer3_capture import CaptureSession, CaptureStateMachine, Rectifier
from .models import (
    CaptureState,
    CaptureTrigger,
    Corners,
    FrameAnalysis,
    QualityScores,
    ScanResult,
)

logger = logging.getLogger(__name__)

CaptureListener = Callable[[ScanResult], None]


def readiness_color(overall: int, detected: bool, state: CaptureState, threshold: int) -> str:
    """Colour band for the overlay outline."""
    if state in (CaptureState.CAPTURING, CaptureState.COOLDOWN):
        return 'blue'
    if not detected:
        return 'red'
    if overall >= threshold:
        return 'green'
    if overall >= 70:
        return 'yellow'
    if overall >= 50:
        return 'orange'
    return 'red'


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class ScanSession:
    """
    Rolling state of one stream, owned by the frame loop.

    Only ``history`` and ``capture`` carry information from frame to frame;
    everything else is the latest frame's output.
    """
    history: CornerHistory
    capture: CaptureSession = field(default_factory=CaptureSession)
    frame_index: int = 0
    skip_counter: int = 0
    buffers: Optional[ScratchBuffers] = None
    current_frame: Optional[np.ndarray] = None
    current_corners: Optional[Corners] = None
    current_scores: QualityScores = field(default_factory=QualityScores)
    last_analysis: Optional[FrameAnalysis] = None
    active: bool = False


class AutoCaptureEngine:
    """
    Document auto-capture engine.

    Feed frames through process_frame(); each processed frame yields a
    FrameAnalysis for the overlay and, once quality has stayed above the
    capture threshold for the capture delay, a ScanResult.

    Frames are kept by reference until the next processed frame (manual
    capture rectifies the latest one); do not write into a frame after
    submitting it.
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        image_ops: Optional[ImageOps] = None,
        on_capture: Optional[CaptureListener] = None
    ):
        """
        Initialize auto-capture engine.

        Args:
            config: Scanner configuration (uses defaults if not provided)
            image_ops: OpenCV adapter (shared by every component)
            on_capture: Optional listener called with every ScanResult
        """
        self.config = (config or ScannerConfig()).validate()
        self.image_ops = image_ops or ImageOps()

        # Components
        self.detector = QuadrilateralDetector(self.config, self.image_ops)
        self.scorer = QualityScorer(self.config, self.image_ops)
        self.state_machine = CaptureStateMachine(self.config)
        self.rectifier = Rectifier(self.image_ops)
        self.on_capture = on_capture

        self.session = self._new_session()

        logger.info("AutoCaptureEngine initialized")
        logger.debug(f"Config: {self.config}")

    def _new_session(self) -> ScanSession:
        return ScanSession(history=CornerHistory(self.config.stability_window))

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def start(self, frame_shape: Optional[Tuple[int, ...]] = None):
        """
        Begin a stream with fresh rolling state.

        Args:
            frame_shape: Source frame shape; when given, scratch buffers are
                allocated now instead of on the first frame
        """
        self.session = self._new_session()
        self.session.active = True
        if frame_shape is not None:
            height, width = frame_shape[:2]
            channels = 1 if len(frame_shape) == 2 else frame_shape[2]
            self._ensure_buffers(*self._processing_size(height, width), channels)
        logger.info("Scan session started")

    def stop(self):
        """Tear down the stream: history, countdown and buffers are dropped."""
        self.session = self._new_session()
        logger.info("Scan session stopped")

    @property
    def is_active(self) -> bool:
        return self.session.active

    def _processing_size(self, height: int, width: int) -> Tuple[int, int]:
        scale = min(1.0, self.config.processing_max_width / float(width))
        return max(1, int(round(height * scale))), max(1, int(round(width * scale)))

    def _ensure_buffers(self, height: int, width: int, channels: int) -> ScratchBuffers:
        buffers = self.session.buffers
        if buffers is None or not buffers.matches(height, width, channels):
            if buffers is not None:
                logger.info(f"Frame size changed, reallocating buffers for {width}x{height}")
            buffers = ScratchBuffers.allocate(height, width, channels)
            self.session.buffers = buffers
        return buffers

    # ------------------------------------------------------------------
    # Frame loop
    # ------------------------------------------------------------------

    def process_frame(self, frame: np.ndarray, timestamp_ms: Optional[float] = None) -> Optional[FrameAnalysis]:
        """
        Run one frame through detect -> order -> score -> transition -> rectify.

        Args:
            frame: BGR/BGRA/grayscale frame at source resolution
            timestamp_ms: Frame timestamp (monotonic clock when omitted)

        Returns:
            FrameAnalysis, or None when the frame was skipped by the
            processing-rate divisor or failed
        """
        session = self.session
        if not session.active:
            self.start()
            session = self.session

        session.skip_counter = (session.skip_counter + 1) % self.config.frame_processing_rate
        if session.skip_counter != 0:
            return None

        if timestamp_ms is None:
            timestamp_ms = monotonic_ms()

        try:
            analysis = self._analyze(frame, timestamp_ms)
        except ScannerError as e:
            logger.warning(f"Frame skipped ({e.error_code}): {e.message}")
            return None
        except Exception as e:
            logger.error(f"Frame processing error: {e}")
            logger.exception("Full traceback:")
            return None

        if analysis.result is not None:
            self._notify(analysis.result)
        return analysis

    def _analyze(self, frame: np.ndarray, timestamp_ms: float) -> FrameAnalysis:
        """Compute everything for one frame, then commit rolling state."""
        session = self.session
        ops = self.image_ops

        height, width, channels = ops.validate_frame(frame)
        proc_height, proc_width = self._processing_size(height, width)
        buffers = self._ensure_buffers(proc_height, proc_width, channels)

        small = ops.resize(frame, (proc_width, proc_height), dst=buffers.resized)
        gray = ops.to_grayscale(small, dst=buffers.gray)

        quad = self.detector.detect_in_gray(gray, buffers)
        corners: Optional[Corners] = None
        if quad is not None:
            corners = quad.scaled(width / float(proc_width), height / float(proc_height)).corners

        frame_index = session.frame_index + 1
        detected = corners is not None
        if detected:
            history = session.history.record(frame_index, corners, timestamp_ms)
        else:
            history = session.history.cleared()

        scores, metrics = self.scorer.score(gray, history, detected, buffers)
        step = self.state_machine.step(session.capture, detected, scores.overall, timestamp_ms)

        capture_session = step.session
        result = None
        if step.trigger is not None:
            result, capture_session = self._run_capture(
                frame, corners, scores, timestamp_ms, capture_session, step.trigger
            )

        # Commit
        session.history = history
        session.capture = capture_session
        session.frame_index = frame_index
        session.current_frame = frame
        session.current_corners = corners
        session.current_scores = scores

        analysis = self._build_analysis(frame_index, timestamp_ms, scores, corners, result)
        session.last_analysis = analysis

        logger.debug(
            f"Frame {frame_index}: detected={detected} scores={scores.to_dict()} "
            f"state={capture_session.state.value} metrics={metrics.to_dict()}"
        )
        return analysis

    def _build_analysis(
        self,
        frame_index: int,
        timestamp_ms: float,
        scores: QualityScores,
        corners: Optional[Corners],
        result: Optional[ScanResult]
    ) -> FrameAnalysis:
        capture = self.session.capture
        sm = self.state_machine
        return FrameAnalysis(
            frame_index=frame_index,
            timestamp_ms=timestamp_ms,
            scores=scores,
            corners=corners,
            state=capture.state,
            animation_phase=sm.animation_phase(capture, timestamp_ms),
            countdown_seconds=sm.countdown_seconds(capture),
            countdown_progress=sm.countdown_progress(capture),
            readiness_color=readiness_color(
                scores.overall, corners is not None, capture.state, self.config.capture_threshold
            ),
            result=result
        )

    def _run_capture(
        self,
        frame: np.ndarray,
        corners: Optional[Corners],
        scores: QualityScores,
        timestamp_ms: float,
        capture_session: CaptureSession,
        trigger: CaptureTrigger
    ) -> Tuple[Optional[ScanResult], CaptureSession]:
        """Rectify and build the result; a failed warp re-arms at IDLE."""
        try:
            rectified = self.rectifier.rectify(frame, corners)
        except InvalidGeometryError as e:
            logger.warning(f"Capture aborted: {e.message}")
            return None, self.state_machine.abort(capture_session)

        result = ScanResult(
            image=rectified.image,
            width=rectified.width,
            height=rectified.height,
            captured_at_ms=timestamp_ms,
            corners=tuple(corners),
            quality=scores,
            trigger=trigger
        )
        logger.info(
            f"Document captured ({trigger.value}): {result.width}x{result.height}, "
            f"score {scores.overall}"
        )
        return result, self.state_machine.complete(capture_session, timestamp_ms)

    def _notify(self, result: ScanResult):
        if self.on_capture is None:
            return
        try:
            self.on_capture(result)
        except Exception as e:
            logger.error(f"Capture listener failed: {e}")
            logger.exception("Full traceback:")

    # ------------------------------------------------------------------
    # Manual capture
    # ------------------------------------------------------------------

    def capture_now(self, timestamp_ms: Optional[float] = None) -> ScanResult:
        """
        Capture the latest processed frame immediately.

        Args:
            timestamp_ms: Request time on the frame clock; defaults to the
                timestamp of the latest processed frame

        Returns:
            ScanResult

        Raises:
            CapturePreconditionError: If no document is currently held
            CaptureInProgressError: If a capture is running or cooling down
            InvalidGeometryError: If rectification fails (state re-armed)
        """
        session = self.session
        if timestamp_ms is None:
            last = session.last_analysis
            timestamp_ms = last.timestamp_ms if last is not None else monotonic_ms()
        detected = session.current_corners is not None and session.current_frame is not None

        step = self.state_machine.request_manual(session.capture, detected, timestamp_ms)
        result, capture_session = self._run_capture(
            session.current_frame,
            session.current_corners,
            session.current_scores,
            timestamp_ms,
            step.session,
            step.trigger
        )
        session.capture = capture_session
        if result is None:
            raise InvalidGeometryError("rectification failed", corner_count=len(session.current_corners))

        self._notify(result)
        return result

    def manual_capture(self, timestamp_ms: Optional[float] = None) -> Optional[ScanResult]:
        """
        Manual capture that never raises.

        Returns:
            ScanResult, or None when the request was rejected
        """
        try:
            return self.capture_now(timestamp_ms)
        except (CaptureError, InvalidGeometryError) as e:
            logger.warning(f"Manual capture rejected ({e.error_code}): {e.message}")
            return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def run(self, frames: Iterable[Tuple[np.ndarray, float]]) -> Iterator[FrameAnalysis]:
        """
        Drive the loop from an iterable of (frame, timestamp_ms) pairs.

        Yields:
            FrameAnalysis for every processed (non-skipped) frame
        """
        for frame, timestamp_ms in frames:
            analysis = self.process_frame(frame, timestamp_ms)
            if analysis is not None:
                yield analysis

    def get_status(self) -> dict:
        """Latest snapshot for status endpoints."""
        analysis = self.session.last_analysis
        return {
            'active': self.session.active,
            'frames_processed': self.session.frame_index,
            'captures': self.session.capture.capture_count,
            'analysis': analysis.to_dict() if analysis else None
        }

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.stop()
        return False
