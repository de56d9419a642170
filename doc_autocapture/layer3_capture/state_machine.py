"""
Layer 3 — Capture State Machine
Drives the auto-capture countdown from per-frame readiness scores.

IDLE -> COUNTABLE -> COUNTING -> CAPTURING -> COOLDOWN -> IDLE

Every transition is a pure function of (previous session, detection flag,
overall score, frame timestamp); nothing here reads a clock or starts a
timer.
"""
import logging
import math
from dataclasses import dataclass, replace
from typing import Optional

from ..config import ScannerConfig
from ..error_handlers import CaptureInProgressError, CapturePreconditionError
from ..models import AnimationPhase, CaptureState, CaptureTrigger

logger = logging.getLogger(__name__)

PRE_CAPTURE_MS = 200.0   # Pre-capture pulse before the flash
FLASH_END_MS = 400.0     # Flash runs from PRE_CAPTURE_MS until here


@dataclass(frozen=True)
class CaptureSession:
    """Countdown and capture bookkeeping for one stream."""
    state: CaptureState = CaptureState.IDLE
    high_score_start_ms: Optional[float] = None
    countdown_remaining_ms: Optional[float] = None
    last_capture_ms: Optional[float] = None
    capture_count: int = 0

    @property
    def counting(self) -> bool:
        return self.high_score_start_ms is not None


@dataclass(frozen=True)
class StepResult:
    session: CaptureSession
    trigger: Optional[CaptureTrigger] = None


class CaptureStateMachine:
    """
    Auto-capture countdown.

    The caller performs the capture when a step returns a trigger, then
    reports back through complete() or abort().
    """

    def __init__(self, config: Optional[ScannerConfig] = None):
        self.config = config or ScannerConfig()

    def in_cooldown(self, session: CaptureSession, now_ms: float) -> bool:
        return (
            session.state == CaptureState.COOLDOWN
            and session.last_capture_ms is not None
            and now_ms - session.last_capture_ms < self.config.cooldown_ms
        )

    def in_flight(self, session: CaptureSession, now_ms: float) -> bool:
        """True while a capture is running or its cooldown window is open."""
        return session.state == CaptureState.CAPTURING or self.in_cooldown(session, now_ms)

    def reset(self, session: CaptureSession) -> CaptureSession:
        """Back to IDLE with the countdown cleared."""
        return replace(
            session,
            state=CaptureState.IDLE,
            high_score_start_ms=None,
            countdown_remaining_ms=None
        )

    def step(self, session: CaptureSession, detected: bool, overall: int, now_ms: float) -> StepResult:
        """
        Advance by one processed frame.

        Args:
            session: State after the previous frame
            detected: Whether a valid quadrilateral is held this frame
            overall: Fused readiness score of this frame
            now_ms: Frame timestamp in milliseconds

        Returns:
            StepResult carrying the next session and, when the countdown
            completes, an AUTO trigger
        """
        cfg = self.config

        if session.state == CaptureState.CAPTURING or self.in_cooldown(session, now_ms):
            return StepResult(session)

        if not cfg.auto_capture_enabled or not detected or overall < cfg.capture_threshold:
            if session.counting:
                reason = "document lost" if not detected else "score below threshold"
                logger.debug(f"Countdown reset at {now_ms:.0f}ms ({reason})")
            return StepResult(self.reset(session))

        if session.high_score_start_ms is None:
            start = now_ms
            state = CaptureState.COUNTABLE
        else:
            start = session.high_score_start_ms
            state = CaptureState.COUNTING

        elapsed = max(0.0, now_ms - start)
        if elapsed >= cfg.capture_delay_ms:
            logger.info(f"Score held >= {cfg.capture_threshold} for {elapsed:.0f}ms, triggering capture")
            return StepResult(
                replace(
                    session,
                    state=CaptureState.CAPTURING,
                    high_score_start_ms=None,
                    countdown_remaining_ms=None
                ),
                trigger=CaptureTrigger.AUTO
            )

        return StepResult(replace(
            session,
            state=state,
            high_score_start_ms=start,
            countdown_remaining_ms=cfg.capture_delay_ms - elapsed
        ))

    def request_manual(self, session: CaptureSession, detected: bool, now_ms: float) -> StepResult:
        """
        Manual capture request; bypasses the countdown.

        Raises:
            CaptureInProgressError: If a capture is running or cooling down
            CapturePreconditionError: If no valid quadrilateral is held
        """
        if self.in_flight(session, now_ms):
            raise CaptureInProgressError(session.state.value)
        if not detected:
            raise CapturePreconditionError()
        return StepResult(
            replace(
                session,
                state=CaptureState.CAPTURING,
                high_score_start_ms=None,
                countdown_remaining_ms=None
            ),
            trigger=CaptureTrigger.MANUAL
        )

    def complete(self, session: CaptureSession, now_ms: float) -> CaptureSession:
        """Capture emitted: enter COOLDOWN."""
        return replace(
            session,
            state=CaptureState.COOLDOWN,
            high_score_start_ms=None,
            countdown_remaining_ms=None,
            last_capture_ms=now_ms,
            capture_count=session.capture_count + 1
        )

    def abort(self, session: CaptureSession) -> CaptureSession:
        """Capture failed: re-arm at IDLE."""
        return self.reset(session)

    def countdown_seconds(self, session: CaptureSession) -> int:
        """Whole seconds left, for user feedback."""
        remaining = session.countdown_remaining_ms
        if remaining is None:
            remaining = self.config.capture_delay_ms
        return int(math.ceil(max(0.0, remaining) / 1000.0))

    def countdown_progress(self, session: CaptureSession) -> float:
        """Fraction of the delay already elapsed, in [0, 1]."""
        if session.countdown_remaining_ms is None:
            return 0.0
        delay = self.config.capture_delay_ms
        if delay <= 0:
            return 1.0
        return min(1.0, max(0.0, 1.0 - session.countdown_remaining_ms / delay))

    def animation_phase(self, session: CaptureSession, now_ms: float) -> AnimationPhase:
        """Cosmetic capture phase as a function of time since the last capture."""
        if session.state == CaptureState.CAPTURING:
            return AnimationPhase.PRE_CAPTURE
        if session.state != CaptureState.COOLDOWN or session.last_capture_ms is None:
            return AnimationPhase.IDLE

        since = now_ms - session.last_capture_ms
        if since < 0 or since >= self.config.cooldown_ms:
            return AnimationPhase.IDLE
        if since < PRE_CAPTURE_MS:
            return AnimationPhase.PRE_CAPTURE
        if since < FLASH_END_MS:
            return AnimationPhase.FLASH
        return AnimationPhase.POST_CAPTURE
