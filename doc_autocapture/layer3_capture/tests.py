"""
Tests for Layer 3: capture state machine and perspective rectification.
"""
import cv2
import numpy as np
import pytest

from doc_autocapture.config import ScannerConfig
from doc_autocapture.error_handlers import (
    CaptureInProgressError,
    CapturePreconditionError,
    InvalidGeometryError,
)
from doc_autocapture.layer3_capture import (
    CaptureSession,
    CaptureStateMachine,
    Rectifier,
    destination_size,
)
from doc_autocapture.models import AnimationPhase, CaptureState, CaptureTrigger, Point


def drive(machine, frames, session=None):
    """Feed (detected, overall, now_ms) tuples; return final session and triggers."""
    session = session or CaptureSession()
    triggers = []
    for detected, overall, now in frames:
        result = machine.step(session, detected, overall, now)
        session = result.session
        if result.trigger is not None:
            triggers.append((now, result.trigger))
            session = machine.complete(session, now)
    return session, triggers


class TestCaptureStateMachine:
    """Countdown transitions."""

    def test_first_qualifying_frame_is_countable(self):
        machine = CaptureStateMachine()
        result = machine.step(CaptureSession(), True, 90, 1000.0)
        assert result.trigger is None
        assert result.session.state == CaptureState.COUNTABLE
        assert result.session.high_score_start_ms == 1000.0
        assert result.session.countdown_remaining_ms == 3000.0

    def test_following_frames_are_counting(self):
        machine = CaptureStateMachine()
        session, _ = drive(machine, [(True, 90, 0.0), (True, 90, 500.0)])
        assert session.state == CaptureState.COUNTING
        assert session.high_score_start_ms == 0.0
        assert session.countdown_remaining_ms == 2500.0

    def test_capture_fires_exactly_once_at_delay(self):
        machine = CaptureStateMachine()
        frames = [(True, 95, float(t)) for t in range(0, 3100, 100)]
        session, triggers = drive(machine, frames)
        assert triggers == [(3000.0, CaptureTrigger.AUTO)]
        assert session.state == CaptureState.COOLDOWN
        assert session.capture_count == 1
        assert session.last_capture_ms == 3000.0

    def test_dip_below_threshold_resets_countdown(self):
        machine = CaptureStateMachine()
        frames = [(True, 90, float(t)) for t in range(0, 2900, 100)]
        frames.append((True, 84, 2900.0))
        frames += [(True, 90, float(t)) for t in range(3000, 3600, 100)]
        session, triggers = drive(machine, frames)
        assert triggers == []
        # Countdown restarted at 3000
        assert session.high_score_start_ms == 3000.0
        assert session.state == CaptureState.COUNTING

    def test_lost_document_resets_to_idle(self):
        machine = CaptureStateMachine()
        session, _ = drive(machine, [(True, 90, 0.0), (True, 90, 1000.0), (False, 90, 1100.0)])
        assert session.state == CaptureState.IDLE
        assert session.high_score_start_ms is None
        assert session.countdown_remaining_ms is None

    def test_score_at_threshold_counts(self):
        machine = CaptureStateMachine()
        result = machine.step(CaptureSession(), True, 85, 0.0)
        assert result.session.state == CaptureState.COUNTABLE

    def test_auto_capture_disabled_stays_idle(self):
        machine = CaptureStateMachine(ScannerConfig(auto_capture_enabled=False))
        frames = [(True, 100, float(t)) for t in range(0, 5000, 100)]
        session, triggers = drive(machine, frames)
        assert triggers == []
        assert session.state == CaptureState.IDLE

    def test_zero_delay_captures_on_first_frame(self):
        machine = CaptureStateMachine(ScannerConfig(capture_delay_ms=0.0))
        result = machine.step(CaptureSession(), True, 90, 0.0)
        assert result.trigger == CaptureTrigger.AUTO
        assert result.session.state == CaptureState.CAPTURING

    def test_capturing_ignores_frames(self):
        machine = CaptureStateMachine()
        capturing = CaptureSession(state=CaptureState.CAPTURING)
        result = machine.step(capturing, False, 0, 100.0)
        assert result.session is capturing
        assert result.trigger is None

    def test_cooldown_ignores_frames_until_expiry(self):
        machine = CaptureStateMachine()
        session = machine.complete(CaptureSession(state=CaptureState.CAPTURING), 1000.0)
        during = machine.step(session, True, 100, 1500.0)
        assert during.session is session
        after = machine.step(session, True, 100, 1800.0)
        assert after.session.state == CaptureState.COUNTABLE
        assert after.session.high_score_start_ms == 1800.0

    def test_cooldown_expiry_without_document_goes_idle(self):
        machine = CaptureStateMachine()
        session = machine.complete(CaptureSession(state=CaptureState.CAPTURING), 1000.0)
        result = machine.step(session, False, 0, 2000.0)
        assert result.session.state == CaptureState.IDLE
        assert result.session.capture_count == 1

    def test_abort_rearms(self):
        machine = CaptureStateMachine()
        session = machine.abort(CaptureSession(state=CaptureState.CAPTURING, capture_count=2))
        assert session.state == CaptureState.IDLE
        assert session.capture_count == 2


class TestManualCapture:
    """Manual capture requests."""

    def test_manual_bypasses_countdown(self):
        machine = CaptureStateMachine()
        counting = machine.step(CaptureSession(), True, 90, 0.0).session
        result = machine.request_manual(counting, True, 100.0)
        assert result.trigger == CaptureTrigger.MANUAL
        assert result.session.state == CaptureState.CAPTURING
        assert result.session.high_score_start_ms is None

    def test_manual_with_low_score_allowed(self):
        machine = CaptureStateMachine()
        result = machine.request_manual(CaptureSession(), True, 0.0)
        assert result.trigger == CaptureTrigger.MANUAL

    def test_manual_without_document_raises(self):
        machine = CaptureStateMachine()
        with pytest.raises(CapturePreconditionError) as exc:
            machine.request_manual(CaptureSession(), False, 0.0)
        assert exc.value.error_code == 'NO_DOCUMENT'

    def test_manual_during_cooldown_raises(self):
        machine = CaptureStateMachine()
        session = machine.complete(CaptureSession(state=CaptureState.CAPTURING), 1000.0)
        with pytest.raises(CaptureInProgressError):
            machine.request_manual(session, True, 1200.0)
        assert machine.request_manual(session, True, 1900.0).trigger == CaptureTrigger.MANUAL

    def test_manual_while_capturing_raises(self):
        machine = CaptureStateMachine()
        with pytest.raises(CaptureInProgressError):
            machine.request_manual(CaptureSession(state=CaptureState.CAPTURING), True, 0.0)


class TestCountdownFeedback:
    """Countdown seconds, progress and animation phases."""

    @pytest.mark.parametrize('remaining,expected', [
        (None, 3),
        (3000.0, 3),
        (2999.0, 3),
        (2000.0, 2),
        (1001.0, 2),
        (1000.0, 1),
        (1.0, 1),
        (0.0, 0),
    ])
    def test_countdown_seconds(self, remaining, expected):
        machine = CaptureStateMachine()
        session = CaptureSession(countdown_remaining_ms=remaining)
        assert machine.countdown_seconds(session) == expected

    def test_countdown_progress(self):
        machine = CaptureStateMachine()
        assert machine.countdown_progress(CaptureSession()) == 0.0
        assert machine.countdown_progress(CaptureSession(countdown_remaining_ms=1500.0)) == pytest.approx(0.5)
        assert machine.countdown_progress(CaptureSession(countdown_remaining_ms=0.0)) == 1.0

    def test_animation_phases_after_capture(self):
        machine = CaptureStateMachine()
        session = machine.complete(CaptureSession(state=CaptureState.CAPTURING), 1000.0)
        assert machine.animation_phase(session, 1000.0) == AnimationPhase.PRE_CAPTURE
        assert machine.animation_phase(session, 1199.0) == AnimationPhase.PRE_CAPTURE
        assert machine.animation_phase(session, 1200.0) == AnimationPhase.FLASH
        assert machine.animation_phase(session, 1399.0) == AnimationPhase.FLASH
        assert machine.animation_phase(session, 1400.0) == AnimationPhase.POST_CAPTURE
        assert machine.animation_phase(session, 1799.0) == AnimationPhase.POST_CAPTURE
        assert machine.animation_phase(session, 1800.0) == AnimationPhase.IDLE

    def test_animation_idle_without_capture(self):
        machine = CaptureStateMachine()
        assert machine.animation_phase(CaptureSession(), 0.0) == AnimationPhase.IDLE


class TestRectifier:
    """Perspective correction."""

    RECT = (Point(100, 50), Point(400, 50), Point(400, 250), Point(100, 250))

    def gradient_frame(self):
        xs = np.tile(np.arange(640, dtype=np.uint16) % 256, (480, 1))
        ys = np.tile((np.arange(480, dtype=np.uint16) // 2)[:, None], (1, 640))
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        frame[:, :, 0] = xs.astype(np.uint8)
        frame[:, :, 1] = ys.astype(np.uint8)
        frame[:, :, 2] = 128
        return frame

    def test_destination_size(self):
        assert destination_size(self.RECT) == (300, 200)

    def test_destination_size_uses_longer_edges(self):
        corners = (Point(0, 0), Point(100, 0), Point(120, 60), Point(-10, 60))
        # Bottom edge 130 px, right edge hypot(20, 60) ~ 63.2 px
        assert destination_size(corners) == (130, 63)

    def test_destination_size_rounds_half_up(self):
        corners = (Point(0, 0), Point(300.5, 0), Point(300.5, 200.5), Point(0, 200.5))
        assert destination_size(corners) == (301, 201)
        even = (Point(0, 0), Point(2.5, 0), Point(2.5, 4.5), Point(0, 4.5))
        assert destination_size(even) == (3, 5)

    def test_output_shape(self):
        result = Rectifier().rectify(self.gradient_frame(), self.RECT)
        assert result.image.shape == (200, 300, 3)
        assert (result.width, result.height) == (300, 200)

    def test_corners_map_to_output_rectangle(self):
        corners = (Point(90, 60), Point(520, 110), Point(480, 400), Point(60, 380))
        result = Rectifier().rectify(self.gradient_frame(), corners)
        src = np.array([[[p.x, p.y] for p in corners]], dtype=np.float32)
        mapped = cv2.perspectiveTransform(src, result.transform)[0]
        expected = np.array([
            [0, 0],
            [result.width, 0],
            [result.width, result.height],
            [0, result.height]
        ], dtype=np.float32)
        assert np.allclose(mapped, expected, atol=1e-2)

    def test_axis_aligned_rectangle_is_a_crop(self):
        frame = self.gradient_frame()
        result = Rectifier().rectify(frame, self.RECT)
        crop = frame[50:250, 100:400]
        diff = np.abs(result.image.astype(np.int16) - crop.astype(np.int16))
        assert diff.max() <= 1

    def test_wrong_corner_count_raises(self):
        with pytest.raises(InvalidGeometryError) as exc:
            Rectifier().rectify(self.gradient_frame(), self.RECT[:3])
        assert exc.value.details['corner_count'] == 3
        with pytest.raises(InvalidGeometryError):
            Rectifier().rectify(self.gradient_frame(), None)

    def test_degenerate_corners_raise(self):
        collapsed = (Point(10, 10), Point(10, 10), Point(10, 10), Point(10, 10))
        with pytest.raises(InvalidGeometryError):
            Rectifier().rectify(self.gradient_frame(), collapsed)
