"""
Tests for the auto-capture engine, configuration, frame source, CLI and
HTTP service.
"""
import numpy as np
import pytest

from doc_autocapture import __main__ as cli
from doc_autocapture import camera as camera_module
from doc_autocapture.auto_capture import AutoCaptureEngine, readiness_color
from doc_autocapture.camera import CameraHandler
from doc_autocapture.config import ScannerConfig
from doc_autocapture.conftest import (
    DOCUMENT_BOX,
    encode_frame,
    make_blank_frame,
    make_document_frame,
)
from doc_autocapture.error_handlers import (
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureInProgressError,
    CapturePreconditionError,
    ConfigError,
    ResourceUnavailableError,
    handle_error,
)
from doc_autocapture.layer1_detection import ScratchBuffers
from doc_autocapture.models import (
    AnimationPhase,
    CaptureState,
    CaptureTrigger,
)


def feed(engine, frames_by_time):
    """Process (timestamp_ms, frame) pairs; return analyses."""
    return [engine.process_frame(frame, float(t)) for t, frame in frames_by_time]


def steady(frame, start, stop, step=100):
    return [(t, frame) for t in range(start, stop, step)]


class TestAutoCaptureEngine:
    """End-to-end frame loop behavior."""

    def test_first_frame_has_no_stability(self, engine, document_frame):
        analysis = engine.process_frame(document_frame, 0.0)
        assert analysis.detected
        assert analysis.scores.stability == 0
        assert analysis.scores.overall == 60
        assert analysis.state == CaptureState.IDLE
        assert analysis.readiness_color == 'orange'

    def test_second_frame_starts_countdown(self, engine, document_frame):
        feed(engine, steady(document_frame, 0, 100))
        analysis = engine.process_frame(document_frame, 100.0)
        assert analysis.scores.overall == 100
        assert analysis.state == CaptureState.COUNTABLE
        assert analysis.countdown_seconds == 3
        assert analysis.readiness_color == 'green'

    def test_steady_document_captured_exactly_once(self, engine, document_frame):
        analyses = feed(engine, steady(document_frame, 0, 3300))
        results = [(a.timestamp_ms, a.result) for a in analyses if a.result is not None]
        assert len(results) == 1

        captured_at, result = results[0]
        assert captured_at == 3100.0
        assert result.trigger == CaptureTrigger.AUTO
        assert result.quality.overall >= engine.config.capture_threshold

        tl, tr, br, bl = result.corners
        assert tl.x < tr.x and bl.x < br.x
        assert tl.y < bl.y and tr.y < br.y

        left, top, right, bottom = DOCUMENT_BOX
        assert result.width == pytest.approx(right - left, abs=6)
        assert result.height == pytest.approx(bottom - top, abs=6)
        assert result.image.shape == (result.height, result.width, 3)

        last = analyses[-1]
        assert last.state == CaptureState.COOLDOWN
        assert last.readiness_color == 'blue'
        assert last.animation_phase == AnimationPhase.PRE_CAPTURE

    def test_document_removed_before_delay_prevents_capture(self, engine, document_frame, blank_frame):
        frames = steady(document_frame, 0, 3000)
        frames.append((3000, blank_frame))
        analyses = feed(engine, frames)
        assert analyses[-1].state == CaptureState.IDLE
        assert engine.session.capture.high_score_start_ms is None
        assert len(engine.session.history) == 0

        analyses += feed(engine, steady(document_frame, 3100, 3600))
        assert all(a.result is None for a in analyses)

    def test_blank_frame(self, engine, blank_frame):
        analysis = engine.process_frame(blank_frame, 0.0)
        assert not analysis.detected
        assert analysis.corners is None
        assert analysis.scores.stability == 0
        assert analysis.readiness_color == 'red'

    def test_skipped_frames_leave_state_untouched(self, document_frame):
        engine = AutoCaptureEngine(ScannerConfig(frame_processing_rate=2))
        engine.start()
        assert engine.process_frame(document_frame, 0.0) is None
        assert engine.session.frame_index == 0
        assert len(engine.session.history) == 0

        analysis = engine.process_frame(document_frame, 100.0)
        assert analysis.frame_index == 1
        assert len(engine.session.history) == 1
        assert engine.process_frame(document_frame, 200.0) is None

    def test_skipped_frame_mid_countdown_keeps_countdown(self, document_frame):
        engine = AutoCaptureEngine(ScannerConfig(frame_processing_rate=2))
        engine.start()
        # Processed frames land on t = 100, 300, 500, ...
        feed(engine, steady(document_frame, 0, 600))
        counting = engine.session.capture
        history = engine.session.history
        assert counting.state == CaptureState.COUNTING
        assert counting.high_score_start_ms == 300.0
        assert counting.countdown_remaining_ms == 2800.0

        assert engine.process_frame(document_frame, 600.0) is None
        assert engine.session.capture is counting
        assert engine.session.history is history

        analyses = [a for a in feed(engine, steady(document_frame, 700, 3500)) if a is not None]
        captured = [a.timestamp_ms for a in analyses if a.result is not None]
        assert captured == [3300.0]

    @pytest.mark.parametrize('frame', [None, np.zeros((0, 0, 3), dtype=np.uint8)])
    def test_invalid_frame_returns_none(self, engine, frame):
        assert engine.process_frame(frame, 0.0) is None
        assert engine.session.frame_index == 0

    def test_buffer_allocation_failure_skips_frame(self, engine, document_frame, monkeypatch):
        def fail(cls, height, width, channels):
            raise ResourceUnavailableError((height, width, channels), "out of memory")

        monkeypatch.setattr(ScratchBuffers, 'allocate', classmethod(fail))
        assert engine.process_frame(document_frame, 0.0) is None
        assert engine.session.frame_index == 0
        assert engine.session.capture.state == CaptureState.IDLE

    def test_failing_listener_does_not_break_loop(self, document_frame):
        seen = []

        def listener(result):
            seen.append(result)
            raise RuntimeError("listener exploded")

        engine = AutoCaptureEngine(ScannerConfig(capture_delay_ms=0.0), on_capture=listener)
        engine.start()
        feed(engine, steady(document_frame, 0, 100))
        analysis = engine.process_frame(document_frame, 100.0)
        assert analysis.result is not None
        assert len(seen) == 1 and seen[0] is analysis.result

    def test_large_frames_are_downscaled(self, engine):
        left, top, right, bottom = DOCUMENT_BOX
        frame = make_document_frame(
            box=(left * 2, top * 2, right * 2 + 1, bottom * 2 + 1), width=1280, height=960
        )
        analysis = engine.process_frame(frame, 0.0)
        assert analysis.detected
        assert engine.session.buffers.width == 640
        tl = analysis.corners[0]
        br = analysis.corners[2]
        assert tl.x == pytest.approx(left * 2, abs=6)
        assert tl.y == pytest.approx(top * 2, abs=6)
        assert br.x == pytest.approx(right * 2, abs=6)
        assert br.y == pytest.approx(bottom * 2, abs=6)

    def test_frame_size_change_reallocates_buffers(self, engine, document_frame):
        engine.process_frame(document_frame, 0.0)
        engine.process_frame(make_document_frame(width=320, height=240, box=(40, 30, 279, 209)), 100.0)
        assert engine.session.buffers.matches(240, 320, 3)

    def test_stop_clears_session(self, engine, document_frame):
        feed(engine, steady(document_frame, 0, 500))
        engine.stop()
        assert not engine.is_active
        status = engine.get_status()
        assert status['frames_processed'] == 0
        assert status['analysis'] is None

    def test_start_preallocates_buffers(self, config):
        engine = AutoCaptureEngine(config)
        engine.start(frame_shape=(960, 1280, 3))
        assert engine.session.buffers.matches(480, 640, 3)

    def test_context_manager(self, config, document_frame):
        with AutoCaptureEngine(config) as engine:
            assert engine.is_active
            engine.process_frame(document_frame, 0.0)
        assert not engine.is_active

    def test_run_generator(self, config, document_frame):
        engine = AutoCaptureEngine(config)
        frames = [(document_frame, float(t)) for t in range(0, 3200, 100)]
        captured = [a for a in engine.run(frames) if a.result is not None]
        assert len(captured) == 1

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigError):
            AutoCaptureEngine(ScannerConfig(capture_threshold=101))


class TestManualCapture:
    """Manual capture through the engine."""

    def test_without_document_changes_nothing(self, engine, document_frame, blank_frame):
        engine.process_frame(document_frame, 0.0)
        engine.process_frame(blank_frame, 100.0)
        before = engine.session.capture
        history = engine.session.history

        assert engine.manual_capture(200.0) is None
        assert engine.session.capture is before
        assert engine.session.history is history

        with pytest.raises(CapturePreconditionError):
            engine.capture_now(200.0)

    def test_manual_capture_of_current_frame(self, engine, document_frame):
        engine.process_frame(document_frame, 0.0)
        result = engine.capture_now(50.0)
        assert result.trigger == CaptureTrigger.MANUAL
        assert result.width == pytest.approx(DOCUMENT_BOX[2] - DOCUMENT_BOX[0], abs=6)
        assert engine.session.capture.state == CaptureState.COOLDOWN
        assert engine.session.capture.capture_count == 1

    def test_second_request_during_cooldown_rejected(self, engine, document_frame):
        engine.process_frame(document_frame, 0.0)
        engine.capture_now(50.0)
        with pytest.raises(CaptureInProgressError):
            engine.capture_now(60.0)
        assert engine.manual_capture(70.0) is None

    def test_default_timestamp_follows_frame_clock(self, engine, document_frame):
        engine.process_frame(document_frame, 0.0)
        result = engine.capture_now()
        assert result.captured_at_ms == 0.0
        assert engine.session.capture.last_capture_ms == 0.0

        analyses = feed(engine, steady(document_frame, 100, 800))
        assert all(a.state == CaptureState.COOLDOWN for a in analyses)

        after = engine.process_frame(document_frame, 800.0)
        assert after.state == CaptureState.COUNTABLE
        again = engine.capture_now()
        assert again.captured_at_ms == 800.0
        assert engine.session.capture.capture_count == 2

    def test_listener_notified(self, config, document_frame):
        seen = []
        engine = AutoCaptureEngine(config, on_capture=seen.append)
        engine.start()
        engine.process_frame(document_frame, 0.0)
        result = engine.manual_capture(10.0)
        assert len(seen) == 1 and seen[0] is result


class TestReadinessColor:
    """Overlay colour bands."""

    @pytest.mark.parametrize('overall,detected,state,expected', [
        (90, True, CaptureState.COUNTING, 'green'),
        (85, True, CaptureState.COUNTABLE, 'green'),
        (75, True, CaptureState.IDLE, 'yellow'),
        (55, True, CaptureState.IDLE, 'orange'),
        (30, True, CaptureState.IDLE, 'red'),
        (95, False, CaptureState.IDLE, 'red'),
        (95, True, CaptureState.COOLDOWN, 'blue'),
        (0, False, CaptureState.CAPTURING, 'blue'),
    ])
    def test_bands(self, overall, detected, state, expected):
        assert readiness_color(overall, detected, state, 85) == expected


class TestScannerConfig:
    """Configuration loading and validation."""

    def test_defaults(self):
        config = ScannerConfig()
        assert config.capture_threshold == 85
        assert config.capture_delay_ms == 3000.0
        assert config.min_document_area_ratio == 0.2
        assert config.max_document_area_ratio == 0.95
        assert config.stability_window == 7
        assert config.frame_processing_rate == 1
        assert config.validate() is config

    def test_from_env(self):
        config = ScannerConfig.from_env({
            'DOC_AUTOCAPTURE_CAPTURE_THRESHOLD': '90',
            'DOC_AUTOCAPTURE_AUTO_CAPTURE_ENABLED': 'false',
            'DOC_AUTOCAPTURE_CAPTURE_DELAY_MS': '1500',
            'DOC_AUTOCAPTURE_SCORE_WEIGHTS': '0.5,0.3,0.2',
            'UNRELATED': 'x'
        })
        assert config.capture_threshold == 90
        assert config.auto_capture_enabled is False
        assert config.capture_delay_ms == 1500.0
        assert config.score_weights == (0.5, 0.3, 0.2)

    def test_from_env_unparseable(self):
        with pytest.raises(ConfigError) as exc:
            ScannerConfig.from_env({'DOC_AUTOCAPTURE_CAPTURE_THRESHOLD': 'high'})
        assert exc.value.details['field'] == 'capture_threshold'

    def test_from_dict_ignores_unknown_keys(self):
        config = ScannerConfig.from_dict({'capture_threshold': 70, 'bogus': 1, 'score_weights': [0.4, 0.4, 0.2]})
        assert config.capture_threshold == 70
        assert config.score_weights == (0.4, 0.4, 0.2)

    def test_round_trip_through_dict(self):
        config = ScannerConfig(capture_threshold=80, frame_processing_rate=3)
        assert ScannerConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize('overrides', [
        {'capture_threshold': 120},
        {'capture_delay_ms': -1},
        {'min_document_area_ratio': 0.9, 'max_document_area_ratio': 0.5},
        {'blur_kernel_size': 4},
        {'sharpness_thresholds': (200.0, 50.0, 500.0)},
        {'score_weights': (0.5, 0.5, 0.5)},
        {'frame_processing_rate': 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigError):
            ScannerConfig(**overrides).validate()

    def test_config_error_payload(self):
        with pytest.raises(ConfigError) as exc:
            ScannerConfig(capture_threshold=-5).validate()
        payload = handle_error(exc.value)
        assert payload['success'] is False
        assert payload['error_code'] == 'CONFIG_INVALID'


class FakeCapture:
    """Stand-in for cv2.VideoCapture replaying in-memory frames."""

    def __init__(self, frames, opened=True):
        self._frames = list(frames)
        self._opened = opened
        self._position = 0
        self.settings = {}

    def isOpened(self):
        return self._opened

    def read(self):
        if self._position >= len(self._frames):
            return False, None
        frame = self._frames[self._position]
        self._position += 1
        return True, frame

    def get(self, prop):
        if prop == camera_module.cv2.CAP_PROP_POS_MSEC:
            return (self._position - 1) * 100.0
        if prop == camera_module.cv2.CAP_PROP_FRAME_WIDTH:
            return 640
        if prop == camera_module.cv2.CAP_PROP_FRAME_HEIGHT:
            return 480
        if prop == camera_module.cv2.CAP_PROP_FPS:
            return 10.0
        return 0.0

    def set(self, prop, value):
        self.settings[prop] = value
        return True

    def release(self):
        self._opened = False


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / 'scan.avi'
    path.write_bytes(b'placeholder')
    return str(path)


@pytest.fixture
def fake_video(monkeypatch):
    """Route cv2.VideoCapture to FakeCapture with 40 document frames."""
    frames = [make_document_frame() for _ in range(40)]
    monkeypatch.setattr(camera_module.cv2, 'VideoCapture', lambda source: FakeCapture(frames))
    return frames


class TestCameraHandler:
    """Frame source wrapper."""

    def test_missing_file_raises(self, tmp_path):
        handler = CameraHandler(str(tmp_path / 'missing.mp4'))
        with pytest.raises(CameraNotFoundError):
            handler.initialize()

    def test_read_before_initialize_raises(self):
        with pytest.raises(CameraNotInitializedError):
            CameraHandler(0).get_frame()

    def test_file_frames_end_at_eof(self, video_file, fake_video):
        with CameraHandler(video_file) as handler:
            assert handler.is_file
            assert handler.actual_width == 640
            frames = list(handler.frames())
        assert len(frames) == len(fake_video)
        assert [ts for _, ts in frames[:3]] == [0.0, 100.0, 200.0]
        assert not handler.is_opened()

    def test_max_frames(self, video_file, fake_video):
        with CameraHandler(video_file) as handler:
            assert len(list(handler.frames(max_frames=5))) == 5

    def test_device_is_configured(self, monkeypatch):
        capture = FakeCapture([make_blank_frame()])
        monkeypatch.setattr(camera_module.cv2, 'VideoCapture', lambda source: capture)
        handler = CameraHandler('0')
        handler.initialize()
        assert not handler.is_file
        assert capture.settings[camera_module.cv2.CAP_PROP_FRAME_WIDTH] == 1280
        handler.release()


class TestCommandLine:
    """python -m doc_autocapture"""

    def test_parser_overrides(self, monkeypatch):
        monkeypatch.delenv('DOC_AUTOCAPTURE_CAPTURE_THRESHOLD', raising=False)
        args = cli.build_parser().parse_args(['clip.mp4', '--threshold', '75', '--rate', '2', '--no-auto'])
        config = cli.config_from_args(args)
        assert args.source == 'clip.mp4'
        assert config.capture_threshold == 75
        assert config.frame_processing_rate == 2
        assert config.auto_capture_enabled is False

    def test_invalid_override_exit_code(self):
        assert cli.main(['clip.mp4', '--threshold', '150']) == 2

    def test_missing_source_exit_code(self, tmp_path):
        assert cli.main([str(tmp_path / 'missing.mp4')]) == 1

    def test_scans_video_until_capture(self, video_file, fake_video, caplog):
        caplog.set_level('INFO')
        assert cli.main([video_file, '--max-captures', '1']) == 0
        assert 'Finished with 1 capture(s)' in caplog.text


class TestScannerAPI:
    """HTTP adapter"""

    def test_health_check(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'healthy'
        assert data['service'] == 'doc-autocapture'

    def test_config(self, client):
        data = client.get('/api/config').get_json()
        assert data['success'] is True
        assert data['config']['capture_threshold'] == 85

    def test_frame_missing_image(self, client):
        response = client.post('/api/frames', json={})
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'NO_IMAGE'

    def test_frame_non_json_body(self, client):
        response = client.post('/api/frames', data='not json', content_type='text/plain')
        assert response.status_code == 400

    def test_frame_undecodable_image(self, client):
        response = client.post('/api/frames', json={'image': 'aGVsbG8gd29ybGQ='})
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_FRAME'

    def test_frame_bad_timestamp(self, client, document_frame):
        response = client.post('/api/frames', json={
            'image': encode_frame(document_frame),
            'timestamp_ms': 'soon'
        })
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_TIMESTAMP'

    def test_frame_analysis(self, client, document_frame):
        response = client.post('/api/frames', json={
            'image': 'data:image/png;base64,' + encode_frame(document_frame),
            'timestamp_ms': 0
        })
        assert response.status_code == 200
        data = response.get_json()
        assert data['processed'] is True
        analysis = data['analysis']
        assert analysis['detected'] is True
        assert len(analysis['corners']) == 4
        assert analysis['state'] == 'idle'
        assert analysis['captured'] is False

    def test_auto_capture_over_http(self, client, document_frame):
        payload = encode_frame(document_frame)
        captured = []
        for t in range(0, 3200, 100):
            data = client.post('/api/frames', json={'image': payload, 'timestamp_ms': t}).get_json()
            if data['analysis']['captured']:
                captured.append(data['analysis'])
        assert len(captured) == 1
        result = captured[0]['result']
        assert result['trigger'] == 'auto'
        assert result['image'].startswith('data:image/png;base64,')

    def test_manual_capture_without_document(self, client):
        response = client.post('/api/capture', json={})
        assert response.status_code == 409
        assert response.get_json()['error_code'] == 'NO_DOCUMENT'

    def test_manual_capture(self, client, document_frame):
        client.post('/api/frames', json={'image': encode_frame(document_frame), 'timestamp_ms': 0})
        response = client.post('/api/capture', json={'timestamp_ms': 10})
        assert response.status_code == 200
        result = response.get_json()['result']
        assert result['trigger'] == 'manual'

        again = client.post('/api/capture', json={'timestamp_ms': 20})
        assert again.status_code == 409
        assert again.get_json()['error_code'] == 'CAPTURE_IN_PROGRESS'

    def test_manual_capture_without_timestamp_cools_down_on_frame_clock(self, client, document_frame):
        payload = encode_frame(document_frame)
        client.post('/api/frames', json={'image': payload, 'timestamp_ms': 0})
        assert client.post('/api/capture', json={}).status_code == 200

        states = []
        for t in range(100, 1000, 100):
            data = client.post('/api/frames', json={'image': payload, 'timestamp_ms': t}).get_json()
            states.append(data['analysis']['state'])
        assert states[:7] == ['cooldown'] * 7
        assert states[7] == 'countable'

        response = client.post('/api/capture', json={})
        assert response.status_code == 200
        assert response.get_json()['result']['captured_at_ms'] == 900

    @pytest.mark.parametrize('timestamp', ['soon', True, [1], {'ms': 1}])
    def test_manual_capture_bad_timestamp(self, client, document_frame, timestamp):
        payload = encode_frame(document_frame)
        client.post('/api/frames', json={'image': payload, 'timestamp_ms': 0})

        response = client.post('/api/capture', json={'timestamp_ms': timestamp})
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_TIMESTAMP'

        # Rejected request leaves the session usable
        data = client.post('/api/frames', json={'image': payload, 'timestamp_ms': 100}).get_json()
        assert data['processed'] is True
        assert data['analysis']['state'] == 'countable'
        assert client.get('/api/status').get_json()['captures'] == 0

    def test_frame_boolean_timestamp_rejected(self, client, document_frame):
        response = client.post('/api/frames', json={
            'image': encode_frame(document_frame),
            'timestamp_ms': True
        })
        assert response.status_code == 400
        assert response.get_json()['error_code'] == 'INVALID_TIMESTAMP'

    def test_status_and_reset(self, client, document_frame):
        client.post('/api/frames', json={'image': encode_frame(document_frame), 'timestamp_ms': 0})
        status = client.get('/api/status').get_json()
        assert status['frames_processed'] == 1
        assert status['analysis']['detected'] is True

        assert client.post('/api/session/reset').status_code == 200
        status = client.get('/api/status').get_json()
        assert status['frames_processed'] == 0
        assert status['active'] is True

    def test_unknown_route(self, client):
        assert client.get('/api/nope').status_code == 404
