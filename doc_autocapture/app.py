"""
Document Auto-Capture Web Service
Thin HTTP adapter around the frame loop for browser or kiosk front-ends.

Provides REST API for:
- Submitting frames and receiving per-frame overlay data
- Manual capture of the current document
- Session reset (stream teardown)
"""
import base64
import binascii
import logging
import math
import threading
from typing import Optional

import cv2
import numpy as np
from flask import Flask, jsonify, request
from flask_cors import CORS

from .auto_capture import AutoCaptureEngine
from .config import ScannerConfig
from .error_handlers import (
    CaptureError,
    InvalidFrameError,
    ScannerError,
    handle_error,
)

logger = logging.getLogger(__name__)


def is_valid_timestamp(value) -> bool:
    """Optional frame-clock timestamp: None or a finite number (bools rejected)."""
    if value is None:
        return True
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def invalid_timestamp_response():
    return jsonify({
        "success": False,
        "error": "timestamp_ms must be a number",
        "error_code": "INVALID_TIMESTAMP"
    }), 400


def decode_image(payload: str) -> np.ndarray:
    """
    Decode a base64 (optionally data-URL) image into a BGR frame.

    Raises:
        InvalidFrameError: If the payload is not a decodable image
    """
    if not isinstance(payload, str) or not payload:
        raise InvalidFrameError("image must be a non-empty base64 string")
    if payload.startswith('data:'):
        payload = payload.split(',', 1)[-1]
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise InvalidFrameError(f"bad base64 data ({e})") from e

    frame = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        raise InvalidFrameError("image data could not be decoded")
    return frame


class ScannerCoordinator:
    """
    Owns the engine for the HTTP layer.

    Flask may serve requests from several threads; the lock keeps the frame
    loop single-threaded.
    """

    def __init__(self, engine: AutoCaptureEngine):
        self.engine = engine
        self.lock = threading.Lock()
        logger.info("ScannerCoordinator initialized")

    def submit_frame(self, frame: np.ndarray, timestamp_ms: Optional[float]):
        with self.lock:
            return self.engine.process_frame(frame, timestamp_ms)

    def capture(self, timestamp_ms: Optional[float]):
        with self.lock:
            return self.engine.capture_now(timestamp_ms)

    def reset(self):
        with self.lock:
            self.engine.stop()
            self.engine.start()

    def status(self):
        with self.lock:
            return self.engine.get_status()


def create_app(config: Optional[ScannerConfig] = None, engine: Optional[AutoCaptureEngine] = None) -> Flask:
    """
    Build the Flask application.

    Args:
        config: Scanner configuration (environment defaults if omitted)
        engine: Pre-built engine, mainly for tests

    Returns:
        Flask: Configured application
    """
    if engine is None:
        engine = AutoCaptureEngine(config or ScannerConfig.from_env())
    scanner = ScannerCoordinator(engine)

    app = Flask(__name__)
    app.config['SCANNER'] = scanner

    # Enable CORS for cross-origin requests from the capture front-end
    CORS(app, origins=["*"])

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for service discovery and load balancers"""
        return jsonify({
            "status": "healthy",
            "service": "doc-autocapture",
            "version": "1.0.0"
        })

    @app.route("/api/config", methods=["GET"])
    def api_config():
        """Active scanner configuration"""
        return jsonify({"success": True, "config": scanner.engine.config.to_dict()})

    @app.route("/api/frames", methods=["POST"])
    def api_submit_frame():
        """
        Analyze one frame.

        Request:
            {"image": "<base64 or data URL>", "timestamp_ms": 1234.5}

        Response:
            {"success": true, "processed": true, "analysis": {...}}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get('image'):
            return jsonify({
                "success": False,
                "error": "No image provided",
                "error_code": "NO_IMAGE"
            }), 400

        timestamp_ms = data.get('timestamp_ms')
        if not is_valid_timestamp(timestamp_ms):
            return invalid_timestamp_response()

        try:
            frame = decode_image(data['image'])
        except InvalidFrameError as e:
            return jsonify(handle_error(e)), 400

        analysis = scanner.submit_frame(frame, timestamp_ms)
        if analysis is None:
            return jsonify({"success": True, "processed": False})

        return jsonify({
            "success": True,
            "processed": True,
            "analysis": analysis.to_dict(include_image=True)
        })

    @app.route("/api/capture", methods=["POST"])
    def api_capture():
        """
        Manual capture of the most recent frame.

        Request:
            {"timestamp_ms": 1234.5}   (optional, frame clock)
        """
        logger.info("Manual capture request received")
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}

        timestamp_ms = data.get('timestamp_ms')
        if not is_valid_timestamp(timestamp_ms):
            return invalid_timestamp_response()

        try:
            result = scanner.capture(timestamp_ms)
        except CaptureError as e:
            return jsonify(handle_error(e)), 409
        except ScannerError as e:
            return jsonify(handle_error(e)), 422
        return jsonify({"success": True, "result": result.to_dict(include_image=True)})

    @app.route("/api/status", methods=["GET"])
    def api_status():
        """Latest frame analysis and session counters"""
        return jsonify({"success": True, **scanner.status()})

    @app.route("/api/session/reset", methods=["POST"])
    def api_reset():
        """Tear down and restart the scan session"""
        scanner.reset()
        logger.info("Scan session reset via API")
        return jsonify({"success": True})

    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.info("Flask server starting")
    create_app().run(host='0.0.0.0', port=5000, debug=True, threaded=True)
