"""
Pytest configuration and fixtures for document auto-capture tests.
"""
import base64

import cv2
import numpy as np
import pytest

from doc_autocapture.auto_capture import AutoCaptureEngine
from doc_autocapture.config import ScannerConfig

FRAME_WIDTH = 640
FRAME_HEIGHT = 480
BACKGROUND = 60
PAPER = 200
INK = 30

# Document rectangle used by default: (left, top, right, bottom), inclusive
DOCUMENT_BOX = (120, 90, 519, 389)


def draw_document(frame, box, paper=PAPER, ink=INK):
    """Draw a bright page with dark text-like stripes into ``frame``."""
    left, top, right, bottom = box
    cv2.rectangle(frame, (left, top), (right, bottom), (paper, paper, paper), thickness=-1)
    margin_x = max(4, (right - left) // 13)
    margin_y = max(4, (bottom - top) // 15)
    for y in range(top + margin_y, bottom - margin_y, 12):
        cv2.rectangle(
            frame,
            (left + margin_x, y),
            (right - margin_x, y + 2),
            (ink, ink, ink),
            thickness=-1
        )
    return frame


def make_document_frame(box=DOCUMENT_BOX, width=FRAME_WIDTH, height=FRAME_HEIGHT, offset=(0, 0)):
    """Sharp, evenly lit BGR frame with one document."""
    frame = np.full((height, width, 3), BACKGROUND, dtype=np.uint8)
    dx, dy = offset
    left, top, right, bottom = box
    return draw_document(frame, (left + dx, top + dy, right + dx, bottom + dy))


def make_blank_frame(width=FRAME_WIDTH, height=FRAME_HEIGHT):
    """Frame with nothing to detect."""
    return np.full((height, width, 3), BACKGROUND, dtype=np.uint8)


def encode_frame(frame):
    """Base64 PNG payload as a browser front-end would send it."""
    ok, buffer = cv2.imencode('.png', frame)
    assert ok
    return base64.b64encode(buffer.tobytes()).decode('ascii')


@pytest.fixture
def config():
    """Default configuration."""
    return ScannerConfig()


@pytest.fixture
def document_frame():
    return make_document_frame()


@pytest.fixture
def blank_frame():
    return make_blank_frame()


@pytest.fixture
def engine(config):
    """Started engine with default configuration."""
    engine = AutoCaptureEngine(config)
    engine.start()
    yield engine
    engine.stop()


@pytest.fixture
def app(config):
    """Create Flask test application."""
    from doc_autocapture.app import create_app
    flask_app = create_app(config=config)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
