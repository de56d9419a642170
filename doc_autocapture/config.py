"""
Scanner Configuration
Thresholds and timings for detection, scoring and auto-capture.
"""
import logging
import math
import os
from dataclasses import dataclass, asdict, fields
from typing import Dict, Optional, Tuple

from .error_handlers import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOC_AUTOCAPTURE_"


@dataclass
class ScannerConfig:
    """Configuration for the auto-capture engine."""
    # Capture settings
    capture_threshold: int = 85          # Overall score needed to count down
    capture_delay_ms: float = 3000.0     # Time above threshold before capture
    auto_capture_enabled: bool = True
    cooldown_ms: float = 800.0           # UI feedback window after a capture

    # Detection settings
    min_document_area_ratio: float = 0.2
    max_document_area_ratio: float = 0.95
    canny_sigma: float = 0.33
    blur_kernel_size: int = 5
    approx_epsilon_ratio: float = 0.02   # Fraction of contour perimeter
    min_quad_area_px: float = 1000.0
    min_angle_degrees: float = 20.0

    # Stability settings
    stability_window: int = 7            # Corner history capacity
    stability_low_px: float = 5.0        # Movement at or below -> 100
    stability_high_px: float = 50.0      # Movement at or above -> 0

    # Sharpness: Laplacian variance floor, midpoint, ceiling
    sharpness_thresholds: Tuple[float, float, float] = (50.0, 200.0, 500.0)

    # Fusion weights: stability, sharpness, lighting
    score_weights: Tuple[float, float, float] = (0.40, 0.35, 0.25)

    # Frame loop settings
    frame_processing_rate: int = 1       # Process every Nth frame
    processing_max_width: int = 640      # Downscale wider frames for analysis

    # Frame source
    camera_index: int = 0

    def to_dict(self) -> Dict:
        """Convert settings to dictionary."""
        data = asdict(self)
        data['sharpness_thresholds'] = list(self.sharpness_thresholds)
        data['score_weights'] = list(self.score_weights)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScannerConfig':
        """Create settings from dictionary, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for key in ('sharpness_thresholds', 'score_weights'):
            if key in known:
                known[key] = tuple(float(v) for v in known[key])
        config = cls(**known)
        config.validate()
        return config

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'ScannerConfig':
        """
        Build configuration from DOC_AUTOCAPTURE_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ (for tests)

        Returns:
            ScannerConfig: Validated configuration
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _parse_env_value(f.name, f.default, raw)
        config = cls(**values)
        config.validate()
        if values:
            logger.info(f"Loaded configuration overrides from environment: {sorted(values)}")
        return config

    def validate(self) -> 'ScannerConfig':
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid field
        """
        if not 0 <= self.capture_threshold <= 100:
            raise ConfigError('capture_threshold', self.capture_threshold, "must be within 0-100")
        if self.capture_delay_ms < 0:
            raise ConfigError('capture_delay_ms', self.capture_delay_ms, "must not be negative")
        if self.cooldown_ms < 0:
            raise ConfigError('cooldown_ms', self.cooldown_ms, "must not be negative")
        if not 0 <= self.min_document_area_ratio < self.max_document_area_ratio <= 1:
            raise ConfigError(
                'min_document_area_ratio',
                (self.min_document_area_ratio, self.max_document_area_ratio),
                "area ratios must satisfy 0 <= min < max <= 1"
            )
        if self.blur_kernel_size < 1 or self.blur_kernel_size % 2 == 0:
            raise ConfigError('blur_kernel_size', self.blur_kernel_size, "must be a positive odd number")
        if not 0 <= self.min_angle_degrees < 90:
            raise ConfigError('min_angle_degrees', self.min_angle_degrees, "must be within 0-90")
        if self.stability_window < 2:
            raise ConfigError('stability_window', self.stability_window, "must hold at least 2 entries")
        if self.stability_low_px >= self.stability_high_px:
            raise ConfigError('stability_low_px', self.stability_low_px, "must be below stability_high_px")
        low, mid, high = self.sharpness_thresholds
        if not low < mid < high:
            raise ConfigError('sharpness_thresholds', self.sharpness_thresholds, "must be strictly increasing")
        if len(self.score_weights) != 3 or any(w < 0 for w in self.score_weights):
            raise ConfigError('score_weights', self.score_weights, "need three non-negative weights")
        if not math.isclose(sum(self.score_weights), 1.0, abs_tol=1e-6):
            raise ConfigError('score_weights', self.score_weights, "weights must sum to 1")
        if self.frame_processing_rate < 1:
            raise ConfigError('frame_processing_rate', self.frame_processing_rate, "must be at least 1")
        if self.processing_max_width < 16:
            raise ConfigError('processing_max_width', self.processing_max_width, "must be at least 16 pixels")
        return self


def _parse_env_value(name, default, raw: str):
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ('1', 'true', 'yes', 'on')
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            return tuple(float(part) for part in raw.split(','))
    except ValueError as e:
        raise ConfigError(name, raw, f"cannot parse value ({e})") from e
    return raw
