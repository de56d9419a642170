"""
Scanner Errors
One exception hierarchy for detection, capture and frame-source failures
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base class; carries a machine-readable code and JSON-ready details"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Error payload for API responses"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigError(ScannerError):
    """Invalid scanner configuration"""
    def __init__(self, field, value, reason):
        super().__init__(
            message=f"Invalid configuration for '{field}': {reason}",
            error_code="CONFIG_INVALID",
            details={
                "field": field,
                "value": value,
                "reason": reason
            }
        )


# Frame source errors - Camera
class CameraError(ScannerError):
    """Frame source errors"""
    pass


class CameraNotFoundError(CameraError):
    """Video file or device does not exist"""
    def __init__(self, source):
        super().__init__(
            message=f"Video source not found: {source}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "source": source,
                "suggestion": "Pass an existing video path or a valid device index"
            }
        )


class CameraInitError(CameraError):
    """Video source exists but could not be opened"""
    def __init__(self, source, reason=None):
        super().__init__(
            message=f"Failed to open video source {source}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "source": source,
                "reason": reason,
                "suggestion": "Check codec support, permissions, or whether another process holds the device"
            }
        )


class CameraNotInitializedError(CameraError):
    """Frame requested before initialize()"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call initialize() before reading frames"
            }
        )


class FrameCaptureError(CameraError):
    """Read from an open source failed"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "The stream may have ended or the device was unplugged"
            }
        )


# Processing errors - detection, scoring, rectification
class ProcessingError(ScannerError):
    """Per-frame pipeline errors"""
    pass


class InvalidFrameError(ProcessingError):
    """Frame could not be decoded or has no pixels"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid frame: {reason}",
            error_code="INVALID_FRAME",
            details={
                "reason": str(reason),
                "suggestion": "Send a non-empty BGR, BGRA or grayscale image"
            }
        )


class InvalidGeometryError(ProcessingError):
    """Corner set cannot describe a document"""
    def __init__(self, reason, corner_count=None):
        super().__init__(
            message=f"Invalid document geometry: {reason}",
            error_code="INVALID_GEOMETRY",
            details={
                "reason": reason,
                "corner_count": corner_count
            }
        )


class ResourceUnavailableError(ProcessingError):
    """Scratch buffers could not be allocated for a frame"""
    def __init__(self, shape, reason):
        super().__init__(
            message=f"Could not allocate frame buffers for shape {shape}",
            error_code="RESOURCE_UNAVAILABLE",
            details={
                "shape": list(shape),
                "reason": str(reason)
            }
        )


# Capture errors - state machine preconditions
class CaptureError(ScannerError):
    """Capture request errors"""
    pass


class CapturePreconditionError(CaptureError):
    """Manual capture requested without a detected document"""
    def __init__(self):
        super().__init__(
            message="No document detected in the current frame",
            error_code="NO_DOCUMENT",
            details={
                "suggestion": "Keep all four document edges inside the frame"
            }
        )


class CaptureInProgressError(CaptureError):
    """A capture is already in flight or cooling down"""
    def __init__(self, state):
        super().__init__(
            message="A capture is already in progress",
            error_code="CAPTURE_IN_PROGRESS",
            details={
                "state": state
            }
        )


# Response helper
def handle_error(error, log_message=None):
    """
    Log an exception and turn it into a response payload

    Args:
        error: Any exception
        log_message: Extra message logged first

    Returns:
        dict: ScannerError.to_dict() shape, also for unexpected errors
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        logger.warning(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"{error.error_code} details: {error.details}")
        return error.to_dict()

    logger.exception(f"Unhandled {type(error).__name__}: {error}")
    return {
        "success": False,
        "error": "Internal scanner error",
        "error_code": "INTERNAL_ERROR",
        "details": {
            "exception": type(error).__name__,
            "message": str(error)
        }
    }
