"""
Error taxonomy for the caption rendering pipeline.

Every failure a render job can end with is a RenderError subclass. Each
carries a short user-facing message and the HTTP status the API maps it to;
full diagnostic detail stays in the logs.
"""

from typing import Any, Optional


class RenderError(Exception):
    """Base exception for all render pipeline failures."""

    code: str = "RENDER_FAILED"
    status_code: int = 500
    user_message: str = "Video rendering failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.user_message
        super().__init__(self.message)


class RenderValidationError(RenderError):
    """Exception raised when a render request has a bad or empty shape."""

    code = "VALIDATION_ERROR"
    status_code = 400
    user_message = "Invalid request body"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def details(self) -> list[dict[str, Any]]:
        loc = ["body"] + ([self.field] if self.field else [])
        return [{"loc": loc, "msg": self.message, "type": "value_error"}]


class EmptyTimelineError(RenderValidationError):
    """Exception raised when no caption segments remain after normalization."""

    code = "EMPTY_TIMELINE"
    user_message = "At least one caption segment with text is required"


class ConfigurationError(RenderError):
    """Exception raised when the encoder or font catalog is unavailable."""

    code = "ENCODER_UNAVAILABLE"
    status_code = 503
    user_message = "Video encoder is not available"


class MediaFetchError(RenderError):
    """Exception raised when the source media is unreachable or unreadable."""

    code = "MEDIA_FETCH_FAILED"
    status_code = 502
    user_message = "Source media could not be fetched"


class EncoderLaunchError(RenderError):
    """Exception raised when the encoder subprocess cannot be started."""

    code = "ENCODER_UNAVAILABLE"
    status_code = 503
    user_message = "Video encoder could not be started"


class EncoderRuntimeError(RenderError):
    """Exception raised when the encoder exits with a non-zero status."""

    code = "ENCODER_FAILED"
    user_message = "Video encoding failed"

    def __init__(self, returncode: int, diagnostics: str = ""):
        super().__init__(f"Encoder exited with code {returncode}")
        self.returncode = returncode
        self.diagnostics = diagnostics


class CaptureError(RenderError):
    """Exception raised when a single overlay frame fails to render or capture."""

    code = "CAPTURE_FAILED"
    user_message = "Animation frame capture failed"

    def __init__(self, frame_index: int, reason: str = ""):
        message = f"Frame {frame_index} capture failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.frame_index = frame_index


class AudioMuxError(RenderError):
    """Exception raised when source audio cannot be muxed (recoverable)."""

    code = "AUDIO_MUX_FAILED"
    user_message = "Source audio could not be added"


class RenderCancelledError(RenderError):
    """Exception raised when a job is cancelled by the user or a timeout."""

    code = "CANCELLED"
    status_code = 409
    user_message = "Render was cancelled"

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Render cancelled: {reason}")
        self.reason = reason
