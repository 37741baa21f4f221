"""Exceptions raised by the parrotd daemon.

Every exception's ``str()`` is a human-readable message that can be shown to
the user as-is.
"""


class ParrotError(Exception):
    """Base exception for all parrotd errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


# Capture errors
class CaptureError(ParrotError):
    """Base exception for audio capture errors."""


class DeviceError(CaptureError):
    """Raised when the capture device cannot be opened or fails mid-stream."""


class DeviceEnumerationFailed(CaptureError):
    """Raised (or signalled) when input devices cannot be listed."""


class AlreadyRecording(CaptureError):
    """Raised when a capture session is started while one is active."""

    def __init__(self, message: str = "Already recording"):
        super().__init__(message)


class NotRecording(CaptureError):
    """Raised when a capture session is stopped while none is active."""

    def __init__(self, message: str = "Not recording"):
        super().__init__(message)


# Configuration errors
class ConfigurationError(ParrotError):
    """Raised when the daemon is missing configuration it needs."""


class UnconfiguredBackend(ConfigurationError):
    """Raised when a backend name has no registered instance."""

    def __init__(self, name: str):
        super().__init__(f"Transcription service '{name}' not configured")
        self.name = name


class NoPrimaryBackend(ConfigurationError):
    """Raised when transcription is requested without a primary backend."""

    def __init__(self, name: str):
        super().__init__(
            f"Transcription service '{name}' not configured. "
            "Please configure it in Settings."
        )
        self.name = name


# Backend errors
class BackendError(ParrotError):
    """Raised when a transcription provider fails (network, auth, quota...)."""


# Output errors
class OutputError(ParrotError):
    """Raised when a clipboard or paste command fails."""


class PasteUnavailable(OutputError):
    """Raised when synthetic paste is not possible on this host."""


# Persistence errors
class PersistenceError(ParrotError):
    """Raised when the history store cannot be read or written."""


# State machine errors
class InvalidTransition(ParrotError):
    """Raised when an event is not valid in the current recording state."""

    def __init__(self, state: str, event: str):
        super().__init__(f"Cannot {event} while {state}")
        self.state = state
        self.event = event
