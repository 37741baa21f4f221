"""Abstract interface for transcription backends."""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import TranscriptionOptions, TranscriptionResult


def seconds_to_ms(seconds: Optional[float]) -> int:
    """Convert a provider timestamp in seconds to whole milliseconds."""
    if not seconds or seconds < 0:
        return 0
    return int(round(seconds * 1000))


class TranscriptionBackend(ABC):
    """Abstract base class for speech-to-text backends.

    A backend wraps one provider and translates between the provider's own
    option and response shapes and TranscriptionOptions/TranscriptionResult.
    """

    name: str = "Unknown"

    @abstractmethod
    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions
    ) -> TranscriptionResult:
        """Transcribe an encoded audio container.

        Args:
            audio: A WAV container holding 16kHz mono s16 PCM.
            options: Per-request transcription options.

        Returns:
            The normalized transcription result.

        Raises:
            BackendError: If the provider fails.
        """

    def reconfigure(
        self, credentials: Optional[str] = None, model: Optional[str] = None
    ) -> None:
        """Update credentials and/or model in place.

        Backends that hold no reconfigurable state may keep this no-op.
        """
