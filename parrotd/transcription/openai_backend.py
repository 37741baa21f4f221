"""Cloud transcription backend using the OpenAI audio API."""

import logging
from typing import Any, Dict, Optional

import openai
from openai import AsyncOpenAI

from ..exceptions import BackendError, ConfigurationError
from ..models import Segment, TranscriptionOptions, TranscriptionResult, Word
from .base import TranscriptionBackend, seconds_to_ms

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "whisper-1"

# Models that only return plain json (no language, duration or timings)
JSON_ONLY_MODELS = {"gpt-4o-transcribe", "gpt-4o-mini-transcribe"}


def _error_message(error: openai.APIError) -> str:
    """Extract the provider's own message from an API error."""
    body = error.body
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
        if body.get("message"):
            return str(body["message"])
    return error.message or str(error)


class OpenAIBackend(TranscriptionBackend):
    """Transcribes audio with OpenAI's hosted speech-to-text models."""

    name = "OpenAI Whisper"

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        """Initialize the backend.

        Args:
            api_key: OpenAI API key.
            model: Model identifier (whisper-1 or gpt-4o-transcribe).
            base_url: Optional base URL of an API-compatible server.

        Raises:
            ConfigurationError: If no API key is given.
        """
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key not configured. Please add it in Settings."
            )
        self.model = model or DEFAULT_MODEL
        self._base_url = base_url
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    def reconfigure(
        self, credentials: Optional[str] = None, model: Optional[str] = None
    ) -> None:
        if credentials:
            self._client = AsyncOpenAI(api_key=credentials, base_url=self._base_url)
        if model:
            self.model = model
        logger.info(f"OpenAI backend reconfigured (model={self.model})")

    def _build_params(
        self, audio: bytes, options: TranscriptionOptions
    ) -> Dict[str, Any]:
        verbose = self.model not in JSON_ONLY_MODELS
        params: Dict[str, Any] = {
            "file": ("audio.wav", audio, "audio/wav"),
            "model": self.model,
            "response_format": "verbose_json" if verbose else "json",
        }
        if options.language:
            params["language"] = options.language
        if options.prompt:
            params["prompt"] = options.prompt
        if options.temperature is not None:
            params["temperature"] = options.temperature
        if options.word_timestamps and verbose:
            params["timestamp_granularities"] = ["word", "segment"]
        return params

    @staticmethod
    def _to_result(response: Any) -> TranscriptionResult:
        """Normalize a verbose_json (or plain json) response."""
        segments = getattr(response, "segments", None)
        words = getattr(response, "words", None)

        return TranscriptionResult(
            text=(getattr(response, "text", "") or "").strip(),
            language=getattr(response, "language", None) or "unknown",
            duration_ms=seconds_to_ms(getattr(response, "duration", None)),
            segments=[
                Segment(
                    start_ms=seconds_to_ms(s.start),
                    end_ms=seconds_to_ms(s.end),
                    text=s.text,
                )
                for s in segments
            ]
            if segments
            else None,
            words=[
                Word(
                    start_ms=seconds_to_ms(w.start),
                    end_ms=seconds_to_ms(w.end),
                    word=w.word,
                )
                for w in words
            ]
            if words
            else None,
        )

    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions
    ) -> TranscriptionResult:
        params = self._build_params(audio, options)
        logger.info(
            f"Sending {len(audio)} bytes to OpenAI (model={self.model}, "
            f"language={options.language or 'auto'})"
        )

        try:
            response = await self._client.audio.transcriptions.create(**params)
        except openai.APIError as e:
            message = _error_message(e)
            logger.error(f"OpenAI transcription failed: {message}")
            raise BackendError(message) from e
        except Exception as e:
            logger.exception("Unexpected error calling OpenAI")
            raise BackendError(str(e)) from e

        try:
            result = self._to_result(response)
        except ValueError as e:
            raise BackendError(f"Malformed transcription response: {e}") from e

        logger.info(f"Transcribed [{result.language}] {result.duration_ms}ms of audio")
        return result
