"""Local transcription backend using faster-whisper."""

import asyncio
import logging
import threading
from typing import Any, Dict, Optional

import numpy as np
from faster_whisper import WhisperModel

from ..config import LocalWhisperConfig
from ..exceptions import BackendError
from ..models import Segment, TranscriptionOptions, TranscriptionResult, Word
from ..wav_encoder import decode, pcm16_to_float32
from .base import TranscriptionBackend, seconds_to_ms

logger = logging.getLogger(__name__)

# Whisper models operate on 16kHz mono audio
EXPECTED_SAMPLE_RATE = 16000


class WhisperBackend(TranscriptionBackend):
    """Transcribes audio on this machine with a faster-whisper model."""

    name = "Local Whisper"

    def __init__(self, config: Optional[LocalWhisperConfig] = None, model: Optional[str] = None):
        """Initialize the backend.

        The model is loaded lazily on the first transcription.

        Args:
            config: Local model configuration.
            model: Optional model identifier overriding the configured one.
        """
        self.whisper_config = config or LocalWhisperConfig()
        if model:
            self.whisper_config = self.whisper_config.model_copy(update={"model": model})

        self._model: Optional[WhisperModel] = None
        self._model_lock = threading.Lock()

    def reconfigure(
        self, credentials: Optional[str] = None, model: Optional[str] = None
    ) -> None:
        if model and model != self.whisper_config.model:
            logger.info(f"Switching local Whisper model to '{model}'")
            with self._model_lock:
                self.whisper_config = self.whisper_config.model_copy(
                    update={"model": model}
                )
                self._model = None

    def load_model(self) -> WhisperModel:
        """Load the Whisper model if it is not loaded yet.

        Raises:
            BackendError: If the model fails to load.
        """
        with self._model_lock:
            if self._model is not None:
                return self._model

            try:
                logger.info(
                    f"Loading Whisper model '{self.whisper_config.model}' "
                    f"(Device: {self.whisper_config.device}, "
                    f"Compute: {self.whisper_config.compute_type}, "
                    f"CPU threads: {self.whisper_config.cpu_threads})"
                )
                self._model = WhisperModel(
                    self.whisper_config.model,
                    device=self.whisper_config.device,
                    compute_type=self.whisper_config.compute_type,
                    cpu_threads=self.whisper_config.cpu_threads,
                )
                logger.info("Whisper model loaded successfully")
                return self._model

            except Exception as e:
                logger.exception(f"Failed to load Whisper model: {e}")
                self._model = None
                raise BackendError(
                    f"Failed to load Whisper model '{self.whisper_config.model}': {e}"
                ) from e

    def _run_transcription(
        self, audio: np.ndarray, options: TranscriptionOptions
    ) -> TranscriptionResult:
        """Run transcription; called in a worker thread."""
        model = self.load_model()

        kwargs: Dict[str, Any] = {
            "language": options.language,
            "beam_size": self.whisper_config.beam_size,
            "initial_prompt": options.prompt,
            "word_timestamps": options.word_timestamps,
            "vad_filter": False,
        }
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        try:
            segments_generator, info = model.transcribe(audio, **kwargs)
            # The generator runs the decoding lazily
            raw_segments = list(segments_generator)
        except Exception as e:
            logger.exception("Error during transcription")
            raise BackendError(str(e)) from e

        segments = [
            Segment(
                start_ms=seconds_to_ms(seg.start),
                end_ms=seconds_to_ms(seg.end),
                text=seg.text.strip(),
            )
            for seg in raw_segments
        ]

        words = None
        if options.word_timestamps:
            words = [
                Word(
                    start_ms=seconds_to_ms(w.start),
                    end_ms=seconds_to_ms(w.end),
                    word=w.word,
                )
                for seg in raw_segments
                for w in (seg.words or [])
            ]

        return TranscriptionResult(
            text=" ".join(seg.text for seg in segments).strip(),
            language=info.language or "unknown",
            duration_ms=seconds_to_ms(info.duration),
            segments=segments or None,
            words=words or None,
        )

    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions
    ) -> TranscriptionResult:
        try:
            wav = decode(audio)
        except ValueError as e:
            raise BackendError(f"Unsupported audio: {e}") from e

        if (
            wav.sample_rate != EXPECTED_SAMPLE_RATE
            or wav.channels != 1
            or wav.bits_per_sample != 16
        ):
            raise BackendError(
                f"Unsupported audio format: {wav.sample_rate}Hz, "
                f"{wav.channels} channel(s), {wav.bits_per_sample}-bit"
            )

        samples = pcm16_to_float32(wav.pcm)
        logger.info(
            f"Transcribing {len(samples) / EXPECTED_SAMPLE_RATE:.1f}s locally "
            f"(model={self.whisper_config.model})"
        )

        result = await asyncio.to_thread(self._run_transcription, samples, options)
        logger.info(f"Transcribed [{result.language}]: {result.text[:100]}")
        return result
