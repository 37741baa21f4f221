"""Transcription backends and their manager."""

from .base import TranscriptionBackend
from .manager import TranscriptionManager
from .openai_backend import OpenAIBackend
from .whisper import WhisperBackend

__all__ = ["OpenAIBackend", "TranscriptionBackend", "TranscriptionManager", "WhisperBackend"]
