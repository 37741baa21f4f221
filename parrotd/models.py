"""Data models shared by the parrotd components."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AudioDevice(BaseModel):
    """Snapshot of a host audio input device."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    is_default: bool = False
    max_input_channels: int = 1
    default_sample_rate: float = 16000.0


class TranscriptionOptions(BaseModel):
    """Per-request options passed to a transcription backend."""

    language: Optional[str] = Field(
        default=None, description="ISO 639-1 code, 'auto' or None to auto-detect."
    )
    prompt: Optional[str] = Field(
        default=None, description="Vocabulary or style hint for the provider."
    )
    temperature: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    word_timestamps: bool = False

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        if not v or v == "auto":
            return None
        return v

    @field_validator("prompt")
    @classmethod
    def empty_prompt_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class Segment(BaseModel):
    """A timed span of transcribed text."""

    model_config = ConfigDict(frozen=True)

    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    text: str

    @model_validator(mode="after")
    def check_bounds(self) -> "Segment":
        if self.end_ms < self.start_ms:
            raise ValueError("Segment end_ms must not precede start_ms")
        return self


class Word(BaseModel):
    """A single timed word."""

    model_config = ConfigDict(frozen=True)

    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    word: str

    @model_validator(mode="after")
    def check_bounds(self) -> "Word":
        if self.end_ms < self.start_ms:
            raise ValueError("Word end_ms must not precede start_ms")
        return self


def _check_ordered(items, label: str) -> None:
    for prev, cur in zip(items, items[1:]):
        if cur.start_ms < prev.start_ms:
            raise ValueError(f"{label} must be ordered by start_ms")


class TranscriptionResult(BaseModel):
    """Normalized result returned by every backend."""

    model_config = ConfigDict(frozen=True)

    text: str
    language: str = "unknown"
    duration_ms: int = Field(default=0, ge=0)
    segments: Optional[List[Segment]] = None
    words: Optional[List[Word]] = None

    @field_validator("language")
    @classmethod
    def unknown_if_empty(cls, v: str) -> str:
        return v or "unknown"

    @model_validator(mode="after")
    def check_ordering(self) -> "TranscriptionResult":
        if self.segments:
            _check_ordered(self.segments, "Segments")
        if self.words:
            _check_ordered(self.words, "Words")
        return self


class HistoryEntry(BaseModel):
    """A persisted transcription."""

    model_config = ConfigDict(frozen=True)

    id: int
    text: str
    language: str
    duration_ms: int
    service_name: str
    created_at: datetime
