"""parrotd: speech-to-text dictation daemon."""

__version__ = "0.1.0"
