"""Tests for the recording pipeline."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest
import pytest_asyncio

from parrotd.audio_capture import CaptureEvent, SoundDeviceCapture
from parrotd.config import (
    AppConfig,
    OutputConfig,
    SettingsStore,
    ProcessingConfig,
    TranscriptionConfig,
    WordReplacement,
)
from parrotd.exceptions import (
    AlreadyRecording,
    BackendError,
    ConfigurationError,
    DeviceError,
    InvalidTransition,
    NoPrimaryBackend,
    PasteUnavailable,
)
from parrotd.history import HistoryStore
from parrotd.models import TranscriptionResult, Word
from parrotd.output_handler import ClipboardManager
from parrotd.pipeline_manager import PipelineManager, apply_word_replacements
from parrotd.state import RecordingState, RecordingStateManager
from parrotd.transcription import TranscriptionBackend, TranscriptionManager
from parrotd.wav_encoder import decode

PCM = np.full(960, 1000, dtype=np.int16).tobytes()


class FakeBackend(TranscriptionBackend):
    """Backend returning a canned result or raising a canned error."""

    name = "Cloud"

    def __init__(self, result=None, error=None):
        self.result = result or TranscriptionResult(
            text="hello world", language="en", duration_ms=60
        )
        self.error = error
        self.calls = []

    async def transcribe(self, audio, options):
        self.calls.append((audio, options))
        if self.error:
            raise self.error
        return self.result


def drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def config():
    """Create a config with the 'cloud' backend as primary."""
    return AppConfig(
        transcription=TranscriptionConfig(service="cloud", language="auto"),
        output=OutputConfig(auto_copy=True, auto_paste=False),
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transcription(config, backend):
    manager = TranscriptionManager(config.transcription)
    manager.register("cloud", backend)
    return manager


@pytest.fixture
def history(tmp_path):
    store = HistoryStore(tmp_path / "history.db")
    yield store
    store.close()


@pytest.fixture
def audio_capture():
    """Create a mock capture engine that returns 60ms of audio."""
    capture = MagicMock(spec=SoundDeviceCapture)
    capture.stop.return_value = PCM
    capture.session = 1
    return capture


@pytest.fixture
def clipboard():
    return AsyncMock(spec=ClipboardManager)


@pytest_asyncio.fixture
async def pipeline_manager(config, audio_capture, transcription, history, clipboard):
    """Create a PipelineManager instance with mock hardware and output."""
    manager = PipelineManager(
        config,
        RecordingStateManager(),
        audio_capture,
        asyncio.Queue(),
        transcription,
        history,
        clipboard,
    )
    await manager.start()
    yield manager
    await manager.stop()


@pytest_asyncio.fixture
async def events(pipeline_manager):
    """Subscribe to pipeline events."""
    queue = pipeline_manager.subscribe()
    yield queue
    pipeline_manager.unsubscribe(queue)


def state(manager: PipelineManager) -> RecordingState:
    return manager.state_manager.current_state


def test_apply_word_replacements():
    """Test whole-word, case-insensitive replacement."""
    replacements = [
        WordReplacement(**{"from": "gonna", "to": "going to"}),
        WordReplacement(from_="c sharp", to="C#"),
    ]

    text = apply_word_replacements("Gonna learn c sharp; gonnabe stays", replacements)

    assert text == "going to learn C#; gonnabe stays"


@pytest.mark.asyncio
async def test_full_cycle(pipeline_manager, audio_capture, backend, history, clipboard, events):
    """Test start, stop, transcribe, store, copy and complete."""
    await pipeline_manager.start_recording()
    assert state(pipeline_manager) == RecordingState.RECORDING
    audio_capture.start.assert_called_once()

    entry = (await pipeline_manager.stop_recording()).entry

    assert state(pipeline_manager) == RecordingState.COMPLETE
    assert entry.text == "hello world"
    assert entry.service_name == "Cloud"
    assert history.get_by_id(entry.id) == entry

    # The backend receives the encoded container and auto language
    audio, options = backend.calls[0]
    assert decode(audio).pcm == PCM
    assert options.language is None

    clipboard.copy.assert_awaited_once_with("hello world")
    clipboard.copy_and_paste.assert_not_awaited()

    kinds = [(e.kind, e.state) for e in drain_events(events)]
    assert kinds == [
        ("state", RecordingState.RECORDING),
        ("state", RecordingState.PROCESSING),
        ("state", RecordingState.COMPLETE),
        ("result", None),
    ]


@pytest.mark.asyncio
async def test_backend_error(pipeline_manager, backend, history, events):
    """Test that a backend failure ends in error with no history entry."""
    backend.error = BackendError("rate limited")
    await pipeline_manager.start_recording()

    with pytest.raises(BackendError):
        await pipeline_manager.stop_recording()

    assert state(pipeline_manager) == RecordingState.ERROR
    assert pipeline_manager.state_manager.last_error == "rate limited"
    assert history.recent() == []

    errors = [e.error for e in drain_events(events) if e.kind == "error"]
    assert errors == ["rate limited"]


@pytest.mark.asyncio
async def test_new_cycle_after_error(pipeline_manager, backend):
    """Test that a new start is accepted from the error state."""
    backend.error = BackendError("rate limited")
    await pipeline_manager.start_recording()
    with pytest.raises(BackendError):
        await pipeline_manager.stop_recording()

    backend.error = None
    await pipeline_manager.start_recording()
    entry = (await pipeline_manager.stop_recording()).entry

    assert entry.text == "hello world"
    assert state(pipeline_manager) == RecordingState.COMPLETE


@pytest.mark.asyncio
async def test_lazy_configuration(config, audio_capture, history, clipboard, backend):
    """Test that an unconfigured primary is configured from stored settings."""
    transcription = TranscriptionManager(config.transcription)
    transcription.register_backend_type("cloud", lambda credentials, model: backend)
    manager = PipelineManager(
        config,
        RecordingStateManager(),
        audio_capture,
        asyncio.Queue(),
        transcription,
        history,
        clipboard,
    )
    # Stored settings only know how to build openai/local backends
    transcription.configure_from_settings = MagicMock(
        side_effect=lambda: transcription.configure("cloud") or True
    )

    await manager.start_recording()
    entry = (await manager.stop_recording()).entry

    transcription.configure_from_settings.assert_called_once()
    assert entry.text == "hello world"


@pytest.mark.asyncio
async def test_no_backend_configured(config, audio_capture, history, clipboard, monkeypatch):
    """Test that a missing backend fails the cycle with a configuration error."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config.transcription.service = "openai"
    manager = PipelineManager(
        config,
        RecordingStateManager(),
        audio_capture,
        asyncio.Queue(),
        TranscriptionManager(config.transcription),
        history,
        clipboard,
    )

    await manager.start_recording()
    with pytest.raises(NoPrimaryBackend):
        await manager.stop_recording()

    assert manager.state_manager.current_state == RecordingState.ERROR
    assert "not configured" in manager.state_manager.last_error
    assert history.recent() == []


@pytest.mark.asyncio
async def test_empty_recording_fails(pipeline_manager, audio_capture, backend):
    audio_capture.stop.return_value = b""
    await pipeline_manager.start_recording()

    with pytest.raises(Exception, match="No audio was recorded"):
        await pipeline_manager.stop_recording()

    assert state(pipeline_manager) == RecordingState.ERROR
    assert backend.calls == []


@pytest.mark.asyncio
async def test_start_while_recording(pipeline_manager, audio_capture):
    """Test that a second start is rejected and recording continues."""
    await pipeline_manager.start_recording()

    with pytest.raises(AlreadyRecording):
        await pipeline_manager.start_recording()

    assert state(pipeline_manager) == RecordingState.RECORDING
    audio_capture.start.assert_called_once()


@pytest.mark.asyncio
async def test_start_while_processing(pipeline_manager, audio_capture):
    pipeline_manager.state_manager._state = RecordingState.PROCESSING

    with pytest.raises(InvalidTransition):
        await pipeline_manager.start_recording()

    audio_capture.start.assert_not_called()


@pytest.mark.asyncio
async def test_stop_when_idle(pipeline_manager, audio_capture):
    with pytest.raises(InvalidTransition, match="Cannot stop while idle"):
        await pipeline_manager.stop_recording()

    audio_capture.stop.assert_not_called()


@pytest.mark.asyncio
async def test_device_open_failure(pipeline_manager, audio_capture, events):
    """Test that a device that cannot be opened keeps the previous state."""
    audio_capture.start.side_effect = DeviceError("Failed to open audio input device")

    with pytest.raises(DeviceError):
        await pipeline_manager.start_recording()

    assert state(pipeline_manager) == RecordingState.IDLE
    assert [e.kind for e in drain_events(events)] == ["error"]


@pytest.mark.asyncio
async def test_cancel(pipeline_manager, audio_capture, backend, history, clipboard):
    """Test that cancel discards the recording without side effects."""
    await pipeline_manager.start_recording()

    pipeline_manager.cancel_recording()

    assert state(pipeline_manager) == RecordingState.IDLE
    audio_capture.cancel.assert_called_once()
    audio_capture.stop.assert_not_called()
    assert backend.calls == []
    assert history.recent() == []
    clipboard.copy.assert_not_awaited()
    assert pipeline_manager.session is None


@pytest.mark.asyncio
async def test_cancel_when_idle(pipeline_manager):
    with pytest.raises(InvalidTransition):
        pipeline_manager.cancel_recording()


@pytest.mark.asyncio
async def test_toggle(pipeline_manager, audio_capture):
    """Test that toggle resolves against the current state."""
    assert await pipeline_manager.toggle() is None
    assert state(pipeline_manager) == RecordingState.RECORDING

    completed = await pipeline_manager.toggle()
    assert completed.entry.text == "hello world"
    assert state(pipeline_manager) == RecordingState.COMPLETE

    # Complete behaves as idle
    assert await pipeline_manager.toggle() is None
    assert state(pipeline_manager) == RecordingState.RECORDING


@pytest.mark.asyncio
async def test_levels_forwarded_only_while_recording(pipeline_manager, events):
    """Test that level events stop once recording stops."""
    capture_events = pipeline_manager.capture_events
    await pipeline_manager.start_recording()

    capture_events.put_nowait(CaptureEvent(kind="level", level=0.25, session=1))
    await capture_events.join()

    await pipeline_manager.stop_recording()
    capture_events.put_nowait(CaptureEvent(kind="level", level=0.5, session=1))
    await capture_events.join()

    levels = [e.level for e in drain_events(events) if e.kind == "level"]
    assert levels == [0.25]


@pytest.mark.asyncio
async def test_capture_error_while_recording(pipeline_manager, events):
    """Test that a device failure mid-recording moves to error."""
    await pipeline_manager.start_recording()

    pipeline_manager.capture_events.put_nowait(
        CaptureEvent(
            kind="error",
            error=DeviceError("Audio input device stopped unexpectedly"),
            session=1,
        )
    )
    await pipeline_manager.capture_events.join()

    assert state(pipeline_manager) == RecordingState.ERROR
    assert pipeline_manager.session is None
    errors = [e.error for e in drain_events(events) if e.kind == "error"]
    assert errors == ["Audio input device stopped unexpectedly"]


@pytest.mark.asyncio
async def test_auto_paste(config, pipeline_manager, clipboard):
    config.output.auto_paste = True
    await pipeline_manager.start_recording()

    await pipeline_manager.stop_recording()

    clipboard.copy_and_paste.assert_awaited_once_with("hello world")
    clipboard.copy.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_output_when_disabled(config, pipeline_manager, clipboard):
    config.output.auto_copy = False
    await pipeline_manager.start_recording()

    await pipeline_manager.stop_recording()

    clipboard.copy.assert_not_awaited()
    clipboard.copy_and_paste.assert_not_awaited()


@pytest.mark.asyncio
async def test_paste_unavailable_still_completes(
    config, pipeline_manager, clipboard, history, events
):
    """Test that output failures are reported while the cycle completes."""
    config.output.auto_paste = True
    clipboard.copy_and_paste.side_effect = PasteUnavailable("Install xdotool")
    await pipeline_manager.start_recording()

    entry = (await pipeline_manager.stop_recording()).entry

    assert state(pipeline_manager) == RecordingState.COMPLETE
    assert history.get_by_id(entry.id) is not None
    emitted = drain_events(events)
    assert [e.error for e in emitted if e.kind == "error"] == ["Install xdotool"]
    assert emitted[-1].kind == "result"


@pytest.mark.asyncio
async def test_word_replacements_and_vocabulary(config, pipeline_manager, backend, clipboard):
    """Test that processing settings reach the backend and the stored text."""
    config.processing = ProcessingConfig(
        word_replacements=[WordReplacement(from_="world", to="there")],
        custom_vocabulary=["Kubernetes", " ", "kubectl"],
    )
    await pipeline_manager.start_recording()

    entry = (await pipeline_manager.stop_recording()).entry

    assert backend.calls[0][1].prompt == "Kubernetes, kubectl"
    assert entry.text == "hello there"
    clipboard.copy.assert_awaited_once_with("hello there")


@pytest.mark.asyncio
async def test_stop_cancels_recording(pipeline_manager, audio_capture):
    await pipeline_manager.start_recording()

    await pipeline_manager.stop()

    audio_capture.cancel.assert_called_once()
    assert state(pipeline_manager) == RecordingState.IDLE


@pytest.mark.asyncio
async def test_result_event_carries_words(config, pipeline_manager, backend, events):
    """Test that word timings reach subscribers and the caller."""
    config.transcription.word_timestamps = True
    words = [
        Word(start_ms=0, end_ms=10, word="hello"),
        Word(start_ms=10, end_ms=20, word="world"),
    ]
    backend.result = TranscriptionResult(
        text="hello world", language="en", duration_ms=60, words=words
    )
    await pipeline_manager.start_recording()

    completed = await pipeline_manager.stop_recording()

    assert backend.calls[0][1].word_timestamps is True
    assert completed.result.words == words
    result_events = [e for e in drain_events(events) if e.kind == "result"]
    assert len(result_events) == 1
    assert result_events[0].entry == completed.entry
    assert result_events[0].result.words == words


@pytest.mark.asyncio
async def test_missing_duration_taken_from_recording(pipeline_manager, backend, history):
    """Test that a result without a duration gets the recorded audio length."""
    backend.result = TranscriptionResult(text="hello world")
    await pipeline_manager.start_recording()

    completed = await pipeline_manager.stop_recording()

    assert completed.result.duration_ms == 60
    assert completed.entry.duration_ms == 60
    assert history.get_by_id(completed.entry.id).duration_ms == 60


@pytest.mark.asyncio
async def test_reported_duration_is_kept(pipeline_manager, backend):
    backend.result = TranscriptionResult(text="hello world", duration_ms=55)
    await pipeline_manager.start_recording()

    completed = await pipeline_manager.stop_recording()

    assert completed.entry.duration_ms == 55


@pytest.mark.asyncio
async def test_levels_from_previous_capture_dropped(pipeline_manager, audio_capture, events):
    """Test that levels queued before a cancel do not leak into the next recording."""
    capture_events = pipeline_manager.capture_events
    await pipeline_manager.start_recording()
    pipeline_manager.cancel_recording()

    audio_capture.session = 2
    await pipeline_manager.start_recording()
    capture_events.put_nowait(CaptureEvent(kind="level", level=0.3, session=1))
    capture_events.put_nowait(
        CaptureEvent(kind="error", error=DeviceError("gone"), session=1)
    )
    capture_events.put_nowait(CaptureEvent(kind="level", level=0.7, session=2))
    await capture_events.join()

    assert state(pipeline_manager) == RecordingState.RECORDING
    levels = [e.level for e in drain_events(events) if e.kind == "level"]
    assert levels == [0.7]


# Settings


@pytest_asyncio.fixture
async def settings_manager(config, audio_capture, transcription, history, clipboard, tmp_path):
    """Create a PipelineManager that saves settings under tmp_path."""
    manager = PipelineManager(
        config,
        RecordingStateManager(),
        audio_capture,
        asyncio.Queue(),
        transcription,
        history,
        clipboard,
        settings_store=SettingsStore(tmp_path / "settings.json"),
    )
    yield manager
    await manager.stop()


@pytest.mark.asyncio
async def test_configured_backend_survives_restart(settings_manager, tmp_path, monkeypatch):
    """Test that credentials set at runtime are used after a restart."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings_path = tmp_path / "settings.json"

    with patch("parrotd.transcription.openai_backend.AsyncOpenAI"):
        settings_manager.configure_backend("openai", "sk-test", "gpt-4o-transcribe")

        assert "openai" in settings_manager.transcription.available_backends()
        assert settings_manager.config.transcription.openai.api_key == "sk-test"
        assert (settings_path.stat().st_mode & 0o777) == 0o600

        # A fresh daemon with no API key in its config file
        restarted = SettingsStore(settings_path).apply(AppConfig())
        assert restarted.transcription.openai.api_key == "sk-test"
        assert restarted.transcription.openai.model == "gpt-4o-transcribe"

        transcription = TranscriptionManager(restarted.transcription)
        assert transcription.configure_from_settings() is True
        assert transcription.service_name() == "OpenAI Whisper"


@pytest.mark.asyncio
async def test_update_setting_applies_and_saves(settings_manager, audio_capture, config, tmp_path):
    settings_manager.update_setting("audio.input_device", 3)
    settings_manager.update_setting("output.auto_paste", True)
    settings_manager.update_setting("transcription.service", "local")

    audio_capture.select_device.assert_called_once_with(3)
    assert config.output.auto_paste is True
    assert settings_manager.transcription.primary == "local"
    assert settings_manager.get_settings()["audio"]["input_device"] == 3

    saved = SettingsStore(tmp_path / "settings.json").apply(AppConfig())
    assert saved.audio.input_device == 3
    assert saved.output.auto_paste is True
    assert saved.transcription.service == "local"
    # Keys never changed keep following the config file
    assert saved.output.paste_delay_ms == AppConfig().output.paste_delay_ms


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "key, value, message",
    [
        ("audio.missing", 1, "Unknown setting"),
        ("nothing.here", 1, "Unknown setting"),
        ("output", {}, "is a section"),
        ("audio.input_device", -7, "Invalid value"),
        ("daemon.log_level", "LOUD", "Invalid value"),
    ],
)
async def test_update_setting_rejects(settings_manager, config, tmp_path, key, value, message):
    with pytest.raises(ConfigurationError, match=message):
        settings_manager.update_setting(key, value)

    assert config.audio.input_device == -1
    assert config.daemon.log_level == "INFO"
    assert not (tmp_path / "settings.json").exists()


@pytest.mark.asyncio
async def test_update_setting_without_store(pipeline_manager):
    with pytest.raises(ConfigurationError):
        pipeline_manager.update_setting("output.auto_copy", False)
