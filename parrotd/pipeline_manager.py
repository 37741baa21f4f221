"""Recording pipeline: capture, transcription, history and output in one cycle."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from .audio_capture import SAMPLE_RATE, CaptureEvent, SoundDeviceCapture, pcm_duration_ms
from .config import AppConfig, SettingsStore, WordReplacement
from .exceptions import (
    AlreadyRecording,
    CaptureError,
    ConfigurationError,
    InvalidTransition,
    NoPrimaryBackend,
    OutputError,
    ParrotError,
    PersistenceError,
)
from .history import HistoryStore
from .models import HistoryEntry, TranscriptionOptions, TranscriptionResult
from .output_handler import ClipboardManager
from .state import RecordingEvent, RecordingState, RecordingStateManager
from .transcription import TranscriptionManager
from .wav_encoder import encode

logger = logging.getLogger(__name__)


@dataclass
class RecordingSession:
    """The recording cycle currently owned by the pipeline."""

    started_at: datetime = field(default_factory=datetime.now)
    audio: Optional[bytes] = None
    duration_ms: int = 0


@dataclass
class CompletedTranscription:
    """Outcome of a successful cycle: the stored entry and the full result."""

    entry: HistoryEntry
    result: TranscriptionResult


@dataclass
class PipelineEvent:
    """Event delivered to pipeline subscribers."""

    kind: str  # state, level, result, error
    state: Optional[RecordingState] = None
    level: Optional[float] = None
    entry: Optional[HistoryEntry] = None
    result: Optional[TranscriptionResult] = None
    error: Optional[str] = None


def apply_word_replacements(
    text: str, replacements: Sequence[WordReplacement]
) -> str:
    """Replace whole words, case-insensitively, in order."""
    for replacement in replacements:
        pattern = re.compile(
            rf"(?<!\w){re.escape(replacement.from_)}(?!\w)", re.IGNORECASE
        )
        text = pattern.sub(lambda _: replacement.to, text)
    return text


class PipelineManager:
    """Runs the record, transcribe, store and output cycle."""

    def __init__(
        self,
        config: AppConfig,
        state_manager: RecordingStateManager,
        audio_capture: SoundDeviceCapture,
        capture_events: asyncio.Queue,
        transcription: TranscriptionManager,
        history: HistoryStore,
        clipboard: ClipboardManager,
        settings_store: Optional[SettingsStore] = None,
    ):
        """Initialize the pipeline manager.

        Args:
            config: The application configuration.
            state_manager: Recording state machine.
            audio_capture: Capture engine publishing onto capture_events.
            capture_events: Queue of CaptureEvent objects from the engine.
            transcription: Transcription orchestrator.
            history: History store for completed transcriptions.
            clipboard: Output effects coordinator.
            settings_store: Where settings changed at runtime are saved.
                Without one, runtime changes last until the daemon exits.
        """
        self.config = config
        self.state_manager = state_manager
        self.audio_capture = audio_capture
        self.capture_events = capture_events
        self.transcription = transcription
        self.history = history
        self.clipboard = clipboard
        self.settings_store = settings_store

        self.session: Optional[RecordingSession] = None
        self._capture_session: Optional[int] = None
        self._subscribers: Set[asyncio.Queue] = set()
        self._events_task: Optional[asyncio.Task] = None

        self.state_manager.add_observer(self._on_state_change)

    async def start(self) -> None:
        """Start forwarding capture events."""
        if self._events_task is None:
            self._events_task = asyncio.create_task(self._process_capture_events())

    async def stop(self) -> None:
        """Abort any recording and stop forwarding capture events."""
        if self.state_manager.current_state == RecordingState.RECORDING:
            self.cancel_recording()

        if self._events_task:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            self._events_task = None

    def subscribe(self) -> asyncio.Queue:
        """Register a new subscriber queue for pipeline events."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, event: PipelineEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def _on_state_change(
        self, new_state: RecordingState, error: Optional[str]
    ) -> None:
        self._publish(PipelineEvent(kind="state", state=new_state, error=error))

    def _fail(self, message: str) -> None:
        """Move to the error state and emit the message once."""
        self.session = None
        self._capture_session = None
        self.state_manager.set_error(message)
        self._publish(PipelineEvent(kind="error", error=message))

    async def _process_capture_events(self) -> None:
        """Forward capture engine events for as long as the pipeline runs."""
        while True:
            event: CaptureEvent = await self.capture_events.get()
            try:
                self._handle_capture_event(event)
            except Exception:
                logger.exception(f"Error handling capture event '{event.kind}'")
            finally:
                self.capture_events.task_done()

    def _handle_capture_event(self, event: CaptureEvent) -> None:
        state = self.state_manager.current_state

        if event.kind in ("level", "error"):
            # Events left over from a stopped or cancelled capture
            if state != RecordingState.RECORDING or event.session != self._capture_session:
                logger.debug(f"Dropping stale capture event '{event.kind}'")
                return

            if event.kind == "level":
                self._publish(PipelineEvent(kind="level", level=event.level))
            else:
                logger.error(f"Recording aborted: {event.error}")
                self._fail(str(event.error))

        elif event.kind == "enumeration_failed":
            self._publish(PipelineEvent(kind="error", error=str(event.error)))

        else:
            logger.debug(f"Capture event: {event.kind}")

    async def start_recording(self) -> None:
        """Begin a new recording cycle.

        Raises:
            AlreadyRecording: If a recording is in progress.
            InvalidTransition: If a transcription is being processed.
            DeviceError: If the input device cannot be opened.
        """
        state = self.state_manager.current_state
        if state == RecordingState.RECORDING:
            raise AlreadyRecording()
        if not self.state_manager.can(RecordingEvent.START):
            raise InvalidTransition(state.value, RecordingEvent.START.value)

        try:
            self.audio_capture.start()
        except CaptureError as e:
            logger.error(f"Failed to start recording: {e}")
            self._publish(PipelineEvent(kind="error", error=str(e)))
            raise

        self.session = RecordingSession()
        self._capture_session = self.audio_capture.session
        self.state_manager.transition(RecordingEvent.START)
        logger.info("Recording started")

    def cancel_recording(self) -> None:
        """Abort the current recording and discard its audio.

        Raises:
            InvalidTransition: If not recording.
        """
        state = self.state_manager.current_state
        if not self.state_manager.can(RecordingEvent.CANCEL):
            raise InvalidTransition(state.value, RecordingEvent.CANCEL.value)

        self.audio_capture.cancel()
        self.session = None
        self._capture_session = None
        self.state_manager.transition(RecordingEvent.CANCEL)
        logger.info("Recording cancelled")

    async def stop_recording(self) -> CompletedTranscription:
        """Stop recording, then transcribe, store and output the result.

        Returns:
            The stored history entry together with the full result.

        Raises:
            InvalidTransition: If not recording.
            ParrotError: If any step of the cycle fails. The pipeline is
                already in the error state when this is raised.
        """
        state = self.state_manager.current_state
        if not self.state_manager.can(RecordingEvent.STOP):
            raise InvalidTransition(state.value, RecordingEvent.STOP.value)

        # Stop capture and enter processing before the first await
        try:
            pcm = self.audio_capture.stop()
        except CaptureError as e:
            self._fail(str(e))
            raise

        session = self.session or RecordingSession()
        session.audio = pcm
        session.duration_ms = pcm_duration_ms(pcm)
        self._capture_session = None
        self.state_manager.transition(RecordingEvent.STOP)
        logger.info(f"Recording stopped ({session.duration_ms}ms), processing")

        try:
            completed = await self._process(session)
        except ParrotError as e:
            logger.error(f"Transcription cycle failed: {e}")
            self._fail(str(e))
            raise
        except Exception as e:
            logger.exception("Unexpected error during transcription cycle")
            self._fail(str(e) or type(e).__name__)
            raise

        self.session = None
        self.state_manager.transition(RecordingEvent.COMPLETE)
        self._publish(
            PipelineEvent(
                kind="result", entry=completed.entry, result=completed.result
            )
        )
        return completed

    async def toggle(self) -> Optional[CompletedTranscription]:
        """Stop if recording, otherwise start."""
        if self.state_manager.current_state == RecordingState.RECORDING:
            return await self.stop_recording()
        await self.start_recording()
        return None

    def _options(self) -> TranscriptionOptions:
        settings = self.config.transcription
        return TranscriptionOptions(
            language=settings.language,
            prompt=self.config.processing.prompt,
            temperature=settings.temperature,
            word_timestamps=settings.word_timestamps,
        )

    async def _process(self, session: RecordingSession) -> CompletedTranscription:
        if not session.audio:
            raise CaptureError("No audio was recorded")

        container = encode(session.audio, sample_rate=SAMPLE_RATE)

        if not self.transcription.is_configured():
            if not self.transcription.configure_from_settings():
                raise NoPrimaryBackend(self.transcription.primary)

        result = await self.transcription.transcribe(container, self._options())
        result = self._post_process(result, session)

        service_name = self.transcription.service_name()
        entry = await asyncio.to_thread(self._store, result, service_name)
        logger.info(f"Stored transcription {entry.id} from {service_name}")

        await self._apply_output(entry.text)
        return CompletedTranscription(entry=entry, result=result)

    def _post_process(
        self, result: TranscriptionResult, session: RecordingSession
    ) -> TranscriptionResult:
        update: Dict[str, Any] = {}

        # Some providers do not report the audio length
        if result.duration_ms == 0 and session.duration_ms > 0:
            update["duration_ms"] = session.duration_ms

        replacements: List[WordReplacement] = self.config.processing.word_replacements
        if replacements:
            update["text"] = apply_word_replacements(result.text, replacements)

        return result.model_copy(update=update) if update else result

    def _store(self, result: TranscriptionResult, service_name: str) -> HistoryEntry:
        """Insert the result and read back the stored entry; runs in a worker thread."""
        entry_id = self.history.insert(result, service_name)
        entry = self.history.get_by_id(entry_id)
        if entry is None:
            raise PersistenceError(f"Stored transcription {entry_id} could not be read back")
        return entry

    async def _apply_output(self, text: str) -> None:
        """Copy and/or paste the text. Failures are reported, not raised."""
        if not text.strip():
            logger.info("Transcription is empty, skipping output")
            return

        output = self.config.output
        try:
            if output.auto_paste:
                await self.clipboard.copy_and_paste(text)
            elif output.auto_copy:
                await self.clipboard.copy(text)
        except OutputError as e:
            logger.warning(f"Output failed: {e}")
            self._publish(PipelineEvent(kind="error", error=str(e)))

    # Settings

    def get_settings(self) -> Dict[str, Any]:
        """The effective settings, as saved and sent to clients."""
        return self.config.model_dump(mode="json", by_alias=True)

    def update_setting(self, key: str, value: Any) -> None:
        """Change one setting, save it and apply it to the running components.

        Raises:
            ConfigurationError: If the key is unknown or the value invalid.
            PersistenceError: If the setting cannot be saved.
        """
        if self.settings_store is None:
            raise ConfigurationError("Settings cannot be saved by this daemon")

        self.settings_store.set_value(self.config, key, value)
        self._apply_setting(key)

    def _apply_setting(self, key: str) -> None:
        settings = self.config.transcription
        available = self.transcription.available_backends()

        if key == "audio.input_device":
            self.audio_capture.select_device(self.config.audio.input_device)
        elif key == "transcription.service":
            self.transcription.select_service(settings.service)
        elif key.startswith("transcription.openai.") and "openai" in available:
            self.transcription.configure(
                "openai", settings.openai.resolved_api_key, settings.openai.model
            )
        elif key == "transcription.local.model" and "local" in available:
            self.transcription.configure("local", None, settings.local.model)

    def configure_backend(
        self,
        name: str,
        credentials: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        """Configure a backend and save its credentials and model.

        Saved values are what lazy configuration uses after a restart.

        Raises:
            UnconfiguredBackend: If no backend kind is known by that name.
            ConfigurationError: If the backend rejects the credentials.
            PersistenceError: If the settings cannot be saved.
        """
        self.transcription.configure(name, credentials, model)

        if self.settings_store is None:
            return

        changes: Dict[str, Any] = {}
        if name == "openai":
            if credentials:
                changes["transcription.openai.api_key"] = credentials
            if model:
                changes["transcription.openai.model"] = model
        elif name == "local" and model:
            changes["transcription.local.model"] = model

        for key, value in changes.items():
            self.settings_store.set_value(self.config, key, value)
