"""Audio capture module."""

import asyncio
import logging
import queue
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import sounddevice as sd

from .config import AudioConfig
from .exceptions import (
    AlreadyRecording,
    DeviceEnumerationFailed,
    DeviceError,
    NotRecording,
)
from .models import AudioDevice

logger = logging.getLogger(__name__)

# Settings expected by speech transcription services
SAMPLE_RATE = 16000
NUM_CHANNELS = 1
AUDIO_DTYPE = "int16"
SAMPLE_WIDTH = 2  # bytes per s16 sample

# Frames per callback block (20ms at 16kHz)
BLOCK_SIZE = 320

# Sentinel device id selecting the host default input
DEFAULT_DEVICE_ID = -1

# Largest magnitude of a signed 16-bit sample
MAX_INT16 = 32768.0


@dataclass
class CaptureEvent:
    """Event published by the capture engine on its event queue."""

    kind: str  # started, level, stopped, cancelled, error, enumeration_failed
    level: Optional[float] = None
    duration_ms: Optional[int] = None
    error: Optional[Exception] = None
    session: int = 0  # capture session the event belongs to


def calculate_level(chunk: bytes) -> float:
    """Root-mean-square level of a s16 chunk, normalized to [0, 1]."""
    samples = np.frombuffer(chunk, dtype=np.int16)
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
    return min(1.0, rms / MAX_INT16)


def pcm_duration_ms(pcm: bytes) -> int:
    """Duration of a mono s16 buffer in milliseconds."""
    sample_count = len(pcm) // (SAMPLE_WIDTH * NUM_CHANNELS)
    return round(sample_count / SAMPLE_RATE * 1000)


class SoundDeviceCapture:
    """Captures audio from a PortAudio input device using sounddevice.

    The PortAudio callback thread never touches capture state. It only hands
    raw chunks over through a thread-safe queue and asks the event loop to
    drain it, so the buffer and the published events are only ever mutated
    on the loop thread.
    """

    def __init__(self, config: AudioConfig, event_queue: asyncio.Queue):
        """Initialize audio capture.

        Args:
            config: The audio configuration.
            event_queue: Queue to publish CaptureEvent objects onto.
        """
        self.event_queue = event_queue
        self._device_id: int = config.input_device

        # Internal state
        self._stream: Optional[sd.RawInputStream] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handoff: "queue.SimpleQueue[bytes]" = queue.SimpleQueue()
        self._chunks: List[bytes] = []
        self._is_running = False
        self._is_closing = False
        self._session = 0

    @property
    def is_recording(self) -> bool:
        return self._is_running

    @property
    def device_id(self) -> int:
        return self._device_id

    @property
    def session(self) -> int:
        """Counter of the most recently started capture session."""
        return self._session

    def _publish(self, event: CaptureEvent) -> None:
        event.session = self._session
        self.event_queue.put_nowait(event)

    def list_devices(self) -> List[AudioDevice]:
        """List input-capable devices.

        Returns:
            The input devices, or an empty list if enumeration failed.
        """
        try:
            devices = sd.query_devices()
            try:
                default_index = sd.default.device[0]
            except (TypeError, IndexError):
                default_index = None

            result = [
                AudioDevice(
                    id=index,
                    name=device.get("name", f"Device {index}"),
                    is_default=index == default_index,
                    max_input_channels=device.get("max_input_channels", 0),
                    default_sample_rate=device.get("default_samplerate", SAMPLE_RATE),
                )
                for index, device in enumerate(devices)
                if device.get("max_input_channels", 0) > 0
            ]
            logger.info(f"Found {len(result)} audio input device(s)")
            return result

        except Exception as e:
            logger.warning(f"Failed to query audio devices: {e}")
            self._publish(
                CaptureEvent(
                    kind="enumeration_failed",
                    error=DeviceEnumerationFailed(f"Failed to query audio devices: {e}"),
                )
            )
            return []

    def select_device(self, device_id: int) -> None:
        """Select the device used by the next start().

        Args:
            device_id: A device id, or DEFAULT_DEVICE_ID for the host default.
        """
        logger.info(
            "Selected input device: "
            f"{'default' if device_id == DEFAULT_DEVICE_ID else device_id}"
        )
        self._device_id = device_id

    def _callback(self, indata, frames, time_info, status) -> None:
        """PortAudio callback; runs on the audio thread."""
        if status:
            logger.debug(f"Input stream status: {status}")
        self._handoff.put(bytes(indata))
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._drain)

    def _finished_callback(self, session: int) -> None:
        """Called on the audio thread when the stream stops for any reason."""
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._on_stream_finished, session)

    def _drain(self, emit_levels: bool = True) -> None:
        """Move handed-over chunks into the session buffer, in arrival order."""
        while True:
            try:
                chunk = self._handoff.get_nowait()
            except queue.Empty:
                break
            if not self._is_running:
                continue
            self._chunks.append(chunk)
            if emit_levels:
                self._publish(CaptureEvent(kind="level", level=calculate_level(chunk)))

    def _on_stream_finished(self, session: int) -> None:
        """Abort the session if the stream ended without stop() or cancel()."""
        if session != self._session or not self._is_running or self._is_closing:
            return
        logger.error("Audio input stream ended unexpectedly, aborting capture.")
        self._teardown()
        self._publish(
            CaptureEvent(
                kind="error",
                error=DeviceError("Audio input device stopped unexpectedly"),
            )
        )

    def start(self) -> None:
        """Start audio capture.

        Raises:
            AlreadyRecording: If a capture session is active.
            DeviceError: If the input device cannot be opened.
        """
        if self._is_running:
            raise AlreadyRecording()

        device = None if self._device_id == DEFAULT_DEVICE_ID else self._device_id
        logger.info(
            f"Starting audio capture (device={device if device is not None else 'default'}, "
            f"rate={SAMPLE_RATE}Hz)"
        )

        self._loop = asyncio.get_running_loop()
        self._chunks = []
        self._handoff = queue.SimpleQueue()
        self._is_closing = False
        self._is_running = True
        self._session += 1
        session = self._session

        try:
            self._stream = sd.RawInputStream(
                samplerate=SAMPLE_RATE,
                channels=NUM_CHANNELS,
                dtype=AUDIO_DTYPE,
                blocksize=BLOCK_SIZE,
                device=device,
                callback=self._callback,
                finished_callback=lambda: self._finished_callback(session),
            )
            self._stream.start()
        except Exception as e:
            logger.exception("Failed to open audio input device.")
            self._teardown()
            raise DeviceError(f"Failed to open audio input device: {e}") from e

        self._publish(CaptureEvent(kind="started"))

    def _teardown(self) -> None:
        """Close the stream and reset the session."""
        self._is_closing = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing audio input stream: {e}")
        self._is_running = False
        self._chunks = []

    def stop(self) -> bytes:
        """Stop audio capture and return the recorded PCM.

        Returns:
            All chunks delivered before the stop, concatenated in order.

        Raises:
            NotRecording: If no capture session is active.
        """
        if not self._is_running:
            raise NotRecording()

        logger.info("Stopping audio capture.")
        self._is_closing = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing audio input stream: {e}")

        # The stream is closed, so the handoff queue holds every remaining chunk
        self._drain(emit_levels=False)
        pcm = b"".join(self._chunks)

        logger.info(f"Captured {len(self._chunks)} chunks ({pcm_duration_ms(pcm)}ms).")
        self._teardown()
        self._publish(CaptureEvent(kind="stopped", duration_ms=pcm_duration_ms(pcm)))
        return pcm

    def cancel(self) -> None:
        """Stop audio capture and discard the recording."""
        if not self._is_running:
            logger.debug("Audio capture is not running, nothing to cancel.")
            return

        logger.info("Cancelling audio capture.")
        self._teardown()
        self._publish(CaptureEvent(kind="cancelled"))
