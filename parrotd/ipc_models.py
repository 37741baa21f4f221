"""IPC command and response models for parrotd daemon."""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .models import AudioDevice, HistoryEntry, TranscriptionResult


class AudioStartCommand(BaseModel):
    """Command to start recording."""

    command: Literal["audio.start"] = "audio.start"


class AudioStopCommand(BaseModel):
    """Command to stop recording and transcribe."""

    command: Literal["audio.stop"] = "audio.stop"


class AudioCancelCommand(BaseModel):
    """Command to abort recording without transcribing."""

    command: Literal["audio.cancel"] = "audio.cancel"


class AudioToggleCommand(BaseModel):
    """Command to start or stop recording depending on the current state."""

    command: Literal["audio.toggle"] = "audio.toggle"


class ListDevicesCommand(BaseModel):
    """Command to list audio input devices."""

    command: Literal["audio.list_devices"] = "audio.list_devices"


class SelectDeviceCommand(BaseModel):
    """Command to select the input device (-1 = host default)."""

    command: Literal["audio.select_device"] = "audio.select_device"
    device_id: int = Field(ge=-1)


class HistoryRecentCommand(BaseModel):
    """Command to list the newest history entries."""

    command: Literal["history.recent"] = "history.recent"
    limit: Optional[int] = Field(default=None, gt=0)


class HistorySearchCommand(BaseModel):
    """Command to search history by text."""

    command: Literal["history.search"] = "history.search"
    query: str
    limit: Optional[int] = Field(default=None, gt=0)


class HistoryGetCommand(BaseModel):
    """Command to fetch one history entry."""

    command: Literal["history.get"] = "history.get"
    id: int


class HistoryDeleteCommand(BaseModel):
    """Command to delete one history entry."""

    command: Literal["history.delete"] = "history.delete"
    id: int


class HistoryClearCommand(BaseModel):
    """Command to delete all history entries."""

    command: Literal["history.clear"] = "history.clear"


class BackendConfigureCommand(BaseModel):
    """Command to create or update a transcription backend."""

    command: Literal["backend.configure"] = "backend.configure"
    name: str = Field(min_length=1)
    credentials: Optional[str] = None
    model: Optional[str] = None


class BackendSetPrimaryCommand(BaseModel):
    """Command to select the primary transcription backend."""

    command: Literal["backend.set_primary"] = "backend.set_primary"
    name: str = Field(min_length=1)


class BackendListCommand(BaseModel):
    """Command to list configured transcription backends."""

    command: Literal["backend.list_available"] = "backend.list_available"


class OutputCopyCommand(BaseModel):
    """Command to copy text to the clipboard."""

    command: Literal["output.copy"] = "output.copy"
    text: str


class OutputPasteCommand(BaseModel):
    """Command to paste the clipboard into the focused application."""

    command: Literal["output.paste"] = "output.paste"


class OutputRestoreCommand(BaseModel):
    """Command to restore the clipboard content replaced by the last copy."""

    command: Literal["output.restore"] = "output.restore"


class ConfigGetCommand(BaseModel):
    """Command to read the effective settings."""

    command: Literal["config.get"] = "config.get"


class ConfigSetCommand(BaseModel):
    """Command to change and save a single setting, by dotted key."""

    command: Literal["config.set"] = "config.set"
    key: str = Field(min_length=1)
    value: Any = None


class StatusCommand(BaseModel):
    """Command to get daemon status."""

    command: Literal["status"] = "status"


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


class SubscribeCommand(BaseModel):
    """Command to subscribe to pipeline events."""

    command: Literal["subscribe"] = "subscribe"


# Use discriminated union for command parsing
DaemonCommand = Annotated[
    Union[
        AudioStartCommand,
        AudioStopCommand,
        AudioCancelCommand,
        AudioToggleCommand,
        ListDevicesCommand,
        SelectDeviceCommand,
        HistoryRecentCommand,
        HistorySearchCommand,
        HistoryGetCommand,
        HistoryDeleteCommand,
        HistoryClearCommand,
        BackendConfigureCommand,
        BackendSetPrimaryCommand,
        BackendListCommand,
        OutputCopyCommand,
        OutputPasteCommand,
        OutputRestoreCommand,
        ConfigGetCommand,
        ConfigSetCommand,
        StatusCommand,
        ShutdownCommand,
        SubscribeCommand,
    ],
    Field(discriminator="command"),
]


# Wrapper for easy command parsing using RootModel
class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand

    def __getattr__(self, name: str):
        """Delegate attribute access to the root command."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)


class DaemonStateModel(BaseModel):
    """Model representing the recording state."""

    state: str
    last_error: Optional[str] = None


class AckResponse(BaseModel):
    """Simple acknowledgment response."""

    response_type: Literal["ack"] = "ack"


class StatusResponse(BaseModel):
    """Response containing daemon status."""

    response_type: Literal["status"] = "status"
    status: DaemonStateModel
    primary_backend: str
    backend_configured: bool


class ErrorResponse(BaseModel):
    """Response or notification carrying a human-readable error."""

    response_type: Literal["error"] = "error"
    message: str


class DevicesResponse(BaseModel):
    """Response listing audio input devices."""

    response_type: Literal["devices"] = "devices"
    devices: List[AudioDevice]
    selected: int


class HistoryResponse(BaseModel):
    """Response containing history entries, newest first."""

    response_type: Literal["history"] = "history"
    entries: List[HistoryEntry]


class BackendsResponse(BaseModel):
    """Response listing configured transcription backends."""

    response_type: Literal["backends"] = "backends"
    available: List[str]
    primary: str


class ResultResponse(BaseModel):
    """Response or notification carrying a completed transcription."""

    response_type: Literal["result"] = "result"
    entry: HistoryEntry
    result: TranscriptionResult


class ConfigResponse(BaseModel):
    """Response containing the effective settings."""

    response_type: Literal["config"] = "config"
    config: Dict[str, Any]


class StateNotification(BaseModel):
    """Notification broadcast when the recording state changes."""

    response_type: Literal["state_change"] = "state_change"
    status: DaemonStateModel


class LevelNotification(BaseModel):
    """Notification carrying the input level while recording."""

    response_type: Literal["level"] = "level"
    level: float = Field(ge=0.0, le=1.0)


# Use discriminated union for response serialization
DaemonResponse = Annotated[
    Union[
        AckResponse,
        StatusResponse,
        ErrorResponse,
        DevicesResponse,
        HistoryResponse,
        BackendsResponse,
        ResultResponse,
        ConfigResponse,
        StateNotification,
        LevelNotification,
    ],
    Field(discriminator="response_type"),
]


# Wrapper for easy response serialization using RootModel
class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse

    def __getattr__(self, name: str):
        """Delegate attribute access to the root response."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)
