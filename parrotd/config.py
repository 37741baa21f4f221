"""Configuration handling for parrotd daemon."""

import getpass
import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "parrot"


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / APP_DIR_NAME / "config.toml"


def get_default_settings_path() -> Path:
    """Get the path of settings saved at runtime, next to the config file."""
    return get_default_config_path().parent / "settings.json"


def get_default_socket_path() -> Path:
    """Get the default socket path following XDG spec."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / APP_DIR_NAME
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    # Fallback if XDG_RUNTIME_DIR not set or unusable
    uid = getpass.getuser()
    return Path(f"/tmp/{APP_DIR_NAME}-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / APP_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "parrotd.log"


def get_default_db_path() -> Path:
    """Get the default history database path following XDG spec."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    data_dir = base_dir / APP_DIR_NAME
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "transcriptions.db"


class AudioConfig(BaseModel):
    """Audio capture configuration."""

    input_device: int = Field(
        default=-1, ge=-1, description="Input device id (-1 = host default)."
    )


class OpenAIConfig(BaseModel):
    """OpenAI transcription service configuration."""

    api_key: Optional[str] = Field(
        default=None, description="API key (falls back to OPENAI_API_KEY)."
    )
    model: Literal[
        "whisper-1", "gpt-4o-transcribe", "gpt-4o-mini-transcribe"
    ] = Field(
        default="whisper-1", description="Transcription model identifier."
    )
    base_url: Optional[str] = Field(
        default=None, description="Optional API base URL for compatible servers."
    )

    @property
    def resolved_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get("OPENAI_API_KEY") or None


class LocalWhisperConfig(BaseModel):
    """Local faster-whisper model configuration."""

    model: str = Field(
        default="base",
        description="Whisper model identifier (e.g., base, small.en, medium).",
    )
    device: str = Field(
        default="auto", description="Device for inference (auto, cpu, cuda)."
    )
    compute_type: str = Field(
        default="auto",
        description="Compute type for inference (auto, float32, float16, int8).",
    )
    beam_size: int = Field(
        default=5,
        ge=1,
        description="Beam size for search (1-10, higher is slower but more accurate).",
    )
    cpu_threads: int = Field(
        default=0, ge=0, description="Number of CPU threads for inference (0 = auto)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Whisper model identifier cannot be empty")
        return v


class TranscriptionConfig(BaseModel):
    """Transcription service selection and request defaults."""

    service: str = Field(
        default="openai", description="Primary transcription service name."
    )
    language: str = Field(
        default="auto", description="ISO 639-1 language code or 'auto'."
    )
    temperature: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="Sampling temperature."
    )
    word_timestamps: bool = Field(
        default=False, description="Request word-level timestamps."
    )
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    local: LocalWhisperConfig = Field(default_factory=LocalWhisperConfig)


class WordReplacement(BaseModel):
    """A whole-word replacement applied to transcribed text."""

    from_: str = Field(alias="from", min_length=1)
    to: str

    model_config = ConfigDict(populate_by_name=True)


class ProcessingConfig(BaseModel):
    """Post-processing of transcribed text."""

    word_replacements: List[WordReplacement] = Field(default_factory=list)
    custom_vocabulary: List[str] = Field(
        default_factory=list, description="Terms passed to the service as a hint."
    )

    @property
    def prompt(self) -> Optional[str]:
        terms = [t.strip() for t in self.custom_vocabulary if t.strip()]
        return ", ".join(terms) or None


class OutputConfig(BaseModel):
    """Output side effect configuration."""

    auto_copy: bool = Field(default=True, description="Copy results to clipboard.")
    auto_paste: bool = Field(
        default=True, description="Paste results into the focused application."
    )
    paste_delay_ms: int = Field(
        default=100, ge=0, description="Delay before the paste keystroke (ms)."
    )
    clipboard_command: Optional[str] = Field(
        default=None, description="Command that reads text on stdin into the clipboard."
    )
    clipboard_read_command: Optional[str] = Field(
        default=None, description="Command that prints the clipboard to stdout."
    )
    paste_command: Optional[str] = Field(
        default=None, description="Command that sends the paste keystroke."
    )


class HistoryConfig(BaseModel):
    """History store configuration."""

    db_path: Optional[Path] = Field(
        default=None, description="Optional custom database path."
    )
    default_limit: int = Field(
        default=50, gt=0, description="Entries returned when no limit is given."
    )

    @property
    def computed_db_path(self) -> Path:
        return self.db_path or get_default_db_path()


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    """Recursively merge overrides into base, in place."""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


class SettingsStore:
    """Settings changed at runtime, saved as JSON on top of config.toml.

    Only the changed keys are saved, so values edited in config.toml still
    apply to every key that was never changed at runtime.
    """

    def __init__(self, path: Path):
        self.path = path
        self.overrides: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed settings file {self.path}")
            return {}
        return data

    def _save(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self.overrides, indent=2), encoding="utf-8")
            # The file may hold API keys
            tmp_path.chmod(0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not save settings to {self.path}: {e}") from e

    def apply(self, config: AppConfig) -> AppConfig:
        """Return the config with the saved settings applied."""
        if not self.overrides:
            return config

        data = config.model_dump(mode="json", by_alias=True)
        _merge(data, self.overrides)
        try:
            return AppConfig.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid saved settings in {self.path}: {e}")
            return config

    def set_value(self, config: AppConfig, key: str, value: Any) -> Any:
        """Validate, apply and save a single setting.

        The live config is updated in place, so components holding one of
        its sections see the new value.

        Args:
            config: The live configuration.
            key: Dotted setting name, e.g. "transcription.openai.api_key".
            value: The new value.

        Returns:
            The validated value as saved.

        Raises:
            ConfigurationError: If the key is unknown or the value invalid.
            PersistenceError: If the settings file cannot be written.
        """
        parts = key.split(".")
        data = config.model_dump(mode="json", by_alias=True)

        parent = data
        for part in parts[:-1]:
            parent = parent.get(part) if isinstance(parent, dict) else None
        if not isinstance(parent, dict) or parts[-1] not in parent:
            raise ConfigurationError(f"Unknown setting '{key}'")
        if isinstance(parent[parts[-1]], dict):
            raise ConfigurationError(f"'{key}' is a section, not a setting")

        parent[parts[-1]] = value
        try:
            validated = AppConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid value for '{key}': {e}") from e

        live, updated = config, validated
        for part in parts[:-1]:
            live, updated = getattr(live, part), getattr(updated, part)
        new_value = getattr(updated, parts[-1])
        setattr(live, parts[-1], new_value)

        saved = validated.model_dump(mode="json", by_alias=True)
        for part in parts:
            saved = saved[part]
        target = self.overrides
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = saved
        self._save()

        logger.info(f"Setting '{key}' saved")
        return saved
