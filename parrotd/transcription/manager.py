"""Selection of and dispatch to the active transcription backend."""

import logging
from typing import Callable, Dict, Optional, Set

from ..config import TranscriptionConfig
from ..exceptions import ConfigurationError, NoPrimaryBackend, UnconfiguredBackend
from ..models import TranscriptionOptions, TranscriptionResult
from .base import TranscriptionBackend
from .openai_backend import OpenAIBackend
from .whisper import WhisperBackend

logger = logging.getLogger(__name__)

# Factory signature: (credentials, model) -> backend
BackendFactory = Callable[[Optional[str], Optional[str]], TranscriptionBackend]


class TranscriptionManager:
    """Holds the configured backends and dispatches to the primary one."""

    def __init__(self, settings: Optional[TranscriptionConfig] = None):
        """Initialize the manager.

        Args:
            settings: Transcription settings; used for the initial primary
                service name and for building the built-in backends.
        """
        self.settings = settings or TranscriptionConfig()
        self._backends: Dict[str, TranscriptionBackend] = {}
        self._primary: str = self.settings.service
        self._factories: Dict[str, BackendFactory] = {
            "openai": lambda credentials, model: OpenAIBackend(
                credentials, model, base_url=self.settings.openai.base_url
            ),
            "local": lambda credentials, model: WhisperBackend(
                self.settings.local, model
            ),
        }

    @property
    def primary(self) -> str:
        return self._primary

    def register_backend_type(self, name: str, factory: BackendFactory) -> None:
        """Make a new backend kind available to configure()."""
        self._factories[name] = factory

    def register(self, name: str, backend: TranscriptionBackend) -> None:
        """Register (or replace) an already constructed backend instance."""
        logger.info(f"Registered transcription backend '{name}' ({backend.name})")
        self._backends[name] = backend

    def configure(
        self,
        name: str,
        credentials: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        """Create a backend, or update it in place if it already exists.

        Raises:
            UnconfiguredBackend: If no backend kind is known by that name.
            ConfigurationError: If the backend rejects the credentials.
        """
        existing = self._backends.get(name)
        if existing is not None:
            existing.reconfigure(credentials, model)
            return

        factory = self._factories.get(name)
        if factory is None:
            raise UnconfiguredBackend(name)

        self.register(name, factory(credentials, model))

    def configure_from_settings(self) -> bool:
        """Configure the primary backend from the stored settings.

        Returns:
            True if the primary backend is configured afterwards.
        """
        if self.is_configured():
            return True

        try:
            if self._primary == "openai":
                openai_settings = self.settings.openai
                self.configure(
                    "openai", openai_settings.resolved_api_key, openai_settings.model
                )
            elif self._primary == "local":
                self.configure("local", None, self.settings.local.model)
            else:
                return False
        except ConfigurationError as e:
            logger.warning(f"Could not configure '{self._primary}': {e}")
            return False

        return self.is_configured()

    def set_primary(self, name: str) -> None:
        """Select the backend used by transcribe().

        Raises:
            UnconfiguredBackend: If the name has no registered instance.
        """
        if name not in self._backends:
            raise UnconfiguredBackend(name)
        logger.info(f"Primary transcription backend set to '{name}'")
        self._primary = name

    def select_service(self, name: str) -> None:
        """Make the named service primary, configuring it lazily if needed."""
        if name in self._backends:
            self.set_primary(name)
            return
        logger.info(f"Primary transcription service set to '{name}' (not configured yet)")
        self._primary = name

    async def transcribe(
        self, audio: bytes, options: Optional[TranscriptionOptions] = None
    ) -> TranscriptionResult:
        """Transcribe with the primary backend. No retries are attempted.

        Raises:
            NoPrimaryBackend: If the primary backend is not configured.
            BackendError: If the backend fails.
        """
        backend = self._backends.get(self._primary)
        if backend is None:
            raise NoPrimaryBackend(self._primary)

        return await backend.transcribe(audio, options or TranscriptionOptions())

    def available_backends(self) -> Set[str]:
        return set(self._backends)

    def is_configured(self) -> bool:
        return self._primary in self._backends

    def service_name(self) -> str:
        """Display name of the primary backend."""
        backend = self._backends.get(self._primary)
        return backend.name if backend else "Unknown"
