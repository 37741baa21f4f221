"""Main entry point for parrotd daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .audio_capture import SoundDeviceCapture
from .config import SettingsStore, get_default_settings_path, load_config
from .history import HistoryStore
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .output_handler import ClipboardManager
from .pipeline_manager import PipelineManager
from .state import RecordingStateManager
from .transcription import TranscriptionManager


logger = logging.getLogger(__name__)

__all__ = ["run"]  # Export the run function


async def main() -> int:
    """Main daemon function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    # Load configuration first, then the settings saved at runtime
    try:
        config = load_config()
        settings_store = SettingsStore(get_default_settings_path())
        config = settings_store.apply(config)
    except (ValueError, OSError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    # Setup logging
    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting parrotd daemon...")

    shutdown_event = asyncio.Event()
    history = None
    pipeline_manager = None
    ipc_server = None

    try:
        history = HistoryStore(
            config.history.computed_db_path, config.history.default_limit
        )

        # Configure the primary backend from stored credentials if possible;
        # otherwise it is configured lazily on the first transcription
        transcription = TranscriptionManager(config.transcription)
        if not transcription.configure_from_settings():
            logger.warning(
                f"Transcription service '{transcription.primary}' is not configured yet"
            )

        capture_events: asyncio.Queue = asyncio.Queue()
        pipeline_manager = PipelineManager(
            config,
            RecordingStateManager(),
            SoundDeviceCapture(config.audio, capture_events),
            capture_events,
            transcription,
            history,
            ClipboardManager(config.output),
            settings_store=settings_store,
        )
        await pipeline_manager.start()

        ipc_server = IPCServer(
            config.daemon.computed_socket_path,
            shutdown_event,
            pipeline_manager,
        )

        # Setup signal handlers
        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        # Start IPC server to handle user commands
        await ipc_server.start()

        logger.info("Daemon started successfully")

        # Wait for shutdown signal
        await shutdown_event.wait()

        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        # Stop in reverse order
        if ipc_server is not None and ipc_server._server:
            await ipc_server.stop()
        if pipeline_manager is not None:
            await pipeline_manager.stop()
        if history is not None:
            history.close()

        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"Daemon failed with unhandled exception: {e}")
        sys.exit(1)
