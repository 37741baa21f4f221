"""IPC server implementation using Unix domain sockets."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set, Type

from pydantic import BaseModel, ValidationError

from .exceptions import ParrotError
from .ipc_models import (
    AckResponse,
    AudioCancelCommand,
    AudioStartCommand,
    AudioStopCommand,
    AudioToggleCommand,
    BackendConfigureCommand,
    BackendListCommand,
    BackendSetPrimaryCommand,
    BackendsResponse,
    CommandWrapper,
    ConfigGetCommand,
    ConfigResponse,
    ConfigSetCommand,
    DaemonStateModel,
    DevicesResponse,
    ErrorResponse,
    HistoryClearCommand,
    HistoryDeleteCommand,
    HistoryGetCommand,
    HistoryRecentCommand,
    HistoryResponse,
    HistorySearchCommand,
    LevelNotification,
    ListDevicesCommand,
    OutputCopyCommand,
    OutputPasteCommand,
    OutputRestoreCommand,
    ResponseWrapper,
    ResultResponse,
    SelectDeviceCommand,
    ShutdownCommand,
    StateNotification,
    StatusCommand,
    StatusResponse,
    SubscribeCommand,
)
from .pipeline_manager import PipelineEvent, PipelineManager

logger = logging.getLogger(__name__)

# Size limit for incoming messages (64KB should be plenty for commands)
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"
READ_TIMEOUT = 5.0

CommandHandler = Callable[[BaseModel], Awaitable[ResponseWrapper]]


def event_to_notification(event: PipelineEvent) -> Optional[ResponseWrapper]:
    """Convert a pipeline event into the notification sent to subscribers."""
    if event.kind == "state" and event.state is not None:
        state_model = DaemonStateModel(state=event.state.value, last_error=event.error)
        return ResponseWrapper(root=StateNotification(status=state_model))
    if event.kind == "level" and event.level is not None:
        return ResponseWrapper(root=LevelNotification(level=event.level))
    if event.kind == "result" and event.entry is not None and event.result is not None:
        return ResponseWrapper(
            root=ResultResponse(entry=event.entry, result=event.result)
        )
    if event.kind == "error" and event.error is not None:
        return ResponseWrapper(root=ErrorResponse(message=event.error))
    return None


class IPCServer:
    """Handles IPC communication over Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        shutdown_event: asyncio.Event,
        pipeline_manager: PipelineManager,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            shutdown_event: Event to signal daemon shutdown
            pipeline_manager: The pipeline manager instance.
        """
        self.socket_path = socket_path
        self.shutdown_event = shutdown_event
        self.pipeline_manager = pipeline_manager

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()
        self._events: Optional[asyncio.Queue] = None
        self._broadcast_task: Optional[asyncio.Task] = None

        self._handlers: Dict[Type[BaseModel], CommandHandler] = {
            AudioStartCommand: self._handle_audio_start,
            AudioStopCommand: self._handle_audio_stop,
            AudioCancelCommand: self._handle_audio_cancel,
            AudioToggleCommand: self._handle_audio_toggle,
            ListDevicesCommand: self._handle_list_devices,
            SelectDeviceCommand: self._handle_select_device,
            HistoryRecentCommand: self._handle_history_recent,
            HistorySearchCommand: self._handle_history_search,
            HistoryGetCommand: self._handle_history_get,
            HistoryDeleteCommand: self._handle_history_delete,
            HistoryClearCommand: self._handle_history_clear,
            BackendConfigureCommand: self._handle_backend_configure,
            BackendSetPrimaryCommand: self._handle_backend_set_primary,
            BackendListCommand: self._handle_backend_list,
            OutputCopyCommand: self._handle_output_copy,
            OutputPasteCommand: self._handle_output_paste,
            OutputRestoreCommand: self._handle_output_restore,
            ConfigGetCommand: self._handle_config_get,
            ConfigSetCommand: self._handle_config_set,
            StatusCommand: self._handle_status,
        }

    @property
    def pipeline(self) -> PipelineManager:
        return self.pipeline_manager

    async def _broadcast_events(self) -> None:
        """Forward pipeline events to all subscribers."""
        assert self._events is not None
        while True:
            event = await self._events.get()
            notification = event_to_notification(event)
            if notification is not None:
                await self._broadcast_notification(notification)

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        if not self._subscribers:
            return

        data = notification.model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR

        # Copy set to avoid modification during iteration
        subscribers = list(self._subscribers)

        for writer in subscribers:
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue

            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def _send_response(
        self, writer: asyncio.StreamWriter, response: ResponseWrapper
    ) -> None:
        """Send a response to a client.

        Args:
            writer: StreamWriter to send through
            response: Response to send
        """
        try:
            response_json = response.model_dump_json()
            writer.write(response_json.encode("utf-8") + MESSAGE_TERMINATOR)
            await writer.drain()
            logger.debug(f"Sent response: {response_json}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    def _status_response(self) -> ResponseWrapper:
        state, error = self.pipeline.state_manager.get_status()
        return ResponseWrapper(
            root=StatusResponse(
                status=DaemonStateModel(state=state, last_error=error),
                primary_backend=self.pipeline.transcription.primary,
                backend_configured=self.pipeline.transcription.is_configured(),
            )
        )

    # Recording

    async def _handle_audio_start(self, command: AudioStartCommand) -> ResponseWrapper:
        logger.info("Handling audio.start command")
        await self.pipeline.start_recording()
        return ResponseWrapper(root=AckResponse())

    async def _handle_audio_stop(self, command: AudioStopCommand) -> ResponseWrapper:
        logger.info("Handling audio.stop command")
        completed = await self.pipeline.stop_recording()
        return ResponseWrapper(
            root=ResultResponse(entry=completed.entry, result=completed.result)
        )

    async def _handle_audio_cancel(
        self, command: AudioCancelCommand
    ) -> ResponseWrapper:
        logger.info("Handling audio.cancel command")
        self.pipeline.cancel_recording()
        return ResponseWrapper(root=AckResponse())

    async def _handle_audio_toggle(
        self, command: AudioToggleCommand
    ) -> ResponseWrapper:
        logger.info("Handling audio.toggle command")
        completed = await self.pipeline.toggle()
        if completed is None:
            return ResponseWrapper(root=AckResponse())
        return ResponseWrapper(
            root=ResultResponse(entry=completed.entry, result=completed.result)
        )

    async def _handle_list_devices(
        self, command: ListDevicesCommand
    ) -> ResponseWrapper:
        capture = self.pipeline.audio_capture
        return ResponseWrapper(
            root=DevicesResponse(
                devices=capture.list_devices(), selected=capture.device_id
            )
        )

    async def _handle_select_device(
        self, command: SelectDeviceCommand
    ) -> ResponseWrapper:
        self.pipeline.audio_capture.select_device(command.device_id)
        return ResponseWrapper(root=AckResponse())

    # History

    async def _handle_history_recent(
        self, command: HistoryRecentCommand
    ) -> ResponseWrapper:
        entries = await asyncio.to_thread(self.pipeline.history.recent, command.limit)
        return ResponseWrapper(root=HistoryResponse(entries=entries))

    async def _handle_history_search(
        self, command: HistorySearchCommand
    ) -> ResponseWrapper:
        entries = await asyncio.to_thread(
            self.pipeline.history.search, command.query, command.limit
        )
        return ResponseWrapper(root=HistoryResponse(entries=entries))

    async def _handle_history_get(self, command: HistoryGetCommand) -> ResponseWrapper:
        entry = await asyncio.to_thread(self.pipeline.history.get_by_id, command.id)
        entries = [entry] if entry is not None else []
        return ResponseWrapper(root=HistoryResponse(entries=entries))

    async def _handle_history_delete(
        self, command: HistoryDeleteCommand
    ) -> ResponseWrapper:
        logger.info(f"Deleting history entry {command.id}")
        await asyncio.to_thread(self.pipeline.history.delete, command.id)
        return ResponseWrapper(root=AckResponse())

    async def _handle_history_clear(
        self, command: HistoryClearCommand
    ) -> ResponseWrapper:
        await asyncio.to_thread(self.pipeline.history.clear)
        return ResponseWrapper(root=AckResponse())

    # Backends

    async def _handle_backend_configure(
        self, command: BackendConfigureCommand
    ) -> ResponseWrapper:
        logger.info(f"Configuring transcription backend '{command.name}'")
        self.pipeline.configure_backend(
            command.name, command.credentials, command.model
        )
        return ResponseWrapper(root=AckResponse())

    async def _handle_backend_set_primary(
        self, command: BackendSetPrimaryCommand
    ) -> ResponseWrapper:
        self.pipeline.transcription.set_primary(command.name)
        return ResponseWrapper(root=AckResponse())

    async def _handle_backend_list(self, command: BackendListCommand) -> ResponseWrapper:
        transcription = self.pipeline.transcription
        return ResponseWrapper(
            root=BackendsResponse(
                available=sorted(transcription.available_backends()),
                primary=transcription.primary,
            )
        )

    # Output

    async def _handle_output_copy(self, command: OutputCopyCommand) -> ResponseWrapper:
        await self.pipeline.clipboard.copy(command.text)
        return ResponseWrapper(root=AckResponse())

    async def _handle_output_paste(
        self, command: OutputPasteCommand
    ) -> ResponseWrapper:
        await self.pipeline.clipboard.paste()
        return ResponseWrapper(root=AckResponse())

    async def _handle_output_restore(
        self, command: OutputRestoreCommand
    ) -> ResponseWrapper:
        await self.pipeline.clipboard.restore_previous()
        return ResponseWrapper(root=AckResponse())

    # Settings

    async def _handle_config_get(self, command: ConfigGetCommand) -> ResponseWrapper:
        return ResponseWrapper(root=ConfigResponse(config=self.pipeline.get_settings()))

    async def _handle_config_set(self, command: ConfigSetCommand) -> ResponseWrapper:
        logger.info(f"Changing setting '{command.key}'")
        self.pipeline.update_setting(command.key, command.value)
        return ResponseWrapper(root=AckResponse())

    async def _handle_status(self, command: StatusCommand) -> ResponseWrapper:
        logger.debug("Handling status command")
        return self._status_response()

    async def _handle_shutdown_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Shutdown command.

        Args:
            writer: StreamWriter to send response through
        """
        logger.info("Handling shutdown command")

        # Send acknowledgment
        await self._send_response(writer, ResponseWrapper(root=AckResponse()))

        # Signal shutdown
        self.shutdown_event.set()

    async def _handle_subscribe_command(self, writer: asyncio.StreamWriter) -> None:
        """Handle Subscribe command.

        Args:
            writer: StreamWriter to subscribe
        """
        logger.info("Handling subscribe command")
        self._subscribers.add(writer)

        # Send initial status immediately
        state, error = self.pipeline.state_manager.get_status()
        state_model = DaemonStateModel(state=state, last_error=error)
        notification = ResponseWrapper(root=StateNotification(status=state_model))
        await self._send_response(writer, notification)

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Args:
            writer: StreamWriter to send responses through
            message: Command message to parse and handle

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message)
        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_response(
                writer,
                ResponseWrapper(
                    root=ErrorResponse(message=f"Invalid command format: {e}")
                ),
            )
            return True

        logger.debug(f"Parsed command: {command.model_dump_json()}")

        if isinstance(command.root, ShutdownCommand):
            await self._handle_shutdown_command(writer)
            return False
        if isinstance(command.root, SubscribeCommand):
            await self._handle_subscribe_command(writer)
            return True

        handler = self._handlers.get(type(command.root))
        if handler is None:
            logger.error(f"Unhandled command type: {type(command.root)}")
            await self._send_response(
                writer,
                ResponseWrapper(root=ErrorResponse(message="Internal server error")),
            )
            return True

        try:
            response = await handler(command.root)
        except ParrotError as e:
            logger.warning(f"Command '{command.root.command}' failed: {e}")
            response = ResponseWrapper(root=ErrorResponse(message=str(e)))
        except Exception as e:
            logger.exception("Error handling command")
            response = ResponseWrapper(
                root=ErrorResponse(message=f"Internal error: {e}")
            )

        await self._send_response(writer, response)
        return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a client connection.

        Args:
            reader: StreamReader for the client
            writer: StreamWriter for the client
        """
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        # Create task and add to set
        task = asyncio.current_task()
        assert task is not None  # for type checking
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    # Subscribers may stay silent indefinitely
                    timeout = None if writer in self._subscribers else READ_TIMEOUT

                    # Read a line (command should end with newline)
                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )

                    if not data:  # EOF
                        logger.info(f"Client disconnected (EOF): {peer}")
                        break

                    # Remove terminator and decode
                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    logger.debug(f"Received from {peer}: {message}")

                    # Handle the command
                    keep_alive = await self._handle_command(writer, message)
                    if not keep_alive:
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected (incomplete read): {peer}")
                    break
                except asyncio.LimitOverrunError:
                    logger.warning(f"Message from {peer} exceeds {MAX_MESSAGE_SIZE} bytes")
                    await self._send_response(
                        writer,
                        ResponseWrapper(root=ErrorResponse(message="Message too large")),
                    )
                    break
                except UnicodeDecodeError as e:
                    logger.warning(f"Invalid UTF-8 from {peer}: {e}")
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break

        finally:
            # Clean up
            logger.info(f"Closing connection with {peer}")
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, ConnectionError) as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        # Clean up existing socket if needed
        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                try:
                    self.socket_path.unlink()
                except OSError as e:
                    logger.error(f"Failed to remove existing socket: {e}")
                    raise
            else:
                logger.error(f"Path exists but is not a socket: {self.socket_path}")
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        try:
            # Ensure parent directory exists
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)

            # Start the server
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )

            logger.info(f"IPC server listening on {self.socket_path}")

        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            if self.socket_path.exists():
                self.socket_path.unlink(missing_ok=True)
            raise

        self._events = self.pipeline.subscribe()
        self._broadcast_task = asyncio.create_task(self._broadcast_events())

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if self._events is not None:
            self.pipeline.unsubscribe(self._events)
            self._events = None

        # Explicitly close subscriber connections first to unblock their read loops
        if self._subscribers:
            logger.info(f"Closing {len(self._subscribers)} subscriber connections...")
            for writer in list(self._subscribers):
                if not writer.is_closing():
                    writer.close()
            self._subscribers.clear()

        # Close the server
        self._server.close()
        await self._server.wait_closed()
        self._server = None

        # Cancel any active client connections
        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in list(self._client_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        # Clean up socket file
        logger.debug(f"Removing socket file: {self.socket_path}")
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
