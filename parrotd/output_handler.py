"""Clipboard and paste output for transcribed text."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Literal, Optional

from .config import OutputConfig
from .exceptions import OutputError, PasteUnavailable

logger = logging.getLogger(__name__)

# Default commands by session type
DEFAULT_CLIPBOARD_WAYLAND = "wl-copy"
DEFAULT_CLIPBOARD_X11 = "xclip -selection clipboard"
DEFAULT_CLIPBOARD_READ_WAYLAND = "wl-paste --no-newline"
DEFAULT_CLIPBOARD_READ_X11 = "xclip -selection clipboard -o"
DEFAULT_PASTE_WAYLAND = "wtype -M ctrl v -m ctrl"
DEFAULT_PASTE_X11 = "xdotool key ctrl+v"

PASTE_TOOL_HINT = {
    "wayland": "Install wtype to enable automatic pasting.",
    "x11": "Install xdotool to enable automatic pasting (e.g. sudo apt install xdotool).",
    "unknown": "Configure output.paste_command to enable automatic pasting.",
}


def get_session_type() -> Literal["wayland", "x11", "unknown"]:
    """Detect the current session type (Wayland/X11/unknown).

    Returns:
        Session type as string: "wayland", "x11", or "unknown"
    """
    session_type = os.environ.get("XDG_SESSION_TYPE", "").lower()

    if session_type == "wayland":
        return "wayland"
    elif session_type == "x11":
        return "x11"
    else:
        return "unknown"


@dataclass
class CommandResult:
    """Outcome of an external command."""

    success: bool
    stdout: str = ""
    error: Optional[str] = None
    not_found: bool = False


async def run_command(
    command: str, input_text: Optional[str] = None, timeout: float = 5.0
) -> CommandResult:
    """Run a shell command, optionally feeding text on stdin.

    Args:
        command: The command line to execute.
        input_text: Text to write to the command's stdin.
        timeout: Maximum time to wait for command execution.

    Returns:
        The command result; never raises for command failures.
    """
    logger.debug(f"Executing command: {command}")

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE if input_text is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(
                    input_text.encode("utf-8") if input_text is not None else None
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Command timed out after {timeout}s: {command}")
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass  # Process already finished
            return CommandResult(False, error=f"Command timed out after {timeout}s")

        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            # 127 is the shell's "command not found"
            not_found = process.returncode == 127
            error_msg = (
                f"Command failed with code {process.returncode}: {command}"
                + (f"\nStderr: {stderr_text}" if stderr_text else "")
            )
            logger.debug(error_msg)
            return CommandResult(False, error=error_msg, not_found=not_found)

        return CommandResult(True, stdout=stdout.decode("utf-8", errors="replace"))

    except FileNotFoundError:
        return CommandResult(False, error=f"Command not found: {command}", not_found=True)

    except PermissionError:
        return CommandResult(False, error=f"Permission denied executing: {command}")


class ClipboardManager:
    """Copies text to the clipboard and pastes it into the focused window.

    The clipboard is treated as a one-deep stack: copy() remembers the value
    it replaced and restore_previous() puts it back once.
    """

    def __init__(self, config: OutputConfig):
        """Initialize the clipboard manager.

        Args:
            config: Output configuration containing command overrides
        """
        self.config = config
        self._previous: Optional[str] = None

    @property
    def previous_content(self) -> Optional[str]:
        return self._previous

    def _command(
        self, configured: Optional[str], wayland: str, x11: str
    ) -> Optional[str]:
        if configured:
            return configured
        session = get_session_type()
        if session == "wayland":
            return wayland
        if session == "x11":
            return x11
        return None

    async def read(self) -> str:
        """Read the current clipboard text.

        Raises:
            OutputError: If the clipboard cannot be read.
        """
        command = self._command(
            self.config.clipboard_read_command,
            DEFAULT_CLIPBOARD_READ_WAYLAND,
            DEFAULT_CLIPBOARD_READ_X11,
        )
        if command is None:
            raise OutputError(
                f"No clipboard read command for session type: {get_session_type()}"
            )

        result = await run_command(command)
        if not result.success:
            raise OutputError(result.error or "Failed to read clipboard")
        return result.stdout

    async def _write(self, text: str) -> None:
        command = self._command(
            self.config.clipboard_command,
            DEFAULT_CLIPBOARD_WAYLAND,
            DEFAULT_CLIPBOARD_X11,
        )
        if command is None:
            raise OutputError(
                f"No clipboard command configured and couldn't determine default "
                f"for session type: {get_session_type()}"
            )

        result = await run_command(command, input_text=text)
        if not result.success:
            raise OutputError(result.error or "Failed to write clipboard")

    async def copy(self, text: str) -> None:
        """Remember the current clipboard content, then copy text.

        Raises:
            OutputError: If the clipboard cannot be written.
        """
        try:
            self._previous = await self.read()
        except OutputError as e:
            logger.warning(f"Could not snapshot clipboard: {e}")
            self._previous = None

        await self._write(text)
        logger.info(f"Copied {len(text)} chars to clipboard")

    async def paste(self) -> None:
        """Send a paste keystroke to the focused application.

        Raises:
            PasteUnavailable: If no paste tool is available on this host.
            OutputError: If the paste command fails.
        """
        # Give the clipboard owner time to publish the new selection
        await asyncio.sleep(self.config.paste_delay_ms / 1000)

        session = get_session_type()
        command = self._command(
            self.config.paste_command, DEFAULT_PASTE_WAYLAND, DEFAULT_PASTE_X11
        )
        if command is None:
            raise PasteUnavailable(
                f"Automatic paste is not supported for session type '{session}'. "
                + PASTE_TOOL_HINT[session]
            )

        result = await run_command(command)
        if result.not_found:
            raise PasteUnavailable(
                f"Paste tool not available ({command}). " + PASTE_TOOL_HINT[session]
            )
        if not result.success:
            raise OutputError(result.error or "Paste failed")

        logger.debug("Sent paste keystroke")

    async def copy_and_paste(self, text: str) -> None:
        """Copy text, then paste it once the copy has completed."""
        await self.copy(text)
        await self.paste()

    async def restore_previous(self) -> None:
        """Put the remembered clipboard content back, once."""
        if self._previous is None:
            logger.debug("No previous clipboard content to restore")
            return

        previous, self._previous = self._previous, None
        await self._write(previous)
        logger.info("Restored previous clipboard content")
