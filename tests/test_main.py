"""Tests for main daemon module."""

import asyncio
import pytest
from unittest.mock import patch, AsyncMock, MagicMock

from parrotd.main import main
from parrotd.config import AppConfig


@pytest.fixture
def mock_config(tmp_path):
    """Create a mock config."""
    with patch("parrotd.main.load_config") as mock_load:
        config = AppConfig()  # Create with defaults
        config.daemon.log_file = tmp_path / "parrotd.log"
        config.daemon.socket_path = tmp_path / "daemon.sock"
        config.history.db_path = tmp_path / "transcriptions.db"
        mock_load.return_value = config
        yield config


@pytest.fixture
def mock_handlers():
    """Create mock handlers."""
    # Create a real event for shutdown testing
    shutdown_event = asyncio.Event()

    with (
        patch("parrotd.main.setup_logging"),
        patch("parrotd.main.SettingsStore") as mock_settings,
        patch("parrotd.main.IPCServer") as mock_ipc,
        patch("parrotd.main.SoundDeviceCapture") as mock_capture,
        patch("parrotd.main.HistoryStore") as mock_history,
        patch("parrotd.main.TranscriptionManager") as mock_trans,
        patch("parrotd.main.ClipboardManager") as mock_clipboard,
        patch("parrotd.main.PipelineManager") as mock_pipeline,
        patch("parrotd.main.asyncio.Event") as mock_event,
    ):
        mock_event.return_value = shutdown_event
        mock_settings.return_value.apply.side_effect = lambda config: config

        # Setup mocked instances
        ipc = AsyncMock()
        ipc._server = object()
        pipeline = AsyncMock()
        history = MagicMock()
        trans = MagicMock()
        trans.configure_from_settings.return_value = True

        # Configure mock constructors
        mock_ipc.return_value = ipc
        mock_pipeline.return_value = pipeline
        mock_history.return_value = history
        mock_trans.return_value = trans

        yield {
            "ipc": ipc,
            "pipeline": pipeline,
            "history": history,
            "trans": trans,
            "shutdown_event": shutdown_event,
            "mock_ipc_class": mock_ipc,
            "mock_capture_class": mock_capture,
            "mock_history_class": mock_history,
            "mock_clipboard_class": mock_clipboard,
            "mock_pipeline_class": mock_pipeline,
            "settings_store": mock_settings.return_value,
        }


@pytest.mark.asyncio
async def test_main_startup_shutdown(mock_config, mock_handlers):
    """Test normal startup and shutdown flow."""
    # Start main in a task so we can trigger shutdown
    main_task = asyncio.create_task(main())

    try:
        # Wait a bit for startup
        await asyncio.sleep(0.1)

        # Trigger shutdown
        mock_handlers["shutdown_event"].set()

        # Wait for main to finish with timeout
        exit_code = await asyncio.wait_for(main_task, timeout=1.0)
    finally:
        if not main_task.done():
            main_task.cancel()

    # Check successful exit
    assert exit_code == 0

    # Verify startup sequence
    mock_handlers["mock_history_class"].assert_called_once_with(
        mock_config.history.db_path, mock_config.history.default_limit
    )
    mock_handlers["trans"].configure_from_settings.assert_called_once()
    mock_handlers["pipeline"].start.assert_awaited_once()
    mock_handlers["ipc"].start.assert_awaited_once()
    mock_handlers["mock_ipc_class"].assert_called_once_with(
        mock_config.daemon.socket_path,
        mock_handlers["shutdown_event"],
        mock_handlers["pipeline"],
    )

    # Verify shutdown
    mock_handlers["ipc"].stop.assert_awaited_once()
    mock_handlers["pipeline"].stop.assert_awaited_once()
    mock_handlers["history"].close.assert_called_once()


@pytest.mark.asyncio
async def test_main_wires_components(mock_config, mock_handlers):
    """Test that capture and pipeline share one event queue."""
    main_task = asyncio.create_task(main())
    await asyncio.sleep(0.1)
    mock_handlers["shutdown_event"].set()
    await asyncio.wait_for(main_task, timeout=1.0)

    capture_args = mock_handlers["mock_capture_class"].call_args.args
    pipeline_args = mock_handlers["mock_pipeline_class"].call_args.args

    assert capture_args[0] is mock_config.audio
    assert pipeline_args[0] is mock_config
    assert pipeline_args[3] is capture_args[1]
    assert pipeline_args[4] is mock_handlers["trans"]
    assert pipeline_args[5] is mock_handlers["history"]
    mock_handlers["mock_clipboard_class"].assert_called_once_with(mock_config.output)
    assert (
        mock_handlers["mock_pipeline_class"].call_args.kwargs["settings_store"]
        is mock_handlers["settings_store"]
    )
    mock_handlers["settings_store"].apply.assert_called_once_with(mock_config)


@pytest.mark.asyncio
async def test_main_unconfigured_backend_still_starts(mock_config, mock_handlers):
    """Test that a missing API key does not prevent startup."""
    mock_handlers["trans"].configure_from_settings.return_value = False

    main_task = asyncio.create_task(main())
    await asyncio.sleep(0.1)
    mock_handlers["shutdown_event"].set()
    exit_code = await asyncio.wait_for(main_task, timeout=1.0)

    assert exit_code == 0
    mock_handlers["ipc"].start.assert_awaited_once()


@pytest.mark.asyncio
async def test_main_config_load_failure(mock_handlers):
    """Test handling of an invalid configuration file."""
    with patch("parrotd.main.load_config", side_effect=ValueError("bad toml")):
        exit_code = await main()

    assert exit_code == 1
    mock_handlers["mock_history_class"].assert_not_called()
    mock_handlers["ipc"].start.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_history_open_failure(mock_config, mock_handlers):
    """Test that an unusable database aborts startup."""
    mock_handlers["mock_history_class"].side_effect = RuntimeError("disk gone")

    exit_code = await main()

    assert exit_code == 1
    mock_handlers["pipeline"].start.assert_not_awaited()
    mock_handlers["ipc"].start.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_startup_error(mock_config, mock_handlers):
    """Test handling of startup error."""
    # Make IPC server start raise error
    mock_handlers["ipc"].start.side_effect = RuntimeError("Test error")

    # Run main (should return on error)
    exit_code = await main()

    # Check error exit
    assert exit_code == 1

    # Verify cleanup attempted
    mock_handlers["ipc"].stop.assert_awaited_once()
    mock_handlers["pipeline"].stop.assert_awaited_once()
    mock_handlers["history"].close.assert_called_once()
