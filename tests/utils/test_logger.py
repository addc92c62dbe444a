"""
Tests for the component logger.

Tests cover:
- Logger creation by component name and with explicit parameters
- Component colors read from configuration
- Rich markup formatting and escaping of child-process output
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from rich.logging import RichHandler

from scaffoldkit.utils.logger import ComponentLogger, get_logger


class TestComponentLoggerBasic:
    """Test basic ComponentLogger functionality."""

    def test_logger_creation(self):
        logger = get_logger("launcher")
        assert isinstance(logger, ComponentLogger)
        assert logger.component_name == "launcher"
        assert logger.name == "scaffoldkit.launcher"

    def test_logger_creation_with_custom_params(self):
        """Test custom logger creation with explicit parameters."""
        logger = get_logger(name="custom_logger", color="blue")
        assert logger.component_name == "custom_logger"
        assert logger.color == "blue"

    def test_color_from_configuration(self):
        assert get_logger("probe").color == "yellow"

    def test_unknown_component_is_white(self):
        assert get_logger("unlisted_component").color == "white"

    def test_component_name_required(self):
        with pytest.raises(ValueError, match="Component name is required"):
            get_logger()

    def test_basic_logging_methods(self):
        """All message types work without raising."""
        logger = get_logger("lifecycle")

        logger.info("Info message")
        logger.debug("Debug message")
        logger.warning("Warning message")
        logger.error("Error message")
        logger.success("Success message")
        logger.key_info("Key info message")
        logger.timing("Timing message")

    def test_rich_handler_installed_once(self):
        get_logger("materializer")
        get_logger("launcher")
        handlers = [h for h in logging.getLogger().handlers if isinstance(h, RichHandler)]
        assert len(handlers) == 1


class TestMessageFormatting:
    def test_success_message_markup(self):
        base = MagicMock()
        logger = ComponentLogger(base, "lifecycle", "green")

        logger.success("Project ready")

        base.info.assert_called_once_with("[bold green]✅ Lifecycle: Project ready[/bold green]")

    def test_process_output_brackets_are_escaped(self):
        base = MagicMock()
        logger = ComponentLogger(base, "process", "grey50")

        logger.info("[stderr] Unhandled exception")

        message = base.info.call_args[0][0]
        assert "\\[stderr]" in message
        assert message.startswith("[grey50]Process: ")

    def test_error_passes_exc_info(self):
        base = MagicMock()
        ComponentLogger(base, "launcher").error("Launch failed", exc_info=True)
        assert base.error.call_args.kwargs["exc_info"] is True

    def test_records_reach_standard_logging(self, caplog):
        logger = get_logger("materializer")
        with caplog.at_level(logging.INFO, logger="scaffoldkit.materializer"):
            logger.info("Created project Demo.Project")

        assert "Created project Demo.Project" in caplog.text

    def test_debug_respects_level(self):
        base = logging.getLogger("scaffoldkit.level_check")
        logger = ComponentLogger(base, "level_check")
        logger.setLevel(logging.WARNING)

        with patch.object(base, "handle") as handle:
            logger.debug("hidden")
        handle.assert_not_called()
        assert not logger.isEnabledFor(logging.INFO)
