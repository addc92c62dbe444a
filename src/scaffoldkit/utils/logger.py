"""
Component Logger Framework

Provides colored logging for harness components with:
- Unified API for all components (materializer, launcher, probe, lifecycle)
- Rich terminal output with component-specific colors
- Graceful fallbacks when configuration is unavailable

Usage:
    logger = get_logger("lifecycle")
    logger.key_info("Starting project")
    logger.info("Launching process")
    logger.debug("Detailed trace")
    logger.success("Project ready")
    logger.warning("Something to note")
    logger.error("Something went wrong")
    logger.timing("Readiness took 2.5 seconds")

    # Custom loggers with explicit parameters
    logger = get_logger(name="custom_component", color="blue")
"""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from scaffoldkit.utils.config import get_config_value


class ComponentLogger:
    """
    Rich-formatted logger for harness components with color coding and message hierarchy.

    Message Types:
    - key_info: Important operational information
    - info: Normal operational messages
    - debug: Detailed tracing information
    - warning: Warning messages
    - error: Error messages
    - success: Success messages
    - timing: Timing information
    """

    def __init__(self, base_logger: logging.Logger, component_name: str, color: str = "white"):
        """
        Initialize component logger.

        Args:
            base_logger: Underlying Python logger
            component_name: Name of the component (e.g., 'launcher', 'probe')
            color: Rich color name for this component
        """
        self.base_logger = base_logger
        self.component_name = component_name
        self.color = color

    def _format_message(self, message: str, style: str, emoji: str = "") -> str:
        """Format message with Rich markup and emoji prefix."""
        # Child-process output and file paths may contain square brackets
        prefix = f"{emoji}{self.component_name.title()}: "
        body = escape(message)
        if style:
            return f"[{style}]{prefix}{body}[/{style}]"
        return f"{prefix}{body}"

    def key_info(self, message: str) -> None:
        """Important operational information."""
        style = f"bold {self.color}" if self.color != "white" else "bold white"
        self.base_logger.info(self._format_message(message, style))

    def info(self, message: str) -> None:
        self.base_logger.info(self._format_message(message, self.color))

    def debug(self, message: str) -> None:
        style = f"dim {self.color}" if self.color != "white" else "dim white"
        self.base_logger.debug(self._format_message(message, style, "🔍 "))

    def warning(self, message: str) -> None:
        self.base_logger.warning(self._format_message(message, "bold yellow", "⚠️  "))

    def error(self, message: str, exc_info: bool = False) -> None:
        """Error message, optionally with the active exception traceback."""
        self.base_logger.error(self._format_message(message, "bold red", "❌ "), exc_info=exc_info)

    def success(self, message: str) -> None:
        self.base_logger.info(self._format_message(message, "bold green", "✅ "))

    def timing(self, message: str) -> None:
        self.base_logger.info(self._format_message(message, "bold white", "🕒 "))

    @property
    def level(self) -> int:
        return self.base_logger.level

    @property
    def name(self) -> str:
        return self.base_logger.name

    def setLevel(self, level: int) -> None:
        self.base_logger.setLevel(level)

    def isEnabledFor(self, level: int) -> bool:
        return self.base_logger.isEnabledFor(level)


def _setup_rich_logging(level: int = logging.INFO) -> None:
    """Configure Rich logging for the root logger (called once)."""
    root_logger = logging.getLogger()

    for handler in root_logger.handlers:
        if isinstance(handler, RichHandler):
            return

    root_logger.setLevel(level)

    try:
        rich_tracebacks = get_config_value("logging.rich_tracebacks", True)
        show_traceback_locals = get_config_value("logging.show_traceback_locals", False)
        show_full_paths = get_config_value("logging.show_full_paths", False)
    except Exception:
        rich_tracebacks = True
        show_traceback_locals = False
        show_full_paths = False

    # Test runners and CI capture output without a TTY
    console = Console(force_terminal=True, width=120, color_system="truecolor")

    handler = RichHandler(
        console=console,
        rich_tracebacks=rich_tracebacks,
        markup=True,
        show_path=show_full_paths,
        show_time=True,
        show_level=True,
        tracebacks_show_locals=show_traceback_locals,
    )
    root_logger.addHandler(handler)

    for lib in ["httpx", "httpcore"]:
        logging.getLogger(lib).setLevel(logging.WARNING)


def get_logger(
    component_name: str | None = None,
    level: int = logging.INFO,
    *,
    name: str | None = None,
    color: str | None = None,
) -> ComponentLogger:
    """
    Get a component logger.

    Args:
        component_name: Component name (e.g., 'launcher', 'probe'); its color is
            read from ``logging.logging_colors.<component_name>``
        level: Logging level for the root logger on first setup
        name: Direct logger name (keyword-only), bypasses color lookup
        color: Direct color specification (keyword-only)

    Returns:
        ComponentLogger instance
    """
    _setup_rich_logging(level)

    if name is not None:
        return ComponentLogger(logging.getLogger(name), name, color or "white")

    if component_name is None:
        raise ValueError(
            "Component name is required. Usage: get_logger('component_name') or "
            "get_logger(name='custom_name', color='blue')"
        )

    base_logger = logging.getLogger(f"scaffoldkit.{component_name}")

    try:
        color = get_config_value(f"logging.logging_colors.{component_name}") or "white"
    except Exception:
        # A broken configuration file must not break logging
        color = "white"

    return ComponentLogger(base_logger, component_name, color)
