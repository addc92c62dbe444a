"""
Configuration System

Single-file YAML configuration for the template-project harness:
- Optional ``scaffoldkit.yml`` loaded from ``SCAFFOLDKIT_CONFIG`` or the working directory
- Environment variable resolution (``${VAR}``, ``${VAR:-default}``, ``$VAR``)
- Built-in defaults so the harness works without any configuration file
- Typed access through :class:`HarnessSettings`
"""

import copy
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# Use standard logging (not get_logger) to avoid circular imports with logger.py
logger = logging.getLogger("CONFIG")

CONFIG_ENV_VAR = "SCAFFOLDKIT_CONFIG"
CONFIG_FILE_NAME = "scaffoldkit.yml"

DEFAULTS: dict[str, Any] = {
    "scaffolding": {
        "tool": ["dotnet"],
        "project_name": "Demo.Project",
        "timeout_seconds": 300,
    },
    "projects": {
        "root": None,
        "fixture_directory": None,
    },
    "build": {
        "configuration": "Release",
        "target_framework": "net8.0",
    },
    "readiness": {
        "timeout_seconds": 10,
        "poll_interval_seconds": 1,
    },
    "process": {
        "stop_timeout_seconds": 10,
        "output_buffer_lines": 500,
    },
    "container": {
        "runtime": "auto",
    },
    "logging": {
        "rich_tracebacks": True,
        "show_traceback_locals": False,
        "show_full_paths": False,
        "logging_colors": {
            "materializer": "cyan",
            "patcher": "blue",
            "launcher": "magenta",
            "process": "grey50",
            "probe": "yellow",
            "lifecycle": "green",
            "endpoints": "bright_blue",
        },
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigBuilder:
    """
    Configuration builder for the harness.

    Features:
    - Single-file YAML loading with validation and error handling
    - Environment variable resolution
    - Defaults merged underneath the user configuration
    """

    def __init__(self, config_path: str | Path | None = None):
        """
        Initialize configuration builder.

        Args:
            config_path: Path to a YAML configuration file. If None, uses
                ``scaffoldkit.yml`` in the current directory when present, and
                built-in defaults otherwise.

        Raises:
            FileNotFoundError: If an explicit config_path does not exist.
        """
        dotenv_path = Path.cwd() / ".env"
        if dotenv_path.exists():
            load_dotenv(dotenv_path, override=False)
            logger.debug(f"Loaded .env file from {dotenv_path}")

        if config_path is None:
            cwd_config = Path.cwd() / CONFIG_FILE_NAME
            config_path = cwd_config if cwd_config.exists() else None
        elif not Path(config_path).exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        self.config_path = Path(config_path) if config_path else None
        user_config = self._load_config() if self.config_path else {}
        self.raw_config = _deep_merge(DEFAULTS, user_config)

    def _load_yaml_file(self, file_path: Path) -> dict[str, Any]:
        """Load and validate a YAML configuration file."""
        try:
            with open(file_path) as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.warning(f"Configuration file is empty: {file_path}")
                return {}

            if not isinstance(config, dict):
                error_msg = f"Configuration file must contain a dictionary/mapping: {file_path}"
                logger.error(error_msg)
                raise ValueError(error_msg)

            return config
        except yaml.YAMLError as e:
            error_msg = f"Error parsing YAML configuration: {e}"
            logger.error(error_msg)
            raise yaml.YAMLError(error_msg) from e

    def _resolve_env_vars(self, data: Any) -> Any:
        """Recursively resolve environment variables in configuration data.

        Supports both simple and bash-style default value syntax:
        - ${VAR_NAME} - simple substitution
        - ${VAR_NAME:-default_value} - with default value
        - $VAR_NAME - simple substitution without braces
        """
        if isinstance(data, dict):
            return {key: self._resolve_env_vars(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [self._resolve_env_vars(item) for item in data]
        elif isinstance(data, str):

            def replace_env_var(match):
                if match.group(1):
                    var_name = match.group(1)
                    default_value = match.group(2)
                else:
                    var_name = match.group(3)
                    default_value = None

                env_value = os.environ.get(var_name)
                if env_value is None:
                    if default_value is not None:
                        return default_value
                    logger.info(f"Environment variable '{var_name}' not found, keeping original value")
                    return match.group(0)
                return env_value

            pattern = r"\$\{([^}:]+)(?::-(.*?))?\}|\$([A-Za-z_][A-Za-z0-9_]*)"
            return re.sub(pattern, replace_env_var, data)
        else:
            return data

    def _load_config(self) -> dict[str, Any]:
        config = self._load_yaml_file(self.config_path)
        expanded = self._resolve_env_vars(config)
        logger.info(f"Loaded configuration from {self.config_path}")
        return expanded

    def get(self, path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation path."""
        value = self.raw_config
        try:
            for key in path.split("."):
                value = value[key]
        except (KeyError, TypeError):
            return default
        return default if value is None else value


# =============================================================================
# GLOBAL CONFIGURATION
# =============================================================================

_default_config: ConfigBuilder | None = None
_config_cache: dict[str, ConfigBuilder] = {}


def get_config_builder(config_path: str | Path | None = None) -> ConfigBuilder:
    """Get the configuration builder, cached per path.

    Without an explicit path, the ``SCAFFOLDKIT_CONFIG`` environment variable is
    consulted, then ``scaffoldkit.yml`` in the current directory, then defaults.
    """
    global _default_config

    if config_path is None:
        if _default_config is None:
            _default_config = ConfigBuilder(os.environ.get(CONFIG_ENV_VAR))
        return _default_config

    resolved_path = str(Path(config_path).resolve())
    if resolved_path not in _config_cache:
        _config_cache[resolved_path] = ConfigBuilder(resolved_path)
    return _config_cache[resolved_path]


def reset_config() -> None:
    """Drop cached configuration so the next access reloads it."""
    global _default_config
    _default_config = None
    _config_cache.clear()


def get_config_value(path: str, default: Any = None, config_path: str | Path | None = None) -> Any:
    """
    Get a specific configuration value by dot-separated path.

    Examples:
        >>> get_config_value("readiness.timeout_seconds", 10)
        10
    """
    if not path:
        raise ValueError("Configuration path cannot be empty or None")
    return get_config_builder(config_path).get(path, default)


@dataclass(frozen=True)
class HarnessSettings:
    """Typed view over the harness configuration."""

    tool: tuple[str, ...]
    project_name: str
    scaffolding_timeout: float
    projects_root: Path
    fixture_directory: Path | None
    build_configuration: str
    target_framework: str
    readiness_timeout: float
    poll_interval: float
    stop_timeout: float
    output_buffer_lines: int
    container_runtime: str

    @classmethod
    def from_config(cls, config: ConfigBuilder | None = None) -> "HarnessSettings":
        config = config or get_config_builder()

        tool = config.get("scaffolding.tool")
        if isinstance(tool, str):
            tool = tool.split()

        fixture_directory = config.get("projects.fixture_directory")
        return cls(
            tool=tuple(tool),
            project_name=config.get("scaffolding.project_name"),
            scaffolding_timeout=float(config.get("scaffolding.timeout_seconds")),
            projects_root=Path(config.get("projects.root", tempfile.gettempdir())),
            fixture_directory=Path(fixture_directory) if fixture_directory else None,
            build_configuration=config.get("build.configuration"),
            target_framework=config.get("build.target_framework"),
            readiness_timeout=float(config.get("readiness.timeout_seconds")),
            poll_interval=float(config.get("readiness.poll_interval_seconds")),
            stop_timeout=float(config.get("process.stop_timeout_seconds")),
            output_buffer_lines=int(config.get("process.output_buffer_lines")),
            container_runtime=config.get("container.runtime"),
        )
