"""Configuration and Logging Package.

Modules:
    config: YAML configuration builder, access functions and typed settings
    logger: Rich component loggers
"""

# Make the main modules available at package level
from . import config, logger

__all__ = ["config", "logger"]
