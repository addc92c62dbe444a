"""Command-line interface for scaffoldkit.

Commands:
    - new: Materialize a template project and keep its directory
    - probe: Wait until an HTTP or TCP endpoint is ready
    - sweep-dirs: Remove leftover project directories

Uses Click for command-line parsing with a group-based structure.
Each command is implemented in its own module and lazy-loaded.
"""

from .main import cli, main

__all__ = ["cli", "main"]
