"""Console and message styling shared by the CLI commands."""

from rich.console import Console
from rich.theme import Theme

THEME = Theme(
    {
        "success": "green",
        "error": "bold red",
        "warning": "yellow",
        "info": "cyan",
        "label": "bold",
        "value": "white",
        "path": "blue underline",
    }
)

console = Console(theme=THEME)


class Messages:
    """Pre-formatted message helpers for common patterns."""

    @staticmethod
    def success(text: str) -> str:
        return f"[success]✓ {text}[/success]"

    @staticmethod
    def error(text: str) -> str:
        return f"[error]✗ {text}[/error]"

    @staticmethod
    def warning(text: str) -> str:
        return f"[warning]⚠️  {text}[/warning]"

    @staticmethod
    def info(text: str) -> str:
        return f"[info]ℹ️  {text}[/info]"

    @staticmethod
    def label_value(label: str, value: str) -> str:
        return f"[label]{label}:[/label] [value]{value}[/value]"

    @staticmethod
    def path(text: str) -> str:
        return f"[path]{text}[/path]"
