"""Logging configuration for the Cyber Range Manager.

Loguru with a compact colored format; structured ``extra`` fields passed
as keyword arguments are appended as key=value pairs.
"""

import sys
from typing import TYPE_CHECKING

from loguru import logger


if TYPE_CHECKING:
    from loguru import Record


COLORS = {
    "amber": "#FFC857",  # Warnings
    "green": "#5B8A72",  # Success
    "muted": "#88A896",  # Secondary text, debug
    "cream": "#EFF8E2",  # Primary text
    "red": "#A33D2E",  # Errors
    "blue": "#5B9BD5",  # Info, identifiers
    "pending": "#4A5C54",  # Separators
}

RESET = "\033[0m"


def _log_format(record: "Record") -> str:
    """Build the Loguru format string for one record.

    Args:
        record: Loguru record containing log metadata, message, and level.

    Returns:
        Format string with Loguru color tags.
    """
    level = record["level"].name

    level_colors = {
        "TRACE": f"<fg {COLORS['pending']}>",
        "DEBUG": f"<fg {COLORS['muted']}>",
        "INFO": f"<fg {COLORS['blue']}>",
        "SUCCESS": f"<fg {COLORS['green']}>",
        "WARNING": f"<fg {COLORS['amber']}>",
        "ERROR": f"<fg {COLORS['red']}>",
        "CRITICAL": f"<fg {COLORS['red']}><bold>",
    }
    color = level_colors.get(level, f"<fg {COLORS['cream']}>")
    close = "</>"

    # Format: timestamp | level | module | message [extra]
    fmt = (
        f"<fg {COLORS['muted']}>{{time:HH:mm:ss}}{close}"
        f" <fg {COLORS['pending']}>│{close} "
        f"{color}{{level: <8}}{close}"
        f"<fg {COLORS['pending']}>│{close} "
        f"<fg {COLORS['muted']}>{{name}}{close}"
        f"<fg {COLORS['pending']}>:{close}"
        f"<fg {COLORS['cream']}>{{message}}{close}"
    )

    extra = record["extra"]
    if extra:
        extra_str = " ".join(f"{k}={v!r}" for k, v in extra.items())
        # Escape braces to prevent Loguru format string injection
        extra_str = extra_str.replace("{", "{{").replace("}", "}}")
        # Same for color tags coming from remote error payloads
        extra_str = extra_str.replace("<", r"\<")
        fmt += f" <fg {COLORS['muted']}>│ {extra_str}{close}"

    fmt += "\n"

    if record["exception"]:
        fmt += "{exception}\n"

    return fmt


def configure_logging(level: str = "INFO") -> None:
    """Replace the default Loguru handler with the colored stderr handler.

    Args:
        level: Minimum log level to display (e.g., "DEBUG", "INFO", "WARNING").
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=_log_format,
        colorize=True,
    )


def _ansi_color(hex_color: str) -> str:
    """Convert a hex color code to an ANSI 24-bit escape sequence."""
    hex_color = hex_color.lstrip("#")
    r, g, b = int(hex_color[0:2], 16), int(hex_color[2:4], 16), int(hex_color[4:6], 16)
    return f"\033[38;2;{r};{g};{b}m"


def log_banner(title: str = "Cyber Range Manager") -> None:
    """Print the framed welcome banner on stderr."""
    blue = _ansi_color(COLORS["blue"])
    amber = _ansi_color(COLORS["amber"])
    width = len(title) + 4
    lines = [
        f"{blue}╔{'═' * width}╗{RESET}",
        f"{blue}║{RESET}  {amber}{title}{RESET}  {blue}║{RESET}",
        f"{blue}╚{'═' * width}╝{RESET}",
        "",
    ]
    sys.stderr.write("\n".join(lines))
    sys.stderr.flush()
