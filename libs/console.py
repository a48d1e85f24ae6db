# libs/console.py
from __future__ import annotations

import os
import sys
from typing import Optional, TextIO

RED = "\033[0;31m"
GREEN = "\033[0;32m"
BLUE = "\033[0;34m"
MAGENTA = "\033[0;35m"
CYAN = "\033[0;36m"
YELLOW = "\033[1;33m"
NC = "\033[0m"

COLORS = {
    "red": RED,
    "green": GREEN,
    "blue": BLUE,
    "magenta": MAGENTA,
    "cyan": CYAN,
    "yellow": YELLOW,
}

# round-robin palette for services that do not pick a color
SERVICE_PALETTE = ("green", "blue", "magenta", "cyan")


def color_enabled(stream: Optional[TextIO] = None) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    stream = stream or sys.stdout
    try:
        return stream.isatty()
    except Exception:
        return False


def tag(label: str, color: Optional[str] = None, *, stream: Optional[TextIO] = None) -> str:
    code = COLORS.get(color or "", "")
    if code and color_enabled(stream):
        return f"{code}[{label}]{NC}"
    return f"[{label}]"


def emit(label: str, message: str, color: Optional[str] = None, *, stream: Optional[TextIO] = None) -> None:
    """Write one tagged line to the console.

    The whole line goes out in a single write so lines coming from different
    services never get spliced together.
    """
    out = stream or sys.stdout
    out.write(f"{tag(label, color, stream=out)} {message}\n")
    out.flush()


def info(message: str, *, stream: Optional[TextIO] = None) -> None:
    emit("supervisor", message, stream=stream)


def warn(message: str, *, stream: Optional[TextIO] = None) -> None:
    emit("WARN", message, "yellow", stream=stream)


def error(message: str, *, stream: Optional[TextIO] = None) -> None:
    emit("ERROR", message, "red", stream=stream)
