"""
Home Bridge - Logging Utilities
Console logging with emoji indicators, tagged by platform.
"""

import os
import traceback
from datetime import datetime

# Log levels
QUIET = 0   # Only errors
NORMAL = 1  # Errors + important events
VERBOSE = 2 # Everything

_LEVEL_NAMES = {"quiet": QUIET, "normal": NORMAL, "verbose": VERBOSE}

LOG_LEVEL = _LEVEL_NAMES.get(os.getenv("LOG_LEVEL", "normal").strip().lower(), NORMAL)


class Colors:
    """ANSI color codes for terminal output."""
    OK = '\033[92m'      # Green
    WARN = '\033[93m'    # Yellow
    FAIL = '\033[91m'    # Red
    INFO = '\033[94m'    # Blue
    DIM = '\033[90m'     # Gray
    BOLD = '\033[1m'
    END = '\033[0m'


def set_level(level: int):
    """Change verbosity at runtime (QUIET, NORMAL or VERBOSE)."""
    global LOG_LEVEL
    LOG_LEVEL = level


def _timestamp():
    return datetime.now().strftime("%H:%M:%S")


def _emit(icon: str, color: str, msg: str, source: str = None, level: int = NORMAL):
    if level > LOG_LEVEL:
        return

    ts = f"{Colors.DIM}{_timestamp()}{Colors.END}"
    prefix = f"[{source}] " if source else ""
    print(f"{ts} {color}{icon}{Colors.END} {prefix}{msg}", flush=True)


def ok(msg: str, source: str = None):
    """Log success message."""
    _emit("✓", Colors.OK, msg, source, NORMAL)


def warn(msg: str, source: str = None):
    """Log warning message."""
    _emit("⚠", Colors.WARN, msg, source, NORMAL)


def error(msg: str, source: str = None):
    """Log error message."""
    _emit("✗", Colors.FAIL, msg, source, QUIET)


def exception(msg: str, exc: BaseException, source: str = None):
    """Log an error together with its traceback (traceback only in verbose mode)."""
    _emit("✗", Colors.FAIL, f"{msg}: {type(exc).__name__}: {exc}", source, QUIET)
    if LOG_LEVEL >= VERBOSE:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        print(f"{Colors.DIM}{tb.rstrip()}{Colors.END}", flush=True)


def info(msg: str, source: str = None):
    """Log info message."""
    _emit("ℹ", Colors.INFO, msg, source, NORMAL)


def debug(msg: str, source: str = None):
    """Log debug message (only in verbose mode)."""
    _emit("•", Colors.DIM, msg, source, VERBOSE)


def startup(msg: str):
    """Log startup message (always shown)."""
    print(f"{Colors.BOLD}{msg}{Colors.END}", flush=True)


def online(msg: str, source: str = None):
    """Log a gateway coming online (always shown)."""
    ts = f"{Colors.DIM}{_timestamp()}{Colors.END}"
    prefix = f"[{source}] " if source else ""
    print(f"{ts} {Colors.OK}●{Colors.END} {prefix}{msg}", flush=True)


def offline(msg: str, source: str = None):
    """Log a gateway going offline (always shown)."""
    ts = f"{Colors.DIM}{_timestamp()}{Colors.END}"
    prefix = f"[{source}] " if source else ""
    print(f"{ts} {Colors.FAIL}○{Colors.END} {prefix}{msg}", flush=True)


def divider():
    """Print a divider line."""
    print(f"{Colors.DIM}{'─' * 50}{Colors.END}")
