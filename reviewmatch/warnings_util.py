"""Utilities for displaying colored warnings and progress notes."""

import sys
import warnings

# ANSI color codes
YELLOW = '\033[93m'
CYAN = '\033[96m'
BOLD = '\033[1m'
RESET = '\033[0m'


def warn(message: str, category=UserWarning, stacklevel: int = 2) -> None:
    """
    Issue a warning with color formatting for better visibility.

    Parameters
    ----------
    message : str
        Warning message to display
    category : Warning
        Warning category (default: UserWarning)
    stacklevel : int
        Stack level for warning origin (default: 2)
    """
    # Issue the standard warning (for logging, filtering, etc.)
    warnings.warn(message, category, stacklevel=stacklevel + 1)

    # Also print a colored version to stderr if it's a TTY
    if sys.stderr.isatty():
        formatted_msg = f"{YELLOW}{BOLD}WARNING:{RESET} {YELLOW}{message}{RESET}"
        print(formatted_msg, file=sys.stderr)


def progress(message: str, verbose: bool = True) -> None:
    """Print a progress line for long batch passes (colored on a TTY)."""
    if not verbose:
        return
    if sys.stdout.isatty():
        print(f"{CYAN}{message}{RESET}", flush=True)
    else:
        print(message, flush=True)
