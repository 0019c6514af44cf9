"""Logging configuration for convertctl sessions."""

import datetime
import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> Optional[Path]:
    """Log to stderr and to a per-session file inside log_dir.

    Each call creates a new file named after the session start time, e.g.
    ``convertctl_2026-02-17_18-30-00.log``.

    Returns:
        Path of the session log file, or None if the directory was unusable.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    # Console only shows warnings; the CLI echoes progress itself
    console.setLevel(logging.WARNING)
    root.addHandler(console)

    if log_dir is None:
        return None

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"ERROR: Cannot create log directory '{log_dir}': {e}", file=sys.stderr)
        return None

    timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_file = log_dir / f"convertctl_{timestamp}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    logging.getLogger(__name__).info("Session log: %s", log_file)
    return log_file
