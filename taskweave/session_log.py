"""
Session Logging
===============

File-backed logging for an orchestrator session. Every run writes one
timestamped log under the log directory; per-item agent transcripts are
written next to it by the parallel executor.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_session_handlers: List[logging.Handler] = []


def setup_session_logging(
    log_dir: str = ".taskweave-logs",
    level: int = logging.INFO,
    console: Optional[Console] = None
) -> Path:
    """
    Attach a session log file to the ``taskweave`` logger.

    Args:
        log_dir: Directory for the session log
        level: Minimum level written to the file
        console: When given, warnings and errors are mirrored to it

    Returns:
        Path of the created log file
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"taskweave-{datetime.now():%Y%m%d-%H%M%S}.log"

    root = logging.getLogger("taskweave")
    root.setLevel(min(level, root.level or level))

    # Replace handlers from an earlier session in the same process
    for handler in _session_handlers:
        root.removeHandler(handler)
        handler.close()
    _session_handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(file_handler)
    _session_handlers.append(file_handler)

    if console is not None:
        rich_handler = RichHandler(console=console, show_path=False)
        rich_handler.setLevel(logging.WARNING)
        root.addHandler(rich_handler)
        _session_handlers.append(rich_handler)

    root.info(f"Session started at {datetime.now():%Y-%m-%d %H:%M:%S}")
    return log_file


def log_task_start(logger: logging.Logger, task_id: str, title: str) -> None:
    logger.info(f"=== Task started: {task_id} - {title} ===")


def log_task_end(logger: logging.Logger, task_id: str, status: str) -> None:
    logger.info(f"=== Task ended: {task_id} - status: {status} ===")


def list_recent_logs(log_dir: str = ".taskweave-logs", limit: int = 10) -> List[Dict[str, Any]]:
    """
    List the most recently written log files.

    Returns:
        Dicts with name, path, size and modified timestamp, newest first
    """
    directory = Path(log_dir)
    if not directory.is_dir():
        return []

    logs = sorted(
        (p for p in directory.glob("*.log") if p.is_file()),
        key=lambda p: p.stat().st_mtime,
        reverse=True
    )
    return [
        {
            "name": p.name,
            "path": str(p.resolve()),
            "size": p.stat().st_size,
            "modified_at": datetime.fromtimestamp(p.stat().st_mtime).isoformat()
        }
        for p in logs[:limit]
    ]
