"""Logging setup for the server and worker processes.

Lines look like ``[12:00:01] INFO     worker       [ENG-12 ENG-12-plan-1709...] message``.
The bracketed ticket/job part comes from :func:`job_context`, which the worker
enters around each job, so every module logging during that job is tagged
without passing ids around.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

# (ticket_id, job_id) of the job the current task is working on.
_current_job: ContextVar[tuple[Optional[str], Optional[str]]] = ContextVar(
    "ticketpilot_current_job", default=(None, None)
)

QUIET_LOGGERS = ("httpx", "httpcore", "openai", "uvicorn.access", "sqlalchemy", "langfuse")


@contextmanager
def job_context(job_id: Optional[str], ticket_id: Optional[str] = None) -> Iterator[None]:
    """Tag log records emitted inside the block with a ticket and job id."""
    token = _current_job.set((ticket_id, job_id))
    try:
        yield
    finally:
        _current_job.reset(token)


def current_job() -> tuple[Optional[str], Optional[str]]:
    """The ``(ticket_id, job_id)`` pair set by the innermost job_context."""
    return _current_job.get()


class JobContextFilter(logging.Filter):
    """Copies the active job context onto each record as ``ticket_id``/``job_id``.

    Attributes passed explicitly through ``extra=`` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ticket_id, job_id = _current_job.get()
        if getattr(record, "ticket_id", None) is None:
            record.ticket_id = ticket_id
        if getattr(record, "job_id", None) is None:
            record.job_id = job_id
        return True


class TicketPilotFormatter(logging.Formatter):
    """Single-line formatter: time, level, short logger name, job tag, message."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def _level(self, record: logging.LogRecord) -> str:
        if not (self.use_colors and sys.stderr.isatty()):
            return record.levelname
        color = self.LEVEL_COLORS.get(record.levelno, "")
        return f"{color}{record.levelname}{self.RESET}"

    @staticmethod
    def _job_tag(record: logging.LogRecord) -> str:
        parts = [getattr(record, "ticket_id", None), getattr(record, "job_id", None)]
        parts = [str(p) for p in parts if p]
        return f"[{' '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        source = record.name.rsplit(".", 1)[-1]

        text = self._job_tag(record) + record.getMessage()
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"

        return f"[{clock}] {self._level(record):8} {source:12} {text}"


def prune_logs(log_dir: Path, retention_days: int) -> int:
    """Delete ``*.log*`` files in log_dir untouched for retention_days.

    Returns how many were removed. ``retention_days <= 0`` keeps everything.
    """
    if retention_days <= 0 or not log_dir.is_dir():
        return 0
    cutoff = datetime.now().timestamp() - retention_days * 86400
    removed = 0
    for path in log_dir.glob("*.log*"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    return removed


def _file_handler(log_file: Path, rotation_mb: int, retention_days: int) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=max(1, rotation_mb) * 1024 * 1024,
        backupCount=max(1, retention_days),
    )
    handler.setFormatter(TicketPilotFormatter(use_colors=False))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    rotation_mb: int = 10,
    retention_days: int = 7,
    use_colors: bool = True,
    console: bool = True,
    process_name: str = "ticketpilot",
) -> None:
    """Replace the root handlers with console and/or rotating file output.

    Args:
        level: Root log level name, case-insensitive
        log_file: Explicit log file; wins over log_dir
        log_dir: Directory for a ``{process_name}_{timestamp}.log`` file
        rotation_mb: Size at which the file rotates
        retention_days: Age after which old logs in the directory are pruned
        use_colors: Color level names on a console attached to a TTY
        console: Also log to stderr
        process_name: ``server`` or ``worker``; names the generated file
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    handlers: list[logging.Handler] = []
    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(TicketPilotFormatter(use_colors=use_colors))
        handlers.append(stream)

    if log_file is None and log_dir is not None:
        log_file = Path(log_dir) / f"{process_name}_{datetime.now():%Y%m%d_%H%M%S}.log"
    if log_file is not None:
        log_file = Path(log_file)
        try:
            prune_logs(log_file.parent, retention_days)
        except OSError as e:
            logging.getLogger(__name__).warning("Could not prune old logs in %s: %s", log_file.parent, e)
        handlers.append(_file_handler(log_file, rotation_mb, retention_days))

    context_filter = JobContextFilter()
    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
