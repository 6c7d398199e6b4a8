# -*- coding: utf-8 -*-
"""
Logging setup for the referral tracker runner (main.py).

The tracker logs one REFERRAL_* line per workflow event (click tracked,
conversion registered, trigger deferred, store failure). Routing:
- DEBUG, INFO, WARNING → STDOUT: normal progress, backoff waits, deferrals
- ERROR, CRITICAL → STDERR: wallet conflicts, unreadable or unwritable
  progress store, unexpected errors inside a trigger

Records go through a QueueHandler so a slow terminal never stalls a
trigger while the single-flight busy flag is held. httpx and httpcore log
every Attribution Service request at INFO; they are raised to WARNING.
"""

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener


class MaxLevelFilter(logging.Filter):
    """
    Allows only records up to a specified level (inclusive).
    Used to keep ERROR/CRITICAL records out of stdout.
    """

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


_log_listener: QueueListener | None = None

# Third-party loggers that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: int = logging.INFO):
    """
    Configure logging: QueueHandler on the root logger, QueueListener in a
    background thread with the stdout/stderr StreamHandlers.

    Must be called before any logger is used. Calling it again replaces the
    previous listener.
    """
    global _log_listener

    if _log_listener is not None:
        _stop_log_listener()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue = queue.Queue()
    root_logger.addHandler(QueueHandler(log_queue))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)


def _stop_log_listener():
    """Stop the queue listener (called at exit)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
