"""
Arya Shutdown Guard
~~~~~~~~~~~~~~~~~~~
Makes sure the activity record is saved exactly once when the process
exits, whether through a normal exit, Ctrl+C or SIGTERM from the session
manager at logout.

Also keeps the pid file that lets other commands find a running recorder.
"""

import atexit
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Callable, Optional

import psutil

logger = logging.getLogger(__name__)


class ShutdownGuard:
    """
    Runs a flush callback once on exit.

    Registers an atexit handler plus SIGINT/SIGTERM handlers. ``stop()``
    flushes immediately and restores the previous signal handlers.
    """

    def __init__(self):
        self._flush_callback: Optional[Callable] = None
        self._flushed = False
        self._lock = threading.Lock()
        self._previous_handlers = {}

    def start(self, flush_callback: Callable):
        """
        Start the shutdown guard.

        Args:
            flush_callback: Function to call when shutdown is detected.
                           This should save all in-memory data to disk.
        """
        self._flush_callback = flush_callback
        self._flushed = False

        atexit.register(self._do_flush)

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
            except (OSError, ValueError):
                logger.debug("Cannot install handler for signal %d off the main thread", signum)

    def stop(self):
        """Flush now and restore the previous signal handlers."""
        self._do_flush()
        atexit.unregister(self._do_flush)

        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except (OSError, ValueError):
                pass
        self._previous_handlers = {}

    # ── Internal ───────────────────────────────────────────────────────

    def _do_flush(self):
        """Execute the flush callback exactly once."""
        with self._lock:
            if self._flushed:
                return
            self._flushed = True

        if self._flush_callback:
            try:
                self._flush_callback()
            except Exception:
                logger.exception("Flush on shutdown failed")

    def _signal_handler(self, signum, frame):
        """Handle SIGINT/SIGTERM signals."""
        self._do_flush()
        raise SystemExit(0)


# ── Recorder PID File ──────────────────────────────────────────────────────

def write_pid_file(path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()), encoding="utf-8")


def remove_pid_file(path: Path):
    """Remove ``path`` if it names this process."""
    if running_recorder_pid(path) == os.getpid():
        path.unlink(missing_ok=True)


def running_recorder_pid(path: Path) -> Optional[int]:
    """
    PID of the recorder that wrote ``path``, or None if there is none.

    A pid file left behind by a process that is gone is treated as absent.
    """
    try:
        pid = int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if psutil.pid_exists(pid) else None


def request_recalculation(pid: int):
    """Ask a running recorder to reload its rules and re-classify its history."""
    os.kill(pid, signal.SIGHUP)
