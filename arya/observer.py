"""
Arya Environment Observer
~~~~~~~~~~~~~~~~~~~~~~~~~
Reads the focused application, window title, workspace and screen-lock state
from the desktop. The recorder depends only on the ``EnvironmentObserver``
interface, so tests can drive it with a fake.

The X11 implementation shells out to ``xprop`` and ``loginctl`` and resolves
process names with psutil.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """The desktop state at one instant. ``None`` means nothing is focused."""
    app: Optional[str]
    title: Optional[str]
    workspace: str


class EnvironmentObserver:
    """Interface to the host desktop."""

    def current_app(self) -> Optional[str]:
        raise NotImplementedError

    def current_window_title(self) -> Optional[str]:
        raise NotImplementedError

    def current_workspace(self) -> str:
        raise NotImplementedError

    def is_locked(self) -> bool:
        raise NotImplementedError

    def observe(self) -> Observation:
        return Observation(
            app=self.current_app(),
            title=self.current_window_title(),
            workspace=self.current_workspace(),
        )


# ── X11 Helpers ────────────────────────────────────────────────────────────

def _xprop(*args: str) -> Optional[str]:
    """Run xprop and return its stdout, or None on any failure."""
    try:
        result = subprocess.run(
            ["xprop", *args],
            capture_output=True,
            text=True,
            timeout=1,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug("xprop %s failed: %s", " ".join(args), e)
        return None

    if result.returncode != 0:
        return None
    return result.stdout


def _parse_strings(output: str) -> List[str]:
    """Extract the quoted values of an xprop STRING/UTF8_STRING property."""
    if "=" not in output:
        return []
    values = output.split("=", 1)[1]
    return [
        s.replace('\\"', '"').replace("\\\\", "\\")
        for s in re.findall(r'"((?:[^"\\]|\\.)*)"', values)
    ]


def _parse_cardinal(output: str) -> Optional[int]:
    match = re.search(r"=\s*(\d+)", output or "")
    return int(match.group(1)) if match else None


# ── X11 Observer ───────────────────────────────────────────────────────────

class X11Observer(EnvironmentObserver):
    """
    Observer for X11 desktops with an EWMH compliant window manager.

    Workspaces are reported by name (``_NET_DESKTOP_NAMES``) so they stay
    stable when workspaces are added or removed; unnamed ones fall back to
    "Workspace N".
    """

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id or os.environ.get("XDG_SESSION_ID")

    def _active_window(self) -> Optional[str]:
        output = _xprop("-root", "_NET_ACTIVE_WINDOW")
        if not output:
            return None
        match = re.search(r"0x[0-9a-fA-F]+", output)
        if not match or int(match.group(0), 16) == 0:
            return None
        return match.group(0)

    def observe(self) -> Observation:
        """Snapshot the desktop, reading the app and title from one active window."""
        window_id = self._active_window()
        return Observation(
            app=self._app_of(window_id),
            title=self._title_of(window_id),
            workspace=self.current_workspace(),
        )

    def current_app(self) -> Optional[str]:
        return self._app_of(self._active_window())

    def current_window_title(self) -> Optional[str]:
        return self._title_of(self._active_window())

    def _app_of(self, window_id: Optional[str]) -> Optional[str]:
        if window_id is None:
            return None

        pid = _parse_cardinal(_xprop("-id", window_id, "_NET_WM_PID") or "")
        if pid:
            try:
                return psutil.Process(pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                logger.debug("Process %d vanished or is not accessible", pid)

        # No usable PID, fall back to the window class
        classes = _parse_strings(_xprop("-id", window_id, "WM_CLASS") or "")
        return classes[-1] if classes else None

    def _title_of(self, window_id: Optional[str]) -> Optional[str]:
        if window_id is None:
            return None

        for prop in ("_NET_WM_NAME", "WM_NAME"):
            names = _parse_strings(_xprop("-id", window_id, prop) or "")
            if names:
                return names[0]
        return ""

    def current_workspace(self) -> str:
        index = _parse_cardinal(_xprop("-root", "_NET_CURRENT_DESKTOP") or "")
        if index is None:
            return "Workspace 1"

        names = _parse_strings(_xprop("-root", "_NET_DESKTOP_NAMES") or "")
        if index < len(names) and names[index]:
            return names[index]
        return f"Workspace {index + 1}"

    def is_locked(self) -> bool:
        if not self.session_id:
            return False
        try:
            result = subprocess.run(
                ["loginctl", "show-session", self.session_id, "-p", "LockedHint"],
                capture_output=True,
                text=True,
                timeout=1,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.debug("loginctl failed: %s", e)
            return False
        return result.stdout.strip().lower() == "lockedhint=yes"
