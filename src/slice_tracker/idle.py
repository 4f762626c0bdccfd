"""Host idle-time sources polled by the away monitor."""

from __future__ import annotations

import ctypes
import logging
import sys
from typing import Callable, Optional

logger = logging.getLogger(__name__)

IdleSource = Callable[[], float]


class WindowsIdleDetector:
    """Reports seconds since the last keyboard or mouse input using Win32 APIs."""

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", ctypes.c_uint), ("dwTime", ctypes.c_ulong)]

    def __init__(self) -> None:
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        self._kernel32.GetTickCount64.restype = ctypes.c_ulonglong

    def milliseconds_since_input(self) -> int:
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        # dwTime wraps with the 32-bit tick counter.
        now_ticks = self._kernel32.GetTickCount64() & 0xFFFFFFFF
        elapsed = (now_ticks - last_input.dwTime) & 0xFFFFFFFF
        return int(elapsed)

    def __call__(self) -> float:
        return self.milliseconds_since_input() / 1000.0


def default_idle_source() -> Optional[IdleSource]:
    """Return the idle source for this platform, or ``None`` when unsupported."""
    if sys.platform == "win32":
        return WindowsIdleDetector()
    logger.info(
        "Idle polling is not available on %s; relying on heartbeat and session events.",
        sys.platform,
    )
    return None
