"""
X11 window helpers for process-controlled engines, via xdotool.
"""

import logging
import time
from typing import Callable, List, Optional

from enginelab.core.utils import poll_until, run_command

logger = logging.getLogger(__name__)

XDOTOOL = "xdotool"


def _search(pid: int, window_class: Optional[str]) -> List[str]:
    cmd = [XDOTOOL, "search", "--onlyvisible", "--pid", str(pid)]
    if window_class:
        cmd += ["--class", window_class]
    return cmd


def find_visible_windows(pid: int, window_class: Optional[str] = None) -> List[str]:
    """Window ids of visible windows owned by ``pid``."""
    output = run_command(_search(pid, window_class), timeout=5)
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def wait_for_window(
    pid: int,
    window_class: Optional[str],
    timeout: float,
    interval: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until ``pid`` shows a visible window, or ``timeout`` elapses."""
    return poll_until(
        lambda: bool(find_visible_windows(pid, window_class)),
        timeout=timeout,
        interval=interval,
        sleep=sleep,
    )


def quit_windows(pid: int, window_class: Optional[str] = None) -> bool:
    """
    Ask the windows of ``pid`` to close, like clicking the close button.

    Chromium only writes its startup trace when closed this way.
    Returns False if no window was found, which is normal once it is closing.
    """
    return run_command(_search(pid, window_class) + ["windowquit"], timeout=5) is not None


def run_window_hook(command: List[str], pid: int, timeout: int = 30) -> bool:
    """Run a user window-placement command with the engine pid appended."""
    cmd = list(command) + [str(pid)]
    logger.debug(f"Running window hook: {cmd}")
    return run_command(cmd, timeout=timeout) is not None
