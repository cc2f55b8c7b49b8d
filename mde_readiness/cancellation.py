"""
Cooperative cancellation for the orchestrator.

OS signals never unwind the pipeline directly.  They flip a
:class:`CancellationToken` which the orchestrator polls between phases.  The
only exception is while the process is parked at a prompt (a *safe point*):
there nothing external is in flight, so the handler raises
:class:`InterruptSignal` immediately instead of waiting for the next poll.
"""

from __future__ import annotations

import logging
import os
import select
import signal
import sys
import threading
import time
from contextlib import contextmanager, nullcontext
from typing import Callable, Iterator, List, Optional

from .errors import InterruptSignal

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._safe_depth = 0
        self._mid_operation = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def at_safe_point(self) -> bool:
        return self._safe_depth > 0

    def cancel(self, reason: str = "Cancellation requested") -> bool:
        """Request cancellation. Returns False when already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._mid_operation = not self.at_safe_point
        self._event.set()
        logger.warning("Cancellation requested: %s", reason)
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InterruptSignal(self._reason or "Interrupted", mid_operation=self._mid_operation)

    @contextmanager
    def safe_point(self) -> Iterator[None]:
        """Mark a region (typically a prompt) where immediate interruption is allowed."""
        self.raise_if_cancelled()
        self._safe_depth += 1
        try:
            yield
        finally:
            self._safe_depth -= 1

    def sleep(self, seconds: float, step: float = 0.2) -> None:
        """Sleep in small slices so a pending cancellation is noticed promptly."""
        deadline = time.monotonic() + seconds
        while True:
            self.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._event.wait(min(step, remaining))


def _signal_names() -> List[str]:
    names = ["SIGINT", "SIGTERM"]
    if hasattr(signal, "SIGBREAK"):
        names.append("SIGBREAK")
    return names


@contextmanager
def interrupt_handler(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route OS termination signals into ``token`` for the lifetime of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    previous = {}

    def _handle(signum, _frame) -> None:
        first = token.cancel(f"Received {signal.Signals(signum).name}")
        if not first:
            logger.debug("Repeated signal %s ignored", signum)
            return
        if token.at_safe_point:
            raise InterruptSignal(token.reason or "Interrupted", mid_operation=False)

    for name in _signal_names():
        signum = getattr(signal, name)
        try:
            previous[signum] = signal.signal(signum, _handle)
        except (OSError, ValueError):
            continue
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@contextmanager
def _single_key_input() -> Iterator[None]:
    """Put a POSIX terminal in cbreak mode so one keypress is readable without Enter."""
    if os.name == "nt" or not sys.stdin or not sys.stdin.isatty():
        yield
        return
    import termios
    import tty

    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd, termios.TCSANOW)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def _key_pressed(timeout: float) -> bool:
    if os.name == "nt":
        import msvcrt

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if msvcrt.kbhit():
                msvcrt.getwch()
                return True
            time.sleep(0.05)
        return False

    if not sys.stdin or not sys.stdin.isatty():
        time.sleep(timeout)
        return False
    ready, _, _ = select.select([sys.stdin], [], [], timeout)
    if ready:
        os.read(sys.stdin.fileno(), 1)
        return True
    return False


def countdown(
    seconds: int,
    on_tick: Callable[[int], None],
    key_pressed: Callable[[float], bool] = _key_pressed,
    token: Optional[CancellationToken] = None,
) -> bool:
    """
    Count down ``seconds``, calling ``on_tick`` once per second.

    Returns True when the countdown ran to completion (the caller should
    proceed) and False when a key press or a cancellation of ``token``
    stopped it.
    """
    def stopped() -> bool:
        return token is not None and token.cancelled

    with _single_key_input() if key_pressed is _key_pressed else nullcontext():
        for remaining in range(seconds, 0, -1):
            if stopped():
                return False
            on_tick(remaining)
            if key_pressed(1.0) or stopped():
                return False
    return not stopped()
