"""Watchdogs that enforce wall-clock limits on a run.

A watchdog is a daemon thread waiting on an event with a deadline. If the
event is set first (disarm) it exits quietly; if the deadline passes it runs
its expiry callback. Callbacks act only through cancel tokens and signals,
never through shared run state.
"""

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..services.commands import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class TimeoutHandle:
    """An armed watchdog.

    Attributes:
        name: What the watchdog bounds ("scm", "wait").
        deadline: time.monotonic() value at which it fires.
        fired: Set once the expiry callback has run.
    """

    name: str
    deadline: float
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _thread: threading.Thread | None = field(default=None, repr=False)
    fired: bool = False

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class TimeoutSupervisor:
    """Arms, tracks and disarms the watchdogs of one run."""

    def __init__(self) -> None:
        self._handles: list[TimeoutHandle] = []
        self._lock = threading.Lock()

    @property
    def handles(self) -> list[TimeoutHandle]:
        with self._lock:
            return list(self._handles)

    def arm(self, seconds: float, on_expire: Callable[[], None], name: str) -> TimeoutHandle:
        """Start a watchdog that calls ``on_expire`` after ``seconds``."""
        handle = TimeoutHandle(name=name, deadline=time.monotonic() + seconds)

        def watch() -> None:
            if handle._stop.wait(seconds):
                return
            handle.fired = True
            logger.warning(f"{name} timeout of {seconds}s expired")
            try:
                on_expire()
            except Exception:
                logger.exception(f"{name} timeout handler failed")

        handle._thread = threading.Thread(target=watch, name=f"watchdog-{name}", daemon=True)
        with self._lock:
            self._handles.append(handle)
        handle._thread.start()
        logger.debug(f"Armed {name} watchdog for {seconds}s")
        return handle

    def disarm(self, handle: TimeoutHandle | None) -> None:
        """Stop a watchdog and wait for its thread. Safe to repeat."""
        if handle is None:
            return
        handle._stop.set()
        thread = handle._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def disarm_all(self) -> None:
        for handle in self.handles:
            self.disarm(handle)

    def arm_scm_timeout(self, seconds: float, token: CancelToken) -> TimeoutHandle | None:
        """Bound the checkout; expiry terminates the in-flight SCM command.

        Returns None when no limit is configured.
        """
        if not seconds or seconds <= 0:
            return None
        return self.arm(
            seconds, lambda: token.cancel(f"SCM timeout of {seconds} secs exceeded"), "scm"
        )

    def arm_wait_timeout(
        self, seconds: float, token: CancelToken, main_pid: int | None = None
    ) -> TimeoutHandle | None:
        """Bound the whole run; expiry cancels commands and signals the main process.

        The SIGTERM makes the run take the ordinary signal path through cleanup.
        Returns None when no limit is configured.
        """
        if not seconds or seconds <= 0:
            return None
        pid = main_pid if main_pid is not None else os.getpid()

        def expire() -> None:
            token.cancel(f"wait timeout of {seconds} secs exceeded")
            os.kill(pid, signal.SIGTERM)

        return self.arm(seconds, expire, "wait")
