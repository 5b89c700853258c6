"""Tests for run watchdogs."""

import signal
import threading
from unittest import mock

from buildfarm.core.timeout_supervisor import TimeoutSupervisor
from buildfarm.services.commands import CancelToken


class TestArm:
    """Tests for arming and disarming watchdogs."""

    def test_fires_after_deadline(self) -> None:
        supervisor = TimeoutSupervisor()
        fired = threading.Event()
        handle = supervisor.arm(0.05, fired.set, "test")
        assert fired.wait(5)
        handle._thread.join(5)
        assert handle.fired

    def test_disarm_prevents_firing(self) -> None:
        supervisor = TimeoutSupervisor()
        fired = threading.Event()
        handle = supervisor.arm(30, fired.set, "test")
        supervisor.disarm(handle)
        assert not handle.active
        assert not fired.is_set()
        assert not handle.fired
        assert supervisor.handles == []

    def test_disarm_twice(self) -> None:
        supervisor = TimeoutSupervisor()
        handle = supervisor.arm(30, lambda: None, "test")
        supervisor.disarm(handle)
        supervisor.disarm(handle)
        supervisor.disarm(None)

    def test_disarm_all(self) -> None:
        supervisor = TimeoutSupervisor()
        handles = [supervisor.arm(30, lambda: None, f"t{i}") for i in range(3)]
        supervisor.disarm_all()
        assert supervisor.handles == []
        assert not any(h.active for h in handles)

    def test_handler_exception_is_logged(self) -> None:
        supervisor = TimeoutSupervisor()

        def boom() -> None:
            raise RuntimeError("boom")

        handle = supervisor.arm(0.01, boom, "test")
        handle._thread.join(5)
        assert handle.fired


class TestScmTimeout:
    """Tests for the checkout watchdog."""

    def test_zero_disables(self) -> None:
        assert TimeoutSupervisor().arm_scm_timeout(0, CancelToken()) is None

    def test_expiry_cancels_token(self) -> None:
        supervisor = TimeoutSupervisor()
        token = CancelToken()
        handle = supervisor.arm_scm_timeout(0.01, token)
        handle._thread.join(5)
        assert token.cancelled
        assert "SCM timeout" in token.reason


class TestWaitTimeout:
    """Tests for the whole-run watchdog."""

    def test_zero_disables(self) -> None:
        assert TimeoutSupervisor().arm_wait_timeout(0, CancelToken()) is None

    def test_expiry_cancels_and_signals(self) -> None:
        supervisor = TimeoutSupervisor()
        token = CancelToken()
        with mock.patch("buildfarm.core.timeout_supervisor.os.kill") as kill:
            handle = supervisor.arm_wait_timeout(0.01, token, main_pid=4242)
            handle._thread.join(5)
        kill.assert_called_once_with(4242, signal.SIGTERM)
        assert token.cancelled
        assert "wait timeout" in token.reason
