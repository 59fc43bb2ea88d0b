"""ProcessSupervisor unit tests.

Test coverage:
- Basic execution (exit codes, stdout/stderr capture, large output)
- Child environment (neutral locale)
- Spawn failures
- State machine contract (rejected calls outside the right state)
- Termination (requested vs unrequested signals, SIGTERM -> SIGKILL escalation)
- Exit callbacks, pidfd fallback, close()
"""

from __future__ import annotations

import errno
import os
import signal
import time
from unittest import mock

import pytest

from smart_exec.config import Config
from smart_exec.errors import ErrorCategory, ErrorLevel, ErrorSink
from smart_exec.runtime.supervisor import (
    Command,
    KilledBySignal,
    NormalExit,
    ProcessSupervisor,
    SupervisorState,
    signal_name,
)

pytestmark = pytest.mark.integration


# =============================================================================
# Helpers
# =============================================================================


def run_to_exit(sup: ProcessSupervisor, timeout: float = 10.0) -> None:
    """Pump the loop until the child has been reaped."""
    deadline = time.monotonic() + timeout
    while not sup.cleanup_needed:
        assert time.monotonic() < deadline, "child did not exit in time"
        sup.pump(0.05)


def pump_until_stdout(sup: ProcessSupervisor, text: str, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while text not in sup.get_stdout():
        assert time.monotonic() < deadline, f"{text!r} not seen on stdout"
        assert sup.is_running, "child exited early"
        sup.pump(0.05)


@pytest.fixture
def make_supervisor():
    """Create supervisors that are closed after the test."""
    created: list[ProcessSupervisor] = []

    def factory(executable: str = "", arguments: str = "", **kwargs) -> ProcessSupervisor:
        kwargs.setdefault("config", Config())
        kwargs.setdefault("errors", ErrorSink(on_error=lambda record: None))
        sup = ProcessSupervisor(Command(executable, arguments), **kwargs)
        created.append(sup)
        return sup

    yield factory

    for sup in created:
        sup.close()


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test running commands to completion."""

    def test_true(self, make_supervisor):
        """Scenario A: `true` exits cleanly without errors."""
        sup = make_supervisor("true")

        assert sup.execute() is True
        assert sup.state is SupervisorState.RUNNING
        assert sup.pid is not None

        run_to_exit(sup)
        assert sup.state is SupervisorState.EXITED_PENDING_CLEANUP

        assert sup.finalize() is True
        assert sup.state is SupervisorState.IDLE
        assert sup.exit_status == NormalExit(0)
        assert sup.exit_status.success
        assert sup.pid is None
        assert sup.errors.drain() == []

    def test_nonzero_exit_code(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--exit-code", "3"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.exit_status == NormalExit(3)
        records = sup.errors.drain()
        assert len(records) == 1
        assert records[0].category == ErrorCategory.EXIT
        assert records[0].level == ErrorLevel.WARN
        assert records[0].code == 3
        assert "3" in records[0].message

    def test_exit_status_translator(self, make_supervisor, python, tool_args):
        sup = make_supervisor(
            python,
            tool_args("--exit-code", "4"),
            exit_status_translator=lambda code: f"bit pattern {code:08b}",
        )
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        records = sup.errors.drain()
        assert [r.message for r in records] == ["bit pattern 00000100"]

    def test_empty_translation_uses_default_message(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--exit-code", "2"))
        sup.set_exit_status_translator(lambda code: "")
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        records = sup.errors.drain()
        assert records[0].message == "Command exited with code 2"

    def test_stdout_and_stderr(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--stdout", "hello out", "--stderr", "hello err"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.get_stdout() == "hello out"
        assert sup.get_stderr() == "hello err"
        assert sup.stdout_bytes == b"hello out"

    def test_large_output_is_not_truncated(self, make_supervisor, python, tool_args):
        """Scenario B: 1 MiB of stdout arrives intact."""
        size = 1024 * 1024
        sup = make_supervisor(python, tool_args("--stdout-bytes", str(size)))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        data = sup.stdout_bytes
        assert len(data) == size
        assert data[:16] == b"0123456789abcdef"
        assert sup.errors.drain() == []

    def test_pipe_size_does_not_truncate(self, make_supervisor, python, tool_args):
        size = 256 * 1024
        sup = make_supervisor(python, tool_args("--stdout-bytes", str(size)))
        sup.set_pipe_sizes(stdout=4096, stderr=4096)
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert len(sup.stdout_bytes) == size

    def test_output_survives_finalize_until_next_execute(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--stdout", "first"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()
        assert sup.get_stdout() == "first"

        sup.set_command("true")
        assert sup.execute()
        assert sup.get_stdout() == ""
        assert sup.exit_status is None
        run_to_exit(sup)
        sup.finalize()

    def test_get_stdout_with_clear(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--stdout", "once"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.get_stdout(clear=True) == "once"
        assert sup.get_stdout() == ""

    def test_elapsed(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--sleep", "0.2"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        elapsed = sup.elapsed
        assert elapsed >= 0.2
        time.sleep(0.05)
        assert sup.elapsed == elapsed


# =============================================================================
# Environment Tests
# =============================================================================


class TestChildEnvironment:
    """Test the environment passed to the child."""

    def test_lang_forced_to_c(self, make_supervisor, python, tool_args):
        with mock.patch.dict(os.environ, {"LANG": "de_DE.UTF-8"}):
            sup = make_supervisor(python, tool_args("--print-env", "LANG"))
            assert sup.execute()
            run_to_exit(sup)
            sup.finalize()

            assert sup.get_stdout() == "C"
            assert os.environ["LANG"] == "de_DE.UTF-8"

    def test_lc_all_forced_when_present(self, make_supervisor, python, tool_args):
        with mock.patch.dict(os.environ, {"LC_ALL": "fr_FR.UTF-8"}):
            sup = make_supervisor(python, tool_args("--print-env", "LC_ALL"))
            assert sup.execute()
            run_to_exit(sup)
            sup.finalize()

            assert sup.get_stdout() == "C"
            assert os.environ["LC_ALL"] == "fr_FR.UTF-8"

    def test_configured_locale(self, make_supervisor, python, tool_args):
        sup = make_supervisor(
            python,
            tool_args("--print-env", "LANG"),
            config=Config(child_locale="C.UTF-8"),
        )
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.get_stdout() == "C.UTF-8"


# =============================================================================
# Spawn Failure Tests
# =============================================================================


class TestSpawnFailure:
    """Test commands that cannot be started."""

    def test_missing_executable(self, make_supervisor):
        sup = make_supervisor("/nonexistent/smartctl-does-not-exist")

        assert sup.execute() is False
        assert sup.state is SupervisorState.IDLE

        records = sup.errors.drain()
        assert len(records) == 1
        assert records[0].category == ErrorCategory.SPAWN
        assert records[0].level == ErrorLevel.ERROR
        assert records[0].code == errno.ENOENT

    def test_unbalanced_quotes(self, make_supervisor):
        sup = make_supervisor("echo", "'unterminated")

        assert sup.execute() is False
        records = sup.errors.drain()
        assert [r.category for r in records] == [ErrorCategory.SPAWN]

    def test_empty_command(self, make_supervisor):
        sup = make_supervisor("")

        assert sup.execute() is False
        assert sup.errors.drain()[0].category == ErrorCategory.SPAWN


# =============================================================================
# State Machine Tests
# =============================================================================


class TestStateContract:
    """Test calls made in the wrong state."""

    def test_second_execute_rejected(self, make_supervisor):
        """Scenario D: execute() while a process is in flight does nothing."""
        sup = make_supervisor("sleep", "5")
        assert sup.execute()
        pid = sup.pid

        assert sup.execute() is False
        assert sup.pid == pid
        assert sup.errors.drain() == []

        sup.try_kill()
        run_to_exit(sup)
        assert sup.execute() is False  # still pending cleanup
        sup.finalize()

    def test_set_command_rejected_while_running(self, make_supervisor):
        sup = make_supervisor("sleep", "5")
        assert sup.execute()

        assert sup.set_command("true") is False
        assert sup.command == Command("sleep", "5")

        sup.try_kill()
        run_to_exit(sup)
        sup.finalize()
        assert sup.set_command("true") is True

    def test_finalize_when_idle(self, make_supervisor):
        sup = make_supervisor("true")
        assert sup.finalize() is False

    def test_try_stop_when_idle(self, make_supervisor):
        sup = make_supervisor("true")
        assert sup.try_stop() is False
        assert sup.try_kill() is False
        assert sup.errors.drain() == []


# =============================================================================
# Termination Tests
# =============================================================================


class TestTermination:
    """Test signals and stop timeouts."""

    def test_requested_sigterm_is_warning(self, make_supervisor):
        sup = make_supervisor("sleep", "30")
        assert sup.execute()

        assert sup.try_stop() is True
        assert sup.termination_request == signal.SIGTERM
        run_to_exit(sup)
        sup.finalize()

        assert sup.exit_status == KilledBySignal(signal.SIGTERM, requested=True)
        assert not sup.exit_status.success
        assert sup.termination_request is None

        records = sup.errors.drain()
        assert len(records) == 1
        assert records[0].category == ErrorCategory.SIGNAL
        assert records[0].level == ErrorLevel.WARN
        assert records[0].code == signal.SIGTERM
        assert "SIGTERM" in records[0].message

    def test_unrequested_signal_is_error(self, make_supervisor, python, tool_args):
        sup = make_supervisor(python, tool_args("--kill-self", "SIGTERM"))
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.exit_status == KilledBySignal(signal.SIGTERM, requested=False)
        records = sup.errors.drain()
        assert len(records) == 1
        assert records[0].category == ErrorCategory.SIGNAL
        assert records[0].level == ErrorLevel.ERROR

    def test_escalation_to_sigkill(self, make_supervisor):
        """A child ignoring SIGTERM is killed by the SIGKILL timer."""
        sup = make_supervisor("sh", "-c 'trap \"\" TERM; echo ready; sleep 30'")
        assert sup.execute()
        pump_until_stdout(sup, "ready")

        started = time.monotonic()
        sup.set_stop_timeouts(0.05, 0.3)
        run_to_exit(sup)
        sup.finalize()

        assert time.monotonic() - started < 5.0
        assert sup.exit_status == KilledBySignal(signal.SIGKILL, requested=True)
        records = sup.errors.drain()
        assert [r.level for r in records] == [ErrorLevel.WARN]

    def test_forced_kill_after_sigterm(self, make_supervisor):
        """SIGTERM now, SIGKILL 200 ms later: a child ignoring SIGTERM is gone well within a second."""
        sup = make_supervisor("sh", "-c 'trap \"\" TERM; echo ready; sleep 30'")
        assert sup.execute()
        pump_until_stdout(sup, "ready")

        started = time.monotonic()
        assert sup.try_stop()
        sup.set_stop_timeouts(0, 0.2)
        while not sup.cleanup_needed:
            assert time.monotonic() - started < 1.0, "child outlived the SIGKILL timer"
            sup.pump(0.02)
        elapsed = time.monotonic() - started
        sup.finalize()

        assert 0.15 <= elapsed < 1.0
        assert sup.exit_status == KilledBySignal(signal.SIGKILL, requested=True)
        records = sup.errors.drain()
        assert [(r.category, r.level) for r in records] == [(ErrorCategory.SIGNAL, ErrorLevel.WARN)]

    def test_stop_timeout_ordering_rejected(self, make_supervisor):
        sup = make_supervisor("true")
        with pytest.raises(ValueError):
            sup.set_stop_timeouts(2.0, 1.0)
        with pytest.raises(ValueError):
            sup.set_stop_timeouts(1.0, 1.0)
        with pytest.raises(ValueError):
            sup.set_stop_timeouts(-1.0, 0.0)

    def test_stop_timeouts_ignored_when_idle(self, make_supervisor):
        sup = make_supervisor("true")
        sup.set_stop_timeouts(0.0, 0.1)
        sup.set_stop_timeouts(0.1, 0.0)
        assert sup.errors.drain() == []

    def test_timers_cancelled_at_exit(self, make_supervisor, python, tool_args):
        """A stop timer does nothing once the child has exited."""
        sup = make_supervisor(python, tool_args("--exit-code", "0"))
        assert sup.execute()
        sup.set_stop_timeouts(0.0, 5.0)
        run_to_exit(sup)
        sup.finalize()

        assert sup.exit_status == NormalExit(0)
        assert sup.errors.drain() == []

    def test_signal_delivery_failure_is_recorded(self, make_supervisor):
        sup = make_supervisor("sleep", "30")
        assert sup.execute()

        denied = PermissionError(errno.EPERM, "Operation not permitted")
        with mock.patch("os.killpg", side_effect=denied), mock.patch("os.kill", side_effect=denied):
            assert sup.try_stop() is False

        assert sup.termination_request is None
        records = sup.errors.drain()
        assert len(records) == 1
        assert records[0].category == ErrorCategory.SIGNAL
        assert records[0].level == ErrorLevel.ERROR
        assert records[0].code == errno.EPERM

        sup.try_kill()
        run_to_exit(sup)
        sup.finalize()


# =============================================================================
# Exit Notification Tests
# =============================================================================


class TestExitNotification:
    """Test exit callbacks and exit detection."""

    def test_exit_callback_sees_complete_output(self, make_supervisor, python, tool_args):
        seen = []
        sup = make_supervisor(python, tool_args("--stdout-bytes", "100000"))

        def on_exited() -> None:
            seen.append((sup.cleanup_needed, len(sup.stdout_bytes)))

        sup.add_exit_callback(on_exited)
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert seen == [(True, 100000)]

    def test_broken_exit_callback_is_ignored(self, make_supervisor):
        def on_exited() -> None:
            raise RuntimeError("callback failed")

        sup = make_supervisor("true", on_exited=on_exited)
        assert sup.execute()
        run_to_exit(sup)
        assert sup.finalize()

    def test_remove_exit_callback(self, make_supervisor):
        calls = []
        sup = make_supervisor("true")
        sup.add_exit_callback(lambda: calls.append(1))
        callback = calls.clear
        sup.add_exit_callback(callback)
        sup.remove_exit_callback(callback)
        assert sup.execute()
        run_to_exit(sup)
        sup.finalize()
        assert calls == [1]

    def test_polling_fallback(self, make_supervisor, python, tool_args):
        """Exit is detected by polling when pidfd_open is unavailable."""
        sup = make_supervisor(python, tool_args("--stdout", "polled", "--exit-code", "5"))
        unsupported = OSError(errno.ENOSYS, "Function not implemented")
        with mock.patch("os.pidfd_open", side_effect=unsupported, create=True):
            assert sup.execute()
        run_to_exit(sup)
        sup.finalize()

        assert sup.exit_status == NormalExit(5)
        assert sup.get_stdout() == "polled"


# =============================================================================
# Loop Ownership Tests
# =============================================================================


class TestLoopOwnership:
    """Test event loop selection and close()."""

    def test_close_kills_running_child(self):
        sup = ProcessSupervisor(Command("sleep", "30"), config=Config())
        assert sup.execute()
        loop = sup.loop

        sup.close()

        assert sup.state is SupervisorState.IDLE
        assert sup.exit_status == KilledBySignal(signal.SIGKILL, requested=True)
        assert loop is not None and loop.is_closed()

    def test_context_manager(self):
        with ProcessSupervisor(Command("true"), config=Config()) as sup:
            assert sup.execute()
            run_to_exit(sup)
            sup.finalize()
        assert sup.loop.is_closed()

    def test_external_loop_is_not_closed(self):
        import asyncio

        loop = asyncio.new_event_loop()
        try:
            with ProcessSupervisor(Command("true"), loop=loop, config=Config()) as sup:
                assert sup.execute()
                run_to_exit(sup)
                sup.finalize()
            assert not loop.is_closed()
        finally:
            loop.close()

    @pytest.mark.asyncio
    async def test_wait_exited_on_running_loop(self):
        sup = ProcessSupervisor(Command("true"), config=Config())
        try:
            assert sup.execute()
            assert await sup.wait_exited(10.0) is True
            assert sup.finalize()
            assert sup.exit_status == NormalExit(0)
        finally:
            sup.close()

    @pytest.mark.asyncio
    async def test_wait_exited_timeout(self):
        sup = ProcessSupervisor(Command("sleep", "30"), config=Config())
        try:
            assert sup.execute()
            assert await sup.wait_exited(0.05) is False
            assert sup.is_running
        finally:
            sup.close()

    @pytest.mark.asyncio
    async def test_pump_inside_running_loop_raises(self):
        sup = ProcessSupervisor(Command("sleep", "30"), config=Config())
        try:
            assert sup.execute()
            with pytest.raises(RuntimeError):
                sup.pump(0.01)
        finally:
            sup.close()


class TestSignalName:
    def test_known_signal(self):
        assert signal_name(signal.SIGKILL) == "SIGKILL"

    def test_unknown_signal(self):
        assert signal_name(999) == "signal 999"
