"""Process supervisor with exit detection and two-stage termination.

smart-exec runtime module v0.1.0

This module provides:
- Subprocess launch in its own session/process group with a neutral locale
- Stdout/stderr collection through event-loop readiness callbacks
- Exit detection (pidfd readiness where available, timer polling otherwise)
- Graceful termination with escalation (SIGTERM -> timeout -> SIGKILL)
- Exit status classification into ErrorRecords

State machine:
    IDLE --execute()--> RUNNING --(exit detected)--> EXITED_PENDING_CLEANUP
    EXITED_PENDING_CLEANUP --finalize()--> IDLE

Key design points:
- The asyncio event loop is the only multiplexer; nothing here blocks or
  spawns threads. Callers pump the loop (pump()) or await wait_exited()
- Both collectors are flushed one last time before the exit callbacks run,
  so nobody observes an exit with output that could still grow
- finalize() runs on the caller's side, never from inside a loop callback
- Expected failures are recorded on the ErrorSink instead of raised
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import anyio

from ..config import Config, load_config
from ..errors import ErrorCategory, ErrorLevel, ErrorRecord, ErrorSink
from .collector import OutputBuffer, OutputCollector, StreamCondition

__all__ = [
    "Command",
    "ExitStatus",
    "KilledBySignal",
    "NormalExit",
    "ProcessSupervisor",
    "SupervisorState",
    "signal_name",
]

logger = logging.getLogger(__name__)

# Seconds between exit checks when pidfd is unavailable
EXIT_POLL_INTERVAL = 0.02

# Seconds close() waits for a killed child to be reaped
CLOSE_REAP_TIMEOUT = 5.0

ExitStatusTranslator = Callable[[int], str]
ExitCallback = Callable[[], None]


def signal_name(signum: int) -> str:
    """Return a readable name for a signal number (e.g. "SIGTERM")."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


@dataclass(frozen=True)
class Command:
    """Executable plus an already shell-quoted argument string.

    Attributes:
        executable: Program to run (looked up in PATH, never split)
        arguments: Arguments, quoted for POSIX shell parsing by the caller
    """

    executable: str
    arguments: str = ""

    def argv(self) -> list[str]:
        """Build the argument vector.

        Raises:
            ValueError: If the argument string has unbalanced quotes
        """
        return [self.executable, *shlex.split(self.arguments)]

    def __str__(self) -> str:
        return f"{self.executable} {self.arguments}".strip()


@dataclass(frozen=True)
class NormalExit:
    """The child called exit() with this code."""

    code: int

    @property
    def success(self) -> bool:
        return self.code == 0


@dataclass(frozen=True)
class KilledBySignal:
    """The child was terminated by a signal.

    Attributes:
        signal: Signal number
        requested: True if it is the last signal we sent with try_stop()
    """

    signal: int
    requested: bool

    @property
    def success(self) -> bool:
        return False


ExitStatus = Union[NormalExit, KilledBySignal]


def exit_status_from_returncode(returncode: int, requested_signal: Optional[int]) -> ExitStatus:
    """Translate a Popen return code (negative for signals) into an ExitStatus."""
    if returncode >= 0:
        return NormalExit(returncode)
    signum = -returncode
    return KilledBySignal(signal=signum, requested=signum == requested_signal)


class SupervisorState(str, Enum):
    """Lifecycle state of a ProcessSupervisor."""

    IDLE = "idle"
    RUNNING = "running"
    EXITED_PENDING_CLEANUP = "exited_pending_cleanup"


def _set_pipe_size(fd: int, size: int) -> None:
    """Resize an OS pipe where the platform supports it."""
    setter = getattr(fcntl, "F_SETPIPE_SZ", None)
    if setter is None:
        logger.debug(f"Pipe resizing not supported, ignoring size={size}")
        return
    try:
        fcntl.fcntl(fd, setter, size)
    except OSError as e:
        logger.debug(f"Cannot set pipe size {size} on fd={fd}: {e}")


class ProcessSupervisor:
    """Launch one child process at a time and supervise it until it is reaped.

    Example:
        with ProcessSupervisor(Command("smartctl", "-i /dev/sda")) as sup:
            if sup.execute():
                while not sup.cleanup_needed:
                    sup.pump(0.05)
                sup.finalize()
            print(sup.get_stdout())
            for record in sup.errors.drain():
                print(record)

    Attributes:
        errors: Sink collecting spawn/signal/exit/stream errors
        child_locale: Value forced into LANG (and LC_ALL) for the child
    """

    def __init__(
        self,
        command: Command | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        config: Config | None = None,
        exit_status_translator: ExitStatusTranslator | None = None,
        on_exited: ExitCallback | None = None,
        errors: ErrorSink | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            command: Command to run (may be set later with set_command())
            loop: Event loop to register watches on. Defaults to the running
                loop at execute() time, or a private loop owned by this object
            config: Configuration (defaults to load_config())
            exit_status_translator: Maps non-zero exit codes to messages
            on_exited: Called from the loop once the child has been reaped
            errors: Error sink to record into (a new one by default)
        """
        config = config if config is not None else load_config()

        self._command = command if command is not None else Command("")
        self._loop = loop
        self._owns_loop = False
        self.child_locale = config.child_locale
        self._stdout_pipe_size = config.stdout_pipe_size
        self._stderr_pipe_size = config.stderr_pipe_size
        self._translator = exit_status_translator
        self._exit_callbacks: list[ExitCallback] = []
        if on_exited is not None:
            self._exit_callbacks.append(on_exited)
        self.errors = errors if errors is not None else ErrorSink()

        # Survive finalize(), reset by the next execute()
        self._stdout = OutputBuffer()
        self._stderr = OutputBuffer()
        self._exit_status: ExitStatus | None = None
        self._elapsed = 0.0

        # Per-run state
        self._state = SupervisorState.IDLE
        self._process: subprocess.Popen[bytes] | None = None
        self._pid: int | None = None
        self._returncode: int | None = None
        self._termination_request: int | None = None
        self._collectors: list[OutputCollector] = []
        self._pidfd: int | None = None
        self._exit_poll_handle: asyncio.TimerHandle | None = None
        self._term_timer: asyncio.TimerHandle | None = None
        self._kill_timer: asyncio.TimerHandle | None = None
        self._started_at: float | None = None
        self._exited: asyncio.Event | None = None

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def command(self) -> Command:
        return self._command

    def set_command(self, executable: str, arguments: str = "") -> bool:
        """Set the command for the next execute().

        Returns:
            False (command unchanged) while a process is in flight
        """
        if self._state is not SupervisorState.IDLE:
            logger.debug(f"set_command() rejected in state {self._state.value}")
            return False
        self._command = Command(executable, arguments)
        return True

    def set_pipe_sizes(self, stdout: int | None = None, stderr: int | None = None) -> None:
        """Set OS pipe sizes for the next execute(). None or 0 keeps the current value."""
        if stdout:
            self._stdout_pipe_size = stdout
        if stderr:
            self._stderr_pipe_size = stderr

    def set_exit_status_translator(self, translator: ExitStatusTranslator | None) -> None:
        self._translator = translator

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Add a callback invoked from the event loop after the child is reaped.

        The callback runs after the final output flush. It must not call
        finalize(); poll cleanup_needed from the caller's side instead.
        """
        self._exit_callbacks.append(callback)

    def remove_exit_callback(self, callback: ExitCallback) -> None:
        if callback in self._exit_callbacks:
            self._exit_callbacks.remove(callback)

    # =========================================================================
    # State
    # =========================================================================

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_running(self) -> bool:
        """The child is running. Output may still be incomplete until cleanup_needed."""
        return self._state is SupervisorState.RUNNING

    @property
    def cleanup_needed(self) -> bool:
        """The child has been reaped and finalize() must be called."""
        return self._state is SupervisorState.EXITED_PENDING_CLEANUP

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def exit_status(self) -> ExitStatus | None:
        """Exit status of the last finalized run."""
        return self._exit_status

    @property
    def termination_request(self) -> int | None:
        """Last signal sent to the running child, if any."""
        return self._termination_request

    @property
    def elapsed(self) -> float:
        """Seconds since execute(), frozen when the exit is detected."""
        if self._state is SupervisorState.RUNNING and self._started_at is not None:
            return time.monotonic() - self._started_at
        return self._elapsed

    def get_stdout(self, clear: bool = False) -> str:
        return self._stdout.text(clear)

    def get_stderr(self, clear: bool = False) -> str:
        return self._stderr.text(clear)

    @property
    def stdout_bytes(self) -> bytes:
        return self._stdout.get()

    @property
    def stderr_bytes(self) -> bytes:
        return self._stderr.get()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def execute(self) -> bool:
        """Spawn the command and register its watches.

        Returns:
            True if the child is running. False if a process is already in
            flight (no side effects) or spawning failed (a "spawn" error is
            recorded)
        """
        if self._state is not SupervisorState.IDLE:
            logger.debug(f"execute() rejected in state {self._state.value}")
            return False

        self._stdout.clear()
        self._stderr.clear()
        self._exit_status = None
        self._returncode = None
        self._elapsed = 0.0

        if not self._command.executable:
            self._push_spawn_error("No command to execute")
            return False

        try:
            argv = self._command.argv()
        except ValueError as e:
            self._push_spawn_error(f"Cannot parse arguments of \"{self._command}\": {e}")
            return False

        loop = self._ensure_loop()

        logger.info(f"Executing \"{self._command}\"")
        logger.debug(f"argv={argv} locale={self.child_locale}")

        try:
            # stdin=DEVNULL: the child must not inherit (and later close) our stdin
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._build_env(),
                start_new_session=True,
            )
        except OSError as e:
            self._push_spawn_error(
                f"Cannot execute \"{self._command.executable}\": {e.strerror or e}",
                code=e.errno,
            )
            return False
        except ValueError as e:
            self._push_spawn_error(f"Cannot execute \"{self._command.executable}\": {e}")
            return False

        self._process = process
        self._pid = process.pid
        self._termination_request = None
        self._exited = asyncio.Event()
        self._collectors = []

        streams = (
            ("stdout", process.stdout, self._stdout, self._stdout_pipe_size),
            ("stderr", process.stderr, self._stderr, self._stderr_pipe_size),
        )
        for name, pipe, buffer, pipe_size in streams:
            assert pipe is not None
            fd = pipe.fileno()
            os.set_blocking(fd, False)
            if pipe_size:
                _set_pipe_size(fd, pipe_size)
            collector = OutputCollector(name, fd, buffer, self.errors)
            loop.add_reader(fd, self._on_stream_ready, collector)
            self._collectors.append(collector)

        self._watch_exit(loop)

        self._started_at = time.monotonic()
        self._state = SupervisorState.RUNNING

        logger.debug(f"Started subprocess pid={self._pid}")
        return True

    def finalize(self) -> bool:
        """Classify the exit status and release the process handle.

        Must be called by the owner after cleanup_needed becomes True, and
        never from inside an exit callback.

        Returns:
            False if there is nothing to finalize
        """
        if self._state is not SupervisorState.EXITED_PENDING_CLEANUP:
            return False

        self.unset_stop_timeouts()

        assert self._returncode is not None
        status = exit_status_from_returncode(self._returncode, self._termination_request)
        self._exit_status = status
        self._classify_exit(status)

        self._release_process()
        self._termination_request = None
        self._state = SupervisorState.IDLE

        logger.debug(f"Finalized: {status}")
        return True

    def try_stop(self, sig: int = signal.SIGTERM) -> bool:
        """Send a signal to the running child's process group.

        Args:
            sig: Signal to send (SIGTERM by default)

        Returns:
            True if the signal was delivered. False if not running, or if
            delivery failed (a "signal" error is recorded)
        """
        if self._state is not SupervisorState.RUNNING or self._pid is None:
            return False

        try:
            self._send_signal(sig)
        except OSError as e:
            # EPERM (no permission), ESRCH (no such process)
            self.errors.push(ErrorRecord(
                category=ErrorCategory.SIGNAL,
                level=ErrorLevel.ERROR,
                message=f"Cannot send {signal_name(sig)} to pid={self._pid}: {e.strerror or e}",
                code=e.errno,
            ))
            return False

        self._termination_request = int(sig)
        return True

    def try_kill(self) -> bool:
        """Send SIGKILL, which the child cannot handle."""
        return self.try_stop(signal.SIGKILL)

    def set_stop_timeouts(self, term_delay: float = 0.0, kill_delay: float = 0.0) -> None:
        """Arm one-shot SIGTERM and/or SIGKILL timers, counted from now.

        Args:
            term_delay: Seconds until SIGTERM (0 = no SIGTERM timer)
            kill_delay: Seconds until SIGKILL (0 = no SIGKILL timer)

        Raises:
            ValueError: If a delay is negative, or both are set and
                kill_delay does not come after term_delay
        """
        if term_delay < 0 or kill_delay < 0:
            raise ValueError("Stop timeouts must not be negative")
        if term_delay and kill_delay and kill_delay <= term_delay:
            raise ValueError(
                f"kill_delay ({kill_delay}) must be greater than term_delay ({term_delay})"
            )

        if self._state is not SupervisorState.RUNNING or self._loop is None:
            return

        self.unset_stop_timeouts()

        if term_delay:
            self._term_timer = self._loop.call_later(
                term_delay, self._on_stop_timeout, signal.SIGTERM
            )
        if kill_delay:
            self._kill_timer = self._loop.call_later(
                kill_delay, self._on_stop_timeout, signal.SIGKILL
            )

    def unset_stop_timeouts(self) -> None:
        """Cancel any armed stop timers."""
        if self._term_timer is not None:
            self._term_timer.cancel()
            self._term_timer = None
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

    def _on_stop_timeout(self, sig: int) -> None:
        """Fire an armed stop timer. A no-op once the child has exited."""
        if sig == signal.SIGKILL:
            self._kill_timer = None
        else:
            self._term_timer = None
        logger.debug(f"Stop timeout expired, sending {signal_name(sig)}")
        self.try_stop(sig)

    # =========================================================================
    # Event loop driving
    # =========================================================================

    def pump(self, timeout: float) -> bool:
        """Run the event loop until the exit is detected or timeout elapses.

        Args:
            timeout: Maximum seconds to run the loop

        Returns:
            cleanup_needed

        Raises:
            RuntimeError: If the loop is already running (use wait_exited())
        """
        loop = self._ensure_loop()
        if loop.is_running():
            raise RuntimeError(
                "Cannot pump an event loop that is already running; await wait_exited() instead"
            )
        loop.run_until_complete(self.wait_exited(timeout))
        return self.cleanup_needed

    async def wait_exited(self, timeout: float | None = None) -> bool:
        """Wait on the running loop until the exit is detected or timeout elapses.

        Returns:
            cleanup_needed
        """
        if self._state is SupervisorState.RUNNING and self._exited is not None:
            with anyio.move_on_after(timeout):
                await self._exited.wait()
        return self.cleanup_needed

    def close(self) -> None:
        """Kill and reap a child that is still running, then close an owned loop."""
        if self._state is SupervisorState.RUNNING and self._process is not None:
            logger.warning(f"Closing supervisor with running child pid={self._pid}, killing it")
            self.try_kill()
            try:
                returncode = self._process.wait(timeout=CLOSE_REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning(f"Subprocess pid={self._pid} did not exit after kill")
            else:
                self._on_child_exit(returncode)

        if self._state is SupervisorState.EXITED_PENDING_CLEANUP:
            self.finalize()

        if self._owns_loop and self._loop is not None and not self._loop.is_closed():
            self._loop.close()

    def __enter__(self) -> "ProcessSupervisor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or (self._owns_loop and self._loop.is_closed()):
            try:
                self._loop = asyncio.get_running_loop()
                self._owns_loop = False
            except RuntimeError:
                self._loop = asyncio.new_event_loop()
                self._owns_loop = True
        return self._loop

    def _build_env(self) -> dict[str, str]:
        """Copy of our environment with the child's locale forced to neutral."""
        env = dict(os.environ)
        env["LANG"] = self.child_locale
        if "LC_ALL" in env:
            env["LC_ALL"] = self.child_locale
        return env

    def _push_spawn_error(self, message: str, code: int | None = None) -> None:
        self.errors.push(ErrorRecord(
            category=ErrorCategory.SPAWN,
            level=ErrorLevel.ERROR,
            message=message,
            code=code,
        ))

    def _send_signal(self, sig: int) -> None:
        """Signal the process group (pgid == pid due to start_new_session)."""
        assert self._pid is not None
        try:
            pgid = os.getpgid(self._pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {signal_name(sig)} to process group pgid={pgid}")
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            os.kill(self._pid, sig)
            logger.debug(f"Sent {signal_name(sig)} to pid={self._pid}")

    def _watch_exit(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register exit detection: pidfd readiness, or a polling timer."""
        assert self._pid is not None
        pidfd_open = getattr(os, "pidfd_open", None)
        if pidfd_open is not None:
            try:
                self._pidfd = pidfd_open(self._pid)
            except OSError as e:
                logger.debug(f"pidfd_open failed, polling for exit instead: {e}")
            else:
                loop.add_reader(self._pidfd, self._check_exit)
                return
        self._exit_poll_handle = loop.call_soon(self._poll_exit)

    def _poll_exit(self) -> None:
        self._exit_poll_handle = None
        if not self._check_exit() and self._loop is not None:
            self._exit_poll_handle = self._loop.call_later(EXIT_POLL_INTERVAL, self._poll_exit)

    def _check_exit(self) -> bool:
        """Reap the child if it has exited.

        Returns:
            True if the child is gone (or nothing is being watched)
        """
        if self._state is not SupervisorState.RUNNING or self._process is None:
            return True
        returncode = self._process.poll()
        if returncode is None:
            return False
        self._on_child_exit(returncode)
        return True

    def _on_child_exit(self, returncode: int) -> None:
        self._returncode = returncode
        if self._started_at is not None:
            self._elapsed = time.monotonic() - self._started_at

        self.unset_stop_timeouts()

        # The last bytes may only become readable once the write end closed
        for collector in self._collectors:
            collector.flush()
        self._remove_watches()

        self._state = SupervisorState.EXITED_PENDING_CLEANUP

        logger.debug(
            f"Subprocess exited pid={self._pid} returncode={returncode} "
            f"elapsed={self._elapsed:.3f}s stdout={len(self._stdout)}B stderr={len(self._stderr)}B"
        )

        if self._exited is not None:
            self._exited.set()

        for callback in list(self._exit_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Error in exit callback: {e}")

    def _on_stream_ready(self, collector: OutputCollector) -> None:
        if not collector.on_ready(StreamCondition.READABLE) and self._loop is not None:
            self._loop.remove_reader(collector.fd)

    def _remove_watches(self) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            for collector in self._collectors:
                loop.remove_reader(collector.fd)
            if self._pidfd is not None:
                loop.remove_reader(self._pidfd)
        if self._pidfd is not None:
            os.close(self._pidfd)
            self._pidfd = None
        if self._exit_poll_handle is not None:
            self._exit_poll_handle.cancel()
            self._exit_poll_handle = None

    def _classify_exit(self, status: ExitStatus) -> None:
        """Record exactly one error for anything but a clean exit."""
        if isinstance(status, NormalExit):
            if status.code != 0:
                self.errors.push(ErrorRecord(
                    category=ErrorCategory.EXIT,
                    level=ErrorLevel.WARN,
                    message=self._translate_exit_code(status.code),
                    code=status.code,
                ))
            return

        name = signal_name(status.signal)
        if status.requested:
            self.errors.push(ErrorRecord(
                category=ErrorCategory.SIGNAL,
                level=ErrorLevel.WARN,
                message=f"Command was stopped by {name} ({status.signal})",
                code=status.signal,
            ))
        else:
            self.errors.push(ErrorRecord(
                category=ErrorCategory.SIGNAL,
                level=ErrorLevel.ERROR,
                message=f"Command was killed by {name} ({status.signal})",
                code=status.signal,
            ))

    def _translate_exit_code(self, code: int) -> str:
        if self._translator is not None:
            try:
                message = self._translator(code)
            except Exception as e:
                logger.warning(f"Error in exit status translator: {e}")
                message = ""
            if message:
                return message
        return f"Command exited with code {code}"

    def _release_process(self) -> None:
        process = self._process
        if process is not None:
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    pipe.close()
        self._process = None
        self._pid = None
        self._collectors = []
        self._exited = None
