"""Blocking, cancellable "run to completion" on top of ProcessSupervisor.

smart-exec runtime module v0.1.0

This module provides:
- TickStatus: progress states reported to the tick callback
- SyncRunner: run() spawns the command and pumps the event loop until the
  child is reaped, calling the tick callback on every iteration
- AsyncRunner: the same state machine as a coroutine for callers that
  already run inside an event loop

Tick sequence of one run:
    STARTING, RUNNING*, STOPPING*, then exactly one of STOPPED / FAILED

Key design points:
- The terminal tick is always the last tick of a run
- The completion event is published before the terminal tick
- A stop request sends SIGTERM once and arms a SIGKILL timer once
- Errors are imported from the supervisor after every run; the most recent
  non-stream error becomes error_message
"""

from __future__ import annotations

import logging
import shlex
import signal
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import anyio

from ..config import Config, load_config
from ..errors import ErrorCategory, ErrorRecord
from .supervisor import ExitStatus, ProcessSupervisor, SupervisorState

if TYPE_CHECKING:
    from ..events import ExecutionBroadcaster, ExecutionResult

__all__ = [
    "AsyncRunner",
    "SyncRunner",
    "TickCallback",
    "TickStatus",
]

logger = logging.getLogger(__name__)

DEFAULT_ERROR_HEADER = "An error occurred while executing command:\n\n"
DEFAULT_RUNNING_MESSAGE = "Running {command}..."


class TickStatus(str, Enum):
    """Progress state passed to the tick callback."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TickStatus.STOPPED, TickStatus.FAILED)


# Returning False from STARTING aborts the run, from RUNNING requests a stop.
# The return value is ignored for the other states.
TickCallback = Callable[[TickStatus], bool]


class SyncRunner:
    """Run one command to completion while keeping the caller responsive.

    Example:
        runner = SyncRunner("smartctl", "-i /dev/sda", tick_callback=ticker)
        if runner.run() and not runner.error_message:
            print(runner.get_stdout())
        else:
            print(runner.get_error_msg(with_header=True))

    Attributes:
        supervisor: The ProcessSupervisor doing the actual work
        tick_callback: Optional progress callback
        broadcaster: Optional completion event broadcaster
        error_header: Prefix for get_error_msg(with_header=True)
        running_message: Progress message template ("{command}" is replaced)
        poll_interval: Seconds the loop is pumped per iteration
        forced_kill_timeout: Seconds between SIGTERM and SIGKILL after a stop request
        last_errors: Records drained from the supervisor by the last run
    """

    def __init__(
        self,
        command: str = "",
        arguments: str = "",
        *,
        supervisor: ProcessSupervisor | None = None,
        config: Config | None = None,
        tick_callback: TickCallback | None = None,
        broadcaster: Optional["ExecutionBroadcaster"] = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.supervisor = supervisor if supervisor is not None else ProcessSupervisor(config=self.config)
        if command:
            self.supervisor.set_command(command, arguments)

        self.tick_callback = tick_callback
        self.broadcaster = broadcaster
        self.error_header = DEFAULT_ERROR_HEADER
        self.running_message = DEFAULT_RUNNING_MESSAGE
        self.poll_interval = self.config.poll_interval
        self.forced_kill_timeout = self.config.forced_kill_timeout

        self.error_message = ""
        self.last_errors: list[ErrorRecord] = []
        self.last_status: TickStatus | None = None
        self._stop_requested = False
        self._signals_sent = False

    # =========================================================================
    # Command and settings
    # =========================================================================

    def set_command(self, executable: str, arguments: str = "") -> bool:
        return self.supervisor.set_command(executable, arguments)

    @property
    def command_name(self) -> str:
        return self.supervisor.command.executable

    @property
    def command_arguments(self) -> str:
        return self.supervisor.command.arguments

    def set_forced_kill_timeout(self, seconds: float) -> None:
        """Delay between SIGTERM and SIGKILL after a stop request (0 = no SIGKILL).

        Raises:
            ValueError: If seconds is negative
        """
        if seconds < 0:
            raise ValueError(f"Forced kill timeout must not be negative: {seconds}")
        self.forced_kill_timeout = seconds

    def get_running_msg(self) -> str:
        """running_message with "{command}" replaced by the executable name."""
        name = self.command_name.rsplit("/", 1)[-1]
        return self.running_message.replace("{command}", name)

    def get_error_msg(self, with_header: bool = False) -> str:
        if with_header:
            return self.error_header + self.error_message
        return self.error_message

    def get_stdout(self, clear: bool = False) -> str:
        return self.supervisor.get_stdout(clear)

    def get_stderr(self, clear: bool = False) -> str:
        return self.supervisor.get_stderr(clear)

    @property
    def exit_status(self) -> ExitStatus | None:
        return self.supervisor.exit_status

    @staticmethod
    def shell_quote(value: str) -> str:
        """Quote one argument for inclusion in an argument string."""
        return shlex.quote(value)

    # =========================================================================
    # Supervisor passthrough
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self.supervisor.is_running

    def try_stop(self, sig: int = signal.SIGTERM) -> bool:
        return self.supervisor.try_stop(sig)

    def try_kill(self) -> bool:
        return self.supervisor.try_kill()

    def set_stop_timeouts(self, term_delay: float = 0.0, kill_delay: float = 0.0) -> None:
        self.supervisor.set_stop_timeouts(term_delay, kill_delay)

    def unset_stop_timeouts(self) -> None:
        self.supervisor.unset_stop_timeouts()

    def request_stop(self) -> None:
        """Ask the current run to stop, as if the tick callback returned False."""
        if not self._stop_requested:
            logger.debug(f"Stop requested for \"{self.supervisor.command}\"")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def close(self) -> None:
        self.supervisor.close()

    def __enter__(self) -> "SyncRunner":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # =========================================================================
    # Run
    # =========================================================================

    def run(self) -> bool:
        """Run the command until it exits.

        Returns:
            False if the run was aborted at STARTING or the command could not
            be spawned. True once the child has been reaped, whatever its exit
            status; check error_message for failures

        Raises:
            RuntimeError: If the supervisor's event loop is already running
        """
        if not self._begin():
            return False

        try:
            while not self.supervisor.cleanup_needed:
                self._iterate()
                self.supervisor.pump(self.poll_interval)
        except BaseException:
            logger.info(f"Execution of \"{self.supervisor.command}\" interrupted, stopping")
            self._stop_after_interrupt()
            raise

        return self._complete()

    def _stop_after_interrupt(self) -> None:
        """Stop the child and complete the run without RUNNING or STOPPING ticks."""
        if self.supervisor.state is SupervisorState.IDLE:
            return
        if self.supervisor.is_running:
            self.request_stop()
            self._send_stop_signals()
        while not self.supervisor.cleanup_needed:
            self.supervisor.pump(self.poll_interval)
        self._complete()

    def _begin(self) -> bool:
        """Reset per-run state, emit STARTING and spawn."""
        self.error_message = ""
        self.last_status = None
        self._stop_requested = False
        self._signals_sent = False

        if not self._tick(TickStatus.STARTING):
            logger.info(f"Execution of \"{self.supervisor.command}\" aborted before start")
            self._tick(TickStatus.FAILED)
            return False

        if not self.supervisor.execute():
            logger.debug("supervisor.execute() failed")
            self.import_errors()
            self._publish()
            self._tick(TickStatus.FAILED)
            return False

        return True

    def _iterate(self) -> None:
        """One loop iteration before the event loop is pumped."""
        if not self._stop_requested and not self._tick(TickStatus.RUNNING):
            logger.info("Tick callback returned False, trying to stop the program")
            self._stop_requested = True

        if self._stop_requested:
            self._send_stop_signals()
            self._tick(TickStatus.STOPPING)

    def _send_stop_signals(self) -> None:
        """SIGTERM now and a SIGKILL timer, once per run."""
        if self._signals_sent:
            return
        self._signals_sent = True
        if not self.supervisor.try_stop():
            logger.warning("try_stop() failed")
        # SIGKILL fallback in case SIGTERM is ignored
        self.supervisor.set_stop_timeouts(0, self.forced_kill_timeout)

    def _complete(self) -> bool:
        """Finalize, publish and emit the terminal tick."""
        self.supervisor.finalize()
        self.import_errors()
        self._publish()
        self._tick(TickStatus.STOPPED)
        return True

    def _tick(self, status: TickStatus) -> bool:
        self.last_status = status
        if self.tick_callback is None:
            return True
        return bool(self.tick_callback(status))

    def _publish(self) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(self.make_result())

    def make_result(self) -> "ExecutionResult":
        """Snapshot of the last run as a completion event."""
        from ..events import ExecutionResult

        return ExecutionResult(
            command=self.command_name,
            parameters=self.command_arguments,
            stdout=self.get_stdout(),
            stderr=self.get_stderr(),
            error_message=self.error_message,
            exit_status=self.exit_status,
        )

    # =========================================================================
    # Error import
    # =========================================================================

    def import_errors(self) -> None:
        """Drain the supervisor's errors and surface the most relevant one."""
        records = self.supervisor.errors.drain()
        self.last_errors = records
        record = self.select_error(records)
        if record is not None:
            self.on_error_warn(record)

    def select_error(self, records: list[ErrorRecord]) -> ErrorRecord | None:
        """Pick the most recent non-stream record, else the most recent stream record."""
        for record in reversed(records):
            if record.category != ErrorCategory.STREAM:
                return record
        return records[-1] if records else None

    def on_error_warn(self, record: ErrorRecord) -> None:
        """Accept an imported error. Subclasses filter irrelevant ones here."""
        self.error_message = record.message


class AsyncRunner(SyncRunner):
    """SyncRunner for callers already running inside an event loop.

    The supervisor must use the running loop, which is the default when it
    is created without an explicit loop.
    """

    async def run_async(self) -> bool:
        """Coroutine version of run().

        If the awaiting task is cancelled, the child is stopped and the run
        is completed (terminal tick and completion event included) before
        the cancellation propagates.
        """
        if not self._begin():
            return False

        try:
            while not self.supervisor.cleanup_needed:
                self._iterate()
                await self.supervisor.wait_exited(self.poll_interval)
        except BaseException:
            logger.info(f"Execution of \"{self.supervisor.command}\" cancelled, stopping")
            with anyio.CancelScope(shield=True):
                if self.supervisor.is_running:
                    self.request_stop()
                    self._send_stop_signals()
                while not self.supervisor.cleanup_needed:
                    await self.supervisor.wait_exited(self.poll_interval)
                self._complete()
            raise

        return self._complete()
