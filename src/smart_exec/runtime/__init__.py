"""Runtime module for supervised subprocess execution.

This module provides child process launch with complete output capture,
exit detection, two-stage termination and a blocking, cancellable run loop.
"""

from __future__ import annotations

from .collector import OutputBuffer, OutputCollector, StreamCondition
from .supervisor import (
    Command,
    ExitStatus,
    KilledBySignal,
    NormalExit,
    ProcessSupervisor,
    SupervisorState,
)
from .sync_runner import AsyncRunner, SyncRunner, TickStatus

__all__ = [
    "AsyncRunner",
    "Command",
    "ExitStatus",
    "KilledBySignal",
    "NormalExit",
    "OutputBuffer",
    "OutputCollector",
    "ProcessSupervisor",
    "StreamCondition",
    "SupervisorState",
    "SyncRunner",
    "TickStatus",
]
