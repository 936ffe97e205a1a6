"""
Error taxonomy for the devnet control plane.

Every failure a stage can end in maps to one exception type here, and every
exception type maps to a process exit code so the entry point can report
*why* a run ended without parsing messages.
"""

from __future__ import annotations

import enum
from typing import Optional


class ExitCode(enum.IntEnum):
    """Process exit codes of the devnet supervisor."""
    OK = 0
    CONFIG_ERROR = 2
    READINESS_TIMEOUT = 3
    BIND_FAILURE = 4
    UNEXPECTED_EXIT = 5
    TASK_FAILURE = 6
    STAGE_FAILURE = 7


class DevnetError(Exception):
    """Base class for all control-plane failures."""

    exit_code: ExitCode = ExitCode.STAGE_FAILURE
    kind: str = "error"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def describe(self) -> str:
        prefix = f"{self.stage}: " if self.stage else ""
        return f"{prefix}{self.kind}: {self.message}"


class StageGraphError(DevnetError):
    """The stage graph is invalid (cycle, unknown dependency, duplicate name)."""
    exit_code = ExitCode.CONFIG_ERROR
    kind = "invalid stage graph"


class StageActionError(DevnetError):
    """A stage action could not be started for a reason outside the taxonomy."""
    exit_code = ExitCode.STAGE_FAILURE
    kind = "action failed"


class BindFailure(DevnetError):
    """A relay or node could not acquire its listen address."""
    exit_code = ExitCode.BIND_FAILURE
    kind = "bind failure"

    def __init__(self, address: str, reason: str, stage: Optional[str] = None):
        super().__init__(f"cannot bind {address}: {reason}", stage=stage)
        self.address = address


class ReadinessTimeout(DevnetError):
    """A dependency never became observably ready before its deadline."""
    exit_code = ExitCode.READINESS_TIMEOUT
    kind = "readiness timeout"

    def __init__(
        self,
        probe: str,
        timeout: float,
        last_error: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        message = f"{probe} not ready after {timeout:.1f}s"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message, stage=stage)
        self.probe = probe
        self.timeout = timeout
        self.last_error = last_error


class TaskFailure(DevnetError):
    """A one-shot task exited non-zero or overran its deadline."""
    exit_code = ExitCode.TASK_FAILURE
    kind = "task failure"

    def __init__(
        self,
        task: str,
        exit_code: Optional[int],
        timed_out: bool = False,
        stage: Optional[str] = None,
    ):
        if timed_out:
            message = f"{task} did not finish in time"
        else:
            message = f"{task} exited with code {exit_code}"
        super().__init__(message, stage=stage)
        self.task = task
        self.task_exit_code = exit_code
        self.timed_out = timed_out


class UnexpectedExit(DevnetError):
    """A long-running node terminated without being asked to."""
    exit_code = ExitCode.UNEXPECTED_EXIT
    kind = "unexpected exit"

    def __init__(self, process: str, exit_code: Optional[int], stage: Optional[str] = None):
        super().__init__(f"{process} exited with code {exit_code}", stage=stage)
        self.process = process
        self.process_exit_code = exit_code


class ShutdownTimeout(DevnetError):
    """A child ignored the graceful stop request and was force-killed.

    Logged, never treated as an overall failure.
    """
    exit_code = ExitCode.OK
    kind = "shutdown timeout"

    def __init__(self, process: str, grace: float):
        super().__init__(f"{process} did not stop within {grace:.1f}s, force-killed")
        self.process = process
        self.grace = grace
