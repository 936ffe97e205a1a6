"""
One-shot task runner.

Runs a setup command (the fund distribution job) at most once per
orchestration session. Every caller, concurrent or later, awaits the same
invocation and sees the same result or the same TaskFailure. Nothing is
retried: re-running a transfer against the dev chain could double-spend the
test funds, so a failed run needs a manual restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .errors import TaskFailure
from .process_manager import NodeSupervisor

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    name: str
    exit_code: int
    duration: float
    log_path: Optional[Path] = None


class OneShotTaskRunner:
    """Exactly-once wrapper around a supervised, short-lived command."""

    def __init__(
        self,
        name: str,
        command: List[str],
        supervisor: NodeSupervisor,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ):
        self.name = name
        self.command = command
        self.supervisor = supervisor
        self.env = env
        self.cwd = cwd
        self.timeout = timeout
        self.invocations = 0
        self._future: Optional[asyncio.Future] = None

    @property
    def has_run(self) -> bool:
        return self._future is not None

    async def run(self) -> TaskResult:
        """Start the task on first call; every call awaits that one run."""
        if self._future is None:
            self._future = asyncio.ensure_future(self._execute())
            self._future.add_done_callback(self._collect)
        return await asyncio.shield(self._future)

    @staticmethod
    def _collect(future: asyncio.Future) -> None:
        # Callers may all have been cancelled; failures are logged in _execute.
        if not future.cancelled():
            future.exception()

    async def _execute(self) -> TaskResult:
        self.invocations += 1
        start = time.monotonic()
        process = await self.supervisor.spawn(
            self.name,
            self.command,
            env=self.env,
            cwd=self.cwd,
            long_running=False,
        )

        try:
            if self.timeout is not None:
                exit_code = await asyncio.wait_for(process.wait(), timeout=self.timeout)
            else:
                exit_code = await process.wait()
        except asyncio.TimeoutError:
            logger.error(f"[OneShot] {self.name} exceeded {self.timeout:.0f}s, killing it")
            await process.kill()
            raise TaskFailure(self.name, process.exit_code, timed_out=True, stage=self.name)

        duration = time.monotonic() - start
        if exit_code != 0:
            logger.error(f"[OneShot] {self.name} failed with exit code {exit_code} after {duration:.1f}s")
            raise TaskFailure(self.name, exit_code, stage=self.name)

        logger.info(f"[OneShot] {self.name} completed in {duration:.1f}s")
        return TaskResult(
            name=self.name,
            exit_code=exit_code,
            duration=duration,
            log_path=process.log_path,
        )
