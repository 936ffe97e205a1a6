"""
Node Supervisor - Child Process Lifecycle Management
====================================================

Starts external node binaries, pumps their output into the log, relays stop
requests into a graceful shutdown and reaps them on exit.

Lifecycle of a SupervisedProcess:

    STARTING --(startup probe passes)--> RUNNING
    STARTING/RUNNING --(stop requested)--> STOPPING
    any --(OS process reaped)--> EXITED

Stop semantics:
1. SIGINT to the child's process group (each child gets its own session, so
   terminal signals only reach it through the supervisor)
2. Wait up to ``grace`` for a voluntary exit
3. SIGKILL the whole process tree (psutil) and log the escalation

A long-running process that exits without a stop request is reported through
``on_unexpected_exit``. It is never restarted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles
import psutil

from .errors import ShutdownTimeout, StageActionError, UnexpectedExit

logger = logging.getLogger(__name__)

# Line buffer limit for child output streams.
OUTPUT_LINE_LIMIT = 1024 * 1024


class ProcessState(str, Enum):
    """Process lifecycle states."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


def kill_process_tree(pid: int) -> int:
    """
    SIGKILL a process and all of its descendants.

    Returns the number of processes signalled.
    """
    try:
        parent = psutil.Process(pid)
        victims = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return 0

    killed = 0
    for proc in victims:
        try:
            proc.kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.error(f"[Supervisor] Permission denied killing PID {proc.pid}")
    return killed


class SupervisedProcess:
    """One OS process owned by a NodeSupervisor."""

    def __init__(
        self,
        name: str,
        command: List[str],
        process: asyncio.subprocess.Process,
        long_running: bool,
        log_path: Optional[Path],
        on_unexpected_exit: Optional[Callable[[UnexpectedExit], None]] = None,
        force_timeout: float = 3.0,
    ):
        self.name = name
        self.command = command
        self.long_running = long_running
        self.log_path = log_path
        self.force_timeout = force_timeout

        self._process = process
        self._on_unexpected_exit = on_unexpected_exit
        self._exited = asyncio.Event()
        self._log_file = None
        self._watch_task: Optional[asyncio.Task] = None

        self.state = ProcessState.STARTING
        self.exit_code: Optional[int] = None
        self.stop_requested = False
        self.started_at = time.time()
        self.exited_at: Optional[float] = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def exit_reason(self) -> Optional[str]:
        """Non-empty once the process is gone; usable as a probe abort check."""
        if self.has_exited:
            return f"{self.name} exited with code {self.exit_code}"
        return None

    def mark_running(self) -> None:
        if self.state == ProcessState.STARTING:
            self.state = ProcessState.RUNNING

    # =========================================================================
    # Output capture and reaping
    # =========================================================================

    async def _attach(self) -> None:
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = await aiofiles.open(self.log_path, "w")
        self._watch_task = asyncio.ensure_future(self._watch())

    async def _pump(self, stream: Optional[asyncio.StreamReader], tag: str) -> None:
        if stream is None:
            return
        node_log = logging.getLogger(f"devnet.node.{self.name}")
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the buffer limit; take what is there.
                line = await stream.read(OUTPUT_LINE_LIMIT)
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            node_log.info(f"[{tag}] {text}")
            if self._log_file is not None:
                await self._log_file.write(text + "\n")
                await self._log_file.flush()

    async def _watch(self) -> None:
        pumps = asyncio.gather(
            self._pump(self._process.stdout, "out"),
            self._pump(self._process.stderr, "err"),
            return_exceptions=True,
        )
        returncode = await self._process.wait()
        try:
            # Grandchildren may keep the pipes open after the child is gone.
            await asyncio.wait_for(asyncio.shield(pumps), timeout=1.0)
        except asyncio.TimeoutError:
            pumps.cancel()
            await asyncio.gather(pumps, return_exceptions=True)
        if self._log_file is not None:
            await self._log_file.close()
            self._log_file = None

        self.exit_code = returncode
        self.exited_at = time.time()
        self.state = ProcessState.EXITED
        self._exited.set()

        if self.stop_requested or not self.long_running:
            logger.info(f"[Supervisor] {self.name} (PID {self.pid}) exited with code {returncode}")
            return

        error = UnexpectedExit(self.name, returncode, stage=self.name)
        logger.error(f"[Supervisor] {error.describe()}")
        if self._on_unexpected_exit is not None:
            self._on_unexpected_exit(error)

    async def wait(self) -> int:
        """Wait until the process is reaped and return its exit code."""
        await self._exited.wait()
        return self.exit_code

    # =========================================================================
    # Stopping
    # =========================================================================

    def _signal_group(self, sig: signal.Signals) -> bool:
        try:
            os.killpg(os.getpgid(self.pid), sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.warning(f"[Supervisor] Permission denied sending {sig.name} to {self.name}")
            return False

    async def stop(self, grace: float = 10.0) -> bool:
        """
        Interrupt the process, wait up to ``grace`` seconds, then kill.

        Returns:
            True if the process exited on its own within the grace period
        """
        if self.has_exited:
            return True

        self.stop_requested = True
        self.state = ProcessState.STOPPING
        logger.info(f"[Supervisor] Stopping {self.name} (PID {self.pid}, grace {grace:.1f}s)")
        self._signal_group(signal.SIGINT)

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=grace)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"[Supervisor] {ShutdownTimeout(self.name, grace).describe()}")

        await self.kill()
        return False

    async def kill(self) -> None:
        """Force-kill the process tree and wait briefly for the reap."""
        if self.has_exited:
            return
        self.stop_requested = True
        self.state = ProcessState.STOPPING
        killed = kill_process_tree(self.pid)
        logger.debug(f"[Supervisor] SIGKILL sent to {killed} process(es) of {self.name}")
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.force_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[Supervisor] {self.name} (PID {self.pid}) survived SIGKILL")

    def snapshot(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "pid": self.pid,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "long_running": self.long_running,
            "log": str(self.log_path) if self.log_path else None,
        }


class NodeSupervisor:
    """
    Spawns and tracks supervised node processes.

    Args:
        log_dir: Directory for per-process log files (None: logger only)
        on_unexpected_exit: Called when a long-running child dies on its own
        force_timeout: How long to wait for the reap after SIGKILL
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        on_unexpected_exit: Optional[Callable[[UnexpectedExit], None]] = None,
        force_timeout: float = 3.0,
    ):
        self.log_dir = log_dir
        self.on_unexpected_exit = on_unexpected_exit
        self.force_timeout = force_timeout
        self._processes: Dict[str, SupervisedProcess] = {}

    @property
    def processes(self) -> Dict[str, SupervisedProcess]:
        return dict(self._processes)

    def get(self, name: str) -> Optional[SupervisedProcess]:
        return self._processes.get(name)

    def running(self) -> List[SupervisedProcess]:
        return [p for p in self._processes.values() if not p.has_exited]

    async def spawn(
        self,
        name: str,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        long_running: bool = True,
    ) -> SupervisedProcess:
        """
        Start ``command`` as a supervised child.

        Args:
            name: Unique process name (also the log file name)
            command: Executable and arguments
            env: Extra environment variables merged over ours (never logged)
            cwd: Working directory
            long_running: False for processes that are expected to exit

        Raises:
            StageActionError: the executable could not be started
        """
        if not command:
            raise StageActionError("empty command", stage=name)
        existing = self._processes.get(name)
        if existing is not None and not existing.has_exited:
            raise StageActionError(f"{name} is already running (PID {existing.pid})", stage=name)

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        logger.info(f"[Supervisor] Starting {name}: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=OUTPUT_LINE_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error(f"[Supervisor] Failed to start {name}: {e}")
            raise StageActionError(f"cannot start {command[0]}: {e}", stage=name) from e

        log_path = self.log_dir / f"{name}.log" if self.log_dir else None
        supervised = SupervisedProcess(
            name=name,
            command=command,
            process=process,
            long_running=long_running,
            log_path=log_path,
            on_unexpected_exit=self.on_unexpected_exit,
            force_timeout=self.force_timeout,
        )
        await supervised._attach()
        self._processes[name] = supervised

        logger.info(f"[Supervisor] {name} started with PID {supervised.pid}")
        return supervised
