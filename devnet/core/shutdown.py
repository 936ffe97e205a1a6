"""
Shutdown Coordinator - fan-out / fan-in stop of everything the devnet started.
=============================================================================

Every SupervisedProcess and TcpRelay the orchestrator starts is registered
here. On shutdown all of them are asked to stop at the same time and the
coordinator joins on the acknowledgements, bounded by the grace period plus a
force margin. Anything still running after that is force-killed.

Registrants only need ``name``, ``async stop(grace) -> bool`` and
``async kill()``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ShutdownReport:
    """What happened during one coordinated shutdown."""
    reason: str
    stopped: List[str] = field(default_factory=list)
    forced: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def clean(self) -> bool:
        return not self.forced and not self.errors


class ShutdownCoordinator:
    """
    Owned registry of running resources plus the shutdown trigger.

    Args:
        grace: Seconds each resource gets to stop voluntarily
        force_timeout: Extra seconds allowed for forced termination
    """

    def __init__(self, grace: float = 10.0, force_timeout: float = 3.0):
        self.grace = grace
        self.force_timeout = force_timeout
        self._resources: Dict[str, Any] = {}
        self._requested = asyncio.Event()
        self._reason: Optional[str] = None
        self._report: Optional[ShutdownReport] = None
        self._lock = asyncio.Lock()
        self._signals: List[signal.Signals] = []

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, resource: Any) -> None:
        key = f"{type(resource).__name__}:{resource.name}"
        self._resources[key] = resource
        logger.debug(f"[Shutdown] Registered {key}")

    def unregister(self, resource: Any) -> None:
        self._resources.pop(f"{type(resource).__name__}:{resource.name}", None)

    @property
    def resources(self) -> List[Any]:
        return list(self._resources.values())

    # =========================================================================
    # Trigger
    # =========================================================================

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def request_shutdown(self, reason: str) -> None:
        """Record the first shutdown request; later ones are ignored."""
        if self._requested.is_set():
            logger.debug(f"[Shutdown] Ignoring duplicate request ({reason})")
            return
        self._reason = reason
        self._requested.set()
        logger.info(f"[Shutdown] Shutdown requested: {reason}")

    async def wait_requested(self) -> str:
        await self._requested.wait()
        return self._reason or "unknown"

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGINT and SIGTERM into ``request_shutdown``."""
        loop = loop or asyncio.get_running_loop()

        def handle_signal(sig: signal.Signals) -> None:
            logger.info(f"[Shutdown] Received signal {sig.name}")
            self.request_shutdown(f"signal {sig.name}")

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, functools.partial(handle_signal, sig))
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"[Shutdown] Could not register handler for {sig.name}: {e}")

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    # =========================================================================
    # Fan-out / fan-in
    # =========================================================================

    async def shutdown(self, grace: Optional[float] = None) -> ShutdownReport:
        """
        Stop every registered resource concurrently.

        Safe to call more than once; later calls return the first report.
        """
        async with self._lock:
            if self._report is not None:
                return self._report

            if not self._requested.is_set():
                self.request_shutdown("explicit shutdown")

            grace = self.grace if grace is None else grace
            report = ShutdownReport(reason=self._reason or "unknown")
            start = time.monotonic()

            resources = self.resources
            logger.info(f"[Shutdown] Stopping {len(resources)} resource(s), grace {grace:.1f}s")

            tasks: Dict[asyncio.Future, Any] = {
                asyncio.ensure_future(resource.stop(grace)): resource for resource in resources
            }
            done, pending = (set(), set())
            if tasks:
                done, pending = await asyncio.wait(tasks.keys(), timeout=grace + self.force_timeout)

            for task in done:
                resource = tasks[task]
                if task.exception() is not None:
                    report.errors[resource.name] = str(task.exception())
                    logger.error(f"[Shutdown] {resource.name} stop failed: {task.exception()}")
                elif task.result():
                    report.stopped.append(resource.name)
                else:
                    report.forced.append(resource.name)

            for task in pending:
                task.cancel()
                resource = tasks[task]
                logger.warning(f"[Shutdown] {resource.name} did not acknowledge stop, force-killing")
                try:
                    await resource.kill()
                except Exception as e:
                    report.errors[resource.name] = str(e)
                    logger.error(f"[Shutdown] Force-kill of {resource.name} failed: {e}")
                report.forced.append(resource.name)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            report.elapsed = time.monotonic() - start
            logger.info(
                f"[Shutdown] Complete in {report.elapsed:.1f}s: "
                f"{len(report.stopped)} stopped, {len(report.forced)} forced, {len(report.errors)} errors"
            )
            self._report = report
            return report
