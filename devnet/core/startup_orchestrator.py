"""
Stage Orchestrator - dependency-gated staged startup
====================================================

Drives a graph of stages through

    PENDING -> RUNNING -> READY | FAILED

A stage becomes RUNNING only once every stage it depends on is READY. While
RUNNING it performs its action (spawn a node, run a one-shot task, spawn a
relay) and then, if it declares a probe, waits for the Readiness Prober
before it is READY. Action errors, probe timeouts and processes that die
during startup make the stage FAILED. A READY stage whose process later dies
becomes FAILED too, either when ``report_unexpected_exit`` is called or when
a downstream stage is about to start.

A FAILED stage blocks its transitive dependents: they stay PENDING for the
rest of the session and record which dependency blocked them. Stages that
do not depend on the failed one keep running. Independent stages run
concurrently; there is no ordering between siblings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import (
    DevnetError,
    ExitCode,
    StageActionError,
    StageGraphError,
    UnexpectedExit,
)
from .readiness import Probe, ReadinessOutcome, ReadinessProber

logger = logging.getLogger(__name__)


# =============================================================================
# Types
# =============================================================================

class StageKind(str, Enum):
    SPAWN_NODE = "spawn_node"
    RUN_ONCE = "run_once"
    SPAWN_RELAY = "spawn_relay"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    READY = "ready"
    FAILED = "failed"


@dataclass
class Stage:
    """A named unit of startup work."""
    name: str
    kind: StageKind
    action: Callable[[], Awaitable[Any]]
    depends_on: Set[str] = field(default_factory=set)
    probe: Optional[Probe] = None
    timeout: float = 30.0
    description: str = ""

    # Runtime state
    status: StageStatus = StageStatus.PENDING
    resource: Any = None
    error: Optional[DevnetError] = None
    blocked_by: List[str] = field(default_factory=list)
    started_at: Optional[float] = None
    ready_at: Optional[float] = None
    finished_at: Optional[float] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "depends_on": sorted(self.depends_on),
            "probe": self.probe.describe() if self.probe else None,
            "timeout": self.timeout,
            "started_at": self.started_at,
            "ready_at": self.ready_at,
            "duration_ms": (
                (self.finished_at - self.started_at) * 1000
                if self.finished_at and self.started_at else 0
            ),
            "error": self.error.describe() if self.error else None,
            "blocked_by": list(self.blocked_by),
        }


@dataclass
class OrchestrationResult:
    """Outcome of one ``StageOrchestrator.execute`` call."""
    success: bool
    stages: Dict[str, Dict[str, Any]]
    failures: List[DevnetError]
    elapsed: float

    @property
    def exit_code(self) -> ExitCode:
        if self.success:
            return ExitCode.OK
        return self.failures[0].exit_code if self.failures else ExitCode.STAGE_FAILURE

    def failed_stages(self) -> List[str]:
        return [name for name, s in self.stages.items() if s["status"] == StageStatus.FAILED.value]

    def blocked_stages(self) -> List[str]:
        return [name for name, s in self.stages.items() if s["blocked_by"]]


# =============================================================================
# Orchestrator
# =============================================================================

class StageOrchestrator:
    """
    Executes a stage graph with readiness gating.

    Args:
        prober: Readiness prober shared by every stage probe
        on_failure: Called with the error whenever a stage becomes FAILED
        clock: Monotonic clock used for stage timestamps
    """

    def __init__(
        self,
        prober: ReadinessProber,
        on_failure: Optional[Callable[[DevnetError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.prober = prober
        self.on_failure = on_failure
        self.clock = clock
        self._stages: Dict[str, Stage] = {}
        self._settled: Dict[str, asyncio.Event] = {}

    # =========================================================================
    # Graph construction
    # =========================================================================

    def add_stage(self, stage: Stage) -> Stage:
        if stage.name in self._stages:
            raise StageGraphError(f"duplicate stage {stage.name!r}")
        self._stages[stage.name] = stage
        return stage

    def add_stages(self, stages: List[Stage]) -> None:
        for stage in stages:
            self.add_stage(stage)

    def stage(self, name: str) -> Stage:
        return self._stages[name]

    @property
    def stages(self) -> Dict[str, Stage]:
        return dict(self._stages)

    def layers(self) -> List[List[str]]:
        """
        Topological sort with level grouping.

        Raises:
            StageGraphError: unknown dependency or a cycle
        """
        in_degree = {name: 0 for name in self._stages}
        graph: Dict[str, List[str]] = {name: [] for name in self._stages}

        for name, stage in self._stages.items():
            for dep in stage.depends_on:
                if dep not in self._stages:
                    raise StageGraphError(f"stage {name!r} depends on unknown stage {dep!r}")
                if dep == name:
                    raise StageGraphError(f"stage {name!r} depends on itself")
                graph[dep].append(name)
                in_degree[name] += 1

        levels: List[List[str]] = []
        queue = sorted(name for name, degree in in_degree.items() if degree == 0)

        while queue:
            levels.append(queue)
            next_queue: List[str] = []
            for name in queue:
                for dependent in graph[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_queue.append(dependent)
            queue = sorted(next_queue)

        placed = sum(len(level) for level in levels)
        if placed != len(self._stages):
            cyclic = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise StageGraphError(f"dependency cycle among {', '.join(cyclic)}")
        return levels

    def validate(self) -> None:
        self.layers()

    def dependents_of(self, name: str) -> Set[str]:
        """Transitive dependents of ``name``."""
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other in self._stages.values():
                if current in other.depends_on and other.name not in found:
                    found.add(other.name)
                    frontier.append(other.name)
        return found

    def dependencies_of(self, name: str) -> Set[str]:
        """Transitive dependencies of ``name``."""
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            for dep in self._stages[frontier.pop()].depends_on:
                if dep not in found:
                    found.add(dep)
                    frontier.append(dep)
        return found

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self) -> OrchestrationResult:
        """Run every stage as soon as its dependencies are READY."""
        self.validate()
        start = self.clock()
        self._settled = {name: asyncio.Event() for name in self._stages}

        logger.info(f"[Orchestrator] Starting {len(self._stages)} stage(s)")
        tasks = [
            asyncio.ensure_future(self._run_stage(stage))
            for stage in self._stages.values()
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failures = [s.error for s in self._stages.values() if s.error is not None]
        result = OrchestrationResult(
            success=all(s.status == StageStatus.READY for s in self._stages.values()),
            stages={name: s.snapshot() for name, s in self._stages.items()},
            failures=failures,
            elapsed=self.clock() - start,
        )
        if result.success:
            logger.info(f"[Orchestrator] All stages ready in {result.elapsed:.1f}s")
        else:
            for line in self.failure_report():
                logger.error(f"[Orchestrator] {line}")
        return result

    async def _run_stage(self, stage: Stage) -> None:
        try:
            for dep in sorted(stage.depends_on):
                await self._settled[dep].wait()

            # A READY upstream process may have died since it settled.
            ancestors = self.dependencies_of(stage.name)
            for name in sorted(ancestors):
                self._check_alive(self._stages[name])

            blocked = sorted(
                dep for dep in stage.depends_on
                if self._stages[dep].status != StageStatus.READY
            )
            if not blocked:
                blocked = sorted(
                    name for name in ancestors
                    if self._stages[name].status != StageStatus.READY
                )
            if blocked:
                stage.blocked_by = blocked
                logger.warning(f"[Orchestrator] {stage.name} blocked by {', '.join(blocked)}")
                return

            stage.status = StageStatus.RUNNING
            stage.started_at = self.clock()
            logger.info(f"[Orchestrator] {stage.name} running ({stage.kind.value})")

            try:
                await self._perform(stage)
            except DevnetError as e:
                if e.stage is None:
                    e.stage = stage.name
                self._fail(stage, e)
                return
            except Exception as e:
                logger.exception(f"[Orchestrator] {stage.name} action raised")
                self._fail(stage, StageActionError(str(e) or type(e).__name__, stage=stage.name))
                return

            stage.status = StageStatus.READY
            stage.ready_at = self.clock()
            stage.finished_at = stage.ready_at
            logger.info(
                f"[Orchestrator] {stage.name} ready in "
                f"{(stage.ready_at - stage.started_at) * 1000:.0f}ms"
            )
        finally:
            self._settled[stage.name].set()

    async def _perform(self, stage: Stage) -> None:
        resource = await stage.action()
        stage.resource = resource

        if stage.probe is not None:
            abort_when = getattr(resource, "exit_reason", None)
            result = await self.prober.wait_ready(
                stage.probe,
                timeout=stage.timeout,
                abort_when=abort_when if callable(abort_when) else None,
            )
            if result.outcome == ReadinessOutcome.TIMED_OUT:
                raise result.to_error(stage=stage.name)
            if result.outcome == ReadinessOutcome.ABORTED:
                raise UnexpectedExit(
                    getattr(resource, "name", stage.name),
                    getattr(resource, "exit_code", None),
                    stage=stage.name,
                )

        mark_running = getattr(resource, "mark_running", None)
        if callable(mark_running):
            mark_running()

    def _fail(self, stage: Stage, error: DevnetError) -> None:
        stage.status = StageStatus.FAILED
        stage.error = error
        stage.finished_at = self.clock()
        logger.error(f"[Orchestrator] {stage.name} FAILED: {error.describe()}")
        if self.on_failure is not None:
            self.on_failure(error)

    def _check_alive(self, stage: Stage) -> None:
        if stage.status != StageStatus.READY:
            return
        exit_reason = getattr(stage.resource, "exit_reason", None)
        if callable(exit_reason) and exit_reason():
            self._fail(stage, UnexpectedExit(
                getattr(stage.resource, "name", stage.name),
                getattr(stage.resource, "exit_code", None),
                stage=stage.name,
            ))

    def report_unexpected_exit(self, error: UnexpectedExit) -> bool:
        """
        Mark the READY stage that owns the dead process as FAILED.

        Stages still RUNNING notice the exit through their probe's abort
        check. Returns True if a stage changed state.
        """
        stage = self._stages.get(error.stage) if error.stage else None
        if stage is None or stage.status != StageStatus.READY:
            return False
        self._fail(stage, error)
        return True

    # =========================================================================
    # Reporting
    # =========================================================================

    def failure_report(self) -> List[str]:
        lines: List[str] = []
        for stage in self._stages.values():
            if stage.status == StageStatus.FAILED and stage.error is not None:
                lines.append(f"stage {stage.name} failed ({stage.error.kind}): {stage.error.message}")
        for stage in self._stages.values():
            if stage.blocked_by:
                lines.append(f"stage {stage.name} not started, blocked by {', '.join(stage.blocked_by)}")
        return lines

    def get_status(self) -> Dict[str, Any]:
        """Get orchestrator status."""
        try:
            order = self.layers()
        except StageGraphError:
            order = []
        return {
            "stages": {name: s.snapshot() for name, s in self._stages.items()},
            "execution_order": order,
        }
