import asyncio
import time

import pytest

from devnet.core.errors import (
    ExitCode,
    ReadinessTimeout,
    StageActionError,
    StageGraphError,
    TaskFailure,
    UnexpectedExit,
)
from devnet.core.process_manager import NodeSupervisor
from devnet.core.readiness import Probe, ReadinessProber
from devnet.core.startup_orchestrator import (
    Stage,
    StageKind,
    StageOrchestrator,
    StageStatus,
)


class FlagProbe(Probe):
    """Ready once ``state[key]`` is truthy."""

    def __init__(self, state, key):
        self.state = state
        self.key = key

    def describe(self) -> str:
        return f"flag {self.key}"

    async def check(self, session) -> bool:
        return bool(self.state.get(self.key))


class FakeProcess:
    def __init__(self, name, exited=False):
        self.name = name
        self.exit_code = 1 if exited else None
        self.running = False
        self._exited = exited

    def exit_reason(self):
        return f"{self.name} exited with code 1" if self._exited else None

    def mark_running(self):
        self.running = True


def _noop(delay=0.0, result=None):
    async def action():
        await asyncio.sleep(delay)
        return result
    return action


def _stage(name, deps=(), action=None, kind=StageKind.SPAWN_NODE, probe=None, timeout=2.0):
    return Stage(
        name=name,
        kind=kind,
        action=action or _noop(),
        depends_on=set(deps),
        probe=probe,
        timeout=timeout,
    )


@pytest.mark.asyncio
async def test_stages_start_only_after_dependencies_are_ready():
    state = {}

    def start_and_flip(key, delay):
        async def action():
            asyncio.get_running_loop().call_later(delay, state.__setitem__, key, True)
        return action

    async with ReadinessProber(interval=0.02) as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stages([
            _stage("A", action=start_and_flip("A", 0.1), probe=FlagProbe(state, "A")),
            _stage("B", ["A"], action=start_and_flip("B", 0.1), probe=FlagProbe(state, "B"),
                   kind=StageKind.RUN_ONCE),
            _stage("C", ["B"]),
            _stage("D", ["B"]),
        ])
        result = await orchestrator.execute()

    assert result.success
    assert result.exit_code == ExitCode.OK
    stages = orchestrator.stages
    assert stages["B"].started_at >= stages["A"].ready_at
    for name in ("C", "D"):
        assert stages[name].started_at >= stages["B"].ready_at
        assert stages[name].status == StageStatus.READY


@pytest.mark.asyncio
async def test_independent_siblings_run_concurrently():
    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stages([
            _stage("root"),
            _stage("left", ["root"], action=_noop(0.3)),
            _stage("right", ["root"], action=_noop(0.3)),
        ])
        start = time.monotonic()
        result = await orchestrator.execute()
        elapsed = time.monotonic() - start

    assert result.success
    assert elapsed < 0.55


@pytest.mark.asyncio
async def test_failed_stage_blocks_dependents_but_not_siblings():
    async def explode():
        raise RuntimeError("fnn: config.yml not found")

    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stages([
            _stage("A"),
            _stage("B", ["A"], action=explode),
            _stage("C", ["B"]),
            _stage("D", ["C"]),
            _stage("E", ["A"]),
        ])
        result = await orchestrator.execute()

    stages = orchestrator.stages
    assert not result.success
    assert stages["B"].status == StageStatus.FAILED
    assert isinstance(stages["B"].error, StageActionError)
    assert "config.yml" in stages["B"].error.message
    assert stages["C"].status == StageStatus.PENDING
    assert stages["C"].blocked_by == ["B"]
    assert stages["D"].status == StageStatus.PENDING
    assert stages["D"].blocked_by == ["C"]
    assert stages["E"].status == StageStatus.READY
    assert stages["C"].started_at is None

    assert result.failed_stages() == ["B"]
    assert sorted(result.blocked_stages()) == ["C", "D"]
    assert result.exit_code == ExitCode.STAGE_FAILURE
    assert any("blocked by B" in line for line in orchestrator.failure_report())


@pytest.mark.asyncio
async def test_probe_timeout_fails_stage_with_readiness_timeout():
    async with ReadinessProber(interval=0.05) as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stages([
            _stage("ckb", probe=FlagProbe({}, "never"), timeout=0.3),
            _stage("fund", ["ckb"], kind=StageKind.RUN_ONCE),
        ])
        result = await orchestrator.execute()

    error = orchestrator.stage("ckb").error
    assert isinstance(error, ReadinessTimeout)
    assert error.stage == "ckb"
    assert result.exit_code == ExitCode.READINESS_TIMEOUT
    assert orchestrator.stage("fund").blocked_by == ["ckb"]


@pytest.mark.asyncio
async def test_process_exit_during_startup_aborts_probe():
    dead = FakeProcess("bootnode", exited=True)
    async with ReadinessProber(interval=0.05) as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stage(
            _stage("bootnode", action=_noop(result=dead), probe=FlagProbe({}, "rpc"), timeout=30.0)
        )
        start = time.monotonic()
        result = await orchestrator.execute()

    assert time.monotonic() - start < 5.0
    error = orchestrator.stage("bootnode").error
    assert isinstance(error, UnexpectedExit)
    assert result.exit_code == ExitCode.UNEXPECTED_EXIT
    assert dead.running is False


@pytest.mark.asyncio
async def test_ready_process_is_marked_running():
    alive = FakeProcess("node1")
    async with ReadinessProber(interval=0.05) as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stage(_stage("node1", action=_noop(result=alive), probe=FlagProbe({"rpc": 1}, "rpc")))
        await orchestrator.execute()

    assert alive.running is True
    assert orchestrator.stage("node1").resource is alive


@pytest.mark.asyncio
async def test_task_failure_keeps_its_exit_code():
    async def fund():
        raise TaskFailure("fund", 101)

    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stage(_stage("fund", action=fund, kind=StageKind.RUN_ONCE))
        result = await orchestrator.execute()

    error = orchestrator.stage("fund").error
    assert error.stage == "fund"
    assert error.task_exit_code == 101
    assert result.exit_code == ExitCode.TASK_FAILURE


@pytest.mark.asyncio
async def test_ready_process_dying_blocks_later_stages(child_script):
    supervisor = NodeSupervisor()
    command = child_script("""
        import time
        time.sleep(0.3)
    """)

    async def start_chain():
        return await supervisor.spawn("A", command)

    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober)
        orchestrator.add_stages([
            _stage("A", action=start_chain),
            _stage("B", ["A"], action=_noop(1.0), kind=StageKind.RUN_ONCE),
            _stage("C", ["B"]),
        ])
        result = await asyncio.wait_for(orchestrator.execute(), timeout=10.0)

    stages = orchestrator.stages
    assert not result.success
    assert stages["A"].status == StageStatus.FAILED
    assert isinstance(stages["A"].error, UnexpectedExit)
    assert stages["A"].error.stage == "A"
    assert stages["B"].status == StageStatus.READY
    assert stages["C"].status == StageStatus.PENDING
    assert stages["C"].blocked_by == ["A"]
    assert stages["C"].started_at is None
    assert result.exit_code == ExitCode.UNEXPECTED_EXIT


@pytest.mark.asyncio
async def test_reported_exit_fails_ready_stage_and_notifies():
    failures = []
    node = FakeProcess("bootnode")
    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober, on_failure=failures.append)
        orchestrator.add_stage(_stage("bootnode", action=_noop(result=node)))
        await orchestrator.execute()

        error = UnexpectedExit("bootnode", 1, stage="bootnode")
        assert orchestrator.report_unexpected_exit(error) is True
        assert orchestrator.report_unexpected_exit(error) is False
        assert orchestrator.report_unexpected_exit(UnexpectedExit("ghost", 1, stage="ghost")) is False

    stage = orchestrator.stage("bootnode")
    assert stage.status == StageStatus.FAILED
    assert stage.error is error
    assert failures == [error]


@pytest.mark.asyncio
async def test_failure_callback_sees_every_failed_stage():
    failures = []

    async def explode():
        raise RuntimeError("boom")

    async with ReadinessProber() as prober:
        orchestrator = StageOrchestrator(prober, on_failure=failures.append)
        orchestrator.add_stages([
            _stage("A", action=explode),
            _stage("B", ["A"]),
            _stage("C", action=explode),
        ])
        await orchestrator.execute()

    assert sorted(e.stage for e in failures) == ["A", "C"]


def test_cycle_is_rejected():
    orchestrator = StageOrchestrator(ReadinessProber())
    orchestrator.add_stages([
        _stage("A", ["C"]),
        _stage("B", ["A"]),
        _stage("C", ["B"]),
        _stage("D"),
    ])
    with pytest.raises(StageGraphError) as excinfo:
        orchestrator.validate()
    assert "A, B, C" in excinfo.value.message
    assert excinfo.value.exit_code == ExitCode.CONFIG_ERROR


def test_unknown_and_duplicate_stages_are_rejected():
    orchestrator = StageOrchestrator(ReadinessProber())
    orchestrator.add_stage(_stage("A", ["ghost"]))
    with pytest.raises(StageGraphError, match="unknown stage 'ghost'"):
        orchestrator.validate()
    with pytest.raises(StageGraphError, match="duplicate"):
        orchestrator.add_stage(_stage("A"))


def test_layers_group_by_depth():
    orchestrator = StageOrchestrator(ReadinessProber())
    orchestrator.add_stages([
        _stage("monitor", ["bootnode"]),
        _stage("node1", ["bootnode"]),
        _stage("bootnode", ["fund"]),
        _stage("fund", ["ckb"]),
        _stage("ckb"),
    ])
    assert orchestrator.layers() == [["ckb"], ["fund"], ["bootnode"], ["monitor", "node1"]]
    assert orchestrator.dependents_of("fund") == {"bootnode", "node1", "monitor"}
