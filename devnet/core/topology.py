"""
Fiber devnet topology.

Builds the concrete stage graph for a local Fiber network on a CKB dev chain:

    ckb -> fund -> bootnode -> node1 .. nodeN
                            -> monitor

``ckb`` is ready once the chain RPC reports a tip at or above the configured
height. ``fund`` distributes CKB and sUDT to the node accounts exactly once.
Each Fiber node stage binds its relay first and then starts the node, which
is ready once its own RPC answers ``node_info``.
"""

from __future__ import annotations

import logging
from typing import Iterable, List

from .config import DevnetConfig, FiberNodeConfig
from .oneshot import OneShotTaskRunner
from .process_manager import NodeSupervisor, SupervisedProcess
from .readiness import HttpProbe, JsonRpcProbe, TcpPortProbe, hex_at_least
from .relay import TcpRelay
from .shutdown import ShutdownCoordinator
from .startup_orchestrator import Stage, StageKind, StageOrchestrator

logger = logging.getLogger(__name__)

# Fiber nodes only listen on loopback; the relay is their public face.
FIBER_LISTEN_HOST = "127.0.0.1"


def _chain_stage(
    config: DevnetConfig,
    supervisor: NodeSupervisor,
    coordinator: ShutdownCoordinator,
) -> Stage:
    async def start_chain() -> SupervisedProcess:
        process = await supervisor.spawn("ckb", config.chain_command, cwd=config.project_root)
        coordinator.register(process)
        return process

    return Stage(
        name="ckb",
        kind=StageKind.SPAWN_NODE,
        action=start_chain,
        probe=JsonRpcProbe(
            config.chain_rpc_url,
            "get_tip_block_number",
            predicate=hex_at_least(config.chain_min_tip),
            label=f"tip >= {config.chain_min_tip}",
        ),
        timeout=config.chain_timeout,
        description="CKB dev chain",
    )


def _fund_stage(config: DevnetConfig, supervisor: NodeSupervisor) -> Stage:
    runner = OneShotTaskRunner(
        "fund",
        config.fund_command,
        supervisor,
        cwd=config.project_root,
        timeout=config.fund_timeout,
    )

    async def distribute_funds() -> None:
        await runner.run()

    return Stage(
        name="fund",
        kind=StageKind.RUN_ONCE,
        action=distribute_funds,
        depends_on={"ckb"},
        timeout=config.fund_timeout,
        description="transfer CKB and sUDT to node accounts",
    )


def _fiber_stage(
    node: FiberNodeConfig,
    config: DevnetConfig,
    supervisor: NodeSupervisor,
    coordinator: ShutdownCoordinator,
    depends_on: str,
) -> Stage:
    async def start_node() -> SupervisedProcess:
        relay = TcpRelay(
            f"{node.name}-relay",
            node.relay_host,
            node.relay_port,
            FIBER_LISTEN_HOST,
            node.p2p_port,
        )
        await relay.start()
        coordinator.register(relay)

        process = await supervisor.spawn(
            node.name,
            node.command(config.fiber_binary),
            env=config.fiber_env(),
            cwd=node.workdir,
        )
        coordinator.register(process)
        return process

    return Stage(
        name=node.name,
        kind=StageKind.SPAWN_NODE,
        action=start_node,
        depends_on={depends_on},
        probe=JsonRpcProbe(node.rpc_url, "node_info"),
        timeout=config.fiber_timeout,
        description=f"fiber node, relay :{node.relay_port} -> :{node.p2p_port}",
    )


def relay_stage(
    relay: TcpRelay,
    coordinator: ShutdownCoordinator,
    depends_on: Iterable[str] = (),
    timeout: float = 10.0,
) -> Stage:
    """Standalone relay stage, ready once its listen port accepts connections."""

    probe_host = "127.0.0.1" if relay.listen_host in ("0.0.0.0", "") else relay.listen_host
    probe = TcpPortProbe(probe_host, relay.listen_port)

    async def start_relay() -> TcpRelay:
        await relay.start()
        coordinator.register(relay)
        # Port 0 is only known after the bind.
        probe.port = relay.listen_port
        return relay

    return Stage(
        name=relay.name,
        kind=StageKind.SPAWN_RELAY,
        action=start_relay,
        depends_on=set(depends_on),
        probe=probe,
        timeout=timeout,
        description=f"relay {relay.listen_addr} -> {relay.forward_addr}",
    )


def _monitor_stage(
    config: DevnetConfig,
    supervisor: NodeSupervisor,
    coordinator: ShutdownCoordinator,
) -> Stage:
    async def start_monitor() -> SupervisedProcess:
        process = await supervisor.spawn(
            "monitor",
            config.monitor_command,
            env={"PORT": str(config.monitor_port)},
            cwd=config.project_root,
        )
        coordinator.register(process)
        return process

    return Stage(
        name="monitor",
        kind=StageKind.SPAWN_NODE,
        action=start_monitor,
        depends_on={"bootnode"},
        probe=HttpProbe(f"http://127.0.0.1:{config.monitor_port}"),
        timeout=config.monitor_timeout,
        description="monitoring UI",
    )


def build_devnet_stages(
    config: DevnetConfig,
    supervisor: NodeSupervisor,
    coordinator: ShutdownCoordinator,
) -> List[Stage]:
    """Stage list for the whole devnet, in declaration order."""
    stages = [
        _chain_stage(config, supervisor, coordinator),
        _fund_stage(config, supervisor),
    ]
    for node in config.fiber_nodes():
        upstream = "fund" if node.is_bootnode else "bootnode"
        stages.append(_fiber_stage(node, config, supervisor, coordinator, upstream))
    if config.monitor_enabled:
        stages.append(_monitor_stage(config, supervisor, coordinator))
    return stages


def describe_graph(orchestrator: StageOrchestrator) -> List[str]:
    """Human-readable stage graph, one line per stage grouped by layer."""
    lines: List[str] = []
    stages = orchestrator.stages
    for depth, layer in enumerate(orchestrator.layers()):
        lines.append(f"Layer {depth}:")
        for name in layer:
            stage = stages[name]
            deps = ", ".join(sorted(stage.depends_on)) or "-"
            probe = stage.probe.describe() if stage.probe else "-"
            lines.append(
                f"  {name:<10} {stage.kind.value:<12} after: {deps:<10} "
                f"probe: {probe} (timeout {stage.timeout:.0f}s)"
            )
            if stage.description:
                lines.append(f"  {'':<10} {stage.description}")
    return lines
