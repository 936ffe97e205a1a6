"""
Devnet Core - staged startup, readiness probing, process supervision and
port relaying for the local Fiber test network.
"""

from .config import DevnetConfig, FiberNodeConfig, load_config
from .errors import (
    BindFailure,
    DevnetError,
    ExitCode,
    ReadinessTimeout,
    ShutdownTimeout,
    StageActionError,
    StageGraphError,
    TaskFailure,
    UnexpectedExit,
)
from .process_manager import NodeSupervisor, ProcessState, SupervisedProcess
from .readiness import (
    FileProbe,
    HttpProbe,
    JsonRpcProbe,
    Probe,
    ReadinessOutcome,
    ReadinessProber,
    ReadinessResult,
    TcpPortProbe,
)
from .relay import TcpRelay
from .oneshot import OneShotTaskRunner, TaskResult
from .shutdown import ShutdownCoordinator
from .topology import build_devnet_stages, describe_graph, relay_stage
from .startup_orchestrator import (
    OrchestrationResult,
    Stage,
    StageKind,
    StageOrchestrator,
    StageStatus,
)

__all__ = [
    # Config
    "DevnetConfig",
    "FiberNodeConfig",
    "load_config",
    # Errors
    "DevnetError",
    "BindFailure",
    "ReadinessTimeout",
    "TaskFailure",
    "UnexpectedExit",
    "ShutdownTimeout",
    "StageGraphError",
    "StageActionError",
    "ExitCode",
    # Readiness
    "Probe",
    "TcpPortProbe",
    "HttpProbe",
    "JsonRpcProbe",
    "FileProbe",
    "ReadinessProber",
    "ReadinessResult",
    "ReadinessOutcome",
    # Processes
    "NodeSupervisor",
    "SupervisedProcess",
    "ProcessState",
    "OneShotTaskRunner",
    "TaskResult",
    # Relay
    "TcpRelay",
    # Orchestration
    "Stage",
    "StageKind",
    "StageStatus",
    "StageOrchestrator",
    "OrchestrationResult",
    "ShutdownCoordinator",
    # Topology
    "build_devnet_stages",
    "describe_graph",
    "relay_stage",
]
