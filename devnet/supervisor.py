#!/usr/bin/env python3
"""
Fiber Devnet Supervisor Entry Point
===================================

Single command that brings up a local Fiber payment-channel network on a CKB
dev chain and keeps it running until interrupted.

    ckb -> fund -> bootnode -> node1 .. nodeN
                            -> monitor

Startup is staged: each stage starts only after everything it depends on is
observably ready. On SIGINT/SIGTERM every process and relay is stopped
concurrently with a bounded grace period.

Usage:
    # Start the devnet
    python run_devnet.py

    # Show the stage graph without starting anything
    python run_devnet.py --list

    # Two peers, no monitoring UI, debug logging
    python run_devnet.py --peers 2 --no-monitor --log-level DEBUG

    # Tear down immediately on the first failure
    DEVNET_EXIT_ON_FAILURE=true python run_devnet.py

Exit codes:
    0 clean shutdown, 2 invalid configuration, 3 readiness timeout,
    4 bind failure, 5 unexpected node exit, 6 one-shot task failure,
    7 any other stage failure
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from devnet.core.config import DevnetConfig, load_config
from devnet.core.errors import DevnetError, ExitCode, StageGraphError, UnexpectedExit
from devnet.core.process_manager import NodeSupervisor
from devnet.core.readiness import ReadinessProber
from devnet.core.shutdown import ShutdownCoordinator
from devnet.core.startup_orchestrator import StageOrchestrator
from devnet.core.topology import build_devnet_stages, describe_graph


def setup_logging(config: DevnetConfig) -> logging.Logger:
    """
    Configure logging for the supervisor.

    Child process output is logged under ``devnet.node.<name>``.
    """
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from libraries
    for logger_name in ("asyncio", "aiohttp", "urllib3"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return logging.getLogger("devnet.bootstrap")


class DevnetBootstrapper:
    """
    Owns one devnet session: builds the stage graph, runs it, holds the
    network up and tears it down.
    """

    def __init__(self, config: DevnetConfig):
        self.config = config
        self.logger = logging.getLogger("devnet.bootstrap")

        self.coordinator = ShutdownCoordinator(
            grace=config.grace_period,
            force_timeout=config.force_timeout,
        )
        self.supervisor = NodeSupervisor(
            log_dir=config.resolve(config.log_dir),
            on_unexpected_exit=self._on_unexpected_exit,
            force_timeout=config.force_timeout,
        )
        self.prober = ReadinessProber(interval=config.probe_interval)
        self.orchestrator = StageOrchestrator(self.prober, on_failure=self._record_failure)

        self.failures: List[DevnetError] = []
        self._failed = asyncio.Event()
        self._built = False

    # =========================================================================
    # Failure bookkeeping
    # =========================================================================

    def _record_failure(self, error: DevnetError) -> None:
        if any(f.stage is not None and f.stage == error.stage for f in self.failures):
            return
        self.failures.append(error)
        self._failed.set()

    def _on_unexpected_exit(self, error: UnexpectedExit) -> None:
        if not self.orchestrator.report_unexpected_exit(error):
            self._record_failure(error)

    @property
    def exit_code(self) -> ExitCode:
        return self.failures[0].exit_code if self.failures else ExitCode.OK

    def _report_failures(self) -> None:
        self.logger.error("=" * 60)
        self.logger.error("DEVNET FAILURE REPORT")
        self.logger.error("=" * 60)
        for error in self.failures:
            self.logger.error(f"  {error.describe()}")
        for line in self.orchestrator.failure_report():
            if "blocked by" in line:
                self.logger.error(f"  {line}")
        if self.supervisor.log_dir is not None:
            self.logger.error(f"  Node logs: {self.supervisor.log_dir}")
        self.logger.error("=" * 60)

    def _report_ready(self) -> None:
        self.logger.info("=" * 60)
        self.logger.info("DEVNET READY")
        self.logger.info(f"  chain rpc: {self.config.chain_rpc_url}")
        for node in self.config.fiber_nodes():
            self.logger.info(
                f"  {node.name:<9} rpc {node.rpc_url}  p2p {node.relay_host}:{node.relay_port}"
            )
        if self.config.monitor_enabled:
            self.logger.info(f"  monitor:  http://127.0.0.1:{self.config.monitor_port}")
        self.logger.info("Press Ctrl+C to shut down")
        self.logger.info("=" * 60)

    # =========================================================================
    # Session
    # =========================================================================

    def build(self) -> StageOrchestrator:
        """Populate and validate the stage graph once."""
        if not self._built:
            self.orchestrator.add_stages(
                build_devnet_stages(self.config, self.supervisor, self.coordinator)
            )
            self._built = True
        self.orchestrator.validate()
        return self.orchestrator

    def list_stages(self) -> int:
        try:
            self.build()
        except StageGraphError as e:
            self.logger.error(e.describe())
            return e.exit_code
        for line in describe_graph(self.orchestrator):
            print(line)
        return ExitCode.OK

    async def run(self) -> int:
        """Run one devnet session and return the process exit code."""
        problems = self.config.validate()
        if problems:
            for problem in problems:
                self.logger.error(f"Invalid configuration: {problem}")
            return ExitCode.CONFIG_ERROR

        try:
            self.build()
        except StageGraphError as e:
            self.logger.error(e.describe())
            return e.exit_code

        loop = asyncio.get_running_loop()
        self.coordinator.install_signal_handlers(loop)
        try:
            return await self._session()
        finally:
            # One-shot tasks are not registered by their stages.
            for process in self.supervisor.running():
                self.coordinator.register(process)
            await self.coordinator.shutdown()
            self.coordinator.remove_signal_handlers(loop)
            await self.prober.close()

    async def _session(self) -> int:
        shutdown_wait = asyncio.ensure_future(self.coordinator.wait_requested())
        orchestration = asyncio.ensure_future(self.orchestrator.execute())
        failure_wait = asyncio.ensure_future(self._failed.wait())
        try:
            startup = {orchestration, shutdown_wait}
            if self.config.exit_on_failure:
                startup.add(failure_wait)
            await asyncio.wait(startup, return_when=asyncio.FIRST_COMPLETED)
            if not orchestration.done():
                if shutdown_wait.done():
                    self.logger.info("Shutdown requested during startup")
                else:
                    self.logger.error("Failure during startup, aborting remaining stages")
                orchestration.cancel()
                await asyncio.gather(orchestration, return_exceptions=True)
                if self.failures:
                    self._report_failures()
                    self.coordinator.request_shutdown("startup failure")
                return self.exit_code

            result = orchestration.result()
            for error in result.failures:
                self._record_failure(error)

            if not self.failures:
                self._report_ready()
                await asyncio.wait({shutdown_wait, failure_wait}, return_when=asyncio.FIRST_COMPLETED)
                if shutdown_wait.done():
                    return self.exit_code

            self._report_failures()
            if self.config.exit_on_failure:
                self.coordinator.request_shutdown("startup failure" if not result.success else "node failure")
                return self.exit_code

            self.logger.warning("Keeping surviving processes up for inspection; press Ctrl+C to shut down")
            await shutdown_wait
            return self.exit_code
        finally:
            for task in (shutdown_wait, failure_wait):
                if task is not None and not task.done():
                    task.cancel()


# =============================================================================
# CLI
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Fiber Devnet - local payment-channel test network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the devnet
  python run_devnet.py

  # Inspect the stage graph
  python run_devnet.py --list

  # Smaller network without the UI
  python run_devnet.py --peers 1 --no-monitor
""",
    )
    parser.add_argument("--list", action="store_true", help="Print the stage graph and exit")
    parser.add_argument("--log-level", help="Log level (default: DEVNET_LOG_LEVEL or INFO)")
    parser.add_argument("--log-dir", help="Directory for per-node log files")
    parser.add_argument("--peers", type=int, help="Number of Fiber peers besides the bootnode")
    parser.add_argument("--no-monitor", action="store_true", help="Do not start the monitoring UI")
    parser.add_argument("--grace", type=float, help="Seconds each process gets to stop on shutdown")
    parser.add_argument(
        "--exit-on-failure",
        action="store_true",
        help="Shut down immediately on the first failure instead of holding survivors",
    )
    return parser.parse_args(argv)


def apply_args(config: DevnetConfig, args: argparse.Namespace) -> DevnetConfig:
    """Apply command-line flags on top of the environment configuration."""
    if args.log_level:
        config.log_level = args.log_level
    if args.log_dir:
        config.log_dir = Path(args.log_dir)
    if args.peers is not None:
        config.peer_count = args.peers
    if args.no_monitor:
        config.monitor_enabled = False
    if args.grace is not None:
        config.grace_period = args.grace
    if args.exit_on_failure:
        config.exit_on_failure = True
    return config


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = apply_args(load_config(), args)
    logger = setup_logging(config)

    bootstrapper = DevnetBootstrapper(config)
    if args.list:
        return bootstrapper.list_stages()

    logger.info(f"Starting Fiber devnet in {config.project_root.resolve()}")
    exit_code = await bootstrapper.run()
    logger.info(f"Devnet exited with code {int(exit_code)}")
    return int(exit_code)


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
