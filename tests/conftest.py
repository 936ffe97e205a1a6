"""
Pytest configuration and shared fixtures for the devnet tests.

This file contains:
- Marker registration
- Free-port and child-script helpers
- Small fakes for supervised resources
"""

import asyncio
import socket
import sys
import textwrap
from pathlib import Path
from typing import List

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def free_port() -> int:
    """Return a TCP port that nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def unused_port() -> int:
    return free_port()


@pytest.fixture
def child_script(tmp_path):
    """
    Write a Python script into ``tmp_path`` and return the command that runs it.

    Usage:
        command = child_script("import time; time.sleep(30)")
    """

    def _make(source: str, name: str = "child.py") -> List[str]:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return [sys.executable, "-u", str(path)]

    return _make


class FakeResource:
    """Stand-in for a SupervisedProcess/TcpRelay in coordinator tests."""

    def __init__(self, name: str, stop_delay: float = 0.0, acknowledges: bool = True):
        self.name = name
        self.stop_delay = stop_delay
        self.acknowledges = acknowledges
        self.stop_calls = 0
        self.killed = False

    async def stop(self, grace: float = 10.0) -> bool:
        self.stop_calls += 1
        await asyncio.sleep(self.stop_delay)
        return self.acknowledges

    async def kill(self) -> None:
        self.killed = True


@pytest.fixture
def fake_resource():
    return FakeResource


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as spawning real processes or sockets"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_report_header(config):
    """Add custom header to pytest report."""
    return [
        "Fiber Devnet Test Suite",
        f"Project Root: {project_root}",
    ]
