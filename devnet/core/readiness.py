"""
Readiness Prober
================

Polls a dependency's external contract until it reports ready or a deadline
passes. A probe is a read-only predicate over one contract:

- ``TcpPortProbe``  - the port accepts a TCP connection
- ``HttpProbe``     - an HTTP GET returns a 2xx status
- ``JsonRpcProbe``  - a JSON-RPC call returns a result (optionally checked)
- ``FileProbe``     - a file exists

Connection refused, HTTP errors and malformed responses all mean "not ready
yet". Only the deadline produces ``TIMED_OUT``.

Usage:
    async with ReadinessProber(interval=1.0) as prober:
        result = await prober.wait_ready(
            JsonRpcProbe("http://127.0.0.1:8114", "get_tip_block_number"),
            timeout=60.0,
        )
        if not result.ready:
            raise result.to_error()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

import aiohttp

from .errors import ReadinessTimeout

logger = logging.getLogger(__name__)


class ProbeNotReady(Exception):
    """Raised by a probe to explain why the contract is not satisfied yet."""


# =============================================================================
# Probes
# =============================================================================

class Probe:
    """A side-effect free readiness predicate."""

    def describe(self) -> str:
        raise NotImplementedError

    async def check(self, session: aiohttp.ClientSession) -> bool:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.describe()


class TcpPortProbe(Probe):
    """Ready once ``host:port`` accepts a connection."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port

    def describe(self) -> str:
        return f"tcp://{self.host}:{self.port}"

    async def check(self, session: aiohttp.ClientSession) -> bool:
        _, writer = await asyncio.open_connection(self.host, self.port)
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        return True


class HttpProbe(Probe):
    """Ready once a GET on ``url`` answers with a 2xx status."""

    def __init__(self, url: str):
        self.url = url

    def describe(self) -> str:
        return f"GET {self.url}"

    async def check(self, session: aiohttp.ClientSession) -> bool:
        async with session.get(self.url) as response:
            if 200 <= response.status < 300:
                return True
            raise ProbeNotReady(f"HTTP {response.status}")


class JsonRpcProbe(Probe):
    """
    Ready once a JSON-RPC 2.0 call succeeds.

    Args:
        url: RPC endpoint
        method: Method used purely as a liveness call
        params: Call parameters (default: empty list)
        predicate: Optional check over the ``result`` field
        label: Short name of the predicate for log messages
    """

    def __init__(
        self,
        url: str,
        method: str,
        params: Optional[List[Any]] = None,
        predicate: Optional[Callable[[Any], bool]] = None,
        label: Optional[str] = None,
    ):
        self.url = url
        self.method = method
        self.params = params if params is not None else []
        self.predicate = predicate
        self.label = label

    def describe(self) -> str:
        text = f"rpc {self.method} @ {self.url}"
        if self.label:
            text += f" ({self.label})"
        return text

    async def check(self, session: aiohttp.ClientSession) -> bool:
        payload = {"jsonrpc": "2.0", "id": 1, "method": self.method, "params": self.params}
        async with session.post(self.url, json=payload) as response:
            if response.status != 200:
                raise ProbeNotReady(f"HTTP {response.status}")
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise ProbeNotReady("response is not a JSON object")
        if data.get("error"):
            raise ProbeNotReady(f"rpc error: {data['error']}")
        if "result" not in data:
            raise ProbeNotReady("response has no result")

        if self.predicate is not None and not self.predicate(data["result"]):
            raise ProbeNotReady(f"result {data['result']!r} does not satisfy {self.label or 'predicate'}")
        return True


class FileProbe(Probe):
    """Ready once ``path`` exists."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def describe(self) -> str:
        return f"file {self.path}"

    async def check(self, session: aiohttp.ClientSession) -> bool:
        if self.path.exists():
            return True
        raise ProbeNotReady("file does not exist")


def hex_at_least(minimum: int) -> Callable[[Any], bool]:
    """Predicate for hex-encoded quantities such as ``get_tip_block_number``."""

    def _check(result: Any) -> bool:
        try:
            return int(str(result), 16) >= minimum
        except ValueError:
            return False

    return _check


# =============================================================================
# Prober
# =============================================================================

class ReadinessOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass
class ReadinessResult:
    """Outcome of one ``wait_ready`` call."""
    outcome: ReadinessOutcome
    probe: str
    timeout: float
    attempts: int
    elapsed: float
    last_error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.outcome == ReadinessOutcome.READY

    def to_error(self, stage: Optional[str] = None) -> ReadinessTimeout:
        return ReadinessTimeout(self.probe, self.timeout, self.last_error, stage=stage)


class ReadinessProber:
    """
    Polls probes at a fixed interval until they pass or a deadline elapses.

    Owns one aiohttp session shared by all HTTP-based probes.
    """

    def __init__(self, interval: float = 1.0, request_timeout: float = 5.0):
        self.interval = interval
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "ReadinessProber":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def check_once(self, probe: Probe) -> bool:
        """Run a single probe attempt; any failure counts as not ready."""
        session = await self._get_session()
        try:
            return bool(await asyncio.wait_for(probe.check(session), timeout=self.request_timeout))
        except Exception as e:
            logger.debug(f"[Readiness] {probe} not ready: {e}")
            return False

    async def wait_ready(
        self,
        probe: Probe,
        timeout: float,
        interval: Optional[float] = None,
        abort_when: Optional[Callable[[], Optional[str]]] = None,
    ) -> ReadinessResult:
        """
        Poll ``probe`` until it passes or ``timeout`` seconds elapse.

        Args:
            probe: The predicate to poll
            timeout: Deadline in seconds from now
            interval: Poll interval (default: the prober's interval)
            abort_when: Called after each failed attempt; a non-empty return
                value stops polling with ``ABORTED`` and becomes ``last_error``

        Returns:
            ReadinessResult; READY is returned as soon as an attempt passes
        """
        interval = self.interval if interval is None else interval
        session = await self._get_session()
        start = time.monotonic()
        deadline = start + timeout
        attempts = 0
        last_error: Optional[str] = None

        logger.info(f"[Readiness] Waiting for {probe} (timeout {timeout:.0f}s)")

        while True:
            attempts += 1
            remaining = deadline - time.monotonic()
            try:
                ok = await asyncio.wait_for(
                    probe.check(session),
                    timeout=max(0.05, min(self.request_timeout, remaining)),
                )
                if ok:
                    elapsed = time.monotonic() - start
                    logger.info(f"[Readiness] {probe} ready after {elapsed:.1f}s ({attempts} attempts)")
                    return ReadinessResult(
                        outcome=ReadinessOutcome.READY,
                        probe=probe.describe(),
                        timeout=timeout,
                        attempts=attempts,
                        elapsed=elapsed,
                    )
                last_error = "not ready"
            except asyncio.TimeoutError:
                last_error = "attempt timed out"
            except Exception as e:
                last_error = str(e) or type(e).__name__
            logger.debug(f"[Readiness] {probe} attempt {attempts}: {last_error}")

            if abort_when is not None:
                reason = abort_when()
                if reason:
                    return ReadinessResult(
                        outcome=ReadinessOutcome.ABORTED,
                        probe=probe.describe(),
                        timeout=timeout,
                        attempts=attempts,
                        elapsed=time.monotonic() - start,
                        last_error=reason,
                    )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                elapsed = time.monotonic() - start
                logger.warning(f"[Readiness] {probe} timed out after {elapsed:.1f}s: {last_error}")
                return ReadinessResult(
                    outcome=ReadinessOutcome.TIMED_OUT,
                    probe=probe.describe(),
                    timeout=timeout,
                    attempts=attempts,
                    elapsed=elapsed,
                    last_error=last_error,
                )

            await asyncio.sleep(min(interval, remaining))
