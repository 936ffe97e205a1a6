"""
TCP Relay
=========

Transparent TCP forwarder that decouples a node's internal listen address
from the port it is reachable on from outside:

    client --> listen_addr (relay) --> forward_addr (node)

Each accepted connection gets exactly one outbound connection. Bytes are
copied in both directions with a fixed read window until either side closes
or errors, then both sides are closed. If the outbound dial fails the inbound
connection is closed immediately; retrying is the client's business.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .errors import BindFailure

logger = logging.getLogger(__name__)

# Maximum bytes read from one side before it is written to the other.
RELAY_WINDOW = 64 * 1024


@dataclass
class ConnectionPair:
    """An inbound connection and its outbound counterpart."""
    conn_id: int
    peer: str
    opened_at: float = field(default_factory=time.time)
    bytes_to_target: int = 0
    bytes_to_client: int = 0


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError) as e:
        logger.debug(f"[Relay] close error: {e}")


class TcpRelay:
    """A single relay binding ``listen_addr`` -> ``forward_addr``."""

    def __init__(
        self,
        name: str,
        listen_host: str,
        listen_port: int,
        forward_host: str,
        forward_port: int,
        connect_timeout: float = 5.0,
    ):
        self.name = name
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.forward_host = forward_host
        self.forward_port = forward_port
        self.connect_timeout = connect_timeout

        self._server: Optional[asyncio.AbstractServer] = None
        self._ids = itertools.count(1)
        self._connections: Dict[int, ConnectionPair] = {}
        self._handlers: Dict[int, asyncio.Task] = {}

    @property
    def listen_addr(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"

    @property
    def forward_addr(self) -> str:
        return f"{self.forward_host}:{self.forward_port}"

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def active_connections(self) -> Dict[int, ConnectionPair]:
        return dict(self._connections)

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        if not self._server or not self._server.sockets:
            return None
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    async def start(self) -> "TcpRelay":
        """Bind the listen address; raises BindFailure if it is taken."""
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.listen_host,
                port=self.listen_port,
                reuse_address=True,
            )
        except OSError as e:
            logger.error(f"[Relay:{self.name}] Cannot bind {self.listen_addr}: {e}")
            raise BindFailure(self.listen_addr, str(e)) from e

        bound = self.bound_address
        if bound and self.listen_port == 0:
            self.listen_port = bound[1]
        logger.info(f"[Relay:{self.name}] Forwarding {self.listen_addr} -> {self.forward_addr}")
        return self

    async def _handle_client(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        conn_id = next(self._ids)
        peername = client_writer.get_extra_info("peername")
        peer = f"{peername[0]}:{peername[1]}" if peername else "unknown"
        current = asyncio.current_task()
        if current is not None:
            self._handlers[conn_id] = current

        try:
            target_reader, target_writer = await asyncio.wait_for(
                asyncio.open_connection(self.forward_host, self.forward_port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(
                f"[Relay:{self.name}] #{conn_id} from {peer}: dial {self.forward_addr} failed: {e}"
            )
            self._handlers.pop(conn_id, None)
            await _close_writer(client_writer)
            return
        except asyncio.CancelledError:
            self._handlers.pop(conn_id, None)
            await _close_writer(client_writer)
            raise

        pair = ConnectionPair(conn_id=conn_id, peer=peer)
        self._connections[conn_id] = pair
        logger.debug(f"[Relay:{self.name}] #{conn_id} {peer} <-> {self.forward_addr}")

        upstream = asyncio.ensure_future(self._pipe(client_reader, target_writer, pair, "bytes_to_target"))
        downstream = asyncio.ensure_future(self._pipe(target_reader, client_writer, pair, "bytes_to_client"))
        try:
            await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (upstream, downstream):
                task.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
            await _close_writer(target_writer)
            await _close_writer(client_writer)
            self._connections.pop(conn_id, None)
            self._handlers.pop(conn_id, None)
            logger.debug(
                f"[Relay:{self.name}] #{conn_id} closed "
                f"({pair.bytes_to_target}B up, {pair.bytes_to_client}B down)"
            )

    async def _pipe(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        pair: ConnectionPair,
        counter: str,
    ) -> None:
        try:
            while True:
                data = await reader.read(RELAY_WINDOW)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                setattr(pair, counter, getattr(pair, counter) + len(data))
        except (ConnectionError, OSError) as e:
            logger.debug(f"[Relay:{self.name}] #{pair.conn_id} {counter} ended: {e}")

    async def stop(self, grace: float = 5.0) -> bool:
        """Stop accepting, drop every active pair, release the socket."""
        if self._server is None:
            return True

        server = self._server
        self._server = None
        server.close()

        handlers = list(self._handlers.values())
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        try:
            await asyncio.wait_for(server.wait_closed(), timeout=max(grace, 0.1))
        except asyncio.TimeoutError:
            logger.warning(f"[Relay:{self.name}] Listener did not close within {grace:.1f}s")
            return False

        logger.info(f"[Relay:{self.name}] Stopped")
        return True

    async def kill(self) -> None:
        await self.stop(grace=0.1)
