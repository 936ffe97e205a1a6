import asyncio

import pytest
from aiohttp import web

from devnet.core.errors import ReadinessTimeout
from devnet.core.readiness import (
    FileProbe,
    HttpProbe,
    JsonRpcProbe,
    ReadinessOutcome,
    ReadinessProber,
    TcpPortProbe,
    hex_at_least,
)


async def _serve(app: web.Application, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return runner


def _rpc_app(results):
    """JSON-RPC app answering each call with the next item of ``results``."""
    calls = []

    async def handle(request: web.Request) -> web.Response:
        body = await request.json()
        calls.append(body["method"])
        reply = results[min(len(calls), len(results)) - 1]
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], **reply})

    app = web.Application()
    app.router.add_post("/", handle)
    return app, calls


def test_hex_at_least():
    check = hex_at_least(5)
    assert check("0x5") is True
    assert check("0x10") is True
    assert check("0x4") is False
    assert check("not-hex") is False


@pytest.mark.asyncio
async def test_tcp_probe_ready_on_first_attempt(unused_port):
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", unused_port)
    try:
        async with ReadinessProber(interval=0.05) as prober:
            result = await prober.wait_ready(TcpPortProbe("127.0.0.1", unused_port), timeout=2.0)
    finally:
        server.close()
        await server.wait_closed()

    assert result.ready
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_tcp_probe_times_out_when_nothing_listens(unused_port):
    async with ReadinessProber(interval=0.05) as prober:
        result = await prober.wait_ready(TcpPortProbe("127.0.0.1", unused_port), timeout=0.3)

    assert result.outcome == ReadinessOutcome.TIMED_OUT
    assert result.attempts >= 2
    assert result.last_error

    error = result.to_error(stage="ckb")
    assert isinstance(error, ReadinessTimeout)
    assert error.stage == "ckb"
    assert str(unused_port) in error.message


@pytest.mark.asyncio
async def test_jsonrpc_probe_waits_for_predicate(unused_port):
    app, calls = _rpc_app([{"result": "0x0"}, {"result": "0x0"}, {"result": "0x3"}])
    runner = await _serve(app, unused_port)
    try:
        probe = JsonRpcProbe(
            f"http://127.0.0.1:{unused_port}",
            "get_tip_block_number",
            predicate=hex_at_least(1),
            label="tip >= 1",
        )
        async with ReadinessProber(interval=0.05) as prober:
            result = await prober.wait_ready(probe, timeout=5.0)
    finally:
        await runner.cleanup()

    assert result.ready
    assert result.attempts == 3
    assert calls == ["get_tip_block_number"] * 3


@pytest.mark.asyncio
async def test_jsonrpc_error_counts_as_not_ready(unused_port):
    app, _ = _rpc_app([{"error": {"code": -32000, "message": "starting"}}])
    runner = await _serve(app, unused_port)
    try:
        probe = JsonRpcProbe(f"http://127.0.0.1:{unused_port}", "node_info")
        async with ReadinessProber(interval=0.05) as prober:
            assert await prober.check_once(probe) is False
            result = await prober.wait_ready(probe, timeout=0.3)
    finally:
        await runner.cleanup()

    assert result.outcome == ReadinessOutcome.TIMED_OUT
    assert "rpc error" in result.last_error


@pytest.mark.asyncio
async def test_http_probe_requires_2xx(unused_port):
    statuses = [503, 503, 200]
    seen = []

    async def handle(request: web.Request) -> web.Response:
        status = statuses[min(len(seen), len(statuses) - 1)]
        seen.append(status)
        return web.Response(status=status, text="monitor")

    app = web.Application()
    app.router.add_get("/", handle)
    runner = await _serve(app, unused_port)
    try:
        async with ReadinessProber(interval=0.05) as prober:
            result = await prober.wait_ready(HttpProbe(f"http://127.0.0.1:{unused_port}/"), timeout=5.0)
    finally:
        await runner.cleanup()

    assert result.ready
    assert seen == [503, 503, 200]


@pytest.mark.asyncio
async def test_file_probe_becomes_ready_when_file_appears(tmp_path):
    marker = tmp_path / "ready"
    loop = asyncio.get_running_loop()
    loop.call_later(0.2, marker.write_text, "ok")

    async with ReadinessProber(interval=0.05) as prober:
        result = await prober.wait_ready(FileProbe(marker), timeout=5.0)

    assert result.ready
    assert result.attempts > 1


@pytest.mark.asyncio
async def test_abort_check_stops_polling(tmp_path):
    attempts = []

    def exited():
        attempts.append(1)
        return "ckb exited with code 1" if len(attempts) >= 2 else None

    async with ReadinessProber(interval=0.05) as prober:
        result = await prober.wait_ready(FileProbe(tmp_path / "never"), timeout=10.0, abort_when=exited)

    assert result.outcome == ReadinessOutcome.ABORTED
    assert result.last_error == "ckb exited with code 1"
    assert result.elapsed < 5.0
