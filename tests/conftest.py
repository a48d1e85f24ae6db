import asyncio
import contextlib
import socket
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web

from orchestrator.models import ServiceHandle, ServiceSpec, StackConfig

FAKE_SERVICE = Path(__file__).with_name("fake_service.py")


def pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port():
    return pick_free_port()


def fake_service_spec(name: str, port: int, *extra: str, **kwargs) -> ServiceSpec:
    cmd = (sys.executable, "-u", str(FAKE_SERVICE), "--name", name, "--port", str(port), *extra)
    kwargs.setdefault("ready_timeout", 10.0)
    kwargs.setdefault("poll_interval", 0.2)
    return ServiceSpec(name=name, cmd=cmd, host="127.0.0.1", port=port, **kwargs)


@pytest.fixture
def make_stack(tmp_path):
    def _make(services, **kwargs):
        kwargs.setdefault("shutdown_grace", 2.0)
        kwargs.setdefault("drain_timeout", 0.5)
        kwargs.setdefault("tail_lines", 20)
        return StackConfig(services=list(services), root=tmp_path, log_root=tmp_path / "logs", **kwargs)

    return _make


@pytest_asyncio.fixture
async def sleeper_handle(tmp_path):
    """A handle around a live child that does nothing; prober tests point it at local servers."""
    handles = []

    async def _make(port: int, **spec_kwargs) -> ServiceHandle:
        proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(60)")
        spec_kwargs.setdefault("ready_timeout", 5.0)
        spec_kwargs.setdefault("poll_interval", 0.2)
        spec = ServiceSpec(name="probe-target", cmd=("sleep",), host="127.0.0.1", port=port, **spec_kwargs)
        handle = ServiceHandle(spec=spec, process=proc, log_path=tmp_path / "probe-target.log")
        handle.exit_task = asyncio.create_task(proc.wait())
        handles.append(handle)
        return handle

    yield _make

    for handle in handles:
        if handle.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
        await handle.process.wait()


@pytest_asyncio.fixture
async def http_stub():
    """In-process HTTP server: GET answers `health`, POST answers `rpc`."""
    runners = []

    async def _start(port: int, health: int = 200, rpc: int = 200) -> dict:
        seen = {"GET": 0, "POST": 0, "rpc_bodies": []}

        async def handler(request: web.Request) -> web.Response:
            seen[request.method] = seen.get(request.method, 0) + 1
            if request.method == "POST":
                seen["rpc_bodies"].append(await request.json())
                return web.json_response({"jsonrpc": "2.0", "id": 1, "result": "stub"}, status=rpc)
            return web.Response(status=health)

        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", handler)
        runner = web.AppRunner(app)
        await runner.setup()
        await web.TCPSite(runner, "127.0.0.1", port).start()
        runners.append(runner)
        return seen

    yield _start

    for runner in runners:
        await runner.cleanup()
