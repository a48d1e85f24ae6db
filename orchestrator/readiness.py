"""
orchestrator/readiness.py

Layered readiness probing for a freshly launched service. Each tick, cheapest
check first:

  1) process still alive?          (no  -> ExitedDuringStartupError, stop polling)
  2) TCP connect to host:port      (no  -> sleep one interval)
  3) GET base_url + health_path    (2xx / 404 / 405 -> ready)
  4) JSON-RPC ping on base_url     (any status < 400 -> ready)

404 and 405 are accepted because several node RPC servers only map POST / and
leave the health path unrouted. This also means a wrong service squatting on
the port passes step 3.
"""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Optional, Set

import aiohttp

from orchestrator import metrics
from orchestrator.errors import ExitedDuringStartupError, ReadinessTimeoutError, ShutdownRequested
from orchestrator.models import ServiceHandle, ServiceStatus

# upper bound for a single connect / request, like `curl --max-time 2`
ATTEMPT_TIMEOUT = 2.0
KNOWN_UP_STATUSES = (404, 405)


@dataclass
class ProbeResult:
    attempts: int
    layer: str
    elapsed: float


def http_status_means_up(status: int) -> bool:
    return 200 <= status < 300 or status in KNOWN_UP_STATUSES


def jsonrpc_payload(method: str) -> dict:
    return {"jsonrpc": "2.0", "id": 1, "method": method, "params": []}


async def tcp_open(host: str, port: int, timeout: float = ATTEMPT_TIMEOUT) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


async def http_ok_or_known(session: aiohttp.ClientSession, url: str, timeout: float = ATTEMPT_TIMEOUT) -> bool:
    try:
        async with session.get(
            url, timeout=aiohttp.ClientTimeout(total=timeout), allow_redirects=False
        ) as resp:
            return http_status_means_up(resp.status)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return False


async def jsonrpc_ping(session: aiohttp.ClientSession, url: str, method: str,
                       timeout: float = ATTEMPT_TIMEOUT) -> bool:
    try:
        async with session.post(
            url, json=jsonrpc_payload(method), timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            await resp.read()
            return resp.status < 400
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return False


class ReadinessProber:
    def __init__(self, handle: ServiceHandle, stop_event: Optional[asyncio.Event] = None) -> None:
        self.handle = handle
        self.spec = handle.spec
        self.stop_event = stop_event
        self.port_opened = False

    def _check_alive(self) -> None:
        rc = self.handle.process.returncode
        if rc is not None:
            self.handle.status = ServiceStatus.FAILED
            self.handle.returncode = rc
            raise ExitedDuringStartupError(self.spec.name, rc, port_opened=self.port_opened)

    def _check_stop(self) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise ShutdownRequested()

    async def _sleep(self, delay: float) -> None:
        """Sleep one interval, waking early on shutdown or process exit."""
        waiters: Set[asyncio.Future] = set()
        stop_task = None
        if self.stop_event is not None:
            stop_task = asyncio.ensure_future(self.stop_event.wait())
            waiters.add(stop_task)
        if self.handle.exit_task is not None:
            waiters.add(self.handle.exit_task)
        try:
            if waiters:
                await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
            else:
                await asyncio.sleep(delay)
        finally:
            if stop_task is not None and not stop_task.done():
                stop_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stop_task

    async def wait_ready(self) -> ProbeResult:
        spec = self.spec
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + spec.ready_timeout
        attempts = 0
        self.handle.status = ServiceStatus.PROBING
        metrics.set_status(spec.name, ServiceStatus.PROBING)

        def budget() -> float:
            return max(min(ATTEMPT_TIMEOUT, deadline - loop.time()), 0.01)

        async with aiohttp.ClientSession() as session:
            while True:
                self._check_stop()
                self._check_alive()
                if loop.time() >= deadline:
                    break
                attempts += 1

                reachable = await tcp_open(spec.host, spec.port, budget())
                metrics.probe_attempt(spec.name, "tcp", reachable)
                if reachable:
                    self.port_opened = True
                    up = await http_ok_or_known(session, spec.health_url, budget())
                    metrics.probe_attempt(spec.name, "http", up)
                    if up:
                        return ProbeResult(attempts, "http", loop.time() - start)
                    pinged = await jsonrpc_ping(session, spec.url, spec.ping_method, budget())
                    metrics.probe_attempt(spec.name, "rpc", pinged)
                    if pinged:
                        return ProbeResult(attempts, "rpc", loop.time() - start)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await self._sleep(min(spec.poll_interval, remaining))

        self._check_alive()
        self.handle.status = ServiceStatus.FAILED
        raise ReadinessTimeoutError(spec.name, spec.url, spec.ready_timeout)
