# orchestrator/metrics.py
from __future__ import annotations

from typing import Any, Optional

from prometheus_client import Counter, Gauge, start_http_server

from orchestrator.models import Phase, ServiceStatus

PHASE_CODES = {phase: idx for idx, phase in enumerate(Phase)}
STATUS_CODES = {status: idx for idx, status in enumerate(ServiceStatus)}

PHASE = Gauge("stack_supervisor_phase", "Supervisor phase (index into Phase)")
SERVICE_STATUS = Gauge(
    "stack_supervisor_service_status", "Service status (index into ServiceStatus)", ["service"]
)
PROBE_ATTEMPTS = Counter(
    "stack_supervisor_probe_attempts_total", "Readiness probe attempts by layer and outcome",
    ["service", "layer", "outcome"],
)
READY_SECONDS = Gauge(
    "stack_supervisor_service_ready_seconds", "Seconds from launch until the service was ready", ["service"]
)

_server: Optional[Any] = None


def set_phase(phase: Phase) -> None:
    PHASE.set(PHASE_CODES[phase])


def set_status(service: str, status: ServiceStatus) -> None:
    SERVICE_STATUS.labels(service).set(STATUS_CODES[status])


def probe_attempt(service: str, layer: str, ok: bool) -> None:
    PROBE_ATTEMPTS.labels(service, layer, "ok" if ok else "fail").inc()


def serve(port: int) -> None:
    global _server
    result = start_http_server(port)
    # prometheus_client >= 0.17 returns (server, thread)
    if isinstance(result, tuple):
        _server = result[0]


def stop() -> None:
    global _server
    if _server is not None:
        _server.shutdown()
        _server.server_close()
        _server = None
