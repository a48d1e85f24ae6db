"""
orchestrator/errors.py

Failure taxonomy for the stack supervisor. Every fatal condition is an
OrchestratorError; `tail_services` names the services whose log tails are
printed before the supervisor exits.
"""
from __future__ import annotations

from typing import Optional, Sequence, Tuple


class OrchestratorError(Exception):
    exit_code = 1

    def __init__(self, message: str, *, tail_services: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.tail_services: Tuple[str, ...] = tuple(tail_services)


class ConfigError(OrchestratorError):
    exit_code = 2


class ShutdownRequested(OrchestratorError):
    """An interrupt was observed at a wait point. Not a failure."""

    exit_code = 0

    def __init__(self, message: str = "shutdown requested") -> None:
        super().__init__(message)


class PreflightError(OrchestratorError):
    pass


class MissingToolError(PreflightError):
    def __init__(self, tool: str) -> None:
        super().__init__(f"Missing command: {tool}")
        self.tool = tool


class MissingInputError(PreflightError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Required input file not found: {path}")
        self.path = path


class PortInUseError(PreflightError):
    def __init__(self, host: str, port: int, owner: Optional[str] = None) -> None:
        detail = f" (held by {owner})" if owner else ""
        super().__init__(
            f"Port in use: {host}:{port}{detail}. Stop the process using it and retry."
        )
        self.host = host
        self.port = port
        self.owner = owner


class BuildError(OrchestratorError):
    def __init__(self, cmd: str, returncode: Optional[int]) -> None:
        super().__init__(f"Build failed (rc={returncode}): {cmd}")
        self.returncode = returncode


class LaunchError(OrchestratorError):
    def __init__(self, service: str, reason: str) -> None:
        super().__init__(f"Failed to launch {service}: {reason}")
        self.service = service


class ReadinessTimeoutError(OrchestratorError):
    def __init__(self, service: str, url: str, timeout: float) -> None:
        super().__init__(
            f"Timeout waiting for {service} readiness on {url} after {timeout:g}s.",
            tail_services=(service,),
        )
        self.service = service
        self.timeout = timeout


class ExitedDuringStartupError(OrchestratorError):
    def __init__(self, service: str, returncode: Optional[int], *, port_opened: bool = False) -> None:
        stage = "after opening its port" if port_opened else "before opening its port"
        super().__init__(
            f"{service} exited during startup {stage} (rc={returncode}).",
            tail_services=(service,),
        )
        self.service = service
        self.returncode = returncode
        self.port_opened = port_opened


class UnexpectedExitError(OrchestratorError):
    def __init__(self, service: str, returncode: Optional[int], all_services: Sequence[str]) -> None:
        super().__init__(
            f"{service} exited with code {returncode}; stopping the stack.",
            tail_services=all_services,
        )
        self.service = service
        self.returncode = returncode
