"""
orchestrator/models.py

Static service definitions and the runtime records the supervisor keeps for
each launched process.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class ServiceStatus(Enum):
    LAUNCHED = "launched"
    PROBING = "probing"
    READY = "ready"
    EXITED = "exited"
    FAILED = "failed"


class Phase(Enum):
    INIT = "init"
    CHECKING_PREFLIGHT = "checking_preflight"
    LAUNCHING = "launching"
    PROBING_READINESS = "probing_readiness"
    ALL_READY = "all_ready"
    MONITORING = "monitoring"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


# ShuttingDown is reachable from everything except Terminated; it only leads to Terminated.
_FORWARD: Dict[Phase, Tuple[Phase, ...]] = {
    Phase.INIT: (Phase.CHECKING_PREFLIGHT,),
    Phase.CHECKING_PREFLIGHT: (Phase.LAUNCHING,),
    Phase.LAUNCHING: (Phase.PROBING_READINESS,),
    Phase.PROBING_READINESS: (Phase.LAUNCHING, Phase.ALL_READY),
    Phase.ALL_READY: (Phase.MONITORING,),
    Phase.MONITORING: (),
    Phase.SHUTTING_DOWN: (Phase.TERMINATED,),
    Phase.TERMINATED: (),
}


def can_transition(current: Phase, target: Phase) -> bool:
    if target is Phase.SHUTTING_DOWN:
        return current not in (Phase.SHUTTING_DOWN, Phase.TERMINATED)
    return target in _FORWARD[current]


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    cmd: Tuple[str, ...]
    host: str = "127.0.0.1"
    port: int = 0
    base_url: str = ""
    health_path: str = "/"
    ping_method: str = "web3_clientVersion"
    ready_timeout: float = 60.0
    poll_interval: float = 2.0
    cwd: Optional[Path] = None
    env: Tuple[Tuple[str, str], ...] = ()
    tag: str = ""
    color: Optional[str] = None

    @property
    def url(self) -> str:
        return self.base_url or f"http://{self.host}:{self.port}"

    @property
    def label(self) -> str:
        return self.tag or self.name.upper()

    @property
    def health_url(self) -> str:
        return f"{self.url.rstrip('/')}/{self.health_path.lstrip('/')}"

    def env_map(self) -> Dict[str, str]:
        return dict(self.env)


@dataclass
class ServiceHandle:
    spec: ServiceSpec
    process: asyncio.subprocess.Process
    log_path: Path
    pgid: Optional[int] = None
    status: ServiceStatus = ServiceStatus.LAUNCHED
    returncode: Optional[int] = None
    exit_task: Optional["asyncio.Task[int]"] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> int:
        return self.process.pid

    def alive(self) -> bool:
        return self.process.returncode is None


@dataclass
class StackConfig:
    services: List[ServiceSpec]
    root: Path
    log_root: Path
    tail_lines: int = 120
    shutdown_grace: float = 5.0
    drain_timeout: float = 2.0
    required_tools: List[str] = field(default_factory=list)
    required_files: List[Path] = field(default_factory=list)
    build_cmd: Optional[List[str]] = None
    metrics_port: Optional[int] = None
    base_env: Dict[str, str] = field(default_factory=dict)
