"""
orchestrator/preflight.py

Checks that run before anything is spawned: required tools on PATH, required
input files on disk, and free service ports.
"""
from __future__ import annotations

import shutil
import socket
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import psutil

from orchestrator.errors import MissingInputError, MissingToolError, PortInUseError

WILDCARD_HOSTS = {"0.0.0.0", "::", ""}
LOOPBACK_ALIASES = {"localhost": {"127.0.0.1", "::1"}}


def require_tools(tools: Iterable[str]) -> None:
    for tool in tools:
        if shutil.which(tool) is None:
            raise MissingToolError(tool)


def require_files(paths: Iterable[Path]) -> None:
    for path in paths:
        if not Path(path).is_file():
            raise MissingInputError(str(path))


def port_alive(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _host_matches(bound_ip: str, host: str) -> bool:
    if bound_ip in WILDCARD_HOSTS or bound_ip == host:
        return True
    return bound_ip in LOOPBACK_ALIASES.get(host, ())


def listening_sockets() -> List[Tuple[str, int, Optional[int]]]:
    """(ip, port, pid) of every TCP socket in LISTEN state.

    Raises psutil.AccessDenied where the platform hides other users' sockets.
    """
    out = []
    for conn in psutil.net_connections(kind="tcp"):
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        out.append((conn.laddr.ip, conn.laddr.port, conn.pid))
    return out


def _owner(pid: Optional[int]) -> Optional[str]:
    if pid is None:
        return None
    try:
        return f"pid {pid}: {psutil.Process(pid).name()}"
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return f"pid {pid}"


def port_in_use(host: str, port: int) -> Tuple[bool, Optional[str]]:
    try:
        listeners = listening_sockets()
    except (psutil.AccessDenied, PermissionError, NotImplementedError):
        return port_alive(host, port), None
    for ip, lport, pid in listeners:
        if lport == port and _host_matches(ip, host):
            return True, _owner(pid)
    return False, None


def check_ports(addresses: Iterable[Tuple[str, int]]) -> None:
    for host, port in addresses:
        busy, owner = port_in_use(host, port)
        if busy:
            raise PortInUseError(host, port, owner)


def run_preflight(tools: Sequence[str], files: Sequence[Path], addresses: Sequence[Tuple[str, int]]) -> None:
    require_tools(tools)
    require_files(files)
    check_ports(addresses)
