"""
orchestrator/launcher.py

Spawns one service as a child process in its own session. stdout and stderr
are merged into a single pipe that the service's LogMultiplexer consumes.
"""
from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, Mapping

from orchestrator.errors import LaunchError
from orchestrator.models import ServiceHandle, ServiceSpec

# lines longer than the default 64 KiB StreamReader limit must not be cut
STREAM_LIMIT = 8 * 1024 * 1024


def service_env(spec: ServiceSpec, base_env: Mapping[str, str]) -> Dict[str, str]:
    env = dict(base_env)
    env.update(spec.env_map())
    return env


def log_path_for(spec: ServiceSpec, run_log_dir: Path) -> Path:
    return run_log_dir / f"{spec.name}.log"


async def launch(spec: ServiceSpec, base_env: Mapping[str, str], run_log_dir: Path) -> ServiceHandle:
    log_path = log_path_for(spec, run_log_dir)
    try:
        run_log_dir.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[supervisor] starting {spec.name}: {' '.join(spec.cmd)}\n")
    except OSError as exc:
        raise LaunchError(spec.name, f"cannot open log file {log_path}: {exc}") from exc

    try:
        proc = await asyncio.create_subprocess_exec(
            *spec.cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=service_env(spec, base_env),
            cwd=str(spec.cwd) if spec.cwd else None,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError as exc:
        raise LaunchError(spec.name, f"executable not found: {spec.cmd[0]}") from exc
    except PermissionError as exc:
        raise LaunchError(spec.name, f"permission denied: {spec.cmd[0]}") from exc
    except OSError as exc:
        raise LaunchError(spec.name, str(exc)) from exc

    try:
        pgid = os.getpgid(proc.pid)
    except (ProcessLookupError, AttributeError):
        pgid = None

    state = ServiceHandle(spec=spec, process=proc, log_path=log_path, pgid=pgid)
    state.exit_task = asyncio.create_task(proc.wait(), name=f"exit:{spec.name}")
    return state
