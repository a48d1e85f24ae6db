"""
orchestrator/stack_config.py

Loads a stack definition (YAML) into a StackConfig: the ordered service list,
supervisor settings and the base environment every child inherits.

Example (configs/devnet.yaml):
    required_tools: [cargo]
    required_files: [test_data/genesis.json]
    env_defaults:
      RUST_LOG: "info,mojave=debug"
    services:
      - name: full-node
        port: 8545
        cmd: "cargo run --release --bin mojave-full-node -- init ..."
"""
from __future__ import annotations

import os
import shlex
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values

from libs import console
from orchestrator.errors import ConfigError
from orchestrator.models import ServiceSpec, StackConfig

PYTHON_BIN = sys.executable or shutil.which("python3") or "python3"
DEFAULT_CONFIGS = ("configs/stack.yaml", "configs/devnet.yaml")


def _substitute(value: str, tokens: Mapping[str, str]) -> str:
    out = value
    for key, replacement in tokens.items():
        out = out.replace(f"{{{{{key}}}}}", replacement)
    return out


def _normalize_cmd(raw_cmd: Any, tokens: Mapping[str, str], *, label: str) -> List[str]:
    if isinstance(raw_cmd, str):
        parts = shlex.split(_substitute(raw_cmd, tokens))
        if not parts:
            raise ConfigError(f"{label}: command string must produce at least one argument.")
        return parts
    if isinstance(raw_cmd, list):
        result: List[str] = []
        for part in raw_cmd:
            if not isinstance(part, (str, int, float)):
                raise ConfigError(f"{label}: command elements must be strings, got {type(part).__name__}")
            result.append(_substitute(str(part), tokens))
        if not result:
            raise ConfigError(f"{label}: command list must contain at least one element.")
        return result
    raise ConfigError(f"{label}: 'cmd' must be string or list, got {type(raw_cmd).__name__}")


def _as_env_map(obj: Any, *, label: str, tokens: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(f"{label} must be a mapping, got {type(obj).__name__}")
    env: Dict[str, str] = {}
    for key, val in obj.items():
        if not isinstance(key, str):
            raise ConfigError(f"{label} keys must be strings (got {type(key).__name__})")
        if val is None:
            env[key] = ""
        elif isinstance(val, bool):
            env[key] = "1" if val else "0"
        elif isinstance(val, str) and tokens:
            env[key] = _substitute(val, tokens)
        else:
            env[key] = str(val)
    return env


def _resolve_path(raw: Any, tokens: Mapping[str, str], root: Path) -> Path:
    path = Path(_substitute(str(raw), tokens)).expanduser()
    if not path.is_absolute():
        path = root / path
    return path


def _as_float(raw: Any, default: float, *, label: str) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{label} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{label} must be positive, got {raw!r}")
    return value


def _as_port(raw: Any, *, label: str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{label} must be an integer port, got {raw!r}")
    if not 0 < port < 65536:
        raise ConfigError(f"{label} out of range: {port}")
    return port


def load_env_files(paths: List[Path], environ: Mapping[str, str]) -> Dict[str, str]:
    """Merge dotenv files under `environ`; values already set always win."""
    env = dict(environ)
    for env_file in paths:
        if not env_file.exists():
            console.warn(f"{env_file.name} not found; continuing without it.")
            continue
        for key, val in dotenv_values(env_file).items():
            if val is not None:
                env.setdefault(key, val)
    return env


def build_base_env(raw: Dict[str, Any], root: Path, tokens: Dict[str, str],
                   environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env_files_raw = raw.get("env_files", [".env"])
    if isinstance(env_files_raw, str):
        env_files_raw = [env_files_raw]
    if not isinstance(env_files_raw, list):
        raise ConfigError("`env_files` must be a list of paths.")
    env_files = [_resolve_path(p, tokens, root) for p in env_files_raw]

    base_env = load_env_files(env_files, os.environ if environ is None else environ)
    for key, val in _as_env_map(raw.get("env_defaults"), label="env_defaults", tokens=tokens).items():
        base_env.setdefault(key, val)
    for key, suffix in _as_env_map(raw.get("env_append"), label="env_append", tokens=tokens).items():
        base_env[key] = base_env.get(key, "") + suffix
    base_env.update(_as_env_map(raw.get("env"), label="config env", tokens=tokens))
    return base_env


def load_stack(path: Path, environ: Optional[Mapping[str, str]] = None) -> StackConfig:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as exc:
        raise ConfigError(f"Unable to parse YAML config {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping at the top level.")

    config_dir = path.resolve().parent
    tokens: Dict[str, str] = {"python": PYTHON_BIN, "config_dir": str(config_dir)}
    root_raw = raw.get("root")
    root = _resolve_path(root_raw, tokens, Path.cwd()) if root_raw else Path.cwd()
    tokens["root"] = str(root)

    base_env = build_base_env(raw, root, tokens, environ)
    tokens.update({f"env.{key}": val for key, val in base_env.items()})

    services_raw = raw.get("services")
    if not services_raw or not isinstance(services_raw, list):
        raise ConfigError("Config must define a non-empty `services` list.")

    # first pass: addresses, so any command can reference any service's url
    seen_names: set = set()
    for idx, item in enumerate(services_raw):
        if not isinstance(item, dict):
            raise ConfigError(f"Service #{idx} must be a mapping, got {type(item).__name__}")
        name = item.get("name")
        if not name or not isinstance(name, str):
            raise ConfigError(f"Service #{idx} is missing a string `name` field.")
        if name in seen_names:
            raise ConfigError(f"Duplicate service name detected: {name}")
        seen_names.add(name)
        if "port" not in item:
            raise ConfigError(f"Service {name!r} is missing required `port` field.")
        host = str(item.get("host", "127.0.0.1"))
        port = _as_port(item["port"], label=f"port for service {name}")
        tokens[f"{name}.host"] = host
        tokens[f"{name}.port"] = str(port)
        tokens[f"{name}.url"] = _substitute(str(item.get("base_url") or f"http://{host}:{port}"), tokens)

    default_timeout = _as_float(raw.get("ready_timeout_seconds"), 60.0, label="ready_timeout_seconds")
    default_interval = _as_float(raw.get("poll_interval_seconds"), 2.0, label="poll_interval_seconds")

    services: List[ServiceSpec] = []
    for item in services_raw:
        name = item["name"]
        if item.get("cmd") is None:
            raise ConfigError(f"Service {name!r} is missing required `cmd` field.")
        cmd = _normalize_cmd(item["cmd"], tokens, label=f"service {name}")
        cwd = _resolve_path(item["cwd"], tokens, root) if item.get("cwd") else root
        env = _as_env_map(item.get("env"), label=f"env for service {name}", tokens=tokens)
        services.append(
            ServiceSpec(
                name=name,
                cmd=tuple(cmd),
                host=tokens[f"{name}.host"],
                port=int(tokens[f"{name}.port"]),
                base_url=tokens[f"{name}.url"],
                health_path=str(item.get("health_path", "/")),
                ping_method=str(item.get("ping_method", "web3_clientVersion")),
                ready_timeout=_as_float(item.get("ready_timeout_seconds"), default_timeout,
                                        label=f"ready_timeout_seconds for {name}"),
                poll_interval=_as_float(item.get("poll_interval_seconds"), default_interval,
                                        label=f"poll_interval_seconds for {name}"),
                cwd=cwd,
                env=tuple(env.items()),
                tag=str(item.get("tag") or name.upper()),
                color=item.get("color"),
            )
        )

    build_cmd = None
    build_raw = raw.get("build")
    if isinstance(build_raw, dict):
        build_raw = build_raw.get("cmd")
    if build_raw:
        build_cmd = _normalize_cmd(build_raw, tokens, label="build")

    tools_raw = raw.get("required_tools") or []
    files_raw = raw.get("required_files") or []
    if not isinstance(tools_raw, list) or not isinstance(files_raw, list):
        raise ConfigError("`required_tools` and `required_files` must be lists.")

    metrics_port = raw.get("metrics_port")
    return StackConfig(
        services=services,
        root=root,
        log_root=_resolve_path(raw.get("log_dir", "runs/logs/supervisor"), tokens, root),
        tail_lines=int(raw.get("tail_lines", 120)),
        shutdown_grace=_as_float(raw.get("shutdown_grace_seconds"), 5.0, label="shutdown_grace_seconds"),
        drain_timeout=_as_float(raw.get("drain_timeout_seconds"), 2.0, label="drain_timeout_seconds"),
        required_tools=[str(t) for t in tools_raw],
        required_files=[_resolve_path(p, tokens, root) for p in files_raw],
        build_cmd=build_cmd,
        metrics_port=_as_port(metrics_port, label="metrics_port") if metrics_port else None,
        base_env=base_env,
    )


def default_config_path(root: Optional[Path] = None) -> Optional[Path]:
    root = root or Path.cwd()
    for rel in DEFAULT_CONFIGS:
        candidate = root / rel
        if candidate.exists():
            return candidate
    return None
