#!/usr/bin/env python3
"""
orchestrator/process_supervisor.py

Brings up a stack of mutually dependent network services defined in a YAML
stack file, one at a time: each service is launched only once the previous
one answers its readiness probe. Child output is tagged onto the console and
appended to per-service log files. The first unexpected exit, a failed probe or
SIGINT/SIGTERM tears the whole stack down exactly once.

Usage:
    stack-supervisor --config configs/devnet.yaml
    python -m orchestrator.process_supervisor --config configs/devnet.yaml
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO

from libs import console
from orchestrator import metrics
from orchestrator.errors import (
    BuildError,
    ConfigError,
    OrchestratorError,
    PortInUseError,
    ShutdownRequested,
    UnexpectedExitError,
)
from orchestrator.launcher import launch
from orchestrator.log_mux import LogMultiplexer, tail_log
from orchestrator.models import Phase, ServiceHandle, ServiceSpec, ServiceStatus, StackConfig, can_transition
from orchestrator.preflight import run_preflight
from orchestrator.readiness import ReadinessProber
from orchestrator.stack_config import default_config_path, load_stack

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


def _fresh_run_dir(log_root: Path) -> Path:
    now = datetime.now(timezone.utc)
    base = log_root / f"stack_{now:%Y%m%d_%H%M%S}"
    candidate = base
    suffix = 1
    while candidate.exists():
        candidate = base.with_name(f"{base.name}_{suffix}")
        suffix += 1
    return candidate


class ProcessSupervisor:
    def __init__(
        self,
        cfg: StackConfig,
        *,
        skip_build: bool = False,
        install_signals: bool = True,
        console_stream: Optional[TextIO] = None,
    ) -> None:
        self.cfg = cfg
        self.skip_build = skip_build
        self.install_signals = install_signals
        self.console_stream = console_stream
        self.run_log_dir = _fresh_run_dir(cfg.log_root)
        self.stop_event = asyncio.Event()
        self.phase = Phase.INIT
        self.phase_history: List[Phase] = [Phase.INIT]
        self.states: Dict[str, ServiceHandle] = {}
        self.muxes: Dict[str, LogMultiplexer] = {}
        self.failure: Optional[OrchestratorError] = None
        self.signals_received = 0
        self.teardown_count = 0
        self._teardown_task: Optional["asyncio.Future[None]"] = None
        self._installed_signals: List[signal.Signals] = []

    # ------------------------------------------------------------------ output

    def _say(self, label: str, message: str, color: Optional[str] = None) -> None:
        console.emit(label, message, color, stream=self.console_stream)

    def _info(self, message: str) -> None:
        console.info(message, stream=self.console_stream)

    def _color_for(self, spec: ServiceSpec) -> str:
        if spec.color:
            return spec.color
        idx = [s.name for s in self.cfg.services].index(spec.name)
        return console.SERVICE_PALETTE[idx % len(console.SERVICE_PALETTE)]

    # ------------------------------------------------------------------- phase

    def _set_phase(self, phase: Phase) -> None:
        if phase is self.phase:
            return
        if self.phase in (Phase.SHUTTING_DOWN, Phase.TERMINATED) and phase is not Phase.TERMINATED:
            # teardown owns the phase from here on
            raise ShutdownRequested()
        if not can_transition(self.phase, phase):
            raise RuntimeError(f"illegal phase transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.phase_history.append(phase)
        metrics.set_phase(phase)

    def _check_stop(self) -> None:
        if self.stop_event.is_set():
            raise ShutdownRequested()

    # ----------------------------------------------------------------- signals

    def request_shutdown(self, reason: str = "shutdown request") -> None:
        self.signals_received += 1
        if self.stop_event.is_set():
            self._info(f"received {reason} again; shutdown already in progress")
            return
        self._info(f"received {reason}; initiating shutdown…")
        self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):  # pragma: no cover (Windows / non-main thread)
                continue
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
        self._installed_signals.clear()

    # --------------------------------------------------------------------- run

    async def run(self) -> int:
        if self.install_signals:
            self._install_signal_handlers()
        exit_code = 0
        try:
            await self._run_phases()
        except ShutdownRequested:
            exit_code = 0
        except OrchestratorError as exc:
            self.failure = exc
            console.error(str(exc), stream=self.console_stream)
            exit_code = exc.exit_code
        finally:
            await self.shutdown()
            self._remove_signal_handlers()
        if self.failure is not None:
            self._print_tails(self.failure.tail_services)
        return exit_code

    async def _run_phases(self) -> None:
        cfg = self.cfg
        self._set_phase(Phase.CHECKING_PREFLIGHT)
        self._info("running preflight checks…")
        run_preflight(cfg.required_tools, cfg.required_files, [(s.host, s.port) for s in cfg.services])
        if cfg.metrics_port:
            try:
                metrics.serve(cfg.metrics_port)
            except OSError as exc:
                raise PortInUseError("0.0.0.0", cfg.metrics_port, f"metrics server: {exc}") from exc
            self._info(f"metrics on :{cfg.metrics_port}/metrics")

        self._set_phase(Phase.LAUNCHING)
        if cfg.build_cmd and not self.skip_build:
            await self._build(cfg.build_cmd)

        self._info(f"launching services… logs at {self.run_log_dir}")
        for spec in cfg.services:
            self._check_stop()
            self._set_phase(Phase.LAUNCHING)
            handle = await self._launch(spec)
            self._set_phase(Phase.PROBING_READINESS)
            await self._await_ready(handle)

        self._set_phase(Phase.ALL_READY)
        self._print_ready_banner()
        self._set_phase(Phase.MONITORING)
        await self._monitor()

    async def _build(self, cmd: Sequence[str]) -> None:
        cmd_str = " ".join(cmd)
        self._say("BUILD", f"Building: {cmd_str}", "yellow")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, env=self.cfg.base_env, cwd=str(self.cfg.root), start_new_session=True
            )
        except OSError as exc:
            raise BuildError(cmd_str, None) from exc

        wait_task = asyncio.ensure_future(proc.wait())
        stop_task = asyncio.ensure_future(self.stop_event.wait())
        try:
            await asyncio.wait({wait_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if not wait_task.done():
            self._say("BUILD", "interrupted; stopping build…", "yellow")
            self._signal_process(proc, proc.pid, signal.SIGTERM, "build")
            try:
                await asyncio.wait_for(asyncio.shield(wait_task), timeout=self.cfg.shutdown_grace)
            except asyncio.TimeoutError:
                self._signal_process(proc, proc.pid, getattr(signal, "SIGKILL", signal.SIGTERM), "build")
                await wait_task
            raise ShutdownRequested()
        if proc.returncode != 0:
            raise BuildError(cmd_str, proc.returncode)
        self._say("BUILD", "Build OK.", "green")

    async def _launch(self, spec: ServiceSpec) -> ServiceHandle:
        if spec.name in self.states:
            raise RuntimeError(f"service {spec.name} already has a handle")
        color = self._color_for(spec)
        self._say(spec.label, f"Starting {spec.name}…", color)
        handle = await launch(spec, self.cfg.base_env, self.run_log_dir)
        if self._teardown_task is not None:
            # teardown already ran past the handle table; this child is ours to kill
            self._signal_process(handle.process, handle.pgid, getattr(signal, "SIGKILL", signal.SIGTERM), spec.name)
            if handle.exit_task is not None:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(asyncio.shield(handle.exit_task), timeout=self.cfg.shutdown_grace)
            handle.returncode = handle.process.returncode
            raise ShutdownRequested()
        self.states[spec.name] = handle
        metrics.set_status(spec.name, handle.status)
        mux = LogMultiplexer(
            spec.label, handle.process.stdout, handle.log_path, color=color, console_stream=self.console_stream
        )
        mux.start()
        self.muxes[spec.name] = mux
        self._info(f"{spec.name:<20} pid={handle.pid} log={handle.log_path}")
        return handle

    async def _await_ready(self, handle: ServiceHandle) -> None:
        spec = handle.spec
        color = self._color_for(spec)
        self._say(spec.label, f"Waiting for {spec.name} to be ready on {spec.url}…", color)
        result = await ReadinessProber(handle, self.stop_event).wait_ready()
        # a probe that succeeds while teardown runs must not mark the service ready
        self._check_stop()
        handle.status = ServiceStatus.READY
        metrics.set_status(spec.name, ServiceStatus.READY)
        metrics.READY_SECONDS.labels(spec.name).set(result.elapsed)
        self._say(
            spec.label,
            f"{spec.name} is ready at {spec.url} ({result.layer} check, attempt {result.attempts})",
            color,
        )

    def _print_ready_banner(self) -> None:
        out = self.console_stream or sys.stdout
        lines = [f"\nAll {len(self.states)} services are running!"]
        for handle in self.states.values():
            lines.append(f"   {handle.name}: {handle.spec.url}")
        lines.append("   Press Ctrl+C to stop all services…")
        out.write("\n".join(lines) + "\n")
        out.flush()

    async def _monitor(self) -> None:
        exit_tasks = {h.exit_task: h for h in self.states.values() if h.exit_task is not None}
        stop_task = asyncio.ensure_future(self.stop_event.wait())
        try:
            done, _ = await asyncio.wait({stop_task, *exit_tasks}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not stop_task.done():
                stop_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stop_task
        exited = [exit_tasks[t] for t in done if t in exit_tasks]
        if exited and self.phase is not Phase.SHUTTING_DOWN:
            handle = exited[0]
            handle.returncode = handle.process.returncode
            handle.status = ServiceStatus.EXITED
            metrics.set_status(handle.name, ServiceStatus.EXITED)
            raise UnexpectedExitError(handle.name, handle.returncode, list(self.states))
        raise ShutdownRequested()

    # ---------------------------------------------------------------- teardown

    async def shutdown(self) -> None:
        """Tear the stack down. Every caller waits on the same single teardown."""
        if self._teardown_task is None:
            self._teardown_task = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._teardown_task)

    async def _teardown(self) -> None:
        self.teardown_count += 1
        self.stop_event.set()
        if can_transition(self.phase, Phase.SHUTTING_DOWN):
            self._set_phase(Phase.SHUTTING_DOWN)
        if self.states:
            self._say("CLEANUP", "Shutting down services...", "red")
        await self._step("terminate services", self._terminate_all())
        await self._step("stop log readers", self._stop_muxes())
        try:
            metrics.stop()
        except Exception as exc:
            console.warn(f"stop metrics failed: {exc}", stream=self.console_stream)
        for handle in self.states.values():
            self._say("LOG", f"{handle.name} log: {handle.log_path}", "yellow")
        self._set_phase(Phase.TERMINATED)

    async def _step(self, what: str, coro) -> None:
        try:
            await coro
        except Exception as exc:
            console.warn(f"{what} failed: {exc}", stream=self.console_stream)

    async def _terminate_all(self) -> None:
        if not self.states:
            return
        self._broadcast(signal.SIGTERM)
        await self._wait_exits(self.cfg.shutdown_grace)
        if any(h.alive() for h in self.states.values()):
            self._broadcast(getattr(signal, "SIGKILL", signal.SIGTERM))
            await self._wait_exits(self.cfg.shutdown_grace)
        for handle in self.states.values():
            handle.returncode = handle.process.returncode
            if handle.returncode is not None and handle.status is not ServiceStatus.FAILED:
                handle.status = ServiceStatus.EXITED
                metrics.set_status(handle.name, ServiceStatus.EXITED)

    async def _wait_exits(self, timeout: float) -> None:
        pending = [h.exit_task for h in self.states.values() if h.exit_task is not None and not h.exit_task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    def _broadcast(self, sig: signal.Signals) -> None:
        for state in self.states.values():
            if state.process.returncode is not None:
                continue
            self._signal_process(state.process, state.pgid, sig, state.name)

    def _signal_process(self, proc: asyncio.subprocess.Process, pgid: Optional[int],
                        sig: signal.Signals, name: str) -> None:
        if pgid is not None and hasattr(os, "killpg"):
            try:
                os.killpg(pgid, sig.value)
                return
            except ProcessLookupError:
                return
            except Exception as exc:
                console.warn(f"failed to signal group for {name}: {exc}", stream=self.console_stream)
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
        except Exception as exc:
            console.warn(f"failed to signal {name}: {exc}", stream=self.console_stream)

    async def _stop_muxes(self) -> None:
        if self.muxes:
            await asyncio.gather(
                *(mux.stop(self.cfg.drain_timeout) for mux in self.muxes.values()), return_exceptions=True
            )

    def _print_tails(self, names: Sequence[str]) -> None:
        out = self.console_stream or sys.stdout
        for name in names:
            handle = self.states.get(name)
            if handle is None:
                continue
            self._say(f"{handle.spec.label} LOG TAIL", str(handle.log_path), "yellow")
            tail = tail_log(handle.log_path, self.cfg.tail_lines)
            if tail:
                out.write("\n".join(tail) + "\n")
                out.flush()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch a stack of dependent services and supervise them.")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to YAML stack file (defaults to configs/stack.yaml or configs/devnet.yaml if present).",
    )
    parser.add_argument("--log-dir", type=Path, default=None, help="Override the log root directory.")
    parser.add_argument("--tail-lines", type=int, default=None, help="Log lines to print on failure.")
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port.")
    parser.add_argument("--skip-build", action="store_true", help="Do not run the configured build step.")
    return parser.parse_args(argv)


def apply_overrides(cfg: StackConfig, args: argparse.Namespace) -> StackConfig:
    changes = {}
    if args.log_dir is not None:
        changes["log_root"] = args.log_dir.expanduser().resolve()
    if args.tail_lines is not None:
        changes["tail_lines"] = args.tail_lines
    if args.metrics_port is not None:
        changes["metrics_port"] = args.metrics_port
    return dataclasses.replace(cfg, **changes) if changes else cfg


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    cfg_path = args.config or default_config_path()
    if cfg_path is None:
        raise SystemExit(
            "No config provided and no default config found. "
            "Create configs/stack.yaml or pass --config."
        )
    try:
        cfg = apply_overrides(load_stack(cfg_path), args)
    except ConfigError as exc:
        console.error(str(exc))
        raise SystemExit(exc.exit_code)

    supervisor = ProcessSupervisor(cfg, skip_build=args.skip_build)
    try:
        code = asyncio.run(supervisor.run())
    except KeyboardInterrupt:
        console.info("interrupted; shutting down…")
        code = 0 if supervisor.failure is None else 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
