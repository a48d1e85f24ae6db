import textwrap
from pathlib import Path

import pytest

from orchestrator.errors import ConfigError
from orchestrator.stack_config import default_config_path, load_stack

REPO_DEVNET = Path(__file__).resolve().parents[1] / "configs" / "devnet.yaml"

DEVNET = """
root: "{root}"
log_dir: logs
required_tools: [cargo]
required_files: [test_data/genesis.json]
env_files: [.env]
env_defaults:
  RUST_LOG: "info,mojave=debug"
  RUST_BACKTRACE: "1"
  SEQ_PRIVKEY: "0xaaaa"
env:
  STACK: devnet
build:
  cmd: "cargo build --release --bins"
services:
  - name: full-node
    tag: NODE
    port: 8545
    ready_timeout_seconds: 120
    cmd: >-
      cargo run --bin mojave-full-node -- init
      --sequencer.address {{{{sequencer.url}}}}
      --datadir {{{{root}}}}/node
  - name: sequencer
    port: 1739
    health_path: /health
    cmd:
      - cargo
      - run
      - --full_node.addresses
      - "{{{{full-node.url}}}}"
      - --private_key
      - "{{{{env.SEQ_PRIVKEY}}}}"
    env:
      ROLE: sequencer
"""


def _write(tmp_path, body: str):
    path = tmp_path / "stack.yaml"
    path.write_text(textwrap.dedent(body))
    return path


def test_loads_devnet_stack(tmp_path):
    (tmp_path / ".env").write_text("RUST_LOG=warn\nFROM_DOTENV=yes\n")
    cfg = load_stack(_write(tmp_path, DEVNET.format(root=tmp_path)), environ={"PATH": "/usr/bin"})

    node, seq = cfg.services
    assert [s.name for s in cfg.services] == ["full-node", "sequencer"]
    assert node.cmd == (
        "cargo", "run", "--bin", "mojave-full-node", "--", "init",
        "--sequencer.address", "http://127.0.0.1:1739",
        "--datadir", f"{tmp_path}/node",
    )
    assert seq.cmd[3] == "http://127.0.0.1:8545"
    assert seq.cmd[-1] == "0xaaaa"
    assert node.label == "NODE"
    assert seq.label == "SEQUENCER"
    assert node.ready_timeout == 120.0
    assert seq.ready_timeout == 60.0
    assert seq.poll_interval == 2.0
    assert seq.health_url == "http://127.0.0.1:1739/health"
    assert node.health_url == "http://127.0.0.1:8545/"
    assert seq.env_map() == {"ROLE": "sequencer"}

    assert cfg.build_cmd == ["cargo", "build", "--release", "--bins"]
    assert cfg.required_tools == ["cargo"]
    assert cfg.required_files == [tmp_path / "test_data" / "genesis.json"]
    assert cfg.log_root == tmp_path / "logs"
    assert cfg.tail_lines == 120

    # dotenv wins over defaults, caller environment wins over dotenv
    assert cfg.base_env["RUST_LOG"] == "warn"
    assert cfg.base_env["FROM_DOTENV"] == "yes"
    assert cfg.base_env["RUST_BACKTRACE"] == "1"
    assert cfg.base_env["STACK"] == "devnet"
    assert cfg.base_env["PATH"] == "/usr/bin"


def test_caller_environment_beats_defaults(tmp_path):
    cfg = load_stack(_write(tmp_path, DEVNET.format(root=tmp_path)), environ={"RUST_BACKTRACE": "full"})
    assert cfg.base_env["RUST_BACKTRACE"] == "full"


def test_missing_env_file_only_warns(tmp_path, capsys):
    cfg = load_stack(_write(tmp_path, DEVNET.format(root=tmp_path)), environ={})

    assert "[WARN] .env not found; continuing without it." in capsys.readouterr().out
    assert cfg.base_env["RUST_LOG"] == "info,mojave=debug"


def test_duplicate_names_rejected(tmp_path):
    body = """
    services:
      - {name: a, port: 1, cmd: "true"}
      - {name: a, port: 2, cmd: "true"}
    """
    with pytest.raises(ConfigError, match="Duplicate service name"):
        load_stack(_write(tmp_path, body), environ={})


@pytest.mark.parametrize(
    "service, message",
    [
        ('{name: a, cmd: "true"}', "missing required `port`"),
        ("{name: a, port: 80}", "missing required `cmd`"),
        ('{name: a, port: 70000, cmd: "true"}', "out of range"),
        ('{name: a, port: 80, cmd: ""}', "at least one argument"),
        ('{name: a, port: 80, cmd: "true", ready_timeout_seconds: 0}', "must be positive"),
    ],
)
def test_invalid_service_rejected(tmp_path, service, message):
    body = f"env_files: []\nservices:\n  - {service}\n"
    with pytest.raises(ConfigError, match=message):
        load_stack(_write(tmp_path, body), environ={})


def test_empty_services_rejected(tmp_path):
    with pytest.raises(ConfigError, match="non-empty `services`"):
        load_stack(_write(tmp_path, "services: []\n"), environ={})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_stack(tmp_path / "nope.yaml")


def test_default_config_path(tmp_path):
    assert default_config_path(tmp_path) is None
    (tmp_path / "configs").mkdir()
    (tmp_path / "configs" / "devnet.yaml").write_text("services: []\n")
    assert default_config_path(tmp_path) == tmp_path / "configs" / "devnet.yaml"


@pytest.mark.parametrize(
    "caller, expected",
    [({}, "info,mojave=debug"), ({"RUST_LOG": "warn"}, "warn,mojave=debug")],
)
def test_devnet_rust_log_always_gains_debug_suffix(tmp_path, monkeypatch, caller, expected):
    monkeypatch.chdir(tmp_path)
    cfg = load_stack(REPO_DEVNET, environ=caller)

    assert cfg.base_env["RUST_LOG"] == expected
    assert [s.port for s in cfg.services] == [8545, 1739]


def test_env_append_on_unset_variable(tmp_path):
    body = """
    env_files: []
    env_append:
      EXTRA_FLAGS: "--fast"
    services:
      - {name: a, port: 80, cmd: "true"}
    """
    cfg = load_stack(_write(tmp_path, body), environ={})
    assert cfg.base_env["EXTRA_FLAGS"] == "--fast"
