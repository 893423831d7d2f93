from __future__ import annotations

import json
from pathlib import Path
import sys

import pytest
import yaml

from ephemeral_agent.main import DEFAULT_CONFIG_PATH, load_config, main, parse_args
from tests.utils.lifecycle_harness import TARGET_ACCOUNT_REF, sample_spec


def _write_config(tmp_path: Path) -> Path:
    config = {
        "target_account_ref": TARGET_ACCOUNT_REF,
        "resource_spec": sample_spec().model_dump(mode="json"),
        "deadlines": {"ready_deadline_s": 5},
        "policy": {
            "readiness": {"poll_interval_s": 0.02, "jitter_ratio": 0.1},
            "teardown": {"wait_timeout_s": 1, "retry": {"max_attempts": 2, "base_delay_s": 0.01}},
        },
        "logging": {"log_dir": str(tmp_path / "logs"), "file_logging": True},
        "simulate": {"quota": 2, "boot_delay_s": 0.05, "job_duration_s": 0.05},
    }
    path = tmp_path / "lifecycle.yml"
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return path


def test_parse_args_run_command(monkeypatch) -> None:
    """parse_args() should parse the run command with defaults."""
    monkeypatch.setattr(sys, "argv", ["ephemeral-agent", "run"])
    args = parse_args()
    assert args.command == "run"
    assert args.config == DEFAULT_CONFIG_PATH
    assert args.ledger_dir is None
    assert args.simulate is False


def test_parse_args_all_flags() -> None:
    args = parse_args(
        ["--config", "custom.yml", "--ledger-dir", "ledger", "--simulate", "recover", "--sweep"]
    )
    assert args.command == "recover"
    assert args.config == "custom.yml"
    assert args.ledger_dir == "ledger"
    assert args.simulate is True
    assert args.sweep is True
    assert parse_args(["status", "abc123"]).instance_id == "abc123"


def test_parse_args_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        parse_args([])


def test_load_config_handles_missing_and_invalid_files(tmp_path: Path) -> None:
    assert load_config(str(tmp_path / "missing.yml")) == {}
    bad = tmp_path / "bad.yml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(bad))


@pytest.mark.asyncio
async def test_simulated_run_status_and_recover(tmp_path: Path, capsys) -> None:
    config = _write_config(tmp_path)
    base = ["--config", str(config), "--ledger-dir", str(tmp_path / "ledger"), "--simulate"]

    assert await main([*base, "run"]) == 0
    captured = capsys.readouterr()
    status = json.loads(captured.out)
    assert status["state"] == "TERMINATED"
    assert status["termination_reason"] == "completed"
    assert "IN_USE -> TEARING_DOWN" in captured.err

    assert await main([*base, "status", status["instance_id"]]) == 0
    instance = json.loads(capsys.readouterr().out)
    assert instance["id"] == status["instance_id"]
    assert [record["to_state"] for record in instance["history"]][-1] == "TERMINATED"

    assert await main([*base, "recover", "--sweep"]) == 0
    assert json.loads(capsys.readouterr().out) == {"recovered": [], "orphans_reaped": []}

    assert await main([*base, "escalations"]) == 0
    assert json.loads(capsys.readouterr().out) == []
    assert (tmp_path / "logs" / "orchestrator.log").is_file()


@pytest.mark.asyncio
async def test_unknown_instance_status_exits_non_zero(tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    base = ["--config", str(config), "--ledger-dir", str(tmp_path / "ledger"), "--simulate"]
    code = await main([*base, "status", "nope"])
    assert code == 1
