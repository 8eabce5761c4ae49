import json
import re
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from runpilot.backends.base import ReasoningBackend
from runpilot.cli import cli
from runpilot.config import load_config


class FakeBackend(ReasoningBackend):
    async def complete(
        self,
        system_prompt: str,
        user_payload: dict[str, Any] | str,
        *,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> str:
        _ = user_payload, temperature, model
        if "planner of a browsing agent" in system_prompt:
            return json.dumps({"steps": [{"title": "Summarize the request", "tool": "none"}]})
        return "{}"


def _queued_id(output: str) -> str:
    match = re.search(r"Queued run (\S+)", output)
    assert match is not None, output
    return match.group(1)


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("runpilot.cli._build_backend", lambda config: FakeBackend())
    return tmp_path


def test_init_writes_config_and_state(workspace: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--model", "qwen2.5", "--base-url", "http://127.0.0.1:11434/v1"])

    assert result.exit_code == 0, result.output
    assert "Initialized runpilot" in result.output
    config = load_config(workspace / "runpilot.toml")
    assert config.backend.model == "qwen2.5"
    assert config.backend.base_url == "http://127.0.0.1:11434/v1"
    assert (workspace / ".runpilot" / "state").is_dir()


def test_submit_work_show_and_purge(workspace: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    submitted = runner.invoke(cli, ["submit", "Summarize the news", "--set", "max_steps=3", "--no-approval"])
    assert submitted.exit_code == 0, submitted.output
    run_id = _queued_id(submitted.output)

    listed = runner.invoke(cli, ["list"])
    assert run_id in listed.output
    assert "queued" in listed.output

    worked = runner.invoke(cli, ["work", "--once"])
    assert worked.exit_code == 0, worked.output
    assert f"{run_id}: completed" in worked.output
    assert "Processed 1 runs." in worked.output

    shown = runner.invoke(cli, ["show", run_id, "--audit"])
    assert shown.exit_code == 0, shown.output
    payload = json.loads(shown.output)
    assert payload["status"] == "completed"
    assert payload["plan_state"]["settings"]["max_steps"] == 3
    assert payload["plan_state"]["preferences"]["require_human_approval"] is False
    assert any(entry["message"] == "Plan created." for entry in payload["audit"])

    purged = runner.invoke(cli, ["purge"])
    assert "Deleted 1 finished runs." in purged.output
    assert "No agent runs." in runner.invoke(cli, ["list"]).output


def test_stop_resume_and_approve_commands(workspace: Path) -> None:
    runner = CliRunner()
    run_id = _queued_id(runner.invoke(cli, ["submit", "Summarize the news"]).output)

    approve = runner.invoke(cli, ["approve", run_id])
    assert approve.exit_code != 0
    assert "No step is waiting for approval." in approve.output

    stopped = runner.invoke(cli, ["stop", run_id])
    assert f"Run {run_id} is stopped." in stopped.output

    resumed = runner.invoke(cli, ["resume", run_id])
    assert resumed.exit_code == 0, resumed.output
    assert f"Run {run_id} requeued." in resumed.output


def test_cli_reports_bad_input(workspace: Path) -> None:
    runner = CliRunner()

    bad_setting = runner.invoke(cli, ["submit", "Summarize", "--set", "max_steps"])
    missing = runner.invoke(cli, ["show", "does-not-exist"])

    assert bad_setting.exit_code != 0
    assert "Expected key=value" in bad_setting.output
    assert missing.exit_code != 0
    assert "Agent run not found" in missing.output
