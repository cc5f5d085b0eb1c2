"""Unit tests for the click CLI."""

import json

import pytest
from click.testing import CliRunner

from parley.agent_loop import FALLBACK_RESPONSE
from parley.cli import cli
from parley.store import Store
from parley.types import PairingCode


@pytest.fixture
def env(tmp_path):
    return {
        "PARLEY_DB_PATH": str(tmp_path / "parley.db"),
        "PARLEY_TELEMETRY_PATH": str(tmp_path / "telemetry.jsonl"),
        "PARLEY_SANDBOX_RUNTIME": "none",
        "PARLEY_DISABLE_NETWORK": "1",
    }


@pytest.fixture
def invoke(tmp_path, env):
    runner = CliRunner()

    def _invoke(*args, extra_env=None):
        return runner.invoke(cli, ["--dir", str(tmp_path), *args], env={**env, **(extra_env or {})})

    return _invoke


def test_version(invoke):
    result = invoke("--version")
    assert result.exit_code == 0
    assert "0.1.0" in result.output


class TestApprove:
    def test_approves_valid_code(self, invoke, env):
        store = Store(env["PARLEY_DB_PATH"])
        store.init()
        store.save_pairing_code(PairingCode(code="ABCD1234", sender="555", channel="telegram", expires_at=9e12))

        result = invoke("approve", "abcd1234")

        assert result.exit_code == 0, result.output
        assert "Approved telegram:555" in result.output
        assert store.is_allowlisted("555", "telegram")

    def test_second_approval_fails(self, invoke, env):
        store = Store(env["PARLEY_DB_PATH"])
        store.init()
        store.save_pairing_code(PairingCode(code="ABCD1234", sender="555", channel="telegram", expires_at=9e12))

        assert invoke("approve", "ABCD1234").exit_code == 0
        result = invoke("approve", "ABCD1234")
        assert result.exit_code != 0
        assert "invalid, expired, or already used" in result.output

    def test_unknown_code(self, invoke):
        result = invoke("approve", "NOPE")
        assert result.exit_code != 0


class TestAsk:
    def test_network_disabled_yields_fallback(self, invoke, env):
        result = invoke("ask", "hello", extra_env={"OPENAI_API_KEY": "sk-test"})

        assert result.exit_code == 0, result.output
        assert FALLBACK_RESPONSE in result.output

        store = Store(env["PARLEY_DB_PATH"])
        session = store.find_session("local", "cli")
        assert [m.role for m in store.recent_messages(session.id)] == ["user", "assistant"]


class TestDoctor:
    def test_passes_with_key(self, invoke):
        result = invoke("doctor", extra_env={"OPENAI_API_KEY": "sk-test"})
        assert result.exit_code == 0, result.output
        assert "Doctor checks passed" in result.output

    def test_fails_without_key(self, invoke, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        result = invoke("doctor")
        assert result.exit_code == 1
        assert "missing API key" in result.output


class TestStatsAndTelemetry:
    def test_stats(self, invoke):
        result = invoke("stats")
        assert result.exit_code == 0, result.output
        assert "sessions: 0" in result.output

    def test_telemetry_tail(self, invoke, env):
        with open(env["PARLEY_TELEMETRY_PATH"], "w", encoding="utf-8") as f:
            for i in range(5):
                f.write(json.dumps({"run_id": f"r{i}", "type": "turn_started", "data": {}}) + "\n")

        result = invoke("telemetry", "tail", "-n", "2")

        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert [json.loads(ln)["run_id"] for ln in lines] == ["r3", "r4"]

    def test_telemetry_missing(self, invoke):
        result = invoke("telemetry", "tail")
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_config_file_option(self, tmp_path):
        config_file = tmp_path / "custom.yml"
        config_file.write_text(f"store:\n  path: {tmp_path / 'custom.db'}\n")

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_file), "stats"], env={"PARLEY_SANDBOX_RUNTIME": "none"})

        assert result.exit_code == 0, result.output
        assert "custom.db" in result.output
