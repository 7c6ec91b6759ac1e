"""Tests for the click CLI."""

from pathlib import Path

from click.testing import CliRunner

from reefer_telemetry_bridge.cli import main
from reefer_telemetry_bridge.secrets import SecretStore


def test_secrets_lifecycle(tmp_path: Path, monkeypatch) -> None:
    secrets_file = tmp_path / "secrets.enc"
    key_file = tmp_path / "master.key"
    monkeypatch.setenv("REEFER_SECRETS_FILE", str(secrets_file))
    runner = CliRunner()

    result = runner.invoke(main, ["secrets", "init", "--key-file", str(key_file)])
    assert result.exit_code == 0, result.output
    assert secrets_file.exists()

    result = runner.invoke(
        main,
        ["secrets", "set", "ORBCOMM_AUTH", "--key-file", str(key_file)],
        input="Basic abc123\nBasic abc123\n",
    )
    assert result.exit_code == 0, result.output
    assert SecretStore(secrets_file, key_file).load() == {"ORBCOMM_AUTH": "Basic abc123"}

    result = runner.invoke(main, ["secrets", "list", "--key-file", str(key_file)])
    assert result.output.split() == ["ORBCOMM_AUTH"]
    assert "abc123" not in result.output

    result = runner.invoke(main, ["secrets", "delete", "ORBCOMM_AUTH", "--key-file", str(key_file)])
    assert result.exit_code == 0
    result = runner.invoke(main, ["secrets", "delete", "ORBCOMM_AUTH", "--key-file", str(key_file)])
    assert result.exit_code == 1


def test_config_error_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("ORBCOMM_AUTH", raising=False)
    monkeypatch.delenv("REEFER_KEY_FILE", raising=False)
    config = tmp_path / "config.json"
    config.write_text('{"upstream": {"authorization": "${ORBCOMM_AUTH}"}}')

    result = CliRunner().invoke(main, ["-c", str(config), "--validate-config"])
    assert result.exit_code == 1
    assert "Config error" in result.output
