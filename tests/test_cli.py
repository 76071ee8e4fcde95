from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from contextcore_relay import __version__
from contextcore_relay.cli import main

from conftest import PYTHON


def _py(code: str) -> str:
    return json.dumps([PYTHON, "-c", code])


@pytest.fixture()
def definition(tmp_path: Path) -> Path:
    path = tmp_path / "webapp.toml"
    path.write_text(
        f"""
[pipeline]
name = "webapp"

[[stages]]
name = "build"
commands = [{_py("print('built')")}]

[[stages]]
name = "scan"
tolerate_failure = true
commands = [{_py("raise SystemExit(1)")}]

[[stages]]
name = "publish"
secrets = ["nexus-token"]
commands = [{_py("import os; print('token', os.environ['NEXUS_TOKEN'])")}]
""",
        encoding="utf-8",
    )
    return path


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])
    assert __version__ in result.output


def test_run_succeeds_with_tolerated_failure(
    definition: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("RELAY_SECRET_NEXUS_TOKEN", "n3xus")
    result = CliRunner().invoke(main, ["run", str(definition), "--build-number", "9", "-o", "json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{"):])
    assert payload["status"] == "succeeded"
    assert payload["build_number"] == 9
    assert [s["status"] for s in payload["stages"]] == ["succeeded", "failed", "succeeded"]
    assert payload["stages"][1]["tolerated"] is True
    assert "n3xus" not in result.output


def test_run_aborts_on_missing_secret(definition: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RELAY_SECRET_NEXUS_TOKEN", raising=False)
    result = CliRunner().invoke(main, ["run", str(definition)])

    assert result.exit_code == 2
    assert "ABORTED" in result.output
    assert "nexus-token" in result.output


def test_run_reports_invalid_definition(tmp_path: Path) -> None:
    bad = tmp_path / "bad.toml"
    bad.write_text('[[stages]]\nname = "a"\n', encoding="utf-8")
    result = CliRunner().invoke(main, ["run", str(bad)])

    assert result.exit_code == 1
    assert "no commands" in result.output


def test_validate_lists_stages(definition: Path) -> None:
    result = CliRunner().invoke(main, ["validate", str(definition)])

    assert result.exit_code == 0
    assert "webapp: 3 stages" in result.output
    assert "2. scan" in result.output
    assert "tolerates failure" in result.output
    assert "secrets: nexus-token" in result.output


def test_config_shows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RELAY_STAGE_TIMEOUT", "45")
    from contextcore_relay.config import reset_config

    reset_config()
    result = CliRunner().invoke(main, ["config"])

    assert result.exit_code == 0
    assert "Default Stage Timeout: 45s" in result.output
