from __future__ import annotations

from pathlib import Path

import pytest

from deploy_orchestrator import get_version
from deploy_orchestrator.settings import RuntimeSettings, load_environment


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.gas_ceiling == 5_000_000
    assert settings.recursion_limit == 100
    assert settings.effective_run_id("velodrome-v2") == "velodrome-v2"
    assert settings.output_path(Path("/repo")) == Path("/repo/script/constants/output")


def test_runtime_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DEPLOY_GAS_CEILING", "8000000")
    monkeypatch.setenv("DEPLOY_RUN_ID", "  rehearsal-7  ")
    monkeypatch.setenv("DEPLOY_STATE_STORE_ROOT", str(tmp_path / "journals"))
    monkeypatch.setenv("DEPLOY_RECURSION_LIMIT", "250")

    settings = RuntimeSettings.from_env()

    assert settings.gas_ceiling == 8_000_000
    assert settings.effective_run_id("velodrome-v2") == "rehearsal-7"
    assert settings.state_store_path(Path("/elsewhere")) == tmp_path / "journals"
    assert settings.recursion_limit == 250


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DEPLOY_GAS_CEILING", "lots"),
        ("DEPLOY_GAS_CEILING", "1000"),
        ("DEPLOY_GAS_CEILING", "200000000"),
        ("DEPLOY_RECURSION_LIMIT", "3"),
    ],
)
def test_runtime_settings_reject_bad_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        RuntimeSettings.from_env()


def test_blank_paths_are_rejected() -> None:
    with pytest.raises(ValueError, match="DEPLOY_OUTPUT_DIR"):
        RuntimeSettings(output_dir="  ").normalized()


def test_dotenv_does_not_override_exported_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("DEPLOY_RUN_ID=from-dotenv\nDEPLOY_GAS_CEILING=6000000\n", encoding="utf-8")
    monkeypatch.setenv("DEPLOY_GAS_CEILING", "7000000")

    load_environment(tmp_path)
    settings = RuntimeSettings.from_env()

    assert settings.run_id == "from-dotenv"
    assert settings.gas_ceiling == 7_000_000


def test_get_version_returns_a_string() -> None:
    assert isinstance(get_version(), str)
