from __future__ import annotations

import json
from pathlib import Path

import pytest

from deploy_orchestrator.constants import DeploymentConstants
from deploy_orchestrator.environment import SimulatedEnvironment, install_pool_factory_behaviour
from deploy_orchestrator.settings import RuntimeSettings
from deploy_orchestrator.state_store import RunStateStore

_DEPLOY_ENV_VARS = (
    "DEPLOY_GAS_CEILING",
    "DEPLOY_STATE_STORE_ROOT",
    "DEPLOY_OUTPUT_DIR",
    "DEPLOY_CONSTANTS_PATH",
    "DEPLOY_RUN_ID",
    "DEPLOY_RECURSION_LIMIT",
)


def addr(byte: str) -> str:
    return "0x" + byte * 20


@pytest.fixture(autouse=True)
def _isolated_deploy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep operator DEPLOY_* variables (and anything a test's .env loads) out of the suite."""
    for name in _DEPLOY_ENV_VARS:
        monkeypatch.setenv(name, "unset")
        monkeypatch.delenv(name)


@pytest.fixture
def environment() -> SimulatedEnvironment:
    env = SimulatedEnvironment()
    install_pool_factory_behaviour(env)
    return env


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(gas_ceiling=5_000_000, recursion_limit=100).normalized()


@pytest.fixture
def store(tmp_path: Path) -> RunStateStore:
    return RunStateStore(tmp_path / "state_store", "run-1")


@pytest.fixture
def constants_payload() -> dict[str, object]:
    return {
        "WETH": addr("e1"),
        "whitelistTokens": [addr("a1"), addr("a2")],
        "team": addr("7e"),
        "feeManager": addr("fe"),
        "poolsV2": [
            {"stable": False, "tokenA": addr("a1"), "tokenB": addr("a2")},
            {"stable": True, "tokenA": addr("a1"), "tokenB": addr("a3")},
        ],
        "poolsVeloV2": [{"stable": False, "token": addr("a1")}],
        "current": {"VotingEscrow": addr("c1"), "Forwarder": addr("c2"), "Minter": addr("c3")},
        "v1": {
            "VELO": addr("b1"),
            "VotingEscrow": addr("b2"),
            "Voter": addr("b3"),
            "RewardsDistributor": addr("b4"),
            "SinkDrainGauge": addr("b5"),
        },
        "escrowAmount": 10**18,
        "lockDuration": 4 * 365 * 86400,
    }


@pytest.fixture
def constants(constants_payload: dict[str, object]) -> DeploymentConstants:
    return DeploymentConstants.model_validate(constants_payload)


@pytest.fixture
def constants_file(tmp_path: Path, constants_payload: dict[str, object]) -> Path:
    path = tmp_path / "Optimism.json"
    path.write_text(json.dumps(constants_payload, indent=2), encoding="utf-8")
    return path
