from __future__ import annotations

from pathlib import Path

import pytest

from deploy_orchestrator.environment import (
    SimulatedEnvironment,
    install_legacy_behaviour,
    install_pool_factory_behaviour,
    seed_legacy_system,
)
from deploy_orchestrator.errors import PlanMismatch
from deploy_orchestrator.models import (
    Address,
    DeployedUnit,
    MigrationPhase,
    MigrationState,
    UnitDescriptor,
)
from deploy_orchestrator.state_store import RunStateStore, sanitize_run_id


def test_progress_is_created_then_resumed(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path, "run-1")
    progress = store.load_or_create_progress("velodrome", "abc")
    assert progress.deployed == [] and progress.completed_calls == []
    assert store.progress_path == tmp_path / "runs" / "run-1" / "progress.json"

    unit = DeployedUnit(UnitDescriptor("VELO", "Velo"), Address("0x" + "01" * 20), 1)
    progress.record_unit(unit)
    progress.record_call(1)
    progress.record_call(1)
    store.write_progress(progress)

    resumed = RunStateStore(tmp_path, "run-1").load_or_create_progress("velodrome", "abc")
    assert [(record.name, record.address, record.deployed_at) for record in resumed.deployed] == [
        ("VELO", "0x" + "01" * 20, 1)
    ]
    assert resumed.completed_calls == [1]


def test_changed_plan_is_rejected_on_resume(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path, "run-1")
    store.load_or_create_progress("velodrome", "abc")

    with pytest.raises(PlanMismatch) as excinfo:
        store.load_or_create_progress("velodrome", "def")
    assert excinfo.value.details == {"run_id": "run-1", "expected": "abc", "actual": "def"}


def test_migration_state_round_trips(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path, "run-1")
    assert not store.has_migration_state()
    state = MigrationState(run_id="run-1")
    state.advance(MigrationPhase.FACILITATOR_DEPLOYED)
    state.facilitator_address = "0x" + "0a" * 20
    state.in_flight = MigrationPhase.ASSET_ESCROWED

    store.write_migration_state(state)

    loaded = store.read_migration_state()
    assert loaded == state
    assert loaded.in_flight == MigrationPhase.ASSET_ESCROWED
    assert not list(store.root.glob("*.tmp"))


def test_corrupt_journal_is_a_value_error(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path, "run-1")
    store.progress_path.write_text('{"run_id": "run-1"', encoding="utf-8")
    with pytest.raises(ValueError):
        store.read_progress()

    store.migration_state_path.write_text("   ", encoding="utf-8")
    with pytest.raises(ValueError, match="empty"):
        store.read_migration_state()


def test_missing_migration_state_raises_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RunStateStore(tmp_path, "run-1").read_migration_state()


def test_run_ids_are_sanitized_into_one_path_component() -> None:
    assert sanitize_run_id("  velodrome/2024 01  ") == "velodrome-2024-01"
    assert sanitize_run_id("../../etc") == "..-..-etc"
    assert len(sanitize_run_id("x" * 300)) == 128
    with pytest.raises(ValueError):
        sanitize_run_id("   ")
    with pytest.raises(ValueError):
        sanitize_run_id("///")


def test_environment_snapshot_restores_storage_and_addresses(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path, "run-1")
    environment = SimulatedEnvironment()
    install_pool_factory_behaviour(environment)
    legacy = seed_legacy_system(environment)
    factory = environment.construct("PoolFactory", {}, [], 5_000_000)
    pool = environment.call(factory, "createPool", [Address("0x" + "a1" * 20), Address("0x" + "a2" * 20), False], 5_000_000)
    facilitator = environment.construct("SinkManager", {}, [], 5_000_000)
    environment.call(legacy["VELO"], "approve", [legacy["VotingEscrow"], 10**18], 5_000_000)
    lock_id = environment.call(legacy["VotingEscrow"], "createLockFor", [10**18, 100, facilitator], 5_000_000).value

    store.write_environment_snapshot(environment.snapshot())
    assert store.has_environment_snapshot()
    restored = SimulatedEnvironment.from_snapshot(store.read_environment_snapshot())
    install_pool_factory_behaviour(restored)
    install_legacy_behaviour(restored, token=legacy["VELO"], escrow=legacy["VotingEscrow"])

    assert restored.sender == environment.sender
    assert restored.type_of(facilitator) == "SinkManager"
    assert restored.storage(legacy["VotingEscrow"])["locks"] == environment.storage(legacy["VotingEscrow"])["locks"]
    assert restored.read(legacy["VotingEscrow"], "ownerOf", [lock_id]) == facilitator
    assert restored.read(factory, "getPool", [Address("0x" + "a2" * 20), Address("0x" + "a1" * 20), False]) == pool.value
    restored.call(facilitator, "setOwnedTokenId", [lock_id], 5_000_000)
    assert restored.storage(facilitator)["ownedTokenId"] == lock_id
    assert restored.construct("Voter", {}, [], 5_000_000) == environment.construct("Voter", {}, [], 5_000_000)
