from __future__ import annotations

import pytest

from deploy_orchestrator.constants import DeploymentConstants
from deploy_orchestrator.environment import SimulatedEnvironment
from deploy_orchestrator.errors import ConstructionFailed, UnresolvedReference
from deploy_orchestrator.executor import DeploymentExecutor
from deploy_orchestrator.graph import DependencyGraph
from deploy_orchestrator.linker import LibraryLinker
from deploy_orchestrator.models import Address, AddressTable, Reference, UnitDescriptor
from deploy_orchestrator.plans import velodrome_v2

GAS = 5_000_000


def _executor(environment: SimulatedEnvironment, units: list[UnitDescriptor], table: AddressTable | None = None) -> DeploymentExecutor:
    table = table if table is not None else AddressTable()
    libraries = {unit.name: unit for unit in units if unit.is_library}
    linker = LibraryLinker(environment, table, libraries, gas_ceiling=GAS)
    return DeploymentExecutor(environment, table, linker, gas_ceiling=GAS)


def _abc() -> list[UnitDescriptor]:
    return [
        UnitDescriptor("C", "Gamma", constructor_args=(Reference("A"), Reference("B"), 7)),
        UnitDescriptor("B", "Beta", constructor_args=(Reference("A"),)),
        UnitDescriptor("A", "Alpha"),
    ]


def test_executor_deploys_in_order_with_real_addresses(environment: SimulatedEnvironment) -> None:
    units = _abc()
    executor = _executor(environment, units)

    table = executor.deploy(DependencyGraph(units).order())

    assert [record.type_name for record in environment.constructions] == ["Alpha", "Beta", "Gamma"]
    a, b, c = (table.address_of(name) for name in ("A", "B", "C"))
    assert environment.constructions[1].constructor_args == [a]
    assert environment.constructions[2].constructor_args == [a, b, 7]
    assert environment.type_of(c) == "Gamma"
    assert [table.deployed_at(name) for name in ("A", "B", "C")] == [1, 2, 3]
    assert all(record.gas_ceiling == GAS for record in environment.constructions)


def test_every_unit_deploys_after_its_references(environment: SimulatedEnvironment, constants: DeploymentConstants) -> None:
    plan = velodrome_v2(constants)
    executor = _executor(environment, list(plan.units))

    table = executor.deploy(DependencyGraph(plan.units).order())

    for unit in plan.units:
        for ref in unit.construction_references():
            assert table.deployed_at(unit.name) > table.deployed_at(ref)
    assert len(environment.constructions) == len(plan.units)


def test_shared_libraries_are_constructed_once(environment: SimulatedEnvironment, constants: DeploymentConstants) -> None:
    plan = velodrome_v2(constants)
    executor = _executor(environment, list(plan.units))
    table = executor.deploy(DependencyGraph(plan.units).order())

    library_types = [record.type_name for record in environment.constructions if record.type_name in table.library_addresses()]
    assert sorted(library_types) == ["BalanceLogicLibrary", "DelegationLogicLibrary", "PerlinNoise", "Trig"]
    escrow = next(record for record in environment.constructions if record.type_name == "VotingEscrow")
    assert escrow.library_addresses == {
        "BalanceLogicLibrary": table.address_of("BalanceLogicLibrary"),
        "DelegationLogicLibrary": table.address_of("DelegationLogicLibrary"),
    }


def test_construction_failure_aborts_remaining_units(environment: SimulatedEnvironment) -> None:
    units = _abc()
    environment.fail_construct("Beta", reason="reverted")
    executor = _executor(environment, units)

    with pytest.raises(ConstructionFailed) as excinfo:
        executor.deploy(DependencyGraph(units).order())

    assert excinfo.value.unit == "B"
    assert excinfo.value.details["type_name"] == "Beta"
    assert isinstance(excinfo.value.__cause__, Exception)
    assert [record.type_name for record in environment.constructions] == ["Alpha"]
    assert "A" in executor.table
    assert "B" not in executor.table and "C" not in executor.table


def test_units_already_in_table_are_skipped(environment: SimulatedEnvironment) -> None:
    units = _abc()
    existing = environment.add_contract("Alpha")
    executor = _executor(environment, units, AddressTable({"A": existing}))

    table = executor.deploy(DependencyGraph(units, seed=executor.table).order())

    assert [record.type_name for record in environment.constructions] == ["Beta", "Gamma"]
    assert environment.constructions[0].constructor_args == [existing]
    assert table.is_seed("A")


def test_unit_cannot_construct_before_its_references(environment: SimulatedEnvironment) -> None:
    units = _abc()
    executor = _executor(environment, units)

    with pytest.raises(UnresolvedReference):
        executor.deploy_unit(units[0])
    assert environment.constructions == []


def test_progress_callback_receives_each_unit(environment: SimulatedEnvironment) -> None:
    units = _abc()
    seen: list[tuple[str, int]] = []
    table = AddressTable()
    linker = LibraryLinker(environment, table, {}, gas_ceiling=GAS)
    executor = DeploymentExecutor(
        environment,
        table,
        linker,
        gas_ceiling=GAS,
        on_deployed=lambda unit: seen.append((unit.name, unit.deployed_at)),
    )
    executor.deploy(DependencyGraph(units).order())
    assert seen == [("A", 1), ("B", 2), ("C", 3)]


def test_non_positive_gas_ceiling_is_rejected(environment: SimulatedEnvironment) -> None:
    table = AddressTable()
    with pytest.raises(ValueError):
        DeploymentExecutor(environment, table, LibraryLinker(environment, table, {}, gas_ceiling=GAS), gas_ceiling=0)


def test_address_table_is_append_only() -> None:
    table = AddressTable({"ext": Address("0x" + "01" * 20)})
    unit = UnitDescriptor("A", "Alpha")
    table.record(unit, Address("0x" + "02" * 20))

    with pytest.raises(ValueError):
        table.record(unit, Address("0x" + "03" * 20))
    with pytest.raises(ValueError):
        table.seed("ext", Address("0x" + "04" * 20))
    assert table.deployed_at("ext") == 0
    assert table.unit_addresses() == {"ext": "0x" + "01" * 20, "A": "0x" + "02" * 20}
