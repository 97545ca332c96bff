from __future__ import annotations

import pytest

from deploy_orchestrator.environment import SimulatedEnvironment
from deploy_orchestrator.errors import ConstructionFailed, UnresolvedReference
from deploy_orchestrator.linker import LibraryLinker
from deploy_orchestrator.models import Address, AddressTable, Reference, UnitDescriptor

GAS = 5_000_000


def _libraries(*descriptors: UnitDescriptor) -> dict[str, UnitDescriptor]:
    return {descriptor.name: descriptor for descriptor in descriptors}


def test_linking_same_library_twice_deploys_once(environment: SimulatedEnvironment) -> None:
    table = AddressTable()
    linker = LibraryLinker(environment, table, _libraries(UnitDescriptor("Trig", "Trig", is_library=True)), gas_ceiling=GAS)

    first = linker.link_addresses(["Trig"])
    second = linker.link_addresses(["Trig"])

    assert first == second
    assert linker.deployments == 1
    assert [record.type_name for record in environment.constructions] == ["Trig"]
    assert table.address_of("Trig") == first["Trig"]
    assert table.library_addresses() == {"Trig": str(first["Trig"])}


def test_seeded_library_is_reused(environment: SimulatedEnvironment) -> None:
    seeded = environment.add_contract("Trig")
    table = AddressTable({"Trig": seeded})
    linker = LibraryLinker(environment, table, _libraries(UnitDescriptor("Trig", "Trig", is_library=True)), gas_ceiling=GAS)

    assert linker.link_addresses(["Trig"]) == {"Trig": seeded}
    assert linker.deployments == 0
    assert environment.constructions == []


def test_nested_library_is_linked_first(environment: SimulatedEnvironment) -> None:
    table = AddressTable()
    linker = LibraryLinker(
        environment,
        table,
        _libraries(
            UnitDescriptor("Noise", "PerlinNoise", libraries={"Trig": Reference("Trig")}, is_library=True),
            UnitDescriptor("Trig", "Trig", is_library=True),
        ),
        gas_ceiling=GAS,
    )

    linked = linker.link_addresses(["Noise"])

    trig, noise = environment.constructions
    assert trig.type_name == "Trig"
    assert noise.library_addresses == {"Trig": trig.address}
    assert linked == {"Noise": noise.address}
    assert table.deployed_at("Trig") < table.deployed_at("Noise")


def test_unknown_library_is_unresolved(environment: SimulatedEnvironment) -> None:
    linker = LibraryLinker(environment, AddressTable(), {}, gas_ceiling=GAS)
    with pytest.raises(UnresolvedReference):
        linker.link_addresses(["Missing"])


def test_library_construction_failure_is_reported(environment: SimulatedEnvironment) -> None:
    environment.fail_construct("Trig", reason="out of gas")
    table = AddressTable()
    linker = LibraryLinker(environment, table, _libraries(UnitDescriptor("Trig", "Trig", is_library=True)), gas_ceiling=GAS)

    with pytest.raises(ConstructionFailed) as excinfo:
        linker.link_addresses(["Trig"])
    assert excinfo.value.unit == "Trig"
    assert "out of gas" in str(excinfo.value)
    assert "Trig" not in table


def test_progress_callback_sees_each_new_library(environment: SimulatedEnvironment) -> None:
    seen: list[str] = []
    linker = LibraryLinker(
        environment,
        AddressTable({"Trig": Address("0x" + "11" * 20)}),
        _libraries(
            UnitDescriptor("Trig", "Trig", is_library=True),
            UnitDescriptor("Balance", "BalanceLogicLibrary", is_library=True),
        ),
        gas_ceiling=GAS,
        on_deployed=lambda unit: seen.append(unit.name),
    )
    linker.link_addresses(["Trig", "Balance", "Balance"])
    assert seen == ["Balance"]
