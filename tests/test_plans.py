from __future__ import annotations

import pytest

from deploy_orchestrator.constants import DeploymentConstants
from deploy_orchestrator.graph import DependencyGraph
from deploy_orchestrator.models import Address, AddressTable, Lookup, Reference
from deploy_orchestrator.plans import (
    FACILITATOR_NAME,
    PLANS,
    gauges_and_pools,
    get_plan_entry,
    governors,
    migration_config,
    velodrome_v2,
    wrapped_bribes,
)

OUTPUT_KEYS = {
    "artProxy",
    "distributor",
    "factoryRegistry",
    "forwarder",
    "gaugeFactory",
    "managedRewardsFactory",
    "minter",
    "poolFactory",
    "router",
    "VELO",
    "voter",
    "votingEscrow",
    "votingRewardsFactory",
}


def test_velodrome_units_cover_the_output_keys(constants: DeploymentConstants) -> None:
    plan = velodrome_v2(constants)
    non_library = {unit.name for unit in plan.units if not unit.is_library}
    assert OUTPUT_KEYS <= non_library
    assert plan.output_name == "VelodromeV2Output"


def test_velodrome_order_respects_construction_references(constants: DeploymentConstants) -> None:
    order = [unit.name for unit in DependencyGraph(velodrome_v2(constants).units).order()]

    def before(first: str, second: str) -> bool:
        return order.index(first) < order.index(second)

    assert before("implementation", "poolFactory")
    assert before("factoryRegistry", "votingEscrow")
    assert before("BalanceLogicLibrary", "votingEscrow")
    assert before("votingEscrow", "artProxy")
    assert before("distributor", "minter")
    assert before("voter", "router")
    assert order[0] == "VELO"


def test_velodrome_wiring_calls_reference_later_units(constants: DeploymentConstants) -> None:
    plan = velodrome_v2(constants)
    escrow_calls = {call.method: call.args for call in plan.unit("votingEscrow").post_deploy_calls}
    assert escrow_calls["setVoterAndDistributor"] == (Reference("voter"), Reference("distributor"))
    assert plan.unit("VELO").post_deploy_calls[0].args == (Reference("minter"),)

    whitelist, minter = plan.unit("voter").post_deploy_calls[0].args
    assert whitelist[-1] == Reference("VELO")
    assert whitelist[:-1] == [Address(token) for token in constants.whitelist_tokens]
    assert minter == Reference("minter")


def test_gauges_plan_pairs_each_pool_with_a_gauge(constants: DeploymentConstants) -> None:
    plan = gauges_and_pools(constants)
    assert plan.units == ()
    assert len(plan.calls) == 2 * (len(constants.pools_v2) + len(constants.pools_velo_v2))

    create, gauge = plan.calls[0], plan.calls[1]
    assert (create.target, create.method) == ("poolFactory", "createPool")
    assert gauge.args[1] == Lookup("poolFactory", "getPool", create.args)
    assert plan.calls[-2].args[0] == Reference("VELO")

    seed = AddressTable({name: Address("0x" + f"{idx:02x}" * 20) for idx, name in enumerate(("poolFactory", "voter", "VELO"))})
    DependencyGraph(plan.units, seed=seed).check_calls(plan.calls)


def test_governors_need_the_current_system(constants: DeploymentConstants) -> None:
    plan = governors(constants)
    assert [unit.name for unit in plan.units] == ["governor", "epochGovernor"]

    bare = constants.model_copy(update={"current": constants.current.model_copy(update={"minter": None})})
    with pytest.raises(ValueError, match="current.Minter"):
        governors(bare)


def test_migration_config_reads_legacy_addresses(constants: DeploymentConstants) -> None:
    config = migration_config(constants)
    assert config.legacy_token == Address(constants.v1.velo)
    assert config.drain_target == Address(constants.v1.sink_drain_gauge)
    assert config.escrow_amount == constants.escrow_amount
    assert config.facilitator.name == FACILITATOR_NAME
    assert Reference("sinkDrain") in config.facilitator.constructor_args

    without_gauge = constants.model_copy(update={"v1": constants.v1.model_copy(update={"sink_drain_gauge": None})})
    assert migration_config(without_gauge).drain_target is None


def test_wrapped_bribes_plan_wraps_each_bribe() -> None:
    bribes = [Address("0x" + "b1" * 20), Address("0x" + "b2" * 20)]
    plan = wrapped_bribes(Address("0x" + "0b" * 20), bribes)
    (factory,) = plan.units
    assert [call.args for call in factory.post_deploy_calls] == [(bribe,) for bribe in bribes]


def test_plan_registry() -> None:
    assert get_plan_entry("sink-migration").supports_migration
    assert not get_plan_entry("velodrome-v2").supports_migration
    assert set(get_plan_entry("gauges-and-pools").required_seeds) == {"poolFactory", "voter", "VELO"}
    with pytest.raises(ValueError, match="Unknown plan"):
        get_plan_entry("nope")
    assert "velodrome-v2" in PLANS
