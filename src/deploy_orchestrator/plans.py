"""Declarative plans for every deployment the protocol performs.

Unit names double as keys of the output record, so a plan that runs
against an earlier deployment references those units by the names the
earlier plan wrote (``poolFactory``, ``voter``, ``votingEscrow``...).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .constants import DeploymentConstants
from .migration import MigrationConfig
from .models import (
    Address,
    ConfigurationCall,
    DeploymentPlan,
    Lookup,
    PostDeployCall,
    Reference,
    UnitDescriptor,
)

FACILITATOR_NAME = "sinkManager"

# Type names used when a seed address is registered in a simulated environment.
SEED_TYPE_NAMES: dict[str, str] = {
    "VELO": "Velo",
    "implementation": "Pool",
    "poolFactory": "PoolFactory",
    "votingRewardsFactory": "VotingRewardsFactory",
    "gaugeFactory": "GaugeFactory",
    "managedRewardsFactory": "ManagedRewardsFactory",
    "factoryRegistry": "FactoryRegistry",
    "forwarder": "VeloForwarder",
    "votingEscrow": "VotingEscrow",
    "artProxy": "VeArtProxy",
    "distributor": "RewardsDistributor",
    "voter": "Voter",
    "router": "Router",
    "minter": "Minter",
    "sinkDrain": "SinkDrain",
    FACILITATOR_NAME: "SinkManager",
}


def _call(method: str, *args) -> PostDeployCall:
    return PostDeployCall(method=method, args=tuple(args))


def _library(name: str) -> UnitDescriptor:
    return UnitDescriptor(name=name, type_name=name, is_library=True)


def _required(value: str | None, label: str) -> Address:
    if not value:
        raise ValueError(f"constants do not define {label}")
    return Address(value)


def velodrome_v2(constants: DeploymentConstants) -> DeploymentPlan:
    team = Address(constants.team)
    whitelist = [Address(token) for token in constants.whitelist_tokens]
    whitelist.append(Reference("VELO"))

    units = (
        UnitDescriptor("VELO", "Velo", post_deploy_calls=(_call("setMinter", Reference("minter")),)),
        UnitDescriptor("implementation", "Pool"),
        UnitDescriptor(
            "poolFactory",
            "PoolFactory",
            constructor_args=(Reference("implementation"),),
            post_deploy_calls=(
                _call("setFee", True, 1),
                _call("setFee", False, 1),
                _call("setPauser", team),
                _call("setFeeManager", Address(constants.fee_manager)),
                _call("setVoter", Reference("voter")),
            ),
        ),
        UnitDescriptor("votingRewardsFactory", "VotingRewardsFactory"),
        UnitDescriptor("gaugeFactory", "GaugeFactory"),
        UnitDescriptor("managedRewardsFactory", "ManagedRewardsFactory"),
        UnitDescriptor(
            "factoryRegistry",
            "FactoryRegistry",
            constructor_args=(
                Reference("poolFactory"),
                Reference("votingRewardsFactory"),
                Reference("gaugeFactory"),
                Reference("managedRewardsFactory"),
            ),
            post_deploy_calls=(_call("transferOwnership", team),),
        ),
        UnitDescriptor("forwarder", "VeloForwarder"),
        _library("BalanceLogicLibrary"),
        _library("DelegationLogicLibrary"),
        UnitDescriptor(
            "votingEscrow",
            "VotingEscrow",
            constructor_args=(Reference("forwarder"), Reference("VELO"), Reference("factoryRegistry")),
            libraries={
                "BalanceLogicLibrary": Reference("BalanceLogicLibrary"),
                "DelegationLogicLibrary": Reference("DelegationLogicLibrary"),
            },
            post_deploy_calls=(
                _call("setArtProxy", Reference("artProxy")),
                _call("setVoterAndDistributor", Reference("voter"), Reference("distributor")),
                _call("setTeam", team),
            ),
        ),
        _library("Trig"),
        _library("PerlinNoise"),
        UnitDescriptor(
            "artProxy",
            "VeArtProxy",
            constructor_args=(Reference("votingEscrow"),),
            libraries={"Trig": Reference("Trig"), "PerlinNoise": Reference("PerlinNoise")},
        ),
        UnitDescriptor(
            "distributor",
            "RewardsDistributor",
            constructor_args=(Reference("votingEscrow"),),
            post_deploy_calls=(_call("setMinter", Reference("minter")),),
        ),
        UnitDescriptor(
            "voter",
            "Voter",
            constructor_args=(Reference("forwarder"), Reference("votingEscrow"), Reference("factoryRegistry")),
            post_deploy_calls=(
                _call("initialize", whitelist, Reference("minter")),
                _call("setEmergencyCouncil", team),
                _call("setEpochGovernor", team),
                _call("setGovernor", team),
            ),
        ),
        UnitDescriptor(
            "router",
            "Router",
            constructor_args=(
                Reference("forwarder"),
                Reference("factoryRegistry"),
                Reference("poolFactory"),
                Reference("voter"),
                Address(constants.weth),
            ),
        ),
        UnitDescriptor(
            "minter",
            "Minter",
            constructor_args=(Reference("voter"), Reference("votingEscrow"), Reference("distributor")),
            post_deploy_calls=(_call("setTeam", team),),
        ),
    )
    return DeploymentPlan(name="velodrome-v2", output_name="VelodromeV2Output", units=units)


def gauges_and_pools(constants: DeploymentConstants) -> DeploymentPlan:
    """Create each configured pool on the deployed factory and a gauge for it."""
    calls: list[ConfigurationCall] = []
    pairs = [(Address(pool.tokenA), Address(pool.tokenB), pool.stable) for pool in constants.pools_v2]
    pairs.extend((Reference("VELO"), Address(pool.token), pool.stable) for pool in constants.pools_velo_v2)
    for token_a, token_b, stable in pairs:
        calls.append(ConfigurationCall("poolFactory", "createPool", (token_a, token_b, stable)))
        calls.append(
            ConfigurationCall(
                "voter",
                "createGauge",
                (Reference("poolFactory"), Lookup("poolFactory", "getPool", (token_a, token_b, stable))),
            )
        )
    return DeploymentPlan(name="gauges-and-pools", output_name="GaugesAndPoolsV2Output", units=(), calls=tuple(calls))


def governors(constants: DeploymentConstants) -> DeploymentPlan:
    escrow = _required(constants.current.voting_escrow, "current.VotingEscrow")
    units = (
        UnitDescriptor(
            "governor",
            "VeloGovernor",
            constructor_args=(escrow,),
            post_deploy_calls=(_call("setVetoer", Address(constants.team)),),
        ),
        UnitDescriptor(
            "epochGovernor",
            "EpochGovernor",
            constructor_args=(
                _required(constants.current.forwarder, "current.Forwarder"),
                escrow,
                _required(constants.current.minter, "current.Minter"),
            ),
        ),
    )
    return DeploymentPlan(name="governors", output_name="GovernorsOutput", units=units)


def sink_drain(constants: DeploymentConstants) -> DeploymentPlan:
    return DeploymentPlan(name="sink-drain", output_name="SinkDrainOutput", units=(UnitDescriptor("sinkDrain", "SinkDrain"),))


def sink_manager_descriptor(constants: DeploymentConstants) -> UnitDescriptor:
    """Facilitator bridging the legacy system into the deployed one."""
    return UnitDescriptor(
        FACILITATOR_NAME,
        "SinkManager",
        constructor_args=(
            Reference("forwarder"),
            Reference("sinkDrain"),
            _required(constants.v1.voter, "v1.Voter"),
            _required(constants.v1.velo, "v1.VELO"),
            Reference("VELO"),
            _required(constants.v1.voting_escrow, "v1.VotingEscrow"),
            Reference("votingEscrow"),
            _required(constants.v1.rewards_distributor, "v1.RewardsDistributor"),
        ),
    )


def sink_migration(constants: DeploymentConstants) -> DeploymentPlan:
    return DeploymentPlan(
        name="sink-migration",
        output_name="SinkMigrationOutput",
        units=(UnitDescriptor("sinkDrain", "SinkDrain"),),
    )


def migration_config(constants: DeploymentConstants) -> MigrationConfig:
    legacy = constants.v1
    return MigrationConfig(
        legacy_token=Address(legacy.velo) if legacy.velo else None,
        legacy_escrow=Address(legacy.voting_escrow) if legacy.voting_escrow else None,
        drain_target=Address(legacy.sink_drain_gauge) if legacy.sink_drain_gauge else None,
        escrow_amount=constants.escrow_amount,
        lock_duration=constants.lock_duration,
        facilitator=sink_manager_descriptor(constants),
    )


def managed_reward_factory(constants: DeploymentConstants) -> DeploymentPlan:
    return DeploymentPlan(
        name="managed-reward-factory",
        output_name="ManagedRewardFactoryOutput",
        units=(UnitDescriptor("managedRewardsFactory", "PatchedManagedRewardsFactory"),),
    )


def restricted_team_and_splitter(constants: DeploymentConstants) -> DeploymentPlan:
    units = (
        UnitDescriptor("restrictedTeam", "RestrictedTeam", constructor_args=(Reference("votingEscrow"),)),
        UnitDescriptor("splitter", "Splitter", constructor_args=(Reference("votingEscrow"),)),
    )
    return DeploymentPlan(name="restricted-team-and-splitter", output_name="RestrictedTeamAndSplitterOutput", units=units)


def wrapped_bribes(voter: Address, bribes: list[Address]) -> DeploymentPlan:
    """Wrap each legacy external bribe through a freshly deployed factory."""
    factory = UnitDescriptor(
        "wxBribeFactory",
        "WrappedExternalBribeFactory",
        constructor_args=(voter,),
        post_deploy_calls=tuple(_call("createBribe", bribe) for bribe in bribes),
    )
    return DeploymentPlan(name="wrapped-bribes", output_name="WrappedBribesOutput", units=(factory,))


@dataclass(frozen=True)
class PlanEntry:
    build: Callable[[DeploymentConstants], DeploymentPlan]
    required_seeds: tuple[str, ...] = ()
    supports_migration: bool = False


PLANS: dict[str, PlanEntry] = {
    "velodrome-v2": PlanEntry(velodrome_v2),
    "gauges-and-pools": PlanEntry(gauges_and_pools, required_seeds=("poolFactory", "voter", "VELO")),
    "governors": PlanEntry(governors),
    "sink-drain": PlanEntry(sink_drain),
    "sink-migration": PlanEntry(
        sink_migration,
        required_seeds=("forwarder", "VELO", "votingEscrow"),
        supports_migration=True,
    ),
    "managed-reward-factory": PlanEntry(managed_reward_factory),
    "restricted-team-and-splitter": PlanEntry(restricted_team_and_splitter, required_seeds=("votingEscrow",)),
}


def get_plan_entry(name: str) -> PlanEntry:
    try:
        return PLANS[name]
    except KeyError:
        raise ValueError(f"Unknown plan {name!r}; expected one of {', '.join(sorted(PLANS))}") from None
