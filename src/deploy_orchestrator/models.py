from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .errors import UnresolvedReference


@dataclass(frozen=True)
class Address:
    """Opaque identifier assigned by the execution environment.

    Only equality and hashing are meaningful; ``str()`` yields the
    environment's own text form for persistence.
    """

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValueError("Address value must be a non-empty string")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Reference:
    """Placeholder for the eventual address of another unit."""

    unit: str


@dataclass(frozen=True)
class Lookup:
    """Value read from ``unit`` through the environment at configuration time."""

    unit: str
    method: str
    args: tuple[Any, ...] = ()


def iter_referenced_units(value: Any) -> Iterator[str]:
    """Yield every unit name a (possibly nested) argument value points at."""
    if isinstance(value, Reference):
        yield value.unit
    elif isinstance(value, Lookup):
        yield value.unit
        yield from iter_referenced_units(value.args)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_referenced_units(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_referenced_units(item)


def resolve_references(
    value: Any,
    table: AddressTable,
    *,
    owner: str,
    lookup: Callable[[Lookup], Any] | None = None,
) -> Any:
    """Replace every ``Reference`` (and ``Lookup`` when a reader is given) with a real value.

    Containers keep their shape; literals pass through untouched.

    Raises:
        UnresolvedReference: If a reference names a unit missing from ``table``.
        ValueError: If a ``Lookup`` appears and no ``lookup`` reader was supplied.
    """
    if isinstance(value, Reference):
        if value.unit not in table:
            raise UnresolvedReference(owner, value.unit)
        return table.address_of(value.unit)
    if isinstance(value, Lookup):
        if lookup is None:
            raise ValueError(f"{owner}: Lookup({value.unit}.{value.method}) is only valid in configuration calls")
        return lookup(value)
    if isinstance(value, Mapping):
        return {key: resolve_references(item, table, owner=owner, lookup=lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_references(item, table, owner=owner, lookup=lookup) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_references(item, table, owner=owner, lookup=lookup) for item in value)
    return value


def contains_lookup(value: Any) -> bool:
    if isinstance(value, Lookup):
        return True
    if isinstance(value, Mapping):
        return any(contains_lookup(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_lookup(item) for item in value)
    return False


@dataclass(frozen=True)
class PostDeployCall:
    method: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class ConfigurationCall:
    """One configuration call against the address of ``target``."""

    target: str
    method: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class UnitDescriptor:
    name: str
    type_name: str
    constructor_args: tuple[Any, ...] = ()
    libraries: Mapping[str, Reference] = field(default_factory=dict)
    post_deploy_calls: tuple[PostDeployCall, ...] = ()
    depends_on: tuple[str, ...] = ()
    is_library: bool = False

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("UnitDescriptor.name must be non-empty")
        if not self.type_name.strip():
            raise ValueError(f"UnitDescriptor {self.name}: type_name must be non-empty")
        if contains_lookup(self.constructor_args):
            raise ValueError(f"UnitDescriptor {self.name}: constructor arguments cannot contain Lookup values")
        for slot, ref in self.libraries.items():
            if not isinstance(ref, Reference):
                raise ValueError(f"UnitDescriptor {self.name}: library slot {slot} must hold a Reference")

    def construction_references(self) -> list[str]:
        """Unit names this descriptor needs before it can be constructed."""
        names = list(iter_referenced_units(self.constructor_args))
        names.extend(ref.unit for ref in self.libraries.values())
        names.extend(self.depends_on)
        return list(dict.fromkeys(names))

    def configuration_calls(self) -> list[ConfigurationCall]:
        return [ConfigurationCall(target=self.name, method=call.method, args=call.args) for call in self.post_deploy_calls]


@dataclass(frozen=True)
class DeploymentPlan:
    name: str
    output_name: str
    units: tuple[UnitDescriptor, ...]
    calls: tuple[ConfigurationCall, ...] = ()

    def unit(self, name: str) -> UnitDescriptor:
        for descriptor in self.units:
            if descriptor.name == name:
                return descriptor
        raise KeyError(f"Unknown unit in plan {self.name}: {name}")


@dataclass(frozen=True)
class DeployedUnit:
    descriptor: UnitDescriptor
    address: Address
    deployed_at: int

    @property
    def name(self) -> str:
        return self.descriptor.name


class AddressTable:
    """Append-only mapping from unit name to address.

    Seed entries come from outside the run (external systems or an earlier
    output record) and carry no sequence number. Entries recorded during the
    run are numbered from 1 in the order they were deployed.
    """

    def __init__(self, seed: Mapping[str, Address] | None = None) -> None:
        self._seed: dict[str, Address] = {}
        self._units: dict[str, DeployedUnit] = {}
        for name, address in (seed or {}).items():
            self.seed(name, address)

    def seed(self, name: str, address: Address) -> None:
        if name in self:
            raise ValueError(f"AddressTable already has an entry for {name}")
        self._seed[name] = address

    def record(self, descriptor: UnitDescriptor, address: Address) -> DeployedUnit:
        return self.restore(descriptor, address, self.next_sequence)

    def restore(self, descriptor: UnitDescriptor, address: Address, deployed_at: int) -> DeployedUnit:
        if descriptor.name in self:
            raise ValueError(f"AddressTable already has an entry for {descriptor.name}")
        if deployed_at < self.next_sequence:
            raise ValueError(
                f"deployed_at {deployed_at} for {descriptor.name} would break append order "
                f"(next sequence is {self.next_sequence})"
            )
        unit = DeployedUnit(descriptor=descriptor, address=address, deployed_at=deployed_at)
        self._units[descriptor.name] = unit
        return unit

    @property
    def next_sequence(self) -> int:
        if not self._units:
            return 1
        return max(unit.deployed_at for unit in self._units.values()) + 1

    def __contains__(self, name: object) -> bool:
        return name in self._seed or name in self._units

    def __len__(self) -> int:
        return len(self._seed) + len(self._units)

    def address_of(self, name: str) -> Address:
        if name in self._units:
            return self._units[name].address
        if name in self._seed:
            return self._seed[name]
        raise KeyError(name)

    def get(self, name: str) -> DeployedUnit | None:
        return self._units.get(name)

    def deployed_at(self, name: str) -> int:
        """Sequence number of ``name``; seed entries report 0."""
        if name in self._units:
            return self._units[name].deployed_at
        if name in self._seed:
            return 0
        raise KeyError(name)

    def deployed_units(self) -> list[DeployedUnit]:
        return sorted(self._units.values(), key=lambda unit: unit.deployed_at)

    def is_seed(self, name: str) -> bool:
        return name in self._seed

    def as_mapping(self) -> dict[str, Address]:
        mapping = dict(self._seed)
        mapping.update({unit.name: unit.address for unit in self.deployed_units()})
        return mapping

    def unit_addresses(self) -> dict[str, str]:
        rendered = {name: str(address) for name, address in self._seed.items()}
        for unit in self.deployed_units():
            if not unit.descriptor.is_library:
                rendered[unit.name] = str(unit.address)
        return rendered

    def library_addresses(self) -> dict[str, str]:
        return {unit.name: str(unit.address) for unit in self.deployed_units() if unit.descriptor.is_library}


class MigrationPhase(str, Enum):
    INIT = "Init"
    FACILITATOR_DEPLOYED = "FacilitatorDeployed"
    ASSET_ESCROWED = "AssetEscrowed"
    PERMANENT_LOCK_CREATED = "PermanentLockCreated"
    OWNERSHIP_REGISTERED = "OwnershipRegistered"
    LEGACY_GAUGE_DRAINED = "LegacyGaugeDrained"
    FINALIZED = "Finalized"

    @classmethod
    def ordered(cls) -> list[MigrationPhase]:
        return list(cls)

    @property
    def position(self) -> int:
        return MigrationPhase.ordered().index(self)

    @property
    def successor(self) -> MigrationPhase | None:
        phases = MigrationPhase.ordered()
        idx = phases.index(self)
        return phases[idx + 1] if idx + 1 < len(phases) else None

    @property
    def predecessor(self) -> MigrationPhase | None:
        phases = MigrationPhase.ordered()
        idx = phases.index(self)
        return phases[idx - 1] if idx > 0 else None


class PhaseRecord(BaseModel):
    phase: MigrationPhase
    completed_at: datetime


class MigrationState(BaseModel):
    run_id: str
    phase: MigrationPhase = MigrationPhase.INIT
    legacy_locked_amount: int = 0
    permanent_lock_id: int | None = None
    facilitator_address: str | None = None
    legacy_gauge_drained: bool = False
    finalized: bool = False
    in_flight: MigrationPhase | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    history: list[PhaseRecord] = Field(default_factory=list)

    def is_complete(self, phase: MigrationPhase) -> bool:
        return self.phase.position >= phase.position

    def advance(self, to: MigrationPhase) -> None:
        if self.phase.successor != to:
            raise ValueError(f"Illegal migration transition: {self.phase.value} -> {to.value}")
        now = datetime.now(UTC)
        self.phase = to
        self.in_flight = None
        self.updated_at = now
        self.history.append(PhaseRecord(phase=to, completed_at=now))


class DeployedRecord(BaseModel):
    name: str
    type_name: str
    address: str
    deployed_at: int
    library: bool = False


class DeploymentProgress(BaseModel):
    run_id: str
    plan: str
    plan_fingerprint: str
    deployed: list[DeployedRecord] = Field(default_factory=list)
    completed_calls: list[int] = Field(default_factory=list)
    failed_call: int | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def record_unit(self, unit: DeployedUnit) -> None:
        self.deployed.append(
            DeployedRecord(
                name=unit.name,
                type_name=unit.descriptor.type_name,
                address=str(unit.address),
                deployed_at=unit.deployed_at,
                library=unit.descriptor.is_library,
            )
        )
        self.updated_at = datetime.now(UTC)

    def record_call(self, index: int) -> None:
        if index not in self.completed_calls:
            self.completed_calls.append(index)
        self.failed_call = None
        self.updated_at = datetime.now(UTC)


class OutputRecord(BaseModel):
    plan: str
    run_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    addresses: dict[str, str] = Field(default_factory=dict)
    libraries: dict[str, str] = Field(default_factory=dict)
    migration: MigrationState | None = None
    derived: dict[str, str | int] = Field(default_factory=dict)

    def address_table(self) -> AddressTable:
        seed = {name: Address(value) for name, value in self.addresses.items()}
        for name, value in self.libraries.items():
            seed.setdefault(name, Address(value))
        return AddressTable(seed)
