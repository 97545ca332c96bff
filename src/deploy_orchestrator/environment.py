from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .models import Address

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Terminal failure reported by the execution environment."""


@dataclass(frozen=True)
class CallResult:
    tx_id: str
    value: Any = None


class ExecutionEnvironment(Protocol):
    """Narrow interface to whatever accepts deployments and calls.

    Implementations serialize operations from the single ``sender`` identity
    and raise ``ExecutionError`` for any terminal failure.
    """

    @property
    def sender(self) -> Address:
        ...

    def construct(
        self,
        type_name: str,
        library_addresses: Mapping[str, Address],
        constructor_args: list[Any],
        gas_ceiling: int,
    ) -> Address:
        ...

    def call(self, target: Address, method: str, args: list[Any], gas_ceiling: int) -> CallResult:
        ...

    def read(self, target: Address, method: str, args: list[Any]) -> Any:  # noqa: ANN401 - environment values are opaque.
        ...

    def has_code(self, address: Address) -> bool:
        ...


Behaviour = Callable[["SimulatedEnvironment", Address, list[Any]], Any]


@dataclass(frozen=True)
class ConstructionRecord:
    address: Address
    type_name: str
    library_addresses: dict[str, Address]
    constructor_args: list[Any]
    gas_ceiling: int


@dataclass(frozen=True)
class CallRecord:
    tx_id: str
    target: Address
    method: str
    args: list[Any]
    gas_ceiling: int


def _storage_key(method: str) -> str | None:
    if method.startswith("set") and len(method) > 3 and method[3].isupper():
        return method[3].lower() + method[4:]
    return None


class EnvironmentSnapshot(BaseModel):
    """Persisted form of a ``SimulatedEnvironment`` between processes."""

    sender: str
    nonce: int = 0
    tx_count: int = 0
    contracts: dict[str, str] = Field(default_factory=dict)
    storage: dict[str, Any] = Field(default_factory=dict)


def _encode_value(value: Any) -> Any:
    """Tag addresses, tuples and mappings so storage survives a JSON round-trip.

    Mappings are stored as key/value pairs because storage keys may be
    addresses, integers or tuples.
    """
    if isinstance(value, Address):
        return {"$address": value.value}
    if isinstance(value, tuple):
        return {"$tuple": [_encode_value(item) for item in value]}
    if isinstance(value, Mapping):
        return {"$map": [[_encode_value(key), _encode_value(item)] for key, item in value.items()]}
    if isinstance(value, list):
        return [_encode_value(item) for item in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise TypeError(f"Cannot snapshot simulated storage value of type {type(value).__name__}")


def _decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    if isinstance(value, dict):
        if "$address" in value:
            return Address(value["$address"])
        if "$tuple" in value:
            return tuple(_decode_value(item) for item in value["$tuple"])
        if "$map" in value:
            return {_decode_value(key): _decode_value(item) for key, item in value["$map"]}
        raise ValueError(f"Unrecognized snapshot value: {value!r}")
    return value


class SimulatedEnvironment:
    """Deterministic in-memory environment for rehearsals and tests.

    Addresses derive from ``sender`` and a nonce, so two environments with the
    same sender produce the same addresses for the same sequence of
    constructions. Calls named ``setX`` with one argument store ``x``, which
    ``read`` then returns; ``transferOwnership``/``renounceOwnership`` update
    ``owner``. Anything richer is registered per type and method with
    ``register_handler`` / ``register_reader``.
    """

    def __init__(self, sender: Address | None = None) -> None:
        self._sender = sender if sender is not None else Address("0x" + "d3" * 20)
        self._nonce = 0
        self._tx_count = 0
        self._types: dict[Address, str] = {}
        self._storage: dict[Address, dict[str, Any]] = defaultdict(dict)
        self._handlers: dict[tuple[str, str], Behaviour] = {}
        self._readers: dict[tuple[str, str], Behaviour] = {}
        self._construct_failures: dict[str, str] = {}
        self._call_failures: dict[tuple[str, Address | None], str] = {}
        self.constructions: list[ConstructionRecord] = []
        self.calls: list[CallRecord] = []

    @property
    def sender(self) -> Address:
        return self._sender

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def add_contract(self, type_name: str, address: Address | None = None) -> Address:
        """Register a pre-existing contract (e.g. part of a legacy system)."""
        resolved = address if address is not None else self._next_address()
        if resolved in self._types:
            raise ValueError(f"Address already has code: {resolved}")
        self._types[resolved] = type_name
        self._storage[resolved].setdefault("owner", self._sender)
        return resolved

    def register_handler(self, type_name: str, method: str, behaviour: Behaviour) -> None:
        self._handlers[(type_name, method)] = behaviour

    def register_reader(self, type_name: str, method: str, behaviour: Behaviour) -> None:
        self._readers[(type_name, method)] = behaviour

    def fail_construct(self, type_name: str, reason: str = "execution reverted") -> None:
        self._construct_failures[type_name] = reason

    def fail_call(self, method: str, *, target: Address | None = None, reason: str = "execution reverted") -> None:
        self._call_failures[(method, target)] = reason

    def clear_failures(self) -> None:
        self._construct_failures.clear()
        self._call_failures.clear()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def type_of(self, address: Address) -> str:
        if address not in self._types:
            raise ExecutionError(f"No code at {address}")
        return self._types[address]

    def storage(self, address: Address) -> dict[str, Any]:
        return self._storage[address]

    def handler(self, type_name: str, method: str) -> Behaviour | None:
        return self._handlers.get((type_name, method))

    def calls_to(self, method: str) -> list[CallRecord]:
        return [record for record in self.calls if record.method == method]

    def require_owner(self, target: Address, method: str) -> None:
        """Raise ``ExecutionError`` unless ``sender`` owns ``target``."""
        if self._storage[target].get("owner") != self._sender:
            raise ExecutionError(f"{method}: caller is not the owner of {target}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> EnvironmentSnapshot:
        """Contracts, storage and counters; behaviours and the call log are not included."""
        return EnvironmentSnapshot(
            sender=str(self._sender),
            nonce=self._nonce,
            tx_count=self._tx_count,
            contracts={str(address): type_name for address, type_name in self._types.items()},
            storage={str(address): _encode_value(values) for address, values in self._storage.items() if values},
        )

    @classmethod
    def from_snapshot(cls, snapshot: EnvironmentSnapshot) -> SimulatedEnvironment:
        environment = cls(Address(snapshot.sender))
        environment._nonce = snapshot.nonce
        environment._tx_count = snapshot.tx_count
        for address, type_name in snapshot.contracts.items():
            environment._types[Address(address)] = type_name
        for address, encoded in snapshot.storage.items():
            environment._storage[Address(address)] = _decode_value(encoded)
        logger.debug("Restored simulated environment with %d contracts", len(snapshot.contracts))
        return environment

    # ------------------------------------------------------------------
    # ExecutionEnvironment
    # ------------------------------------------------------------------

    def construct(
        self,
        type_name: str,
        library_addresses: Mapping[str, Address],
        constructor_args: list[Any],
        gas_ceiling: int,
    ) -> Address:
        if gas_ceiling <= 0:
            raise ExecutionError(f"gas ceiling must be positive, got {gas_ceiling}")
        if type_name in self._construct_failures:
            raise ExecutionError(self._construct_failures[type_name])
        for slot, library in library_addresses.items():
            if library not in self._types:
                raise ExecutionError(f"Library {slot} is not deployed at {library}")

        address = self.add_contract(type_name)
        self._storage[address]["constructorArgs"] = list(constructor_args)
        self.constructions.append(
            ConstructionRecord(
                address=address,
                type_name=type_name,
                library_addresses=dict(library_addresses),
                constructor_args=list(constructor_args),
                gas_ceiling=gas_ceiling,
            )
        )
        logger.debug("simulated construct %s at %s", type_name, address)
        return address

    def call(self, target: Address, method: str, args: list[Any], gas_ceiling: int) -> CallResult:
        if gas_ceiling <= 0:
            raise ExecutionError(f"gas ceiling must be positive, got {gas_ceiling}")
        type_name = self.type_of(target)
        for key in ((method, target), (method, None)):
            if key in self._call_failures:
                raise ExecutionError(self._call_failures[key])

        handler = self._handlers.get((type_name, method))
        if handler is not None:
            value = handler(self, target, list(args))
        else:
            value = self._default_call(target, method, list(args))

        self._tx_count += 1
        tx_id = "0x" + hashlib.sha256(f"{self._sender}:tx:{self._tx_count}".encode("utf-8")).hexdigest()
        self.calls.append(CallRecord(tx_id=tx_id, target=target, method=method, args=list(args), gas_ceiling=gas_ceiling))
        logger.debug("simulated call %s.%s(%s)", type_name, method, args)
        return CallResult(tx_id=tx_id, value=value)

    def read(self, target: Address, method: str, args: list[Any]) -> Any:  # noqa: ANN401 - environment values are opaque.
        type_name = self.type_of(target)
        reader = self._readers.get((type_name, method))
        if reader is not None:
            return reader(self, target, list(args))
        storage = self._storage[target]
        if not args and method in storage:
            return storage[method]
        raise ExecutionError(f"{type_name}.{method} is not readable at {target}")

    def has_code(self, address: Address) -> bool:
        return address in self._types

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_address(self) -> Address:
        # Registered contracts may already occupy derived addresses.
        while True:
            self._nonce += 1
            digest = hashlib.sha256(f"{self._sender}:{self._nonce}".encode("utf-8")).hexdigest()
            address = Address("0x" + digest[:40])
            if address not in self._types:
                return address

    def _default_call(self, target: Address, method: str, args: list[Any]) -> None:
        storage = self._storage[target]
        if method == "transferOwnership" and len(args) == 1:
            self.require_owner(target, method)
            storage["owner"] = args[0]
            return None
        if method == "renounceOwnership" and not args:
            self.require_owner(target, method)
            storage["owner"] = None
            return None
        key = _storage_key(method)
        if key is not None and len(args) == 1:
            storage[key] = args[0]
            return None
        storage.setdefault("invocations", []).append((method, list(args)))
        return None


def seed_legacy_system(
    environment: SimulatedEnvironment,
    *,
    token: Address | None = None,
    escrow: Address | None = None,
    drain_target: Address | None = None,
    holder_balance: int = 10**18,
) -> dict[str, Address]:
    """Install a minimal legacy token/escrow/gauge system and facilitator behaviour.

    Returns the legacy addresses keyed ``VELO``, ``VotingEscrow`` and
    ``SinkDrainGauge``.
    """
    token = environment.add_contract("LegacyVelo", token)
    escrow = environment.add_contract("LegacyVotingEscrow", escrow)
    drain_target = environment.add_contract("LegacyGauge", drain_target)

    environment.storage(token)["balances"] = {environment.sender: holder_balance}
    environment.storage(token)["allowances"] = {}
    environment.storage(escrow)["nextTokenId"] = 1
    environment.storage(escrow)["locks"] = {}
    install_legacy_behaviour(environment, token=token, escrow=escrow)
    return {"VELO": token, "VotingEscrow": escrow, "SinkDrainGauge": drain_target}


def install_legacy_behaviour(environment: SimulatedEnvironment, *, token: Address, escrow: Address) -> None:
    """Register the legacy token, escrow and facilitator behaviours.

    Behaviours are not part of a snapshot, so a restored environment calls
    this directly instead of seeding the legacy contracts again.
    """

    def balance_of(env: SimulatedEnvironment, target: Address, args: list[Any]) -> int:
        return int(env.storage(target)["balances"].get(args[0], 0))

    def approve(env: SimulatedEnvironment, target: Address, args: list[Any]) -> bool:
        spender, amount = args
        env.storage(target)["allowances"][(env.sender, spender)] = int(amount)
        return True

    def allowance(env: SimulatedEnvironment, target: Address, args: list[Any]) -> int:
        owner, spender = args
        return int(env.storage(target)["allowances"].get((owner, spender), 0))

    def next_lock_id(env: SimulatedEnvironment, target: Address, args: list[Any]) -> int:
        return int(env.storage(target)["nextTokenId"])

    def create_lock_for(env: SimulatedEnvironment, target: Address, args: list[Any]) -> int:
        amount, duration, owner = args
        token_storage = env.storage(token)
        key = (env.sender, target)
        if token_storage["allowances"].get(key, 0) < amount:
            raise ExecutionError("createLockFor: insufficient allowance")
        if token_storage["balances"].get(env.sender, 0) < amount:
            raise ExecutionError("createLockFor: insufficient balance")
        token_storage["allowances"][key] -= amount
        token_storage["balances"][env.sender] -= amount
        escrow_storage = env.storage(target)
        lock_id = int(escrow_storage["nextTokenId"])
        escrow_storage["locks"][lock_id] = {"owner": owner, "amount": int(amount), "duration": int(duration)}
        escrow_storage["nextTokenId"] = lock_id + 1
        return lock_id

    def owner_of(env: SimulatedEnvironment, target: Address, args: list[Any]) -> Address:
        lock = env.storage(target)["locks"].get(int(args[0]))
        if lock is None:
            raise ExecutionError(f"ownerOf: unknown lock {args[0]}")
        return lock["owner"]

    def set_owned_token_id(env: SimulatedEnvironment, target: Address, args: list[Any]) -> None:
        env.require_owner(target, "setOwnedTokenId")
        if owner_of(env, escrow, args) != target:
            raise ExecutionError("setOwnedTokenId: lock is not owned by the facilitator")
        if env.storage(target).get("ownedTokenId") is not None:
            raise ExecutionError("setOwnedTokenId: already set")
        env.storage(target)["ownedTokenId"] = int(args[0])

    def setup_sink_drain(env: SimulatedEnvironment, target: Address, args: list[Any]) -> None:
        env.require_owner(target, "setupSinkDrain")
        if env.storage(target).get("ownedTokenId") is None:
            raise ExecutionError("setupSinkDrain: owned token id not set")
        if not env.has_code(args[0]):
            raise ExecutionError(f"setupSinkDrain: no gauge at {args[0]}")
        env.storage(target)["gauge"] = args[0]
        env.storage(args[0])["sinkDrainDeposited"] = True

    environment.register_reader("LegacyVelo", "balanceOf", balance_of)
    environment.register_reader("LegacyVelo", "allowance", allowance)
    environment.register_handler("LegacyVelo", "approve", approve)
    environment.register_reader("LegacyVotingEscrow", "createLockFor", next_lock_id)
    environment.register_handler("LegacyVotingEscrow", "createLockFor", create_lock_for)
    environment.register_reader("LegacyVotingEscrow", "ownerOf", owner_of)
    environment.register_handler("SinkManager", "setOwnedTokenId", set_owned_token_id)
    environment.register_handler("SinkManager", "setupSinkDrain", setup_sink_drain)


def install_pool_factory_behaviour(environment: SimulatedEnvironment, type_name: str = "PoolFactory") -> None:
    """Make ``createPool``/``getPool`` on ``type_name`` construct and return pools."""

    def pool_key(args: list[Any]) -> tuple[str, str, bool]:
        token_a, token_b, stable = args
        first, second = sorted((str(token_a), str(token_b)))
        return first, second, bool(stable)

    def create_pool(env: SimulatedEnvironment, target: Address, args: list[Any]) -> Address:
        pools = env.storage(target).setdefault("pools", {})
        key = pool_key(args)
        if key in pools:
            raise ExecutionError(f"createPool: pool exists for {key}")
        if key[0] == key[1]:
            raise ExecutionError("createPool: identical tokens")
        pools[key] = env.add_contract("Pool")
        return pools[key]

    def get_pool(env: SimulatedEnvironment, target: Address, args: list[Any]) -> Address:
        pools = env.storage(target).get("pools", {})
        key = pool_key(args)
        if key not in pools:
            raise ExecutionError(f"getPool: no pool for {key}")
        return pools[key]

    environment.register_handler(type_name, "createPool", create_pool)
    environment.register_reader(type_name, "getPool", get_pool)
