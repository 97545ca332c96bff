from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping

from .environment import ExecutionEnvironment, ExecutionError
from .errors import ConstructionFailed, UnresolvedReference
from .models import Address, AddressTable, DeployedUnit, UnitDescriptor, resolve_references

logger = logging.getLogger(__name__)


class LibraryLinker:
    """Deploys each shared library at most once per run.

    Library addresses live in the same ``AddressTable`` as every other unit,
    so a library seeded from an earlier output or journaled by an interrupted
    run is reused instead of redeployed.
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        table: AddressTable,
        libraries: Mapping[str, UnitDescriptor],
        *,
        gas_ceiling: int,
        on_deployed: Callable[[DeployedUnit], None] | None = None,
    ) -> None:
        self.environment = environment
        self.table = table
        self.libraries = dict(libraries)
        self.gas_ceiling = gas_ceiling
        self.on_deployed = on_deployed
        self.deployments = 0

    def link_addresses(self, library_names: Iterable[str]) -> dict[str, Address]:
        linked: dict[str, Address] = {}
        for name in library_names:
            linked[name] = self._link(name, requested_by=name)
        return linked

    def _link(self, name: str, *, requested_by: str) -> Address:
        if name in self.table:
            return self.table.address_of(name)

        descriptor = self.libraries.get(name)
        if descriptor is None:
            raise UnresolvedReference(requested_by, name)

        nested = {slot: self._link(ref.unit, requested_by=name) for slot, ref in descriptor.libraries.items()}
        try:
            address = self.environment.construct(
                descriptor.type_name,
                nested,
                list(resolve_references(descriptor.constructor_args, self.table, owner=name)),
                self.gas_ceiling,
            )
        except ExecutionError as exc:
            raise ConstructionFailed(descriptor.name, descriptor.type_name, str(exc)) from exc

        unit = self.table.record(descriptor, address)
        self.deployments += 1
        logger.info("Linked library %s at %s (#%d)", name, address, unit.deployed_at)
        if self.on_deployed is not None:
            self.on_deployed(unit)
        return address
