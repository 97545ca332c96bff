from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from .environment import ExecutionEnvironment, ExecutionError
from .errors import ConstructionFailed
from .linker import LibraryLinker
from .models import AddressTable, DeployedUnit, UnitDescriptor, resolve_references

logger = logging.getLogger(__name__)


class DeploymentExecutor:
    """Walks an ordered unit list and constructs each unit exactly once.

    Units already present in the table (seeded, or journaled by an earlier
    attempt of the same run) are skipped. The first construction failure
    aborts the walk; nothing is retried.
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        table: AddressTable,
        linker: LibraryLinker,
        *,
        gas_ceiling: int,
        on_deployed: Callable[[DeployedUnit], None] | None = None,
    ) -> None:
        if gas_ceiling <= 0:
            raise ValueError(f"gas_ceiling must be > 0, got {gas_ceiling}")
        self.environment = environment
        self.table = table
        self.linker = linker
        self.gas_ceiling = gas_ceiling
        self.on_deployed = on_deployed

    def deploy(self, order: Sequence[UnitDescriptor]) -> AddressTable:
        for descriptor in order:
            if descriptor.name in self.table:
                logger.info("Skipping %s: already at %s", descriptor.name, self.table.address_of(descriptor.name))
                continue
            if descriptor.is_library:
                self.linker.link_addresses([descriptor.name])
                continue
            self.deploy_unit(descriptor)
        return self.table

    def deploy_unit(self, descriptor: UnitDescriptor) -> DeployedUnit:
        library_addresses = self.linker.link_addresses(ref.unit for ref in descriptor.libraries.values())
        slots = {slot: library_addresses[ref.unit] for slot, ref in descriptor.libraries.items()}
        args = list(resolve_references(descriptor.constructor_args, self.table, owner=descriptor.name))
        for dep in descriptor.depends_on:
            if dep not in self.table:
                raise ConstructionFailed(descriptor.name, descriptor.type_name, f"dependency {dep} has not been deployed")

        try:
            address = self.environment.construct(descriptor.type_name, slots, args, self.gas_ceiling)
        except ExecutionError as exc:
            logger.error("Construction of %s (%s) failed: %s", descriptor.name, descriptor.type_name, exc)
            raise ConstructionFailed(descriptor.name, descriptor.type_name, str(exc)) from exc

        unit = self.table.record(descriptor, address)
        logger.info("Deployed %s (%s) at %s (#%d)", descriptor.name, descriptor.type_name, address, unit.deployed_at)
        if self.on_deployed is not None:
            self.on_deployed(unit)
        return unit
