from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence

from .errors import CycleDetected, DuplicateUnit, UnresolvedReference
from .models import AddressTable, ConfigurationCall, UnitDescriptor, iter_referenced_units

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Execution order over a set of unit descriptors.

    Edges run from a unit to every unit named by its constructor arguments,
    library slots and explicit ``depends_on``. Names present in the seed table
    resolve without an edge requirement. Among units whose dependencies are
    all placed, the earliest-declared goes first.
    """

    def __init__(self, units: Sequence[UnitDescriptor], seed: AddressTable | None = None) -> None:
        self.seed = seed if seed is not None else AddressTable()
        self._units: dict[str, UnitDescriptor] = {}
        self._declaration: dict[str, int] = {}
        for idx, unit in enumerate(units):
            if unit.name in self._units:
                raise DuplicateUnit(unit.name)
            self._units[unit.name] = unit
            self._declaration[unit.name] = idx

        self._edges: dict[str, list[str]] = {}
        for unit in units:
            deps: list[str] = []
            for ref in unit.construction_references():
                self._check_resolvable(unit.name, ref)
                if ref in self._units:
                    deps.append(ref)
            self._edges[unit.name] = deps

    def _check_resolvable(self, owner: str, ref: str) -> None:
        if ref not in self._units and ref not in self.seed:
            raise UnresolvedReference(owner, ref)

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def dependencies_of(self, name: str) -> list[str]:
        return list(self._edges[name])

    def check_calls(self, calls: Iterable[ConfigurationCall], *, owner: str | None = None) -> None:
        """Validate references in configuration calls; they add no ordering edges.

        ``owner`` names the unit or plan declaring the calls in any error.
        """
        for call in calls:
            self._check_resolvable(owner or f"call {call.method}", call.target)
            for ref in iter_referenced_units(call.args):
                self._check_resolvable(owner or call.target, ref)

    def order(self) -> list[UnitDescriptor]:
        indegree = {name: len(set(deps)) for name, deps in self._edges.items()}
        dependents: dict[str, list[str]] = defaultdict(list)
        for name, deps in self._edges.items():
            for dep in set(deps):
                dependents[dep].append(name)

        ready = [(self._declaration[name], name) for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[UnitDescriptor] = []
        while ready:
            _, current = heapq.heappop(ready)
            ordered.append(self._units[current])
            for nxt in dependents[current]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, (self._declaration[nxt], nxt))

        if len(ordered) != len(self._units):
            remaining = {name for name, degree in indegree.items() if degree > 0}
            raise CycleDetected(self._find_cycle(remaining))

        logger.debug("execution order: %s", [unit.name for unit in ordered])
        return ordered

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        # Every node left after Kahn's pass lies on or downstream of a cycle,
        # so walking dependency edges inside ``remaining`` must revisit a node.
        start = min(remaining, key=lambda name: self._declaration[name])
        path: list[str] = []
        position: dict[str, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = next(
                dep
                for dep in sorted(self._edges[current], key=lambda name: self._declaration[name])
                if dep in remaining
            )
        return path[position[current]:]
