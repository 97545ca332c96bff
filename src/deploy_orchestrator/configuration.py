from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from .environment import ExecutionEnvironment, ExecutionError
from .errors import ConfigurationCallFailed
from .models import AddressTable, ConfigurationCall, Lookup, UnitDescriptor, resolve_references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexedCall:
    index: int
    call: ConfigurationCall


def flatten_calls(order: Sequence[UnitDescriptor], extra_calls: Iterable[ConfigurationCall] = ()) -> list[IndexedCall]:
    """Number every configuration call from 1: unit calls in deployment order, then standalone calls."""
    calls: list[ConfigurationCall] = []
    for descriptor in order:
        calls.extend(descriptor.configuration_calls())
    calls.extend(extra_calls)
    return [IndexedCall(index=idx, call=call) for idx, call in enumerate(calls, start=1)]


class ConfigurationStage:
    """Issues post-deployment calls strictly in index order.

    Calls are independent: a failure stops the stage and leaves every earlier
    call applied. Indices listed in ``completed`` were applied by an earlier
    attempt of the same run and are not submitted again.
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        table: AddressTable,
        *,
        gas_ceiling: int,
        completed: Iterable[int] = (),
        on_completed: Callable[[int], None] | None = None,
        on_failed: Callable[[int], None] | None = None,
    ) -> None:
        if gas_ceiling <= 0:
            raise ValueError(f"gas_ceiling must be > 0, got {gas_ceiling}")
        self.environment = environment
        self.table = table
        self.gas_ceiling = gas_ceiling
        self.completed = set(completed)
        self.on_completed = on_completed
        self.on_failed = on_failed

    def run(self, order: Sequence[UnitDescriptor], extra_calls: Iterable[ConfigurationCall] = ()) -> list[int]:
        """Submit every pending call; return the indices submitted by this invocation.

        Raises:
            ConfigurationCallFailed: On the first call the environment rejects.
        """
        submitted: list[int] = []
        indexed = flatten_calls(order, extra_calls)
        logger.info("Configuration stage: %d calls, %d already applied", len(indexed), len(self.completed))
        for item in indexed:
            if item.index in self.completed:
                logger.debug("Skipping configuration call #%d %s.%s", item.index, item.call.target, item.call.method)
                continue
            self._submit(item)
            submitted.append(item.index)
        return submitted

    def _submit(self, item: IndexedCall) -> None:
        call = item.call
        try:
            target = self.table.address_of(call.target)
            args = list(resolve_references(call.args, self.table, owner=call.target, lookup=self._read_lookup))
            result = self.environment.call(target, call.method, args, self.gas_ceiling)
        except ExecutionError as exc:
            logger.error("Configuration call #%d %s.%s failed: %s", item.index, call.target, call.method, exc)
            if self.on_failed is not None:
                self.on_failed(item.index)
            raise ConfigurationCallFailed(item.index, call.target, call.method, str(exc)) from exc

        self.completed.add(item.index)
        logger.info("Configuration call #%d %s.%s applied (tx %s)", item.index, call.target, call.method, result.tx_id)
        if self.on_completed is not None:
            self.on_completed(item.index)

    def _read_lookup(self, lookup: Lookup) -> Any:
        target = self.table.address_of(lookup.unit)
        args = list(resolve_references(lookup.args, self.table, owner=lookup.unit, lookup=self._read_lookup))
        return self.environment.read(target, lookup.method, args)
