"""Sink migration: move a fixed legacy position into the new system.

The controller is a LangGraph ``StateGraph`` whose routing node reads the
persisted ``MigrationState`` and dispatches to the first incomplete phase.
Every phase commits its result before the next one may start, so a rerun
after any interruption resumes where the last committed phase left off.

Before a state-changing submission the phase is persisted as ``in_flight``.
If the environment reports a failure the marker is cleared again; if the
process dies instead, the marker survives and the next run refuses to
continue until an operator states whether the call landed
(``resolve_in_flight``). Phases from the lock creation onwards are not
idempotent against the legacy system, so they are never re-issued blindly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .environment import CallResult, ExecutionEnvironment, ExecutionError
from .errors import DeploymentError, MigrationPhaseFailed
from .executor import DeploymentExecutor
from .models import Address, MigrationPhase, MigrationState, PhaseRecord, UnitDescriptor
from .state_store import RunStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationConfig:
    """Inputs validated by the ``Init`` phase.

    ``facilitator`` is the bridging unit; its constructor arguments reference
    the new and legacy systems through the shared address table.
    """

    legacy_token: Address | None
    legacy_escrow: Address | None
    drain_target: Address | None
    escrow_amount: int
    lock_duration: int
    facilitator: UnitDescriptor


class MigrationGraphState(TypedDict, total=False):
    stop_after: str | None
    phase: str | None
    executed: list[str]


class MigrationController:
    def __init__(
        self,
        environment: ExecutionEnvironment,
        executor: DeploymentExecutor,
        store: RunStateStore,
        config: MigrationConfig,
        *,
        gas_ceiling: int,
        recursion_limit: int = 100,
    ) -> None:
        self.environment = environment
        self.executor = executor
        self.store = store
        self.config = config
        self.gas_ceiling = gas_ceiling
        self.recursion_limit = recursion_limit
        self.state: MigrationState | None = None
        self._phase_handlers = {
            MigrationPhase.INIT: self._init_phase,
            MigrationPhase.FACILITATOR_DEPLOYED: self._deploy_facilitator,
            MigrationPhase.ASSET_ESCROWED: self._escrow_asset,
            MigrationPhase.PERMANENT_LOCK_CREATED: self._create_permanent_lock,
            MigrationPhase.OWNERSHIP_REGISTERED: self._register_ownership,
            MigrationPhase.LEGACY_GAUGE_DRAINED: self._drain_legacy_gauge,
            MigrationPhase.FINALIZED: self._finalize,
        }
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(MigrationGraphState)
        graph.add_node("load", self._load_node)
        graph.add_node("route", self._route_node)
        for phase in MigrationPhase.ordered():
            graph.add_node(phase.value, self._phase_node(phase))
            graph.add_edge(phase.value, "route")

        graph.add_edge(START, "load")
        graph.add_edge("load", "route")
        return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, *, stop_after: MigrationPhase | None = None) -> MigrationState:
        """Execute pending phases, optionally stopping once ``stop_after`` is committed.

        Raises:
            MigrationPhaseFailed: Naming the phase that failed or is in flight.
        """
        result = self.graph.invoke(
            {"stop_after": stop_after.value if stop_after else None, "phase": None, "executed": []},
            config={"recursion_limit": self.recursion_limit},
        )
        logger.info("Migration %s at %s; phases run: %s", self.store.run_id, result.get("phase"), result.get("executed"))
        if self.state is None:
            raise RuntimeError(f"Migration {self.store.run_id} finished without a state")
        return self.state

    def resolve_in_flight(
        self,
        *,
        applied: bool,
        permanent_lock_id: int | None = None,
        facilitator_address: Address | None = None,
    ) -> MigrationState:
        """Record the operator-observed outcome of an interrupted submission.

        Args:
            applied: Whether the in-flight call took effect.
            permanent_lock_id: Observed lock id, overriding the dry-run value.
            facilitator_address: Address of the facilitator when its
                construction was the interrupted operation. Defaults to the
                address already recorded for the facilitator unit.

        Raises:
            ValueError: If nothing is in flight or required details are missing.
        """
        if not self.store.has_migration_state():
            raise ValueError(f"No migration state for run {self.store.run_id}")
        state = self.store.read_migration_state()
        phase = state.in_flight
        if phase is None:
            raise ValueError(f"Run {self.store.run_id} has no in-flight migration phase")

        if not applied:
            state.in_flight = None
            if phase == MigrationPhase.PERMANENT_LOCK_CREATED:
                state.permanent_lock_id = None
            state.updated_at = datetime.now(UTC)
            self.store.write_migration_state(state)
            logger.warning("Operator marked %s as not applied; it will be retried", phase.value)
            self.state = state
            return state

        if phase == MigrationPhase.FACILITATOR_DEPLOYED:
            if facilitator_address is None:
                facilitator_address = self._recorded_facilitator()
            if facilitator_address is None:
                raise ValueError("facilitator_address is required to resolve an applied facilitator deployment")
            state.facilitator_address = str(facilitator_address)
        elif phase == MigrationPhase.ASSET_ESCROWED:
            state.legacy_locked_amount = self.config.escrow_amount
        elif phase == MigrationPhase.PERMANENT_LOCK_CREATED:
            if permanent_lock_id is not None:
                state.permanent_lock_id = permanent_lock_id
            if state.permanent_lock_id is None:
                raise ValueError("permanent_lock_id is required to resolve an applied lock creation")
        elif phase == MigrationPhase.LEGACY_GAUGE_DRAINED:
            state.legacy_gauge_drained = True
        elif phase == MigrationPhase.FINALIZED:
            state.finalized = True

        state.advance(phase)
        self.store.write_migration_state(state)
        logger.warning("Operator marked %s as applied", phase.value)
        self.state = state
        return state

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _load_node(self, _state: MigrationGraphState) -> dict[str, Any]:
        if not self.store.has_migration_state():
            self.state = None
            return {"phase": None}

        state = self.store.read_migration_state()
        if state.in_flight is not None:
            raise MigrationPhaseFailed(
                state.in_flight.value,
                "a previous run was interrupted after submitting this phase; "
                "confirm its outcome with resolve_in_flight before resuming",
            )
        if state.facilitator_address and self.config.facilitator.name not in self.executor.table:
            self.executor.table.seed(self.config.facilitator.name, Address(state.facilitator_address))
        self.state = state
        logger.info("Resuming migration %s after phase %s", state.run_id, state.phase.value)
        return {"phase": state.phase.value}

    def _route_node(self, state: MigrationGraphState) -> Command[str]:
        if self.state is None:
            return Command(goto=MigrationPhase.INIT.value)

        stop_after = state.get("stop_after")
        if stop_after and self.state.is_complete(MigrationPhase(stop_after)):
            return Command(goto=END)

        upcoming = self.state.phase.successor
        if upcoming is None:
            return Command(goto=END)
        return Command(goto=upcoming.value)

    def _phase_node(self, phase: MigrationPhase) -> Callable[[MigrationGraphState], dict[str, Any]]:
        handler = self._phase_handlers[phase]

        def node(state: MigrationGraphState) -> dict[str, Any]:
            self._require_predecessor(phase)
            logger.info("Migration phase %s starting", phase.value)
            handler()
            logger.info("Migration phase %s committed", phase.value)
            return {"phase": phase.value, "executed": [*state.get("executed", []), phase.value]}

        return node

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _init_phase(self) -> None:
        phase = MigrationPhase.INIT
        if self.store.has_migration_state():
            raise MigrationPhaseFailed(phase.value, f"migration state already exists for run {self.store.run_id}")

        config = self.config
        for label, address in (
            ("legacy token", config.legacy_token),
            ("legacy escrow", config.legacy_escrow),
            ("drain target", config.drain_target),
        ):
            if address is None:
                raise MigrationPhaseFailed(phase.value, f"{label} address is not configured")
            if not self.environment.has_code(address):
                raise MigrationPhaseFailed(phase.value, f"{label} {address} is not reachable")
        if config.escrow_amount <= 0:
            raise MigrationPhaseFailed(phase.value, f"escrow amount must be > 0, got {config.escrow_amount}")
        if config.lock_duration <= 0:
            raise MigrationPhaseFailed(phase.value, f"lock duration must be > 0, got {config.lock_duration}")

        try:
            balance = int(self.environment.read(config.legacy_token, "balanceOf", [self.environment.sender]))
        except ExecutionError as exc:
            raise MigrationPhaseFailed(phase.value, f"balance check failed: {exc}") from exc
        if balance < config.escrow_amount:
            raise MigrationPhaseFailed(
                phase.value,
                f"sender {self.environment.sender} holds {balance}, needs {config.escrow_amount}",
            )

        now = datetime.now(UTC)
        self.state = MigrationState(
            run_id=self.store.run_id,
            phase=phase,
            updated_at=now,
            history=[PhaseRecord(phase=phase, completed_at=now)],
        )
        self.store.write_migration_state(self.state)

    def _deploy_facilitator(self) -> None:
        phase = MigrationPhase.FACILITATOR_DEPLOYED
        name = self.config.facilitator.name
        recorded = self._recorded_facilitator()
        if recorded is not None:
            if name not in self.executor.table:
                self.executor.table.seed(name, recorded)
            logger.info("Facilitator %s already deployed at %s", name, recorded)
            self.state.facilitator_address = str(recorded)
            self._commit(phase)
            return

        self._mark_in_flight(phase)
        try:
            unit = self.executor.deploy_unit(self.config.facilitator)
        except DeploymentError as exc:
            self._clear_in_flight()
            raise MigrationPhaseFailed(phase.value, exc.message) from exc
        self.state.facilitator_address = str(unit.address)
        self._commit(phase)

    def _escrow_asset(self) -> None:
        phase = MigrationPhase.ASSET_ESCROWED
        self._submit(phase, self.config.legacy_token, "approve", [self.config.legacy_escrow, self.config.escrow_amount])
        self.state.legacy_locked_amount = self.config.escrow_amount
        self._commit(phase)

    def _create_permanent_lock(self) -> None:
        phase = MigrationPhase.PERMANENT_LOCK_CREATED
        args = [self.state.legacy_locked_amount, self.config.lock_duration, self._facilitator()]
        try:
            expected = int(self.environment.read(self.config.legacy_escrow, "createLockFor", args))
        except ExecutionError as exc:
            raise MigrationPhaseFailed(phase.value, f"dry run of createLockFor failed: {exc}") from exc

        self.state.permanent_lock_id = expected
        result = self._submit(phase, self.config.legacy_escrow, "createLockFor", args)
        if result.value is not None and int(result.value) != expected:
            logger.warning("createLockFor returned lock %s, dry run predicted %s", result.value, expected)
            self.state.permanent_lock_id = int(result.value)
        self._commit(phase)

    def _register_ownership(self) -> None:
        phase = MigrationPhase.OWNERSHIP_REGISTERED
        self._submit(phase, self._facilitator(), "setOwnedTokenId", [self.state.permanent_lock_id])
        self._commit(phase)

    def _drain_legacy_gauge(self) -> None:
        phase = MigrationPhase.LEGACY_GAUGE_DRAINED
        self._submit(phase, self._facilitator(), "setupSinkDrain", [self.config.drain_target])
        self.state.legacy_gauge_drained = True
        self._commit(phase)

    def _finalize(self) -> None:
        phase = MigrationPhase.FINALIZED
        self._submit(phase, self._facilitator(), "renounceOwnership", [])
        self.state.finalized = True
        self._commit(phase)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_predecessor(self, phase: MigrationPhase) -> None:
        current = self.state.phase if self.state is not None else None
        if current != phase.predecessor:
            raise MigrationPhaseFailed(
                phase.value,
                f"persisted phase is {current.value if current else 'absent'}, "
                f"expected {phase.predecessor.value if phase.predecessor else 'absent'}",
            )

    def _facilitator(self) -> Address:
        return Address(self.state.facilitator_address)

    def _recorded_facilitator(self) -> Address | None:
        """Facilitator address from the address table or the progress journal."""
        name = self.config.facilitator.name
        if name in self.executor.table:
            return self.executor.table.address_of(name)
        if self.store.has_progress():
            for entry in self.store.read_progress().deployed:
                if entry.name == name:
                    return Address(entry.address)
        return None

    def _mark_in_flight(self, phase: MigrationPhase) -> None:
        self.state.in_flight = phase
        self.state.updated_at = datetime.now(UTC)
        self.store.write_migration_state(self.state)

    def _clear_in_flight(self) -> None:
        if self.state.in_flight == MigrationPhase.PERMANENT_LOCK_CREATED:
            self.state.permanent_lock_id = None
        self.state.in_flight = None
        self.state.updated_at = datetime.now(UTC)
        self.store.write_migration_state(self.state)

    def _submit(self, phase: MigrationPhase, target: Address, method: str, args: list[Any]) -> CallResult:
        self._mark_in_flight(phase)
        try:
            result = self.environment.call(target, method, args, self.gas_ceiling)
        except ExecutionError as exc:
            logger.error("Migration phase %s: %s failed: %s", phase.value, method, exc)
            self._clear_in_flight()
            raise MigrationPhaseFailed(phase.value, f"{method} failed: {exc}") from exc
        logger.info("Migration phase %s: %s submitted (tx %s)", phase.value, method, result.tx_id)
        return result

    def _commit(self, phase: MigrationPhase) -> None:
        self.state.advance(phase)
        self.store.write_migration_state(self.state)
