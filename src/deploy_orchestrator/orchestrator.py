from __future__ import annotations

import logging
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .canonical import plan_fingerprint
from .configuration import ConfigurationStage
from .environment import ExecutionEnvironment
from .executor import DeploymentExecutor
from .graph import DependencyGraph
from .linker import LibraryLinker
from .migration import MigrationConfig, MigrationController
from .models import (
    Address,
    AddressTable,
    DeployedUnit,
    DeploymentPlan,
    DeploymentProgress,
    MigrationPhase,
    MigrationState,
    OutputRecord,
    UnitDescriptor,
)
from .output_store import OutputStore
from .settings import RuntimeSettings
from .state_store import RunStateStore

logger = logging.getLogger(__name__)


class OrchestrationState(TypedDict, total=False):
    run_id: str
    order: list[str]
    submitted_calls: list[int]
    migration_phase: str | None
    output_path: str | None


class DeploymentOrchestrator:
    """End-to-end run: plan, deploy, configure, optionally migrate, write output.

    Each stage journals its side effects in the run's ``RunStateStore`` so a
    rerun with the same run id skips units already deployed and calls already
    applied. Stage errors propagate unchanged.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        environment: ExecutionEnvironment,
        *,
        store: RunStateStore,
        output_store: OutputStore,
        settings: RuntimeSettings | None = None,
        seed: AddressTable | None = None,
        migration: MigrationConfig | None = None,
        migrate_until: MigrationPhase | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.plan = plan
        self.environment = environment
        self.store = store
        self.output_store = output_store
        self.table = seed if seed is not None else AddressTable()
        self.migration = migration
        self.migrate_until = migrate_until

        self.order: list[UnitDescriptor] = []
        self.progress: DeploymentProgress | None = None
        self.executor: DeploymentExecutor | None = None
        self.migration_state: MigrationState | None = None
        self.record: OutputRecord | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestrationState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("deploy", self._deploy_node)
        graph.add_node("configure", self._configure_node)
        graph.add_node("migrate", self._migrate_node)
        graph.add_node("write_output", self._write_output_node)

        graph.add_edge(START, "plan")
        graph.add_edge("plan", "deploy")
        graph.add_edge("deploy", "configure")
        graph.add_conditional_edges(
            "configure",
            self._after_configure_route,
            {
                "migrate": "migrate",
                "write_output": "write_output",
            },
        )
        graph.add_edge("migrate", "write_output")
        graph.add_edge("write_output", END)
        return graph

    @property
    def units(self) -> tuple[UnitDescriptor, ...]:
        """Plan units plus the migration facilitator, which the controller deploys itself."""
        if self.migration is None:
            return self.plan.units
        return (*self.plan.units, self.migration.facilitator)

    def run(self) -> OutputRecord:
        result = self.graph.invoke(
            {"run_id": self.store.run_id, "order": [], "submitted_calls": [], "migration_phase": None, "output_path": None},
            config={"recursion_limit": self.settings.recursion_limit},
        )
        logger.info(
            "Run %s finished: %d calls submitted, output %s",
            self.store.run_id,
            len(result.get("submitted_calls", [])),
            result.get("output_path") or "not written",
        )
        if self.record is None:
            raise RuntimeError(f"Run {self.store.run_id} finished without an output record")
        return self.record

    def resolve_in_flight(
        self,
        *,
        applied: bool,
        permanent_lock_id: int | None = None,
        facilitator_address: Address | None = None,
    ) -> MigrationState:
        """Settle an interrupted migration submission before the next ``run``."""
        if self.migration is None:
            raise ValueError(f"Plan {self.plan.name} was not configured with a migration")
        self.migration_state = self._migration_controller().resolve_in_flight(
            applied=applied,
            permanent_lock_id=permanent_lock_id,
            facilitator_address=facilitator_address,
        )
        return self.migration_state

    def _executor(self) -> DeploymentExecutor:
        if self.executor is None:
            libraries = {unit.name: unit for unit in self.units if unit.is_library}
            linker = LibraryLinker(
                self.environment,
                self.table,
                libraries,
                gas_ceiling=self.settings.gas_ceiling,
                on_deployed=self._journal_unit,
            )
            self.executor = DeploymentExecutor(
                self.environment,
                self.table,
                linker,
                gas_ceiling=self.settings.gas_ceiling,
                on_deployed=self._journal_unit,
            )
        return self.executor

    def _migration_controller(self) -> MigrationController:
        return MigrationController(
            self.environment,
            self._executor(),
            self.store,
            self.migration,
            gas_ceiling=self.settings.gas_ceiling,
            recursion_limit=self.settings.recursion_limit,
        )

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _plan_node(self, _state: OrchestrationState) -> dict[str, Any]:
        graph = DependencyGraph(self.units, seed=self.table)
        for unit in self.units:
            graph.check_calls(unit.configuration_calls(), owner=unit.name)
        graph.check_calls(self.plan.calls, owner=self.plan.name)
        facilitator = self.migration.facilitator.name if self.migration is not None else None
        self.order = [unit for unit in graph.order() if unit.name != facilitator]

        effective = DeploymentPlan(
            name=self.plan.name,
            output_name=self.plan.output_name,
            units=self.units,
            calls=self.plan.calls,
        )
        self.progress = self.store.load_or_create_progress(self.plan.name, plan_fingerprint(effective))
        self._restore_journal(self.progress)
        logger.info("Plan %s: %d units in order, %d seeded", self.plan.name, len(self.order), len(self.table))
        return {"order": [unit.name for unit in self.order]}

    def _deploy_node(self, _state: OrchestrationState) -> dict[str, Any]:
        self._executor().deploy(self.order)
        return {}

    def _configure_node(self, _state: OrchestrationState) -> dict[str, Any]:
        stage = ConfigurationStage(
            self.environment,
            self.table,
            gas_ceiling=self.settings.gas_ceiling,
            completed=self.progress.completed_calls,
            on_completed=self._journal_call,
            on_failed=self._journal_failed_call,
        )
        submitted = stage.run(self.order, self.plan.calls)
        return {"submitted_calls": submitted}

    def _after_configure_route(self, _state: OrchestrationState) -> str:
        if self.migration is not None:
            return "migrate"
        return "write_output"

    def _migrate_node(self, _state: OrchestrationState) -> dict[str, Any]:
        self.migration_state = self._migration_controller().run(stop_after=self.migrate_until)
        return {"migration_phase": self.migration_state.phase.value}

    def _write_output_node(self, _state: OrchestrationState) -> dict[str, Any]:
        self.record = self._build_record()
        if self.migration is not None and not self.migration_state.finalized:
            logger.info(
                "Migration stopped after %s; output is written once the migration is finalized",
                self.migration_state.phase.value,
            )
            return {"output_path": None}
        path = self.output_store.write(self.record, self.output_store.path_for(self.plan.output_name))
        return {"output_path": str(path)}

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def _restore_journal(self, progress: DeploymentProgress) -> None:
        descriptors = {unit.name: unit for unit in self.units}
        for entry in sorted(progress.deployed, key=lambda item: item.deployed_at):
            if entry.name in self.table:
                logger.warning("Journaled unit %s is also seeded; keeping the seed address", entry.name)
                continue
            self.table.restore(descriptors[entry.name], Address(entry.address), entry.deployed_at)
        if progress.failed_call is not None:
            logger.info("Previous attempt stopped at configuration call #%d", progress.failed_call)

    def _journal_unit(self, unit: DeployedUnit) -> None:
        self.progress.record_unit(unit)
        self.store.write_progress(self.progress)

    def _journal_call(self, index: int) -> None:
        self.progress.record_call(index)
        self.store.write_progress(self.progress)

    def _journal_failed_call(self, index: int) -> None:
        self.progress.failed_call = index
        self.store.write_progress(self.progress)

    def _build_record(self) -> OutputRecord:
        derived: dict[str, str | int] = {}
        if self.migration_state is not None:
            if self.migration_state.permanent_lock_id is not None:
                derived["permanent_lock_id"] = self.migration_state.permanent_lock_id
            if self.migration_state.facilitator_address is not None:
                derived["facilitator"] = self.migration_state.facilitator_address
        return OutputRecord(
            plan=self.plan.name,
            run_id=self.store.run_id,
            addresses=self.table.unit_addresses(),
            libraries=self.table.library_addresses(),
            migration=self.migration_state,
            derived=derived,
        )
