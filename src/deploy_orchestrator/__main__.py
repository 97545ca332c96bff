"""Entry point for `python -m deploy_orchestrator` and the `deploy-orchestrator` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from deploy_orchestrator.constants import DeploymentConstants, load_constants
from deploy_orchestrator.environment import (
    SimulatedEnvironment,
    install_legacy_behaviour,
    install_pool_factory_behaviour,
    seed_legacy_system,
)
from deploy_orchestrator.errors import DeploymentError
from deploy_orchestrator.migration import MigrationConfig
from deploy_orchestrator.models import Address, AddressTable, MigrationPhase
from deploy_orchestrator.orchestrator import DeploymentOrchestrator
from deploy_orchestrator.output_store import OutputStore
from deploy_orchestrator.plans import PLANS, SEED_TYPE_NAMES, get_plan_entry, migration_config
from deploy_orchestrator.settings import RuntimeSettings, load_environment
from deploy_orchestrator.state_store import RunStateStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rehearse a deployment plan against the simulated environment")
    parser.add_argument("--plan", required=True, choices=sorted(PLANS), help="Deployment plan to run")
    parser.add_argument("--constants-file", type=Path, default=None, help="Constants JSON (default: DEPLOY_CONSTANTS_PATH)")
    parser.add_argument(
        "--seed-output",
        type=Path,
        action="append",
        default=[],
        help="Earlier output file whose addresses seed this run (repeatable)",
    )
    parser.add_argument("--output-dir", type=Path, default=None, help="Directory for the output record")
    parser.add_argument("--run-id", default=None, help="Run identifier used for the journal (default: plan name)")
    parser.add_argument("--state-store-root", type=Path, default=None, help="Root directory for run journals")
    parser.add_argument("--migrate", action="store_true", help="Run the sink migration after configuration")
    parser.add_argument(
        "--migrate-until",
        default=None,
        choices=[phase.value for phase in MigrationPhase.ordered()],
        help="Stop the migration once this phase is committed",
    )
    parser.add_argument(
        "--resolve-in-flight",
        default=None,
        choices=["applied", "not-applied"],
        help="Record the observed outcome of an interrupted migration submission, then continue",
    )
    parser.add_argument("--permanent-lock-id", type=int, default=None, help="Observed lock id when resolving in flight")
    parser.add_argument("--facilitator-address", default=None, help="Observed facilitator address when resolving in flight")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_seed_table(output_store: OutputStore, paths: list[Path]) -> AddressTable:
    """Merge seed files in order; the first file naming a unit wins."""
    table = AddressTable()
    for path in paths:
        for name, address in output_store.read_address_table(path).as_mapping().items():
            if name in table:
                logging.warning("Seed %s from %s ignored; already seeded", name, path)
                continue
            table.seed(name, address)
    return table


def build_environment(
    table: AddressTable,
    store: RunStateStore,
    *,
    constants: DeploymentConstants,
    migration: MigrationConfig | None,
) -> SimulatedEnvironment:
    """Simulated environment for this run.

    A run that already saved its environment resumes from that snapshot, so
    storage written by earlier invocations (locks, ownership, allowances) is
    still there. Seeds, journaled units and the legacy system are registered
    only where no code exists yet.
    """
    if store.has_environment_snapshot():
        environment = SimulatedEnvironment.from_snapshot(store.read_environment_snapshot())
    else:
        environment = SimulatedEnvironment()
    install_pool_factory_behaviour(environment)
    for name, address in table.as_mapping().items():
        if not environment.has_code(address):
            environment.add_contract(SEED_TYPE_NAMES.get(name, "External"), address)

    if store.has_progress():
        for entry in store.read_progress().deployed:
            address = Address(entry.address)
            if not environment.has_code(address):
                environment.add_contract(entry.type_name, address)

    if migration is not None:
        legacy_present = (
            migration.legacy_token is not None
            and migration.legacy_escrow is not None
            and environment.has_code(migration.legacy_token)
            and environment.has_code(migration.legacy_escrow)
        )
        if legacy_present:
            install_legacy_behaviour(environment, token=migration.legacy_token, escrow=migration.legacy_escrow)
        else:
            seed_legacy_system(
                environment,
                token=migration.legacy_token,
                escrow=migration.legacy_escrow,
                drain_target=migration.drain_target,
                holder_balance=constants.escrow_amount,
            )
        if store.has_migration_state():
            facilitator = store.read_migration_state().facilitator_address
            if facilitator and not environment.has_code(Address(facilitator)):
                environment.add_contract("SinkManager", Address(facilitator))
    return environment


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        load_environment(repo_root)
        settings = RuntimeSettings.from_env()
        entry = get_plan_entry(args.plan)
        if (args.migrate or args.resolve_in_flight) and not entry.supports_migration:
            raise ValueError(f"Plan {args.plan} has no migration; use sink-migration")

        constants = load_constants(args.constants_file or settings.constants_file(repo_root))
        plan = entry.build(constants)
        migration = migration_config(constants) if args.migrate or args.resolve_in_flight else None

        output_store = OutputStore(args.output_dir or settings.output_path(repo_root))
        seed = load_seed_table(output_store, args.seed_output)
        missing = [name for name in entry.required_seeds if name not in seed]
        if missing:
            raise ValueError(f"Plan {args.plan} needs seed addresses for: {', '.join(missing)} (use --seed-output)")

        store = RunStateStore(
            args.state_store_root or settings.state_store_path(repo_root),
            args.run_id or settings.effective_run_id(plan.name),
        )
        environment = build_environment(seed, store, constants=constants, migration=migration)
    except (OSError, ValueError) as exc:
        logging.error("Unable to prepare run: %s", exc)
        return 1

    orchestrator = DeploymentOrchestrator(
        plan,
        environment,
        store=store,
        output_store=output_store,
        settings=settings,
        seed=seed,
        migration=migration,
        migrate_until=MigrationPhase(args.migrate_until) if args.migrate_until else None,
    )
    try:
        try:
            if args.resolve_in_flight is not None:
                orchestrator.resolve_in_flight(
                    applied=args.resolve_in_flight == "applied",
                    permanent_lock_id=args.permanent_lock_id,
                    facilitator_address=Address(args.facilitator_address) if args.facilitator_address else None,
                )
            record = orchestrator.run()
        finally:
            store.write_environment_snapshot(environment.snapshot())
    except DeploymentError as exc:
        logging.error("Deployment failed: %s", exc.message)
        logging.error("Failure details: %s", json.dumps(exc.to_dict(), default=str))
        return 1
    except (OSError, ValueError) as exc:
        logging.error("Deployment failed: %s", exc)
        return 1

    print(json.dumps({"run_id": record.run_id, "addresses": record.addresses, "derived": record.derived}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
