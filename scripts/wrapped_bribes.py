"""Deploy the wrapped external bribe factory and wrap every legacy bribe.

Writes ``[{"xBribe": ..., "wxBribe": ...}, ...]`` next to the input list.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from deploy_orchestrator import Address, DeploymentError, DeploymentOrchestrator, OutputStore, RunStateStore
from deploy_orchestrator.environment import ExecutionError, SimulatedEnvironment
from deploy_orchestrator.plans import wrapped_bribes
from deploy_orchestrator.settings import RuntimeSettings, load_environment


REPO_ROOT = Path(__file__).resolve().parents[1]
MAINNET_VOTER = "0x09236cfF45047DBee6B921e00704bed6D6B8Cf7e"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wrap legacy external bribes")
    parser.add_argument("--bribes-file", type=Path, default=REPO_ROOT / "scripts" / "xBribes" / "xBribes.json")
    parser.add_argument("--output-file", type=Path, default=REPO_ROOT / "scripts" / "xBribes" / "wxBribesEarned.json")
    parser.add_argument("--voter", default=MAINNET_VOTER, help="Voter the factory wraps bribes for")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args()


def install_bribe_factory_behaviour(environment: SimulatedEnvironment) -> None:
    def create_bribe(env: SimulatedEnvironment, target: Address, args: list[Any]) -> Address:
        wrapped = env.storage(target).setdefault("oldBribeToNew", {})
        if args[0] in wrapped:
            raise ExecutionError(f"createBribe: {args[0]} already wrapped")
        wrapped[args[0]] = env.add_contract("WrappedExternalBribe")
        return wrapped[args[0]]

    def old_bribe_to_new(env: SimulatedEnvironment, target: Address, args: list[Any]) -> Address:
        return env.storage(target).get("oldBribeToNew", {}).get(args[0], Address("0x" + "00" * 20))

    environment.register_handler("WrappedExternalBribeFactory", "createBribe", create_bribe)
    environment.register_reader("WrappedExternalBribeFactory", "oldBribeToNew", old_bribe_to_new)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_environment(REPO_ROOT)

    try:
        settings = RuntimeSettings.from_env()
        payload = json.loads(args.bribes_file.read_text(encoding="utf-8"))
        bribes = [Address(value) for value in payload["addresses"]]
    except (OSError, ValueError, KeyError) as exc:
        logging.error("Unable to load bribe list: %s", exc)
        return 1

    plan = wrapped_bribes(Address(args.voter), bribes)
    environment = SimulatedEnvironment()
    install_bribe_factory_behaviour(environment)
    orchestrator = DeploymentOrchestrator(
        plan,
        environment,
        store=RunStateStore(settings.state_store_path(REPO_ROOT), settings.effective_run_id(plan.name)),
        output_store=OutputStore(settings.output_path(REPO_ROOT)),
        settings=settings,
    )
    try:
        record = orchestrator.run()
        factory = Address(record.addresses["wxBribeFactory"])
        pairs = [
            {"xBribe": str(bribe), "wxBribe": str(environment.read(factory, "oldBribeToNew", [bribe]))}
            for bribe in bribes
        ]
    except (DeploymentError, ExecutionError) as exc:
        logging.error("Wrapping bribes failed: %s", exc)
        return 1

    args.output_file.parent.mkdir(parents=True, exist_ok=True)
    args.output_file.write_text(json.dumps(pairs, indent=2), encoding="utf-8")
    logging.info("Wrapped %d bribes via factory %s", len(pairs), factory)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
