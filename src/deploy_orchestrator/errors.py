"""Error hierarchy for planning, execution, migration and output failures.

Planning errors are raised before any side effect. Execution errors halt the
current stage and carry the identity (unit, call index, phase, path) an
operator needs to resume by re-running.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class DeploymentError(Exception):
    """Base exception for all orchestration failures."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class PlanningError(DeploymentError):
    """Raised while building the execution order, before anything is submitted."""


class CycleDetected(PlanningError):
    def __init__(self, members: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(members + members[:1])}",
            details={"members": list(members)},
        )
        self.members = list(members)


class UnresolvedReference(PlanningError):
    def __init__(self, unit: str, reference: str) -> None:
        super().__init__(
            f"Unit {unit} references {reference}, which is neither a planned unit nor a seed address",
            details={"unit": unit, "reference": reference},
        )
        self.unit = unit
        self.reference = reference


class DuplicateUnit(PlanningError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unit name declared more than once: {name}", details={"unit": name})
        self.name = name


class PlanMismatch(PlanningError):
    def __init__(self, run_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Run {run_id} was journaled for plan fingerprint {expected[:12]}, "
            f"current plan is {actual[:12]}; use a new run id",
            details={"run_id": run_id, "expected": expected, "actual": actual},
        )
        self.run_id = run_id


class ConstructionFailed(DeploymentError):
    def __init__(self, unit: str, type_name: str, reason: str) -> None:
        super().__init__(
            f"Construction of {unit} ({type_name}) failed: {reason}",
            details={"unit": unit, "type_name": type_name, "reason": reason},
        )
        self.unit = unit
        self.type_name = type_name


class ConfigurationCallFailed(DeploymentError):
    def __init__(self, index: int, unit: str, method: str, reason: str) -> None:
        super().__init__(
            f"Configuration call #{index} {unit}.{method} failed: {reason}",
            details={"index": index, "unit": unit, "method": method, "reason": reason},
        )
        self.index = index
        self.unit = unit
        self.method = method


class MigrationPhaseFailed(DeploymentError):
    def __init__(self, phase: str, reason: str) -> None:
        super().__init__(
            f"Migration phase {phase} failed: {reason}",
            details={"phase": phase, "reason": reason},
        )
        self.phase = phase


class OutputWriteFailed(DeploymentError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"Unable to write deployment output {path}: {reason}",
            details={"path": str(path), "reason": reason},
        )
        self.path = path
