from importlib.metadata import PackageNotFoundError, version

from .configuration import ConfigurationStage
from .constants import DeploymentConstants, load_constants
from .environment import CallResult, ExecutionEnvironment, ExecutionError, SimulatedEnvironment, seed_legacy_system
from .errors import (
    ConfigurationCallFailed,
    ConstructionFailed,
    CycleDetected,
    DeploymentError,
    DuplicateUnit,
    MigrationPhaseFailed,
    OutputWriteFailed,
    PlanMismatch,
    PlanningError,
    UnresolvedReference,
)
from .executor import DeploymentExecutor
from .graph import DependencyGraph
from .linker import LibraryLinker
from .migration import MigrationConfig, MigrationController
from .models import (
    Address,
    AddressTable,
    ConfigurationCall,
    DeployedUnit,
    DeploymentPlan,
    Lookup,
    MigrationPhase,
    MigrationState,
    OutputRecord,
    PostDeployCall,
    Reference,
    UnitDescriptor,
)
from .orchestrator import DeploymentOrchestrator
from .output_store import OutputStore
from .state_store import RunStateStore


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Address",
    "AddressTable",
    "CallResult",
    "ConfigurationCall",
    "ConfigurationCallFailed",
    "ConfigurationStage",
    "ConstructionFailed",
    "CycleDetected",
    "DependencyGraph",
    "DeployedUnit",
    "DeploymentConstants",
    "DeploymentError",
    "DeploymentExecutor",
    "DeploymentOrchestrator",
    "DeploymentPlan",
    "DuplicateUnit",
    "ExecutionEnvironment",
    "ExecutionError",
    "LibraryLinker",
    "Lookup",
    "MigrationConfig",
    "MigrationController",
    "MigrationPhase",
    "MigrationPhaseFailed",
    "MigrationState",
    "OutputRecord",
    "OutputStore",
    "OutputWriteFailed",
    "PlanMismatch",
    "PlanningError",
    "PostDeployCall",
    "Reference",
    "RunStateStore",
    "SimulatedEnvironment",
    "UnitDescriptor",
    "UnresolvedReference",
    "get_version",
    "load_constants",
    "seed_legacy_system",
]
