from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from .environment import EnvironmentSnapshot
from .errors import PlanMismatch
from .models import DeploymentProgress, MigrationState

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar next to *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    swapped by ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path* and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Return the text of a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def _read_model(path: Path, model: type[ModelT], label: str) -> ModelT:
    with _locked_file(path):
        text = _safe_read_json(path, label)
        try:
            return model.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


def _write_model(path: Path, record: BaseModel) -> None:
    with _locked_file(path):
        _atomic_write_text(path, record.model_dump_json(indent=2))


def sanitize_run_id(run_id: str) -> str:
    """Make a run identifier safe to use as a single path component.

    Raises:
        ValueError: If the run id is empty or has no safe characters.
    """
    value = run_id.strip()
    if not value:
        raise ValueError("run_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("run_id contains no filesystem-safe characters")
    return value[:128]


# ---------------------------------------------------------------------------
# RunStateStore
# ---------------------------------------------------------------------------

class RunStateStore:
    """Journal of one orchestration run under ``<root>/runs/<run_id>/``.

    ``progress.json`` records deployed units and applied configuration calls;
    ``migration_state.json`` is the migration controller's persisted state;
    ``environment.json`` holds the simulated environment between CLI runs.
    Every write replaces the file atomically, so a crash leaves the previous
    committed version in place.
    """

    def __init__(self, root: Path, run_id: str) -> None:
        self.run_id = run_id
        self.root = root / "runs" / sanitize_run_id(run_id)
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def progress_path(self) -> Path:
        return self.root / "progress.json"

    @property
    def migration_state_path(self) -> Path:
        return self.root / "migration_state.json"

    @property
    def environment_path(self) -> Path:
        return self.root / "environment.json"

    # ------------------------------------------------------------------
    # Deployment progress
    # ------------------------------------------------------------------

    def has_progress(self) -> bool:
        return self.progress_path.is_file()

    def read_progress(self) -> DeploymentProgress:
        return _read_model(self.progress_path, DeploymentProgress, "deployment progress")

    def write_progress(self, progress: DeploymentProgress) -> None:
        _write_model(self.progress_path, progress)

    def load_or_create_progress(self, plan_name: str, fingerprint: str) -> DeploymentProgress:
        """Resume the journal for this run, or start one.

        Raises:
            PlanMismatch: If the journal was written for a different plan.
            ValueError: If the journal is corrupt.
        """
        if not self.has_progress():
            progress = DeploymentProgress(run_id=self.run_id, plan=plan_name, plan_fingerprint=fingerprint)
            self.write_progress(progress)
            logger.info("Started run %s for plan %s", self.run_id, plan_name)
            return progress

        progress = self.read_progress()
        if progress.plan_fingerprint != fingerprint:
            raise PlanMismatch(self.run_id, progress.plan_fingerprint, fingerprint)
        logger.info(
            "Resuming run %s: %d units deployed, %d calls applied",
            self.run_id,
            len(progress.deployed),
            len(progress.completed_calls),
        )
        return progress

    # ------------------------------------------------------------------
    # Migration state
    # ------------------------------------------------------------------

    def has_migration_state(self) -> bool:
        return self.migration_state_path.is_file()

    def read_migration_state(self) -> MigrationState:
        return _read_model(self.migration_state_path, MigrationState, "migration state")

    def write_migration_state(self, state: MigrationState) -> None:
        _write_model(self.migration_state_path, state)

    # ------------------------------------------------------------------
    # Simulated environment
    # ------------------------------------------------------------------

    def has_environment_snapshot(self) -> bool:
        return self.environment_path.is_file()

    def read_environment_snapshot(self) -> EnvironmentSnapshot:
        return _read_model(self.environment_path, EnvironmentSnapshot, "environment snapshot")

    def write_environment_snapshot(self, snapshot: EnvironmentSnapshot) -> None:
        _write_model(self.environment_path, snapshot)
