from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    gas_ceiling: int = 5_000_000
    state_store_root: str = "state_store"
    output_dir: str = "script/constants/output"
    constants_path: str = "script/constants/Optimism.json"
    run_id: str = ""
    recursion_limit: int = 100

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            gas_ceiling=_get_env_int("DEPLOY_GAS_CEILING", default=5_000_000, minimum=21_000, maximum=100_000_000),
            state_store_root=os.getenv("DEPLOY_STATE_STORE_ROOT", "state_store"),
            output_dir=os.getenv("DEPLOY_OUTPUT_DIR", "script/constants/output"),
            constants_path=os.getenv("DEPLOY_CONSTANTS_PATH", "script/constants/Optimism.json"),
            run_id=os.getenv("DEPLOY_RUN_ID", ""),
            recursion_limit=_get_env_int("DEPLOY_RECURSION_LIMIT", default=100, minimum=25),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.gas_ceiling <= 0:
            raise ValueError(f"DEPLOY_GAS_CEILING must be > 0, got: {self.gas_ceiling}")
        if self.recursion_limit > 100_000:
            raise ValueError(f"DEPLOY_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        if not self.state_store_root.strip():
            raise ValueError("DEPLOY_STATE_STORE_ROOT must be non-empty")
        if not self.output_dir.strip():
            raise ValueError("DEPLOY_OUTPUT_DIR must be non-empty")
        if not self.constants_path.strip():
            raise ValueError("DEPLOY_CONSTANTS_PATH must be non-empty")
        return RuntimeSettings(
            gas_ceiling=self.gas_ceiling,
            state_store_root=self.state_store_root.strip(),
            output_dir=self.output_dir.strip(),
            constants_path=self.constants_path.strip(),
            run_id=self.run_id.strip(),
            recursion_limit=self.recursion_limit,
        )

    def effective_run_id(self, plan_name: str) -> str:
        return self.run_id or plan_name

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def output_path(self, repo_root: Path) -> Path:
        path = Path(self.output_dir)
        return path if path.is_absolute() else repo_root / path

    def constants_file(self, repo_root: Path) -> Path:
        path = Path(self.constants_path)
        return path if path.is_absolute() else repo_root / path


def load_environment(repo_root: Path | None = None) -> None:
    """Load ``.env`` from ``repo_root`` (or cwd) without overriding set variables."""
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read ``name`` as an int in [minimum, maximum], or ``default`` when unset.

    Raises:
        ValueError: If the value does not parse or falls outside the bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
