from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

FOUR_YEARS = 4 * 365 * 86400


class PoolSpec(BaseModel):
    stable: bool
    tokenA: str
    tokenB: str


class VeloPoolSpec(BaseModel):
    """Pool paired with the newly deployed token."""

    stable: bool
    token: str


class CurrentSystem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    voting_escrow: str | None = Field(default=None, alias="VotingEscrow")
    forwarder: str | None = Field(default=None, alias="Forwarder")
    minter: str | None = Field(default=None, alias="Minter")


class LegacySystem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    velo: str | None = Field(default=None, alias="VELO")
    voting_escrow: str | None = Field(default=None, alias="VotingEscrow")
    voter: str | None = Field(default=None, alias="Voter")
    rewards_distributor: str | None = Field(default=None, alias="RewardsDistributor")
    sink_drain_gauge: str | None = Field(default=None, alias="SinkDrainGauge")


class DeploymentConstants(BaseModel):
    """Literal inputs shared by every plan: external addresses, allow-lists, amounts."""

    model_config = ConfigDict(populate_by_name=True)

    weth: str = Field(alias="WETH")
    whitelist_tokens: list[str] = Field(default_factory=list, alias="whitelistTokens")
    team: str
    fee_manager: str = Field(alias="feeManager")
    pools_v2: list[PoolSpec] = Field(default_factory=list, alias="poolsV2")
    pools_velo_v2: list[VeloPoolSpec] = Field(default_factory=list, alias="poolsVeloV2")
    current: CurrentSystem = Field(default_factory=CurrentSystem)
    v1: LegacySystem = Field(default_factory=LegacySystem)
    escrow_amount: int = Field(default=10**18, alias="escrowAmount")
    lock_duration: int = Field(default=FOUR_YEARS, alias="lockDuration")

    @field_validator("weth", "team", "fee_manager")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("address must be non-empty")
        return value

    @field_validator("escrow_amount", "lock_duration")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be > 0")
        return value


def load_constants(path: Path) -> DeploymentConstants:
    """Read a constants file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not valid constants JSON.
    """
    if not path.is_file():
        raise FileNotFoundError(f"constants file not found: {path}")
    try:
        constants = DeploymentConstants.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"constants at {path} failed validation: {exc}") from exc
    logger.info("Loaded constants from %s (%d whitelisted tokens)", path, len(constants.whitelist_tokens))
    return constants
