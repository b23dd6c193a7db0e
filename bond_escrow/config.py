"""
Protocol configuration.

Values come from environment variables (a local .env file is honoured via
python-dotenv). The reclaim-after window is configured per outcome branch:
deployments have used very different windows for the refund and penalty
locks, and neither is hard-coded here.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import Outcome

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOND_ESCROW_"

_ENV_FIELDS: dict[str, str] = {
    "OUTCOME_BRANCHES": "outcome_branches",
    "PRIMARY_RECLAIM_DAYS": "primary_reclaim_days",
    "ALTERNATE_RECLAIM_DAYS": "alternate_reclaim_days",
    "BASE_FEE_DROPS": "base_fee_drops",
}


class ProtocolSettings(BaseModel):
    """Tunable parameters of the escrow protocol."""

    # 2 = refund + penalty locks; 1 = penalty lock only (refund by reclaim)
    outcome_branches: int = Field(default=2, ge=1, le=2)
    primary_reclaim_days: int = Field(default=90, ge=1)
    alternate_reclaim_days: int = Field(default=90, ge=1)
    base_fee_drops: int = Field(default=10, ge=1)

    def outcomes(self) -> tuple[Outcome, ...]:
        """Outcomes that get their own lock, in creation order."""
        if self.outcome_branches == 1:
            return (Outcome.ALTERNATE_FAVORABLE,)
        return (Outcome.ALTERNATE_FAVORABLE, Outcome.PRIMARY_FAVORABLE)

    def reclaim_after_days(self, outcome: Outcome) -> int:
        if outcome == Outcome.PRIMARY_FAVORABLE:
            return self.primary_reclaim_days
        return self.alternate_reclaim_days


def load_settings(env: Mapping[str, str] | None = None) -> ProtocolSettings:
    """Build settings from ``env`` (defaults to the process environment).

    Raises:
        ValidationError: if any configured value is out of range or not a number.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    values = {
        field: env[ENV_PREFIX + suffix]
        for suffix, field in _ENV_FIELDS.items()
        if ENV_PREFIX + suffix in env
    }

    try:
        settings = ProtocolSettings.model_validate(values)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid bond escrow configuration.",
            {"errors": [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]},
        ) from exc

    logger.info(
        "Loaded protocol settings: %d branch(es), reclaim after %d/%d days",
        settings.outcome_branches,
        settings.primary_reclaim_days,
        settings.alternate_reclaim_days,
    )
    return settings
