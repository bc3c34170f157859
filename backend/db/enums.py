"""PostgreSQL native enum contracts for the settlement database schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class WithdrawalStatus(str, enum.Enum):
    """Withdrawal lifecycle status."""

    REQUESTED = "REQUESTED"
    PLANNED = "PLANNED"
    EXECUTING = "EXECUTING"
    FINALIZING = "FINALIZING"
    FINALIZED = "FINALIZED"
    FAILED = "FAILED"


class ExcludedReason(str, enum.Enum):
    """Why a held asset is not part of the executable liquidation plan."""

    NONE = "none"
    DUST = "dust"
    NO_ROUTE = "no_route"


class RecipientRole(str, enum.Enum):
    """Role of a payout recipient."""

    INVESTOR = "INVESTOR"
    MANAGER = "MANAGER"
    TREASURY = "TREASURY"


withdrawal_status_enum = PGEnum(WithdrawalStatus, name="withdrawal_status_enum")
