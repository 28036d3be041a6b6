"""
Membership Ledger

This package provides:
- Append-only recharge records per user
- Expiry chain replay for backfills and refunds
- Status tokens for the public membership page
- Admin user management with audited profile changes

The service layer lives in ``ledger.service``; it is not re-exported here
because it depends on the ``referral`` package, which itself builds on the
tables and models below.
"""

from .errors import (
    LedgerServiceError,
    NotFoundError,
    UserNotFoundError,
    RecordNotFoundError,
    ConflictError,
    InvalidInputError,
    UnauthorizedError,
    RateLimitedError,
    AlreadyProcessedError,
)
from .models import (
    RechargeReason,
    RechargeSource,
    MembershipStatus,
    ProfileField,
    UserView,
    RechargeRecordView,
)

__all__ = [
    "LedgerServiceError",
    "NotFoundError",
    "UserNotFoundError",
    "RecordNotFoundError",
    "ConflictError",
    "InvalidInputError",
    "UnauthorizedError",
    "RateLimitedError",
    "AlreadyProcessedError",
    "RechargeReason",
    "RechargeSource",
    "MembershipStatus",
    "ProfileField",
    "UserView",
    "RechargeRecordView",
]
