from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, computed_field

from ledger.models import RechargeReason, RechargeSource, from_cents


class ReferralRewardStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    CANCELED = "canceled"
    WITHDRAWN = "withdrawn"


class ReferralBonusStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"


class ReferralBindResult(BaseModel):
    inviter_user_id: str
    invitee_user_id: str
    bound_at: int
    already_bound: bool


class RewardCreationResult(BaseModel):
    created: bool
    inviter_user_id: Optional[str] = None
    reward_amount_cents: int = 0


class ReferralRewardView(BaseModel):
    id: str
    inviter_user_id: str
    invitee_user_id: str
    recharge_record_id: str
    recharge_reason: RechargeReason
    recharge_source: RechargeSource
    payment_amount_cents: int
    reward_rate_bps: int
    reward_amount_cents: int
    status: ReferralRewardStatus
    unlock_at: int
    available_at: Optional[int] = None
    canceled_at: Optional[int] = None
    canceled_reason: Optional[str] = None
    withdrawn_at: Optional[int] = None
    withdrawal_id: Optional[str] = None
    created_at: int
    updated_at: int

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def reward_amount(self) -> Decimal:
        return from_cents(self.reward_amount_cents)


class BonusGrantView(BaseModel):
    id: str
    invitee_user_id: str
    trigger_recharge_record_id: str
    bonus_recharge_record_id: Optional[str] = None
    bonus_days: int
    status: ReferralBonusStatus
    revoked_at: Optional[int] = None
    revoke_recharge_record_id: Optional[str] = None
    created_at: int

    model_config = ConfigDict(from_attributes=True)


class WithdrawalView(BaseModel):
    id: str
    inviter_user_id: str
    amount_cents: int
    processed_by_admin_id: str
    note: Optional[str] = None
    created_at: int

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class WithdrawalResult(BaseModel):
    withdrawal_id: str
    withdrawn_amount_cents: int
    withdrawn_count: int


class InviterRewardSummary(BaseModel):
    inviter_user_id: str
    invitee_count: int = 0
    pending_amount_cents: int = 0
    available_amount_cents: int = 0


class ReferralDashboard(BaseModel):
    pending_amount: Decimal
    available_amount: Decimal
    withdrawn_amount: Decimal
    pending_count: int
    available_count: int


class BindReferralRequest(BaseModel):
    inviter_user_id: str
    invitee_user_id: str
    check_abuse: Optional[bool] = None


class WithdrawRequest(BaseModel):
    inviter_user_id: str
    note: Optional[str] = None
