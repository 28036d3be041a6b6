from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum
from typing import Optional, Union
from pydantic import BaseModel, Field, ConfigDict, computed_field

from .errors import InvalidInputError

SECONDS_PER_DAY = 86400
CENTS = Decimal("0.01")


class RechargeReason(str, Enum):
    WECHAT_PAY = "wechat_pay"
    ALIPAY = "alipay"
    PLATFORM_ORDER = "platform_order"
    REFERRAL_REWARD = "referral_reward"
    CAMPAIGN_GIFT = "campaign_gift"
    AFTER_SALES = "after_sales"
    MANUAL_FIX = "manual_fix"


class RechargeSource(str, Enum):
    NORMAL = "normal"
    BACKFILL = "backfill"
    SYSTEM_BONUS = "system_bonus"
    REFUND_ROLLBACK = "refund_rollback"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class ProfileField(str, Enum):
    SYSTEM_EMAIL = "systemEmail"
    FAMILY_GROUP_NAME = "familyGroupName"
    USER_EMAIL = "userEmail"


PROFILE_COLUMNS = {
    ProfileField.SYSTEM_EMAIL: "system_email",
    ProfileField.FAMILY_GROUP_NAME: "family_group_name",
    ProfileField.USER_EMAIL: "user_email",
}


def to_cents(amount: Union[Decimal, int, float, str, None]) -> int:
    """Convert a boundary amount (two decimal places at most) to minor units."""
    if amount is None:
        return 0
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidInputError(f"invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise InvalidInputError("amount must be a non-negative number")
    if value.quantize(CENTS, rounding=ROUND_DOWN) != value:
        raise InvalidInputError("amount supports at most two decimal places")
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENTS)


class AdminIdentity(BaseModel):
    admin_id: str
    username: str


class UserView(BaseModel):
    id: str
    username: str
    system_email: Optional[str] = None
    user_email: Optional[str] = None
    family_group_name: Optional[str] = None
    expire_at: int
    token_version: int
    created_at: int
    updated_at: int

    model_config = ConfigDict(from_attributes=True)


class RechargeRecordView(BaseModel):
    id: str
    user_id: str
    change_days: int
    reason: RechargeReason
    payment_amount_cents: int
    source: RechargeSource
    internal_note: Optional[str] = None
    occurred_at: int
    recorded_at: int
    expire_before: int
    expire_after: int
    operator_admin_id: Optional[str] = None
    refunded_at: Optional[int] = None
    refunded_by_admin_id: Optional[str] = None
    refund_amount_cents: int = 0
    refund_note: Optional[str] = None
    refund_of_record_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def payment_amount(self) -> Decimal:
        return from_cents(self.payment_amount_cents)

    @computed_field
    @property
    def refund_amount(self) -> Decimal:
        return from_cents(self.refund_amount_cents)

    def can_refund(self) -> bool:
        return self.refunded_at is None and self.source != RechargeSource.REFUND_ROLLBACK


class RechargeResult(BaseModel):
    expire_at: int
    record: RechargeRecordView
    reward_created: bool = False
    bonus_record: Optional[RechargeRecordView] = None


class RefundResult(BaseModel):
    expire_at: int
    refunded_record: RechargeRecordView
    rollback_record: RechargeRecordView
    canceled_rewards: int = 0
    revoked_bonus_record: Optional[RechargeRecordView] = None


class ProfileChangeLogView(BaseModel):
    id: str
    change_batch_id: str
    user_id: str
    field_name: ProfileField
    before_value: Optional[str] = None
    after_value: Optional[str] = None
    change_note: str
    operator_admin_id: Optional[str] = None
    created_at: int

    model_config = ConfigDict(from_attributes=True)


class CreateUserRequest(BaseModel):
    username: str
    system_email: Optional[str] = None
    user_email: Optional[str] = None
    family_group_name: Optional[str] = None


class UpdateUserRequest(BaseModel):
    username: Optional[str] = None
    profile: dict[ProfileField, Optional[str]] = Field(default_factory=dict)
    change_notes: dict[ProfileField, str] = Field(default_factory=dict)


class RechargeRequest(BaseModel):
    days: int
    reason: RechargeReason
    payment_amount: Decimal = Decimal("0")
    internal_note: Optional[str] = None


class BackfillRequest(RechargeRequest):
    occurred_at: int


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None
    note: Optional[str] = None


class UserTokenResponse(BaseModel):
    user: UserView
    token: str


class StatusHistoryItem(BaseModel):
    change_days: int
    reason: RechargeReason
    source: RechargeSource
    occurred_at: int
    expire_after: int
    refunded: bool = False


class UserDaySummary(BaseModel):
    user_id: str
    expire_at: int
    membership: MembershipStatus
    remaining_days: int
    used_days: int
    total_days: int


class StatusView(BaseModel):
    username: str
    membership: MembershipStatus
    expire_at: int
    remaining_days: int
    used_days: int
    total_days: int
    history: list[StatusHistoryItem]


class LoginRequest(BaseModel):
    username: str
    password: str
