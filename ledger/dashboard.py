import time
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import func

from referral.engine import ReferralEngine
from referral.models import ReferralDashboard

from . import tables
from .database import Storage
from .models import SECONDS_PER_DAY, RechargeSource, from_cents

INCOME_SOURCES = (RechargeSource.NORMAL.value, RechargeSource.BACKFILL.value)


def _now() -> int:
    return int(time.time())


def day_window(now: int, utc_offset_minutes: int = 0) -> tuple[int, int]:
    """[start, end) of the calendar day containing ``now`` in the given offset."""
    offset = utc_offset_minutes * 60
    local = now + offset
    start = local - local % SECONDS_PER_DAY - offset
    return start, start + SECONDS_PER_DAY


class DashboardToday(BaseModel):
    day_start: int
    day_end: int
    recharge_count: int
    recharge_days: int
    payment_amount: Decimal
    bonus_count: int
    refund_count: int
    refund_amount: Decimal
    new_users: int
    total_users: int
    active_users: int
    expired_users: int
    referrals: ReferralDashboard


class DashboardService:
    def __init__(
        self,
        storage: Storage,
        referrals: ReferralEngine,
        utc_offset_minutes: int = 0,
        clock: Callable[[], int] = _now,
    ):
        self.storage = storage
        self.referrals = referrals
        self.utc_offset_minutes = utc_offset_minutes
        self.clock = clock

    def today(self, now: Optional[int] = None) -> DashboardToday:
        now = self.clock() if now is None else now
        start, end = day_window(now, self.utc_offset_minutes)
        record = tables.RechargeRecord
        user = tables.User

        with self.storage.batch() as db:
            recharge_count, recharge_days, payment_cents = (
                db.query(
                    func.count(record.id),
                    func.coalesce(func.sum(record.change_days), 0),
                    func.coalesce(func.sum(record.payment_amount_cents), 0),
                )
                .filter(
                    record.recorded_at >= start,
                    record.recorded_at < end,
                    record.change_days > 0,
                    record.source.in_(INCOME_SOURCES),
                )
                .one()
            )
            bonus_count = (
                db.query(func.count(record.id))
                .filter(
                    record.recorded_at >= start,
                    record.recorded_at < end,
                    record.source == RechargeSource.SYSTEM_BONUS.value,
                )
                .scalar()
            )
            # revoked bonus records carry refunded_at too; only count refunds of income
            refund_count, refund_cents = (
                db.query(func.count(record.id), func.coalesce(func.sum(record.refund_amount_cents), 0))
                .filter(
                    record.refunded_at >= start,
                    record.refunded_at < end,
                    record.source.in_(INCOME_SOURCES),
                )
                .one()
            )
            new_users = db.query(func.count(user.id)).filter(user.created_at >= start, user.created_at < end).scalar()
            total_users = db.query(func.count(user.id)).scalar()
            active_users = db.query(func.count(user.id)).filter(user.expire_at > now).scalar()

        return DashboardToday(
            day_start=start,
            day_end=end,
            recharge_count=int(recharge_count or 0),
            recharge_days=int(recharge_days or 0),
            payment_amount=from_cents(int(payment_cents or 0)),
            bonus_count=int(bonus_count or 0),
            refund_count=int(refund_count or 0),
            refund_amount=from_cents(int(refund_cents or 0)),
            new_users=int(new_users or 0),
            total_users=int(total_users or 0),
            active_users=int(active_users or 0),
            expired_users=int(total_users or 0) - int(active_users or 0),
            referrals=self.referrals.referral_dashboard(),
        )
