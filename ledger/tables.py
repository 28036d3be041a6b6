# ledger/tables.py
from __future__ import annotations

from sqlalchemy import BigInteger, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# The DDL lives in ledger/database.py (versioned migrations). These mappings
# only describe the columns for ORM queries and must stay in sync with it.
Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    username = Column(String(80), nullable=False)
    system_email = Column(String(120), nullable=True)
    user_email = Column(String(120), nullable=True)
    family_group_name = Column(String(80), nullable=True)

    access_token_hash = Column(String(64), nullable=False, unique=True)
    token_version = Column(Integer, nullable=False, default=0)

    # derived from the recharge chain, written only by the rebuild / CAS path
    expire_at = Column(BigInteger, nullable=False, default=0)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class AdminUser(Base):
    __tablename__ = "admin_users"

    id = Column(String(36), primary_key=True)
    username = Column(String(80), nullable=False, unique=True)
    password_hash = Column(Text, nullable=False)
    last_login_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)


class RechargeRecord(Base):
    __tablename__ = "recharge_records"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)

    change_days = Column(Integer, nullable=False)
    reason = Column(String(32), nullable=False)
    payment_amount_cents = Column(BigInteger, nullable=False, default=0)
    source = Column(String(32), nullable=False)  # normal / backfill / system_bonus / refund_rollback
    internal_note = Column(Text, nullable=True)

    occurred_at = Column(BigInteger, nullable=False)
    recorded_at = Column(BigInteger, nullable=False)
    expire_before = Column(BigInteger, nullable=False)
    expire_after = Column(BigInteger, nullable=False)
    operator_admin_id = Column(String(36), nullable=True)

    refunded_at = Column(BigInteger, nullable=True)
    refunded_by_admin_id = Column(String(36), nullable=True)
    refund_amount_cents = Column(BigInteger, nullable=False, default=0)
    refund_note = Column(Text, nullable=True)
    refund_of_record_id = Column(String(36), nullable=True)


class TokenResetLog(Base):
    __tablename__ = "token_reset_logs"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False)
    old_token_hash = Column(String(64), nullable=False)
    new_token_hash = Column(String(64), nullable=False)
    operator_admin_id = Column(String(36), nullable=True)
    created_at = Column(BigInteger, nullable=False)


class UserProfileChangeLog(Base):
    __tablename__ = "user_profile_change_logs"

    id = Column(String(36), primary_key=True)
    change_batch_id = Column(String(36), nullable=False)
    user_id = Column(String(36), nullable=False)
    field_name = Column(String(32), nullable=False)
    before_value = Column(Text, nullable=True)
    after_value = Column(Text, nullable=True)
    change_note = Column(Text, nullable=False)
    operator_admin_id = Column(String(36), nullable=True)
    created_at = Column(BigInteger, nullable=False)


class ReferralBinding(Base):
    __tablename__ = "user_referrals"

    id = Column(String(36), primary_key=True)
    inviter_user_id = Column(String(36), nullable=False)
    invitee_user_id = Column(String(36), nullable=False, unique=True)
    bound_by_admin_id = Column(String(36), nullable=True)
    created_at = Column(BigInteger, nullable=False)


class ReferralWithdrawal(Base):
    __tablename__ = "referral_withdrawals"

    id = Column(String(36), primary_key=True)
    inviter_user_id = Column(String(36), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    processed_by_admin_id = Column(String(36), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False)


class ReferralReward(Base):
    __tablename__ = "referral_reward_ledger"

    id = Column(String(36), primary_key=True)
    inviter_user_id = Column(String(36), nullable=False)
    invitee_user_id = Column(String(36), nullable=False)
    recharge_record_id = Column(String(36), nullable=False, unique=True)
    recharge_reason = Column(String(32), nullable=False)
    recharge_source = Column(String(32), nullable=False)
    payment_amount_cents = Column(BigInteger, nullable=False)
    reward_rate_bps = Column(Integer, nullable=False)
    reward_amount_cents = Column(BigInteger, nullable=False)

    status = Column(String(16), nullable=False)  # pending / available / canceled / withdrawn
    unlock_at = Column(BigInteger, nullable=False)
    available_at = Column(BigInteger, nullable=True)
    canceled_at = Column(BigInteger, nullable=True)
    canceled_reason = Column(Text, nullable=True)
    withdrawn_at = Column(BigInteger, nullable=True)
    withdrawal_id = Column(String(36), nullable=True)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class ReferralBonusGrant(Base):
    __tablename__ = "referral_bonus_grants"

    id = Column(String(36), primary_key=True)
    invitee_user_id = Column(String(36), nullable=False, unique=True)
    trigger_recharge_record_id = Column(String(36), nullable=False, unique=True)
    bonus_recharge_record_id = Column(String(36), nullable=True, unique=True)
    bonus_days = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending / granted / revoked
    revoked_at = Column(BigInteger, nullable=True)
    revoke_recharge_record_id = Column(String(36), nullable=True)
    created_at = Column(BigInteger, nullable=False)
