import logging
import time
from typing import Callable, Iterable, Optional
from uuid import uuid4

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger import tables
from ledger.database import Storage
from ledger.errors import ConflictError, InvalidInputError, NotFoundError
from ledger.models import RechargeReason, RechargeSource, SECONDS_PER_DAY, from_cents

from .models import (
    BonusGrantView,
    InviterRewardSummary,
    ReferralBindResult,
    ReferralBonusStatus,
    ReferralDashboard,
    ReferralRewardStatus,
    ReferralRewardView,
    RewardCreationResult,
    WithdrawalResult,
    WithdrawalView,
)

logger = logging.getLogger(__name__)

DEFAULT_REWARD_RATE_BPS = 1000
DEFAULT_BONUS_DAYS = 30
DEFAULT_REWARD_LOCK_DAYS = 7
MAX_NOTE_LENGTH = 200

REWARD_ELIGIBLE_REASONS = frozenset({
    RechargeReason.WECHAT_PAY,
    RechargeReason.ALIPAY,
    RechargeReason.PLATFORM_ORDER,
})
REWARD_ELIGIBLE_SOURCES = frozenset({RechargeSource.NORMAL})

# profile columns that must not collide between inviter and invitee
ABUSE_PROFILE_COLUMNS = ("system_email", "user_email", "family_group_name")


class ReferralBindError(InvalidInputError):
    code = "REFERRAL_BIND_FAILED"


class SelfInviteError(ReferralBindError):
    code = "SELF_INVITE"


class InviterNotFoundError(NotFoundError):
    code = "INVITER_NOT_FOUND"


class InviteeNotFoundError(NotFoundError):
    code = "INVITEE_NOT_FOUND"


class InviteeAlreadyBoundError(ConflictError):
    code = "INVITEE_ALREADY_BOUND"


class RiskRejectedError(ReferralBindError):
    code = "RISK_REJECTED"


class NothingToWithdrawError(InvalidInputError):
    code = "NOTHING_TO_WITHDRAW"


def _now() -> int:
    return int(time.time())


def is_reward_eligible(reason, source, payment_amount_cents: int) -> bool:
    return (
        payment_amount_cents > 0
        and RechargeReason(reason) in REWARD_ELIGIBLE_REASONS
        and RechargeSource(source) in REWARD_ELIGIBLE_SOURCES
    )


def calculate_reward_amount_cents(payment_amount_cents: int, rate_bps: int = DEFAULT_REWARD_RATE_BPS) -> int:
    if payment_amount_cents <= 0 or rate_bps <= 0:
        return 0
    return payment_amount_cents * rate_bps // 10000


class ReferralEngine:
    """Binding graph, reward ledger, invitee bonus grants and withdrawals.

    Methods taking ``db`` run inside the caller's batch (the refund flow
    needs them atomic with its compensating records); the rest open their
    own batch.
    """

    def __init__(
        self,
        storage: Storage,
        rate_bps: int = DEFAULT_REWARD_RATE_BPS,
        bonus_days: int = DEFAULT_BONUS_DAYS,
        reward_lock_days: int = DEFAULT_REWARD_LOCK_DAYS,
        clock: Callable[[], int] = _now,
    ):
        if not 0 <= rate_bps <= 10000:
            raise ValueError("rate_bps must be within 0..10000")
        if bonus_days <= 0:
            raise ValueError("bonus_days must be positive")
        self.storage = storage
        self.rate_bps = rate_bps
        self.bonus_days = bonus_days
        self.reward_lock_days = reward_lock_days
        self.clock = clock

    # -------- Bindings --------

    def bind_referral(
        self,
        inviter_id: str,
        invitee_id: str,
        bound_by: Optional[str] = None,
        check_abuse: bool = True,
        now: Optional[int] = None,
    ) -> ReferralBindResult:
        inviter_id = (inviter_id or "").strip()
        invitee_id = (invitee_id or "").strip()
        now = self.clock() if now is None else now

        if inviter_id == invitee_id:
            raise SelfInviteError("inviter and invitee cannot be the same user")

        try:
            with self.storage.batch() as db:
                inviter = db.get(tables.User, inviter_id)
                if inviter is None:
                    raise InviterNotFoundError(f"inviter {inviter_id} not found")
                invitee = db.get(tables.User, invitee_id)
                if invitee is None:
                    raise InviteeNotFoundError(f"invitee {invitee_id} not found")

                existing = self._binding_row(db, invitee_id)
                if existing is not None:
                    return self._existing_binding_result(existing, inviter_id)

                if check_abuse and self._profiles_collide(inviter, invitee):
                    raise RiskRejectedError("invitee profile collides with inviter, rejected by risk control")

                db.add(tables.ReferralBinding(
                    id=str(uuid4()),
                    inviter_user_id=inviter_id,
                    invitee_user_id=invitee_id,
                    bound_by_admin_id=bound_by,
                    created_at=now,
                ))
        except IntegrityError:
            # lost an insert race on invitee_user_id; the winner decides
            with self.storage.batch() as db:
                existing = self._binding_row(db, invitee_id)
                if existing is None:
                    raise
                return self._existing_binding_result(existing, inviter_id)

        logger.info("Bound invitee %s to inviter %s", invitee_id, inviter_id)
        return ReferralBindResult(
            inviter_user_id=inviter_id, invitee_user_id=invitee_id, bound_at=now, already_bound=False
        )

    def get_inviter_id(self, invitee_id: str) -> Optional[str]:
        with self.storage.batch() as db:
            row = self._binding_row(db, invitee_id)
            return row.inviter_user_id if row else None

    def get_binding(self, invitee_id: str) -> Optional[ReferralBindResult]:
        with self.storage.batch() as db:
            row = self._binding_row(db, invitee_id)
            if row is None:
                return None
            return ReferralBindResult(
                inviter_user_id=row.inviter_user_id,
                invitee_user_id=row.invitee_user_id,
                bound_at=row.created_at,
                already_bound=True,
            )

    def _binding_row(self, db: Session, invitee_id: str) -> Optional[tables.ReferralBinding]:
        return (
            db.query(tables.ReferralBinding)
            .filter(tables.ReferralBinding.invitee_user_id == invitee_id)
            .first()
        )

    def _existing_binding_result(self, existing: tables.ReferralBinding, inviter_id: str) -> ReferralBindResult:
        if existing.inviter_user_id != inviter_id:
            raise InviteeAlreadyBoundError("invitee already has an inviter")
        return ReferralBindResult(
            inviter_user_id=inviter_id,
            invitee_user_id=existing.invitee_user_id,
            bound_at=existing.created_at,
            already_bound=True,
        )

    @staticmethod
    def _profiles_collide(inviter: tables.User, invitee: tables.User) -> bool:
        # exact equality only; one changed character defeats it
        for column in ABUSE_PROFILE_COLUMNS:
            left = getattr(inviter, column)
            if left and left == getattr(invitee, column):
                return True
        return False

    # -------- Rewards --------

    def unlock_at_for(self, recorded_at: int) -> int:
        return recorded_at + self.reward_lock_days * SECONDS_PER_DAY

    def create_reward_for_recharge(
        self,
        invitee_id: str,
        trigger,
        unlock_at: int,
        now: Optional[int] = None,
    ) -> RewardCreationResult:
        """Credit the invitee's inviter for ``trigger`` (a recharge record view).

        At most one reward per trigger record; repeated calls are no-ops.
        """
        if not is_reward_eligible(trigger.reason, trigger.source, trigger.payment_amount_cents):
            return RewardCreationResult(created=False)

        now = self.clock() if now is None else now
        try:
            with self.storage.batch() as db:
                binding = self._binding_row(db, invitee_id)
                if binding is None:
                    return RewardCreationResult(created=False)

                amount = calculate_reward_amount_cents(trigger.payment_amount_cents, self.rate_bps)
                if amount <= 0:
                    return RewardCreationResult(created=False, inviter_user_id=binding.inviter_user_id)

                exists = (
                    db.query(tables.ReferralReward.id)
                    .filter(tables.ReferralReward.recharge_record_id == trigger.id)
                    .first()
                )
                if exists:
                    return RewardCreationResult(
                        created=False, inviter_user_id=binding.inviter_user_id, reward_amount_cents=amount
                    )

                inviter_id = binding.inviter_user_id
                db.add(tables.ReferralReward(
                    id=str(uuid4()),
                    inviter_user_id=inviter_id,
                    invitee_user_id=invitee_id,
                    recharge_record_id=trigger.id,
                    recharge_reason=RechargeReason(trigger.reason).value,
                    recharge_source=RechargeSource(trigger.source).value,
                    payment_amount_cents=trigger.payment_amount_cents,
                    reward_rate_bps=self.rate_bps,
                    reward_amount_cents=amount,
                    status=ReferralRewardStatus.PENDING.value,
                    unlock_at=unlock_at,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            logger.info("Reward for recharge %s already exists, skipping", trigger.id)
            return RewardCreationResult(created=False)

        logger.info("Created %d cent reward for inviter %s from recharge %s", amount, inviter_id, trigger.id)
        return RewardCreationResult(created=True, inviter_user_id=inviter_id, reward_amount_cents=amount)

    def cancel_rewards_for_recharge(self, db: Session, record_id: str, reason: str, now: int) -> int:
        result = db.execute(
            update(tables.ReferralReward)
            .where(
                tables.ReferralReward.recharge_record_id == record_id,
                tables.ReferralReward.status.in_(
                    [ReferralRewardStatus.PENDING.value, ReferralRewardStatus.AVAILABLE.value]
                ),
            )
            .values(
                status=ReferralRewardStatus.CANCELED.value,
                canceled_at=now,
                canceled_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def unlock_pending_rewards(self, now: Optional[int] = None) -> int:
        now = self.clock() if now is None else now
        with self.storage.batch() as db:
            result = db.execute(
                update(tables.ReferralReward)
                .where(
                    tables.ReferralReward.status == ReferralRewardStatus.PENDING.value,
                    tables.ReferralReward.unlock_at <= now,
                )
                .values(status=ReferralRewardStatus.AVAILABLE.value, available_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            unlocked = result.rowcount or 0
        if unlocked:
            logger.info("Unlocked %d pending referral rewards", unlocked)
        return unlocked

    # -------- Invitee bonus --------

    def reserve_bonus_grant(self, invitee_id: str, trigger_record_id: str, now: Optional[int] = None) -> bool:
        """Insert-if-absent keyed by invitee. Only the caller that gets True may issue the bonus."""
        now = self.clock() if now is None else now
        try:
            with self.storage.batch() as db:
                exists = (
                    db.query(tables.ReferralBonusGrant.id)
                    .filter(tables.ReferralBonusGrant.invitee_user_id == invitee_id)
                    .first()
                )
                if exists:
                    return False
                db.add(tables.ReferralBonusGrant(
                    id=str(uuid4()),
                    invitee_user_id=invitee_id,
                    trigger_recharge_record_id=trigger_record_id,
                    bonus_days=self.bonus_days,
                    status=ReferralBonusStatus.PENDING.value,
                    created_at=now,
                ))
        except IntegrityError:
            return False
        return True

    def confirm_bonus_grant(self, invitee_id: str, bonus_record_id: str) -> bool:
        with self.storage.batch() as db:
            result = db.execute(
                update(tables.ReferralBonusGrant)
                .where(
                    tables.ReferralBonusGrant.invitee_user_id == invitee_id,
                    tables.ReferralBonusGrant.status == ReferralBonusStatus.PENDING.value,
                )
                .values(bonus_recharge_record_id=bonus_record_id, status=ReferralBonusStatus.GRANTED.value)
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0

    def find_granted_bonus_by_trigger(self, db: Session, trigger_record_id: str) -> Optional[BonusGrantView]:
        row = (
            db.query(tables.ReferralBonusGrant)
            .filter(
                tables.ReferralBonusGrant.trigger_recharge_record_id == trigger_record_id,
                tables.ReferralBonusGrant.status == ReferralBonusStatus.GRANTED.value,
            )
            .first()
        )
        return BonusGrantView.model_validate(row) if row else None

    def revoke_bonus_grant(self, db: Session, grant_id: str, rollback_record_id: str, now: int) -> bool:
        result = db.execute(
            update(tables.ReferralBonusGrant)
            .where(
                tables.ReferralBonusGrant.id == grant_id,
                tables.ReferralBonusGrant.status == ReferralBonusStatus.GRANTED.value,
            )
            .values(
                status=ReferralBonusStatus.REVOKED.value,
                revoked_at=now,
                revoke_recharge_record_id=rollback_record_id,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    def get_bonus_grant(self, invitee_id: str) -> Optional[BonusGrantView]:
        with self.storage.batch() as db:
            row = (
                db.query(tables.ReferralBonusGrant)
                .filter(tables.ReferralBonusGrant.invitee_user_id == invitee_id)
                .first()
            )
            return BonusGrantView.model_validate(row) if row else None

    # -------- Withdrawals --------

    def withdraw(
        self,
        inviter_id: str,
        processed_by: str,
        note: Optional[str] = None,
        now: Optional[int] = None,
    ) -> WithdrawalResult:
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise InvalidInputError(f"note must be at most {MAX_NOTE_LENGTH} characters")
        now = self.clock() if now is None else now

        with self.storage.batch() as db:
            rows = (
                db.query(tables.ReferralReward.id, tables.ReferralReward.reward_amount_cents)
                .filter(
                    tables.ReferralReward.inviter_user_id == inviter_id,
                    tables.ReferralReward.status == ReferralRewardStatus.AVAILABLE.value,
                )
                .order_by(tables.ReferralReward.created_at, tables.ReferralReward.id)
                .all()
            )
            total = sum(int(r.reward_amount_cents or 0) for r in rows)
            if total <= 0:
                raise NothingToWithdrawError(f"inviter {inviter_id} has nothing to withdraw")

            withdrawal_id = str(uuid4())
            reward_ids = [r.id for r in rows]
            db.add(tables.ReferralWithdrawal(
                id=withdrawal_id,
                inviter_user_id=inviter_id,
                amount_cents=total,
                processed_by_admin_id=processed_by,
                note=note,
                created_at=now,
            ))
            db.flush()

            result = db.execute(
                update(tables.ReferralReward)
                .where(
                    tables.ReferralReward.id.in_(reward_ids),
                    tables.ReferralReward.status == ReferralRewardStatus.AVAILABLE.value,
                )
                .values(
                    status=ReferralRewardStatus.WITHDRAWN.value,
                    withdrawn_at=now,
                    withdrawal_id=withdrawal_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(reward_ids):
                # a concurrent cancel/withdraw touched the snapshot; undo the whole batch
                raise ConflictError("available rewards changed during withdrawal, retry")

        logger.info("Withdrew %d cents across %d rewards for inviter %s", total, len(reward_ids), inviter_id)
        return WithdrawalResult(
            withdrawal_id=withdrawal_id, withdrawn_amount_cents=total, withdrawn_count=len(reward_ids)
        )

    # -------- Listings & summaries --------

    def list_rewards(
        self,
        inviter_id: Optional[str] = None,
        status: Optional[ReferralRewardStatus] = None,
        limit: int = 100,
    ) -> list[ReferralRewardView]:
        with self.storage.batch() as db:
            q = db.query(tables.ReferralReward)
            if inviter_id:
                q = q.filter(tables.ReferralReward.inviter_user_id == inviter_id)
            if status:
                q = q.filter(tables.ReferralReward.status == ReferralRewardStatus(status).value)
            rows = (
                q.order_by(tables.ReferralReward.created_at.desc(), tables.ReferralReward.id.desc())
                .limit(limit)
                .all()
            )
            return [ReferralRewardView.model_validate(r) for r in rows]

    def list_withdrawals(self, inviter_id: Optional[str] = None, limit: int = 100) -> list[WithdrawalView]:
        with self.storage.batch() as db:
            q = db.query(tables.ReferralWithdrawal)
            if inviter_id:
                q = q.filter(tables.ReferralWithdrawal.inviter_user_id == inviter_id)
            rows = (
                q.order_by(tables.ReferralWithdrawal.created_at.desc(), tables.ReferralWithdrawal.id.desc())
                .limit(limit)
                .all()
            )
            return [WithdrawalView.model_validate(r) for r in rows]

    def summarize_by_inviter(self, inviter_ids: Iterable[str]) -> dict[str, InviterRewardSummary]:
        unique_ids = sorted({i for i in inviter_ids if i})
        if not unique_ids:
            return {}

        reward = tables.ReferralReward
        binding = tables.ReferralBinding
        summaries = {i: InviterRewardSummary(inviter_user_id=i) for i in unique_ids}
        with self.storage.batch() as db:
            amounts = (
                db.query(
                    reward.inviter_user_id,
                    func.coalesce(func.sum(case(
                        (reward.status == ReferralRewardStatus.PENDING.value, reward.reward_amount_cents),
                        else_=0,
                    )), 0),
                    func.coalesce(func.sum(case(
                        (reward.status == ReferralRewardStatus.AVAILABLE.value, reward.reward_amount_cents),
                        else_=0,
                    )), 0),
                )
                .filter(reward.inviter_user_id.in_(unique_ids))
                .group_by(reward.inviter_user_id)
                .all()
            )
            for inviter_id, pending, available in amounts:
                summaries[inviter_id].pending_amount_cents = int(pending or 0)
                summaries[inviter_id].available_amount_cents = int(available or 0)

            counts = (
                db.query(binding.inviter_user_id, func.count(binding.id))
                .filter(binding.inviter_user_id.in_(unique_ids))
                .group_by(binding.inviter_user_id)
                .all()
            )
            for inviter_id, count in counts:
                summaries[inviter_id].invitee_count = int(count or 0)
        return summaries

    def count_invitees(self, inviter_ids: Iterable[str]) -> dict[str, int]:
        return {i: s.invitee_count for i, s in self.summarize_by_inviter(inviter_ids).items()}

    def referral_dashboard(self) -> ReferralDashboard:
        reward = tables.ReferralReward

        def amount_for(status: ReferralRewardStatus):
            return func.coalesce(func.sum(case((reward.status == status.value, reward.reward_amount_cents), else_=0)), 0)

        def count_for(status: ReferralRewardStatus):
            return func.coalesce(func.sum(case((reward.status == status.value, 1), else_=0)), 0)

        with self.storage.batch() as db:
            row = db.query(
                amount_for(ReferralRewardStatus.PENDING),
                amount_for(ReferralRewardStatus.AVAILABLE),
                amount_for(ReferralRewardStatus.WITHDRAWN),
                count_for(ReferralRewardStatus.PENDING),
                count_for(ReferralRewardStatus.AVAILABLE),
            ).one()

        return ReferralDashboard(
            pending_amount=from_cents(int(row[0] or 0)),
            available_amount=from_cents(int(row[1] or 0)),
            withdrawn_amount=from_cents(int(row[2] or 0)),
            pending_count=int(row[3] or 0),
            available_count=int(row[4] or 0),
        )
