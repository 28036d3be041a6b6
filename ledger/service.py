import logging
import re
import secrets
import time
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from access.tokens import StatusTokenService, hash_token
from referral.engine import ReferralEngine, is_reward_eligible

from . import tables
from .chain import StaleExpiryError, extend_expiry, rebuild_user_chain, replay_chain, terminal_expiry
from .config import settings
from .database import Storage
from .errors import (
    AlreadyProcessedError,
    ConflictError,
    InvalidInputError,
    RecordNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from .models import (
    PROFILE_COLUMNS,
    SECONDS_PER_DAY,
    AdminIdentity,
    MembershipStatus,
    ProfileChangeLogView,
    ProfileField,
    RechargeReason,
    RechargeRecordView,
    RechargeResult,
    RechargeSource,
    RefundResult,
    StatusHistoryItem,
    StatusView,
    UserDaySummary,
    UserView,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CAS_ATTEMPTS = 3
MIN_RECHARGE_DAYS = 1
MAX_RECHARGE_DAYS = 3650
MAX_PAYMENT_AMOUNT_CENTS = 100_000_000
MAX_NOTE_LENGTH = 200
MAX_USERNAME_LENGTH = 80
MAX_EMAIL_LENGTH = 120
MAX_GROUP_NAME_LENGTH = 80
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _now() -> int:
    return int(time.time())


def _successor_id(record_id: str) -> str:
    """The id sorting directly after ``record_id`` among records of the same second."""
    return str(UUID(int=UUID(record_id).int + 1))


def _admin_id(admin: Optional[AdminIdentity]) -> Optional[str]:
    return admin.admin_id if admin else None


def _clean_note(note: Optional[str], label: str = "note") -> Optional[str]:
    if note is None:
        return None
    note = note.strip()
    if len(note) > MAX_NOTE_LENGTH:
        raise InvalidInputError(f"{label} must be at most {MAX_NOTE_LENGTH} characters")
    return note or None


def _clean_username(username: Optional[str]) -> str:
    username = (username or "").strip()
    if not username or len(username) > MAX_USERNAME_LENGTH:
        raise InvalidInputError(f"username must be 1-{MAX_USERNAME_LENGTH} characters")
    return username


def _clean_profile_value(field: ProfileField, value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    if not value:
        return None
    if field == ProfileField.FAMILY_GROUP_NAME:
        if len(value) > MAX_GROUP_NAME_LENGTH:
            raise InvalidInputError(f"{field.value} must be at most {MAX_GROUP_NAME_LENGTH} characters")
        return value
    if len(value) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(value):
        raise InvalidInputError(f"{field.value} must be a valid email of at most {MAX_EMAIL_LENGTH} characters")
    return value


def _validate_recharge(days: int, payment_amount_cents: int) -> None:
    if not isinstance(days, int) or not MIN_RECHARGE_DAYS <= days <= MAX_RECHARGE_DAYS:
        raise InvalidInputError(f"days must be an integer within {MIN_RECHARGE_DAYS}..{MAX_RECHARGE_DAYS}")
    if not isinstance(payment_amount_cents, int) or not 0 <= payment_amount_cents <= MAX_PAYMENT_AMOUNT_CENTS:
        raise InvalidInputError("payment amount out of range")


def remaining_days(expire_at: int, now: int) -> int:
    if expire_at <= now:
        return 0
    return -(-(expire_at - now) // SECONDS_PER_DAY)


def _dev_secret() -> str:
    if settings.APP_ENV == "production":
        raise RuntimeError("STATUS_TOKEN_SECRET is not configured")
    logger.warning("STATUS_TOKEN_SECRET not set; using a per-process secret, status links die on restart")
    return secrets.token_urlsafe(48)


class LedgerService:
    def __init__(
        self,
        storage: Optional[Storage] = None,
        tokens: Optional[StatusTokenService] = None,
        referrals: Optional[ReferralEngine] = None,
        clock: Callable[[], int] = _now,
    ):
        self.storage = storage or Storage()
        self.tokens = tokens or StatusTokenService(settings.STATUS_TOKEN_SECRET or _dev_secret())
        self.clock = clock
        self.referrals = referrals or ReferralEngine(
            self.storage,
            rate_bps=settings.REFERRAL_REWARD_RATE_BPS,
            bonus_days=settings.REFERRAL_BONUS_DAYS,
            reward_lock_days=settings.REFERRAL_REWARD_LOCK_DAYS,
            clock=clock,
        )

    # -------- Users --------

    def create_user(
        self,
        username: str,
        admin: Optional[AdminIdentity] = None,
        system_email: Optional[str] = None,
        user_email: Optional[str] = None,
        family_group_name: Optional[str] = None,
    ) -> tuple[UserView, str]:
        username = _clean_username(username)
        profile = {
            "system_email": _clean_profile_value(ProfileField.SYSTEM_EMAIL, system_email),
            "user_email": _clean_profile_value(ProfileField.USER_EMAIL, user_email),
            "family_group_name": _clean_profile_value(ProfileField.FAMILY_GROUP_NAME, family_group_name),
        }
        now = self.clock()
        user_id = str(uuid4())
        token = self.tokens.issue(user_id, 0)

        with self.storage.batch() as db:
            user = tables.User(
                id=user_id,
                username=username,
                access_token_hash=hash_token(token),
                token_version=0,
                expire_at=0,
                created_at=now,
                updated_at=now,
                **profile,
            )
            db.add(user)
            db.flush()
            view = UserView.model_validate(user)

        logger.info("Created user %s (%s) by admin %s", user_id, username, _admin_id(admin))
        return view, token

    def get_user(self, user_id: str) -> UserView:
        with self.storage.batch() as db:
            return UserView.model_validate(self._require_user(db, user_id))

    def search_users(self, query: str = "", limit: int = 50) -> list[UserView]:
        query = (query or "").strip().lower()
        with self.storage.batch() as db:
            q = db.query(tables.User)
            if query:
                q = q.filter(or_(*[
                    func.lower(column).contains(query, autoescape=True)
                    for column in (
                        tables.User.id,
                        tables.User.username,
                        tables.User.system_email,
                        tables.User.user_email,
                        tables.User.family_group_name,
                    )
                ]))
            rows = q.order_by(tables.User.created_at.desc(), tables.User.id).limit(limit).all()
            return [UserView.model_validate(r) for r in rows]

    def update_user(
        self,
        user_id: str,
        admin: Optional[AdminIdentity] = None,
        username: Optional[str] = None,
        profile: Optional[dict] = None,
        change_notes: Optional[dict] = None,
    ) -> UserView:
        """Update the username and/or profile fields.

        Every profile field whose value actually changes needs an entry in
        ``change_notes``; the changes are logged under one batch id.
        """
        profile = {ProfileField(k): v for k, v in (profile or {}).items()}
        notes = {ProfileField(k): v for k, v in (change_notes or {}).items()}
        now = self.clock()
        batch_id = str(uuid4())

        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            if username is not None:
                user.username = _clean_username(username)

            for field, raw in profile.items():
                column = PROFILE_COLUMNS[field]
                before = getattr(user, column)
                after = _clean_profile_value(field, raw)
                if before == after:
                    continue
                note = _clean_note(notes.get(field), label=f"{field.value} change note")
                if not note:
                    raise InvalidInputError(f"a change note is required for {field.value}")
                setattr(user, column, after)
                db.add(tables.UserProfileChangeLog(
                    id=str(uuid4()),
                    change_batch_id=batch_id,
                    user_id=user_id,
                    field_name=field.value,
                    before_value=before,
                    after_value=after,
                    change_note=note,
                    operator_admin_id=_admin_id(admin),
                    created_at=now,
                ))

            user.updated_at = now
            db.flush()
            return UserView.model_validate(user)

    def list_profile_change_logs(self, user_id: Optional[str] = None, limit: int = 50) -> list[ProfileChangeLogView]:
        with self.storage.batch() as db:
            q = db.query(tables.UserProfileChangeLog)
            if user_id:
                q = q.filter(tables.UserProfileChangeLog.user_id == user_id)
            rows = (
                q.order_by(tables.UserProfileChangeLog.created_at.desc(), tables.UserProfileChangeLog.id)
                .limit(limit)
                .all()
            )
            return [ProfileChangeLogView.model_validate(r) for r in rows]

    # -------- Status tokens --------

    def reset_token(self, user_id: str, admin: Optional[AdminIdentity] = None) -> tuple[UserView, str]:
        """Bump the token version; every previously issued token stops working."""
        now = self.clock()
        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            old_hash = user.access_token_hash
            user.token_version += 1
            token = self.tokens.issue(user.id, user.token_version)
            user.access_token_hash = hash_token(token)
            user.updated_at = now
            db.add(tables.TokenResetLog(
                id=str(uuid4()),
                user_id=user.id,
                old_token_hash=old_hash,
                new_token_hash=user.access_token_hash,
                operator_admin_id=_admin_id(admin),
                created_at=now,
            ))
            db.flush()
            view = UserView.model_validate(user)

        logger.info("Reset status token for user %s (version %d)", user_id, view.token_version)
        return view, token

    def get_status_token(self, user_id: str) -> str:
        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            token = self.tokens.derive_current(user.id, user.token_version, user.access_token_hash)
        if token is None:
            raise ConflictError(f"stored token for user {user_id} cannot be re-derived, reset it")
        return token

    def status(self, token: str, now: Optional[int] = None) -> StatusView:
        claims = self.tokens.decode(token)
        if claims is None:
            raise UnauthorizedError("invalid status token")
        now = self.clock() if now is None else now

        with self.storage.batch() as db:
            user = (
                db.query(tables.User)
                .filter(tables.User.access_token_hash == hash_token(token.strip()))
                .first()
            )
            if user is None or user.id != claims.user_id or user.token_version != claims.token_version:
                raise UnauthorizedError("invalid status token")

            records = (
                db.query(tables.RechargeRecord)
                .filter(tables.RechargeRecord.user_id == user.id)
                .order_by(tables.RechargeRecord.occurred_at.desc(), tables.RechargeRecord.id.desc())
                .all()
            )
            summary = self._day_summary(user, records, now)
            history = [
                StatusHistoryItem(
                    change_days=r.change_days,
                    reason=r.reason,
                    source=r.source,
                    occurred_at=r.occurred_at,
                    expire_after=r.expire_after,
                    refunded=r.refunded_at is not None,
                )
                for r in records
            ]
            return StatusView(
                username=user.username,
                membership=summary.membership,
                expire_at=summary.expire_at,
                remaining_days=summary.remaining_days,
                used_days=summary.used_days,
                total_days=summary.total_days,
                history=history,
            )

    def user_day_summary(self, user_id: str, now: Optional[int] = None) -> UserDaySummary:
        now = self.clock() if now is None else now
        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            records = db.query(tables.RechargeRecord).filter(tables.RechargeRecord.user_id == user_id).all()
            return self._day_summary(user, records, now)

    @staticmethod
    def _day_summary(user: tables.User, records, now: int) -> UserDaySummary:
        total = max(0, sum(r.change_days for r in records))
        remaining = remaining_days(user.expire_at, now)
        return UserDaySummary(
            user_id=user.id,
            expire_at=user.expire_at,
            membership=MembershipStatus.ACTIVE if user.expire_at > now else MembershipStatus.EXPIRED,
            remaining_days=remaining,
            used_days=max(0, total - remaining),
            total_days=total,
        )

    # -------- Recharges --------

    def recharge(
        self,
        user_id: str,
        days: int,
        reason: RechargeReason,
        payment_amount_cents: int = 0,
        note: Optional[str] = None,
        admin: Optional[AdminIdentity] = None,
    ) -> RechargeResult:
        return self.apply_recharge(
            user_id, days, reason, payment_amount_cents,
            occurred_at=None, source=RechargeSource.NORMAL, note=note, admin=admin,
        )

    def backfill(
        self,
        user_id: str,
        days: int,
        reason: RechargeReason,
        payment_amount_cents: int,
        occurred_at: int,
        note: Optional[str] = None,
        admin: Optional[AdminIdentity] = None,
    ) -> RechargeResult:
        if occurred_at is None:
            raise InvalidInputError("backfill needs an occurred_at timestamp")
        return self.apply_recharge(
            user_id, days, reason, payment_amount_cents,
            occurred_at=occurred_at, source=RechargeSource.BACKFILL, note=note, admin=admin,
        )

    def apply_recharge(
        self,
        user_id: str,
        days: int,
        reason: RechargeReason,
        payment_amount_cents: int,
        occurred_at: Optional[int],
        source: RechargeSource,
        note: Optional[str] = None,
        admin: Optional[AdminIdentity] = None,
        react: bool = True,
    ) -> RechargeResult:
        """Append one recharge record and bring the user's chain up to date.

        ``occurred_at=None`` means "now" and takes the optimistic append
        path; an explicit timestamp inserts and replays the chain. With
        ``react`` the referral side effects run after the batch commits.
        """
        reason = RechargeReason(reason)
        source = RechargeSource(source)
        if source == RechargeSource.REFUND_ROLLBACK:
            raise InvalidInputError("refund rollback records are only written by refund()")
        _validate_recharge(days, payment_amount_cents)
        note = _clean_note(note, label="internal note")
        if occurred_at is not None:
            if not isinstance(occurred_at, int) or occurred_at <= 0:
                raise InvalidInputError("occurred_at must be a positive unix timestamp")
            if occurred_at > self.clock():
                raise InvalidInputError("occurred_at cannot be in the future")

        subject = f"recharge of user {user_id}"
        if occurred_at is None:
            result = self._retry_stale(
                subject, lambda: self._append_latest(user_id, days, reason, payment_amount_cents, source, note, admin)
            )
        else:
            result = self._retry_stale(
                subject,
                lambda: self._insert_at(user_id, days, reason, payment_amount_cents, source, occurred_at, note, admin),
            )

        logger.info(
            "Recharge %s: user=%s days=%+d source=%s expire_at=%d",
            result.record.id, user_id, days, source.value, result.expire_at,
        )
        if react:
            self._after_recharge(result)
        return result

    def _retry_stale(self, subject: str, attempt_batch: Callable[[], T]) -> T:
        """Run a batch, rerunning it while its guarded expiry write loses."""
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            try:
                return attempt_batch()
            except StaleExpiryError as exc:
                logger.warning(
                    "Expiry of user %s changed concurrently during %s (attempt %d/%d)",
                    exc, subject, attempt, MAX_CAS_ATTEMPTS,
                )
        raise ConflictError(f"{subject} kept losing to concurrent changes, retry it")

    def _append_latest(self, user_id, days, reason, payment_amount_cents, source, note, admin) -> RechargeResult:
        now = self.clock()
        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            if self._has_records_since(db, user_id, now):
                # not strictly the newest link; let the replay place it
                return self._insert_and_rebuild(
                    db, user_id, days, reason, payment_amount_cents, source, now, now, note, admin
                )

            expire_before = user.expire_at
            expire_after = extend_expiry(expire_before, now, days)
            record = self._new_record(
                user_id, days, reason, payment_amount_cents, source, now, now, note, admin,
                expire_before=expire_before, expire_after=expire_after,
            )
            db.add(record)
            db.flush()

            updated = db.execute(
                update(tables.User)
                .where(tables.User.id == user_id, tables.User.expire_at == expire_before)
                .values(expire_at=expire_after, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if updated != 1:
                raise StaleExpiryError(user_id)
            return RechargeResult(expire_at=expire_after, record=RechargeRecordView.model_validate(record))

    def _insert_at(self, user_id, days, reason, payment_amount_cents, source, occurred_at, note, admin) -> RechargeResult:
        now = self.clock()
        with self.storage.batch() as db:
            return self._insert_and_rebuild(
                db, user_id, days, reason, payment_amount_cents, source, occurred_at, now, note, admin
            )

    def _insert_and_rebuild(
        self, db: Session, user_id, days, reason, payment_amount_cents, source, occurred_at, now, note, admin,
    ) -> RechargeResult:
        self._require_user(db, user_id)
        record = self._new_record(user_id, days, reason, payment_amount_cents, source, occurred_at, now, note, admin)
        db.add(record)
        expire_at = rebuild_user_chain(db, user_id, now)
        return RechargeResult(expire_at=expire_at, record=RechargeRecordView.model_validate(record))

    @staticmethod
    def _new_record(
        user_id, days, reason, payment_amount_cents, source, occurred_at, now, note, admin,
        expire_before: int = 0, expire_after: int = 0, refund_of: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> tables.RechargeRecord:
        return tables.RechargeRecord(
            id=record_id or str(uuid4()),
            user_id=user_id,
            change_days=days,
            reason=RechargeReason(reason).value,
            payment_amount_cents=payment_amount_cents,
            source=RechargeSource(source).value,
            internal_note=note,
            occurred_at=occurred_at,
            recorded_at=now,
            expire_before=expire_before,
            expire_after=expire_after,
            operator_admin_id=_admin_id(admin),
            refund_amount_cents=0,
            refund_of_record_id=refund_of,
        )

    @staticmethod
    def _has_records_since(db: Session, user_id: str, ts: int) -> bool:
        return (
            db.query(tables.RechargeRecord.id)
            .filter(tables.RechargeRecord.user_id == user_id, tables.RechargeRecord.occurred_at >= ts)
            .first()
            is not None
        )

    # -------- Referral side effects --------

    def _after_recharge(self, result: RechargeResult) -> None:
        """Referral reward and invitee bonus. Failures here never undo the recharge."""
        record = result.record
        if not is_reward_eligible(record.reason, record.source, record.payment_amount_cents):
            return

        try:
            reward = self.referrals.create_reward_for_recharge(
                record.user_id, record, unlock_at=self.referrals.unlock_at_for(record.recorded_at)
            )
            result.reward_created = reward.created
        except Exception:
            logger.exception("Referral reward for recharge %s failed", record.id)

        try:
            bonus = self._grant_invitee_bonus(record)
        except Exception:
            logger.exception("Invitee bonus for recharge %s failed", record.id)
            return
        if bonus is not None:
            result.bonus_record = bonus.record
            result.expire_at = bonus.expire_at

    def _grant_invitee_bonus(self, trigger: RechargeRecordView) -> Optional[RechargeResult]:
        if self.referrals.get_inviter_id(trigger.user_id) is None:
            return None
        if not self.referrals.reserve_bonus_grant(trigger.user_id, trigger.id):
            return None

        bonus = self.apply_recharge(
            trigger.user_id,
            self.referrals.bonus_days,
            RechargeReason.REFERRAL_REWARD,
            0,
            occurred_at=None,
            source=RechargeSource.SYSTEM_BONUS,
            note="invitee first qualifying recharge bonus",
            react=False,
        )
        if not self.referrals.confirm_bonus_grant(trigger.user_id, bonus.record.id):
            logger.error("Bonus grant for invitee %s was not pending when confirming", trigger.user_id)
        logger.info("Granted %d bonus days to invitee %s", self.referrals.bonus_days, trigger.user_id)
        return bonus

    # -------- Refunds --------

    def refund(
        self,
        record_id: str,
        admin: Optional[AdminIdentity] = None,
        amount_cents: Optional[int] = None,
        note: Optional[str] = None,
    ) -> RefundResult:
        """Reverse a recharge by appending a negative record.

        The rollback is placed directly behind the original in chain order,
        so the rebuilt expiry is what it would have been without the
        original, whatever was recorded after it. The original stays in
        place with its refund metadata set once; referral rewards it
        triggered are canceled and a bonus it granted is revoked, all in the
        same batch as the chain rebuild.
        """
        note = _clean_note(note, label="refund note")

        try:
            result = self._retry_stale(
                f"refund of {record_id}", lambda: self._refund_once(record_id, admin, amount_cents, note)
            )
        except IntegrityError:
            logger.exception("Refund of %s hit a constraint", record_id)
            raise ConflictError(f"refund of {record_id} conflicted with a concurrent change")

        logger.info(
            "Refunded recharge %s: rollback=%s canceled_rewards=%d bonus_revoked=%s expire_at=%d",
            record_id, result.rollback_record.id, result.canceled_rewards,
            result.revoked_bonus_record is not None, result.expire_at,
        )
        return result

    def _refund_once(self, record_id, admin, amount_cents, note) -> RefundResult:
        now = self.clock()
        with self.storage.batch() as db:
            original = db.get(tables.RechargeRecord, record_id)
            if original is None:
                raise RecordNotFoundError(f"Recharge record {record_id} not found")
            if original.source == RechargeSource.REFUND_ROLLBACK.value:
                raise AlreadyProcessedError("a refund rollback record cannot be refunded")
            if original.refunded_at is not None:
                raise AlreadyProcessedError(f"recharge record {record_id} was already refunded")
            if original.source == RechargeSource.SYSTEM_BONUS.value:
                raise InvalidInputError("bonus records are revoked by refunding their trigger recharge")

            amount = original.payment_amount_cents if amount_cents is None else amount_cents
            if not isinstance(amount, int) or not 0 <= amount <= original.payment_amount_cents:
                raise InvalidInputError("refund amount must be between 0 and the paid amount")

            marked = db.execute(
                update(tables.RechargeRecord)
                .where(tables.RechargeRecord.id == record_id, tables.RechargeRecord.refunded_at.is_(None))
                .values(
                    refunded_at=now,
                    refunded_by_admin_id=_admin_id(admin),
                    refund_amount_cents=amount,
                    refund_note=note,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if marked != 1:
                raise AlreadyProcessedError(f"recharge record {record_id} was already refunded")

            rollback = self._new_record(
                original.user_id, -original.change_days, original.reason, 0,
                RechargeSource.REFUND_ROLLBACK, original.occurred_at, now, note, admin,
                refund_of=original.id, record_id=_successor_id(original.id),
            )
            db.add(rollback)

            canceled = self.referrals.cancel_rewards_for_recharge(
                db, original.id, note or "recharge refunded", now
            )
            bonus_rollback = self._revoke_bonus_for(db, original.id, now, admin)

            expire_at = rebuild_user_chain(db, original.user_id, now)
            db.refresh(original)
            return RefundResult(
                expire_at=expire_at,
                refunded_record=RechargeRecordView.model_validate(original),
                rollback_record=RechargeRecordView.model_validate(rollback),
                canceled_rewards=canceled,
                revoked_bonus_record=(
                    RechargeRecordView.model_validate(bonus_rollback) if bonus_rollback else None
                ),
            )

    def _revoke_bonus_for(self, db: Session, trigger_id: str, now: int, admin) -> Optional[tables.RechargeRecord]:
        grant = self.referrals.find_granted_bonus_by_trigger(db, trigger_id)
        if grant is None:
            return None

        bonus_record = db.get(tables.RechargeRecord, grant.bonus_recharge_record_id) if grant.bonus_recharge_record_id else None
        if bonus_record is not None:
            occurred_at, rollback_id = bonus_record.occurred_at, _successor_id(bonus_record.id)
        else:
            occurred_at, rollback_id = now, None
        rollback = self._new_record(
            grant.invitee_user_id, -grant.bonus_days, RechargeReason.REFERRAL_REWARD, 0,
            RechargeSource.REFUND_ROLLBACK, occurred_at, now, "invitee bonus revoked", admin,
            refund_of=grant.bonus_recharge_record_id, record_id=rollback_id,
        )
        db.add(rollback)
        db.flush()
        if not self.referrals.revoke_bonus_grant(db, grant.id, rollback.id, now):
            raise AlreadyProcessedError(f"bonus grant {grant.id} is no longer granted")
        if bonus_record is not None:
            bonus_record.refunded_at = now
            bonus_record.refunded_by_admin_id = _admin_id(admin)
            bonus_record.refund_note = "revoked with trigger refund"
        return rollback

    # -------- Records --------

    def get_recharge_record(self, record_id: str) -> RechargeRecordView:
        with self.storage.batch() as db:
            record = db.get(tables.RechargeRecord, record_id)
            if record is None:
                raise RecordNotFoundError(f"Recharge record {record_id} not found")
            return RechargeRecordView.model_validate(record)

    def list_recharge_records(self, user_id: Optional[str] = None, limit: int = 50) -> list[RechargeRecordView]:
        with self.storage.batch() as db:
            q = db.query(tables.RechargeRecord)
            if user_id:
                q = q.filter(tables.RechargeRecord.user_id == user_id)
            rows = (
                q.order_by(tables.RechargeRecord.recorded_at.desc(), tables.RechargeRecord.id.desc())
                .limit(limit)
                .all()
            )
            return [RechargeRecordView.model_validate(r) for r in rows]

    def chain_is_consistent(self, user_id: str) -> bool:
        """Replay the stored records and compare against every stored snapshot."""
        with self.storage.batch() as db:
            user = self._require_user(db, user_id)
            records = db.query(tables.RechargeRecord).filter(tables.RechargeRecord.user_id == user_id).all()
            by_id = {r.id: r for r in records}
            links = replay_chain(records)
            snapshots_ok = all(
                by_id[link.record_id].expire_before == link.expire_before
                and by_id[link.record_id].expire_after == link.expire_after
                for link in links
            )
            return snapshots_ok and terminal_expiry(links) == user.expire_at

    @staticmethod
    def _require_user(db: Session, user_id: str) -> tables.User:
        user = db.get(tables.User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user
