# ledger/database.py
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Generator, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ledger.config import settings

logger = logging.getLogger(__name__)


# Ordered, append-only. A deployed version is never edited; schema changes
# ship as a new entry. DDL sticks to types both SQLite and Postgres accept.
MIGRATIONS: Sequence[Tuple[int, str, Sequence[str]]] = (
    (
        1,
        "core_ledger",
        (
            """
            CREATE TABLE users (
                id VARCHAR(36) PRIMARY KEY,
                username VARCHAR(80) NOT NULL,
                system_email VARCHAR(120),
                user_email VARCHAR(120),
                family_group_name VARCHAR(80),
                access_token_hash VARCHAR(64) NOT NULL UNIQUE,
                token_version INTEGER NOT NULL DEFAULT 0,
                expire_at BIGINT NOT NULL DEFAULT 0,
                created_at BIGINT NOT NULL,
                updated_at BIGINT NOT NULL
            )
            """,
            """
            CREATE TABLE admin_users (
                id VARCHAR(36) PRIMARY KEY,
                username VARCHAR(80) NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                last_login_at BIGINT,
                created_at BIGINT NOT NULL
            )
            """,
            """
            CREATE TABLE recharge_records (
                id VARCHAR(36) PRIMARY KEY,
                user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                change_days INTEGER NOT NULL,
                reason VARCHAR(32) NOT NULL,
                payment_amount_cents BIGINT NOT NULL DEFAULT 0,
                source VARCHAR(32) NOT NULL,
                internal_note TEXT,
                occurred_at BIGINT NOT NULL,
                recorded_at BIGINT NOT NULL,
                expire_before BIGINT NOT NULL,
                expire_after BIGINT NOT NULL,
                operator_admin_id VARCHAR(36),
                refunded_at BIGINT,
                refunded_by_admin_id VARCHAR(36),
                refund_amount_cents BIGINT NOT NULL DEFAULT 0,
                refund_note TEXT,
                refund_of_record_id VARCHAR(36),
                CHECK (payment_amount_cents >= 0),
                CHECK (source IN ('normal', 'backfill', 'system_bonus', 'refund_rollback'))
            )
            """,
            """
            CREATE TABLE token_reset_logs (
                id VARCHAR(36) PRIMARY KEY,
                user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                old_token_hash VARCHAR(64) NOT NULL,
                new_token_hash VARCHAR(64) NOT NULL,
                operator_admin_id VARCHAR(36),
                created_at BIGINT NOT NULL
            )
            """,
            "CREATE INDEX ix_users_username ON users (username)",
            "CREATE INDEX ix_recharge_records_user_occurred ON recharge_records (user_id, occurred_at, id)",
            "CREATE INDEX ix_recharge_records_recorded_at ON recharge_records (recorded_at)",
        ),
    ),
    (
        2,
        "user_profile_change_logs",
        (
            """
            CREATE TABLE user_profile_change_logs (
                id VARCHAR(36) PRIMARY KEY,
                change_batch_id VARCHAR(36) NOT NULL,
                user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                field_name VARCHAR(32) NOT NULL,
                before_value TEXT,
                after_value TEXT,
                change_note TEXT NOT NULL,
                operator_admin_id VARCHAR(36),
                created_at BIGINT NOT NULL
            )
            """,
            "CREATE INDEX ix_profile_change_logs_user_created ON user_profile_change_logs (user_id, created_at)",
        ),
    ),
    (
        3,
        "referral_rewards",
        (
            """
            CREATE TABLE user_referrals (
                id VARCHAR(36) PRIMARY KEY,
                inviter_user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                invitee_user_id VARCHAR(36) NOT NULL UNIQUE REFERENCES users(id),
                bound_by_admin_id VARCHAR(36),
                created_at BIGINT NOT NULL
            )
            """,
            """
            CREATE TABLE referral_withdrawals (
                id VARCHAR(36) PRIMARY KEY,
                inviter_user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                amount_cents BIGINT NOT NULL,
                processed_by_admin_id VARCHAR(36) NOT NULL,
                note TEXT,
                created_at BIGINT NOT NULL,
                CHECK (amount_cents > 0)
            )
            """,
            """
            CREATE TABLE referral_reward_ledger (
                id VARCHAR(36) PRIMARY KEY,
                inviter_user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                invitee_user_id VARCHAR(36) NOT NULL REFERENCES users(id),
                recharge_record_id VARCHAR(36) NOT NULL UNIQUE REFERENCES recharge_records(id),
                recharge_reason VARCHAR(32) NOT NULL,
                recharge_source VARCHAR(32) NOT NULL,
                payment_amount_cents BIGINT NOT NULL,
                reward_rate_bps INTEGER NOT NULL,
                reward_amount_cents BIGINT NOT NULL,
                status VARCHAR(16) NOT NULL,
                unlock_at BIGINT NOT NULL,
                available_at BIGINT,
                canceled_at BIGINT,
                canceled_reason TEXT,
                withdrawn_at BIGINT,
                withdrawal_id VARCHAR(36) REFERENCES referral_withdrawals(id),
                created_at BIGINT NOT NULL,
                updated_at BIGINT NOT NULL,
                CHECK (payment_amount_cents >= 0),
                CHECK (reward_amount_cents >= 0),
                CHECK (reward_rate_bps >= 0 AND reward_rate_bps <= 10000),
                CHECK (status IN ('pending', 'available', 'canceled', 'withdrawn'))
            )
            """,
            """
            CREATE TABLE referral_bonus_grants (
                id VARCHAR(36) PRIMARY KEY,
                invitee_user_id VARCHAR(36) NOT NULL UNIQUE REFERENCES users(id),
                trigger_recharge_record_id VARCHAR(36) NOT NULL UNIQUE REFERENCES recharge_records(id),
                bonus_recharge_record_id VARCHAR(36) UNIQUE REFERENCES recharge_records(id),
                bonus_days INTEGER NOT NULL,
                status VARCHAR(16) NOT NULL DEFAULT 'pending',
                revoked_at BIGINT,
                revoke_recharge_record_id VARCHAR(36) REFERENCES recharge_records(id),
                created_at BIGINT NOT NULL,
                CHECK (bonus_days > 0),
                CHECK (status IN ('pending', 'granted', 'revoked'))
            )
            """,
            "CREATE INDEX ix_user_referrals_inviter ON user_referrals (inviter_user_id, created_at)",
            "CREATE INDEX ix_referral_withdrawals_inviter ON referral_withdrawals (inviter_user_id, created_at)",
            "CREATE INDEX ix_referral_reward_status_unlock ON referral_reward_ledger (status, unlock_at)",
            "CREATE INDEX ix_referral_reward_inviter_status ON referral_reward_ledger (inviter_user_id, status, created_at)",
        ),
    ),
)

LATEST_SCHEMA_VERSION = MIGRATIONS[-1][0]


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)
    return create_engine(url, pool_pre_ping=True, future=True)


def applied_versions(engine: Engine) -> List[int]:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name VARCHAR(64) NOT NULL,
                    applied_at BIGINT NOT NULL
                )
                """
            )
        )
        rows = conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))
        return [int(r[0]) for r in rows]


def migrate(engine: Engine) -> List[int]:
    """Apply every pending migration, each in its own transaction.

    Returns the versions applied by this call (empty when already current).
    """
    done = set(applied_versions(engine))
    applied: List[int] = []
    for version, name, statements in MIGRATIONS:
        if version in done:
            continue
        with engine.begin() as conn:
            for stmt in statements:
                conn.execute(text(stmt))
            conn.execute(
                text("INSERT INTO schema_migrations (version, name, applied_at) VALUES (:v, :n, :t)"),
                {"v": version, "n": name, "t": int(time.time())},
            )
        logger.info("Applied schema migration %s (%s)", version, name)
        applied.append(version)
    return applied


class Storage:
    """Owns the engine and hands out request-scoped sessions."""

    def __init__(self, url: Optional[str] = None, *, auto_migrate: bool = True):
        self.url = url or settings.database_url
        self.engine = create_db_engine(self.url)
        self._sessionmaker = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False, future=True
        )
        if auto_migrate:
            migrate(self.engine)

    @contextmanager
    def batch(self) -> Generator[Session, None, None]:
        """All-or-nothing unit of work: commit on exit, roll back on any error."""
        db = self._sessionmaker()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def schema_version(self) -> int:
        versions = applied_versions(self.engine)
        return versions[-1] if versions else 0

    def dispose(self) -> None:
        self.engine.dispose()
