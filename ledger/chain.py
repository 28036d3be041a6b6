"""
Recharge chain replay.

A user's expiry is never stored on its own authority: it is the terminal
value of replaying every recharge record in ``(occurred_at, id)`` order,
starting from zero. Backfilled and refund records can land anywhere in that
order, so any insertion rewrites the ``expire_before`` / ``expire_after``
snapshots of every later record.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from . import tables
from .errors import UserNotFoundError
from .models import SECONDS_PER_DAY

logger = logging.getLogger(__name__)


class StaleExpiryError(Exception):
    """The guarded expiry write lost to a concurrent writer."""


@dataclass(frozen=True)
class ChainLink:
    record_id: str
    occurred_at: int
    change_days: int
    expire_before: int
    expire_after: int


def extend_expiry(running: int, occurred_at: int, days: int) -> int:
    return max(running, occurred_at) + days * SECONDS_PER_DAY


def chain_order(records: Iterable) -> list:
    return sorted(records, key=lambda r: (r.occurred_at, r.id))


def replay_chain(records: Iterable) -> list[ChainLink]:
    """Recompute snapshots for records exposing ``id``, ``occurred_at`` and ``change_days``."""
    running = 0
    links = []
    for record in chain_order(records):
        after = extend_expiry(running, record.occurred_at, record.change_days)
        links.append(ChainLink(record.id, record.occurred_at, record.change_days, running, after))
        running = after
    return links


def terminal_expiry(links: Sequence[ChainLink]) -> int:
    return links[-1].expire_after if links else 0


def lock_user(db: Session, user_id: str) -> tables.User:
    """Load the user row fresh, locking it where the dialect supports FOR UPDATE."""
    user = db.get(tables.User, user_id, with_for_update=True, populate_existing=True)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


def rebuild_user_chain(db: Session, user_id: str, now: int) -> int:
    """Rewrite stale snapshots and the user's expiry inside the caller's batch.

    The user row is locked before the records are read, and the expiry write
    is guarded by the value read under that lock. Raises ``StaleExpiryError``
    when another writer got there first; the caller retries the batch.

    Returns the new ``expire_at``.
    """
    user = lock_user(db, user_id)
    expire_read = user.expire_at
    db.flush()

    records = (
        db.query(tables.RechargeRecord)
        .filter(tables.RechargeRecord.user_id == user_id)
        .order_by(tables.RechargeRecord.occurred_at, tables.RechargeRecord.id)
        .all()
    )
    by_id = {r.id: r for r in records}

    rewritten = 0
    links = replay_chain(records)
    for link in links:
        row = by_id[link.record_id]
        if row.expire_before != link.expire_before or row.expire_after != link.expire_after:
            row.expire_before = link.expire_before
            row.expire_after = link.expire_after
            rewritten += 1

    expire_at = terminal_expiry(links)
    db.flush()
    updated = db.execute(
        update(tables.User)
        .where(tables.User.id == user_id, tables.User.expire_at == expire_read)
        .values(expire_at=expire_at, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if updated != 1:
        raise StaleExpiryError(user_id)
    set_committed_value(user, "expire_at", expire_at)
    set_committed_value(user, "updated_at", now)

    if rewritten:
        logger.info(
            "Rebuilt chain for user %s: %d of %d records rewritten, expire_at=%d",
            user_id, rewritten, len(records), expire_at,
        )
    return expire_at
