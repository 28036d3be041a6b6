import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ledger import tables
from ledger.database import Storage
from ledger.errors import ConflictError, InvalidInputError, RateLimitedError, UnauthorizedError
from ledger.models import AdminIdentity

from .passwords import hash_password, verify_password
from .rate_limit import LoginRateLimiter

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


class AdminAuthService:
    """Admin credential checks throttled per client address.

    Session issuance is left to the HTTP layer; this only answers who the
    admin is.
    """

    def __init__(
        self,
        storage: Storage,
        limiter: Optional[LoginRateLimiter] = None,
        clock: Callable[[], int] = _now,
    ):
        self.storage = storage
        self.limiter = limiter or LoginRateLimiter()
        self.clock = clock

    def create_admin(self, username: str, password: str) -> AdminIdentity:
        username = (username or "").strip()
        if not username or len(username) > 80:
            raise InvalidInputError("username must be 1-80 characters")
        if len(password or "") < 8:
            raise InvalidInputError("password must be at least 8 characters")

        admin_id = str(uuid4())
        try:
            with self.storage.batch() as db:
                db.add(tables.AdminUser(
                    id=admin_id,
                    username=username,
                    password_hash=hash_password(password),
                    created_at=self.clock(),
                ))
        except IntegrityError:
            raise ConflictError(f"admin {username} already exists")
        logger.info("Created admin %s (%s)", username, admin_id)
        return AdminIdentity(admin_id=admin_id, username=username)

    def login(self, username: str, password: str, client_key: str) -> AdminIdentity:
        now = self.clock()
        status = self.limiter.check(client_key, now)
        if status.blocked:
            raise RateLimitedError(status.retry_after)

        username = (username or "").strip()
        if not username or not password:
            raise InvalidInputError("username and password are required")

        with self.storage.batch() as db:
            admin = db.query(tables.AdminUser).filter(tables.AdminUser.username == username).first()
            if admin is None or not verify_password(password, admin.password_hash):
                failed = self.limiter.record_failure(client_key, now)
                logger.warning("Failed admin login for %r from %s", username, client_key)
                if failed.blocked:
                    raise RateLimitedError(failed.retry_after)
                raise UnauthorizedError("invalid username or password")

            admin.last_login_at = now
            identity = AdminIdentity(admin_id=admin.id, username=admin.username)

        self.limiter.clear(client_key)
        return identity
