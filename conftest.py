"""Shared fixtures for the ledger, referral and access test suites."""

import pytest

from access.tokens import StatusTokenService
from ledger.database import Storage
from ledger.service import LedgerService

TOKEN_SECRET = "test-status-token-secret-0123456789abcdef"
T0 = 1_700_000_000
DAY = 86400


class FakeClock:
    """Callable clock; ``step`` advances it on every read."""

    def __init__(self, now: int = T0, step: int = 0):
        self.now = now
        self.step = step

    def __call__(self) -> int:
        current = self.now
        self.now += self.step
        return current

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_service(storage: Storage, clock: FakeClock) -> LedgerService:
    return LedgerService(storage, tokens=StatusTokenService(TOKEN_SECRET), clock=clock)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    store = Storage("sqlite://")
    yield store
    store.dispose()


@pytest.fixture
def file_storage(tmp_path):
    store = Storage(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield store
    store.dispose()


@pytest.fixture
def service(storage, clock):
    return make_service(storage, clock)
