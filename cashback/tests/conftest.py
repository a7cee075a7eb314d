import itertools
import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("CASHBACK_LOG_FORMAT", "text")

from cashback.config import Settings
from cashback.models import UserProfile
from cashback.service import CashbackService
from cashback.storage import CashbackStorage


class FakeHasher:
    def hash(self, password: str) -> str:
        return f"hashed:{password}"

    def verify(self, password: str, hashed: str) -> bool:
        return hashed == f"hashed:{password}"


@pytest.fixture
def clock():
    """A clock that moves forward one second on every read."""
    start = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def storage(clock):
    return CashbackStorage(clock=clock)


@pytest.fixture
def settings():
    return Settings(seed_admin=False)


@pytest.fixture
def service(storage, settings):
    return CashbackService(storage=storage, settings=settings, hasher=FakeHasher())


def make_profile(username: str, is_admin: bool = False) -> UserProfile:
    return UserProfile(
        username=username,
        credential_hash=f"hashed:{username}-pw",
        name=username.title(),
        address="1 Main Street",
        phone="9876543210",
        is_admin=is_admin,
    )


@pytest.fixture
def alice(service):
    return service.create_user(make_profile("alice"))


@pytest.fixture
def bob(service):
    return service.create_user(make_profile("bob"))


@pytest.fixture
def profile():
    return make_profile
