import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from circulation.desk import CirculationDesk
from circulation.models import CopyStatus, MembershipTier, UserRole

START = datetime(2024, 3, 1, 10, 0, 0)


class FrozenClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now += timedelta(days=days, hours=hours)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def desk(tmp_path, request, clock):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    desk = CirculationDesk(db_file=db_file, clock=clock, synchronous_events=True, webhook_url="")
    yield desk
    desk.close()
    if os.path.exists(db_file):
        os.remove(db_file)


def add_copies(desk, edition_id, library_id, count, status=CopyStatus.AVAILABLE, prefix=None, acquired=None):
    """Catalog ``count`` copies of an edition at a library and return their ids."""
    prefix = prefix or f"{edition_id}-{library_id}"
    existing = len(desk.directory.list_copies(edition_id))
    ids = []
    for i in range(count):
        copy_id = f"{prefix}-{existing + i + 1:02d}"
        desk.directory.add_copy(copy_id, edition_id, library_id, status=status, acquired_date=acquired or desk.clock())
        ids.append(copy_id)
    return ids


@pytest.fixture
def world(desk):
    """Three branches, a handful of members and one edition with a single shelved copy."""
    d = desk.directory
    d.add_library("lib-a", "Central Library", loan_period_days=14, fine_rate_per_day=0.25)
    d.add_library("lib-b", "Riverside Branch", loan_period_days=21, fine_rate_per_day=0.10)
    d.add_library("lib-c", "Hillside Branch")

    d.add_user("alice", "Alice", "alice@example.org")
    d.add_user("bob", "Bob", "bob@example.org", membership_type=MembershipTier.PREMIUM)
    d.add_user("carol", "Carol", "carol@example.org", membership_type=MembershipTier.STUDENT)
    d.add_user("parent", "Pat Parent", "pat@example.org", global_borrow_limit=2)
    d.add_user("kid", "Kim Kid", "kim@example.org", parent_account_id="parent")
    d.add_user("staff", "Sam Staff", "sam@example.org", role=UserRole.LIBRARIAN)

    d.add_work("w-1984", "1984", "George Orwell")
    d.add_edition("ed-1984", "w-1984", "9780451524935", replacement_cost=20.0)
    d.add_work("w-dune", "Dune", "Frank Herbert")
    d.add_edition("ed-dune", "w-dune", "9780441172719", replacement_cost=12.5)

    copy_id = add_copies(desk, "ed-1984", "lib-a", 1, prefix="c1984")[0]
    return SimpleNamespace(desk=desk, copy_id=copy_id, edition_id="ed-1984")
