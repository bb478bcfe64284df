import threading
from datetime import date, datetime, timedelta

import pytest

from circulation.circulation import depreciated_value, resolve_effective_borrower
from circulation.database import get_db_connection
from circulation.errors import (
    CirculationError,
    DuplicateLoan,
    Forbidden,
    InvalidState,
    LimitExceeded,
    NotAvailable,
    NotFound,
    ReservedForOther,
    ValidationError,
)
from circulation.models import (
    BorrowStatus,
    CopyCondition,
    CopyStatus,
    DamageStatus,
    ReservationStatus,
    ShipmentReason,
    ShipmentStatus,
    User,
)
from conftest import START, add_copies


# --- Effective borrower resolution ---

def test_resolver_plain_member_borrows_for_self():
    alice = User("alice", "Alice", "a@example.org")
    assert resolve_effective_borrower(alice) == (alice, alice)


def test_resolver_child_is_billed_to_parent():
    parent = User("parent", "Pat", "p@example.org")
    kid = User("kid", "Kim", "k@example.org", parent_account_id="parent")
    assert resolve_effective_borrower(kid, parent=parent) == (parent, kid)


def test_resolver_explicit_delegate_must_be_own_child():
    parent = User("parent", "Pat", "p@example.org")
    kid = User("kid", "Kim", "k@example.org", parent_account_id="parent")
    stranger = User("alice", "Alice", "a@example.org")

    assert resolve_effective_borrower(parent, on_behalf_of=kid) == (parent, kid)
    with pytest.raises(ValidationError):
        resolve_effective_borrower(stranger, on_behalf_of=kid)


# --- Borrow ---

def test_borrow_marks_copy_borrowed_and_sets_due_date(world):
    desk = world.desk
    borrow = desk.circulation.borrow("alice", world.copy_id, "lib-a")

    assert borrow.borrower_id == borrow.beneficiary_id == "alice"
    assert borrow.due_date == START + timedelta(days=14)
    assert borrow.status is BorrowStatus.BORROWED
    assert desk.directory.get_copy(world.copy_id).status is CopyStatus.BORROWED


def test_borrow_uses_lending_library_loan_period(world):
    desk = world.desk
    copy_id = add_copies(desk, "ed-dune", "lib-b", 1)[0]
    borrow = desk.circulation.borrow("alice", copy_id, "lib-b")
    assert borrow.due_date == START + timedelta(days=21)


def test_borrow_requires_copy_at_requested_library(world):
    with pytest.raises(NotAvailable):
        world.desk.circulation.borrow("alice", world.copy_id, "lib-b")


def test_borrowed_copy_is_not_available(world):
    desk = world.desk
    desk.circulation.borrow("alice", world.copy_id, "lib-a")
    with pytest.raises(NotAvailable):
        desk.circulation.borrow("bob", world.copy_id, "lib-a")


def test_concurrent_borrows_of_one_copy(world):
    desk = world.desk
    barrier = threading.Barrier(2)
    outcomes = {}

    def borrow(user_id):
        barrier.wait()
        try:
            desk.circulation.borrow(user_id, world.copy_id, "lib-a")
            outcomes[user_id] = "ok"
        except CirculationError as e:
            outcomes[user_id] = type(e).__name__

    threads = [threading.Thread(target=borrow, args=(user_id,)) for user_id in ("alice", "carol")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ["NotAvailable", "ok"]
    winner = next(user_id for user_id, outcome in outcomes.items() if outcome == "ok")
    assert [loan["borrower_id"] for loan in desk.circulation.current_loans(winner)] == [winner]
    conn = get_db_connection()
    try:
        open_loans = conn.execute(
            "SELECT COUNT(*) FROM borrows WHERE copy_id = ? AND status = 'BORROWED'", (world.copy_id,)
        ).fetchone()[0]
    finally:
        conn.close()
    assert open_loans == 1


def test_unknown_copy_or_user(world):
    with pytest.raises(NotFound):
        world.desk.circulation.borrow("alice", "no-such-copy", "lib-a")
    with pytest.raises(NotFound):
        world.desk.circulation.borrow("nobody", world.copy_id, "lib-a")


def test_child_loans_count_against_parent_limit(world):
    desk = world.desk
    copies = add_copies(desk, "ed-dune", "lib-a", 3)

    kid_loan = desk.circulation.borrow("kid", copies[0], "lib-a")
    assert (kid_loan.borrower_id, kid_loan.beneficiary_id, kid_loan.acting_user_id) == ("parent", "kid", "kid")

    desk.circulation.borrow("parent", copies[1], "lib-a")
    with pytest.raises(LimitExceeded):
        desk.circulation.borrow("kid", copies[2], "lib-a")
    assert desk.directory.get_copy(copies[2]).status is CopyStatus.AVAILABLE


def test_branch_borrowing_limit_is_not_a_loan_cap(world):
    desk = world.desk
    desk.directory.add_library("lib-d", "Reading Room", borrowing_limit=1)
    copies = add_copies(desk, "ed-dune", "lib-d", 2)

    for copy_id in copies:
        desk.circulation.borrow("alice", copy_id, "lib-d")
    assert len(desk.circulation.current_loans("alice")) == 2


def test_parent_borrows_on_behalf_of_child(world):
    desk = world.desk
    borrow = desk.circulation.borrow("parent", world.copy_id, "lib-a", on_behalf_of="kid")
    assert (borrow.borrower_id, borrow.beneficiary_id) == ("parent", "kid")


def test_cannot_borrow_on_behalf_of_someone_elses_child(world):
    with pytest.raises(ValidationError):
        world.desk.circulation.borrow("alice", world.copy_id, "lib-a", on_behalf_of="kid")


def test_limit_checked_before_availability(world):
    desk = world.desk
    copies = add_copies(desk, "ed-dune", "lib-a", 2)
    desk.circulation.borrow("parent", copies[0], "lib-a")
    desk.circulation.borrow("parent", copies[1], "lib-a")
    with pytest.raises(LimitExceeded):
        desk.circulation.borrow("parent", world.copy_id, "lib-b")


def test_stale_open_loan_is_reported_as_duplicate(world):
    desk = world.desk
    conn = get_db_connection()
    try:
        conn.execute(
            "INSERT INTO borrows (borrower_id, beneficiary_id, acting_user_id, copy_id, edition_id, library_id, "
            "borrowed_at, due_date, status, condition_at_borrow) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'BORROWED', 'GOOD')",
            ("alice", "alice", "alice", world.copy_id, "ed-1984", "lib-a", START.isoformat(),
             (START + timedelta(days=14)).isoformat()),
        )
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(DuplicateLoan):
        desk.circulation.borrow("alice", world.copy_id, "lib-a")
    # The open-loan index stops anyone else as well
    with pytest.raises(DuplicateLoan):
        desk.circulation.borrow("bob", world.copy_id, "lib-a")
    assert desk.directory.get_copy(world.copy_id).status is CopyStatus.AVAILABLE


def test_reserved_copy_goes_only_to_top_of_queue(world):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")
    desk.reservations.create_reservation("carol", "ed-1984")
    bob_reservation = desk.reservations.create_reservation("bob", "ed-1984")

    desk.circulation.return_copy(loan.id, "alice")

    with pytest.raises(ReservedForOther):
        desk.circulation.borrow("carol", world.copy_id, "lib-a")
    with pytest.raises(ReservedForOther):
        desk.circulation.borrow("alice", world.copy_id, "lib-a")

    borrow = desk.circulation.borrow("bob", world.copy_id, "lib-a")
    assert borrow.borrower_id == "bob"
    bob_entries = {r.id: r for r in desk.reservations.list_for_user("bob")}
    assert bob_entries[bob_reservation.id].status is ReservationStatus.FULFILLED
    assert desk.reservations.list_for_user("carol")[0].status is ReservationStatus.PENDING


def test_return_notifies_head_of_queue(world):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")
    desk.reservations.create_reservation("carol", "ed-1984")

    desk.circulation.return_copy(loan.id, "alice")

    titles = [n.title for n in desk.notifier.list_for_user("carol")]
    assert titles == ["Book Available"]


# --- Return ---

def test_return_computes_and_stores_fine_breakdown(world, clock):
    desk = world.desk
    desk.ledger.create_policy("lib-a", 0.50, date(2023, 1, 1))
    desk.ledger.create_policy("lib-a", 0.75, date(2024, 1, 1))

    clock.set(datetime(2023, 12, 16))
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")
    assert loan.due_date == datetime(2023, 12, 30)

    clock.set(datetime(2024, 1, 3))
    outcome = desk.circulation.return_copy(loan.id, "alice")

    assert outcome.borrow.fine == 2.50
    stored = desk.circulation.get_borrow(loan.id)
    assert stored.status is BorrowStatus.RETURNED
    assert stored.return_date == datetime(2024, 1, 3)
    assert stored.fine == 2.50
    assert [(s.start, s.end, s.rate, s.amount) for s in stored.fine_breakdown] == [
        (datetime(2023, 12, 30), datetime(2024, 1, 1), 0.50, 1.00),
        (datetime(2024, 1, 1), datetime(2024, 1, 3), 0.75, 1.50),
    ]
    assert desk.directory.get_copy(world.copy_id).status is CopyStatus.AVAILABLE


def test_on_time_return_has_no_fine(world, clock):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")
    clock.advance(days=3)
    outcome = desk.circulation.return_copy(loan.id, "alice", condition=CopyCondition.FAIR, notes="<b>worn</b> spine")

    assert outcome.borrow.fine == 0
    assert outcome.borrow.fine_breakdown == []
    assert outcome.borrow.notes == "worn spine"
    assert outcome.shipment is None
    assert desk.directory.get_copy(world.copy_id).condition is CopyCondition.FAIR


def test_return_requires_open_loan_owned_by_user(world):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")

    with pytest.raises(NotFound):
        desk.circulation.return_copy(loan.id, "bob")
    desk.circulation.return_copy(loan.id, "alice")
    with pytest.raises(NotFound):
        desk.circulation.return_copy(loan.id, "alice")


def test_child_can_return_loan_billed_to_parent(world):
    desk = world.desk
    loan = desk.circulation.borrow("kid", world.copy_id, "lib-a")
    outcome = desk.circulation.return_copy(loan.id, "kid")
    assert outcome.borrow.status is BorrowStatus.RETURNED


def test_return_to_other_branch_ships_copy_home(world):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")

    outcome = desk.circulation.return_copy(loan.id, "alice", return_to_library_id="lib-b")

    shipment = outcome.shipment
    assert (shipment.from_library_id, shipment.to_library_id) == ("lib-b", "lib-a")
    assert shipment.reason is ShipmentReason.INTER_LIBRARY_RETURN
    assert shipment.status is ShipmentStatus.PENDING
    copy = desk.directory.get_copy(world.copy_id)
    assert (copy.status, copy.current_library_id) == (CopyStatus.IN_TRANSIT, "lib-b")
    assert outcome.borrow.returned_to_library_id == "lib-b"

    desk.shipments.update_status(shipment.id, ShipmentStatus.IN_TRANSIT, "staff")
    desk.shipments.update_status(shipment.id, ShipmentStatus.DELIVERED, "staff")
    copy = desk.directory.get_copy(world.copy_id)
    assert (copy.status, copy.current_library_id) == (CopyStatus.AVAILABLE, "lib-a")


def test_return_to_unknown_library(world):
    desk = world.desk
    loan = desk.circulation.borrow("alice", world.copy_id, "lib-a")
    with pytest.raises(NotFound):
        desk.circulation.return_copy(loan.id, "alice", return_to_library_id="lib-zz")
    assert desk.directory.get_copy(world.copy_id).status is CopyStatus.BORROWED


# --- Damage ---

def _cycle(desk, clock, user_id, copy_id, library_id="lib-a"):
    loan = desk.circulation.borrow(user_id, copy_id, library_id)
    clock.advance(days=1)
    desk.circulation.return_copy(loan.id, user_id)
    clock.advance(days=1)


def test_damaged_return_pulls_copy_and_flags_recent_borrowers(world, clock):
    desk = world.desk
    copy_id = add_copies(desk, "ed-dune", "lib-a", 1, acquired=START - timedelta(days=3 * 365))[0]
    for user_id in ("alice", "bob", "carol"):
        _cycle(desk, clock, user_id, copy_id)

    loan = desk.circulation.borrow("alice", copy_id, "lib-a")
    desk.reservations.create_reservation("parent", "ed-dune")
    clock.advance(days=2)
    outcome = desk.circulation.return_copy(
        loan.id, "alice", return_to_library_id="lib-b", condition=CopyCondition.DAMAGED, notes="Water damage"
    )

    report = outcome.damage_report
    assert outcome.shipment is None
    assert desk.shipments.list_shipments() == []
    assert report.flagged_borrowers == ["alice", "carol", "bob"]
    assert report.replacement_cost == 12.5
    assert 1.25 <= report.damage_fee <= 12.5
    assert report.description == "Water damage"
    assert report.status is DamageStatus.OPEN

    copy = desk.directory.get_copy(copy_id)
    assert (copy.status, copy.condition) == (CopyStatus.DAMAGED_PULLED, CopyCondition.DAMAGED)
    assert len(desk.circulation.list_damage_reports()) == 1
    # No "now available" notice for a pulled copy
    assert desk.notifier.list_for_user("parent") == []


def test_damage_fee_depreciates_with_age(world, clock):
    desk = world.desk
    copy_id = add_copies(desk, "ed-1984", "lib-b", 1, acquired=START - timedelta(days=3 * 365))[0]
    loan = desk.circulation.borrow("alice", copy_id, "lib-b")
    outcome = desk.circulation.return_copy(loan.id, "alice", condition=CopyCondition.DAMAGED)

    assert outcome.damage_report.depreciated_value == 14.00
    assert outcome.damage_report.damage_fee == 14.00


@pytest.mark.parametrize(
    "age_days,expected",
    [(0, 20.00), (365, 18.00), (365 * 5, 10.00), (365 * 9, 2.00), (365 * 30, 2.00)],
)
def test_depreciated_value_has_a_floor(age_days, expected):
    now = datetime(2024, 3, 1)
    assert depreciated_value(20.0, now - timedelta(days=age_days), now) == expected


def test_damage_report_status_workflow(world):
    desk = world.desk
    report = desk.circulation.report_damage(world.copy_id, "staff", "Torn pages")
    assert desk.directory.get_copy(world.copy_id).status is CopyStatus.DAMAGED_PULLED
    assert report.flagged_borrowers == []

    with pytest.raises(Forbidden):
        desk.circulation.update_damage_status(report.id, DamageStatus.INVESTIGATING, "alice")

    desk.circulation.update_damage_status(report.id, DamageStatus.INVESTIGATING, "staff")
    resolved = desk.circulation.update_damage_status(report.id, DamageStatus.RESOLVED, "staff")
    assert resolved.status is DamageStatus.RESOLVED

    with pytest.raises(InvalidState):
        desk.circulation.update_damage_status(report.id, DamageStatus.OPEN, "staff")
    assert [r.id for r in desk.circulation.list_damage_reports(DamageStatus.RESOLVED)] == [report.id]
    assert desk.circulation.list_damage_reports(DamageStatus.OPEN) == []


def test_only_staff_pull_shelved_copies(world):
    desk = world.desk
    with pytest.raises(Forbidden):
        desk.circulation.report_damage(world.copy_id, "alice", "Coffee stain")

    desk.circulation.borrow("alice", world.copy_id, "lib-a")
    with pytest.raises(InvalidState):
        desk.circulation.report_damage(world.copy_id, "staff", "Coffee stain")


# --- Listings ---

def test_current_loans_show_overdue_status_and_fine_estimate(world, clock):
    desk = world.desk
    desk.circulation.borrow("alice", world.copy_id, "lib-a")

    assert desk.circulation.current_loans("alice")[0]["status"] == "BORROWED"

    clock.advance(days=16)
    loan = desk.circulation.current_loans("alice")[0]
    assert loan["status"] == "OVERDUE"
    assert loan["fine_estimate"] == 0.50


def test_reading_history_lists_returned_loans(world, clock):
    desk = world.desk
    _cycle(desk, clock, "alice", world.copy_id)
    _cycle(desk, clock, "alice", world.copy_id)

    history = desk.circulation.reading_history("alice")
    assert len(history) == 2
    assert history[0].return_date > history[1].return_date
    assert desk.circulation.current_loans("alice") == []


@pytest.mark.parametrize("bad_id", ["", " ", "has space", "-leading-dash", "x" * 65])
def test_cataloguing_rejects_malformed_ids(world, bad_id):
    with pytest.raises(ValidationError):
        world.desk.directory.add_copy(bad_id, "ed-dune", "lib-a")
    with pytest.raises(ValidationError):
        world.desk.directory.add_user(bad_id, "Nobody", "nobody@example.org")
