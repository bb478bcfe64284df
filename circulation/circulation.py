"""Circulation state machine: borrowing, returning and damage reports.

Every operation runs in a single write transaction. Side effects that other
components care about (reservation notices, rebalancing) are published as
events after the commit and never affect the outcome of the call.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import settings
from circulation.database import get_db_connection, transaction
from circulation.directory import Directory
from circulation.errors import (
    DuplicateLoan,
    Forbidden,
    InvalidState,
    LimitExceeded,
    NotAvailable,
    NotFound,
    ReservedForOther,
    ValidationError,
)
from circulation.events import EventBus, ReturnCompleted
from circulation.fines import FinePolicyLedger
from circulation.models import (
    COPY_TRANSITIONS,
    DAMAGE_TRANSITIONS,
    Borrow,
    BorrowStatus,
    Copy,
    CopyCondition,
    CopyStatus,
    DamageReport,
    DamageStatus,
    Shipment,
    ShipmentReason,
    User,
    ensure_transition,
    to_iso,
    utcnow,
)
from circulation.reservations import ReservationQueue
from circulation.shipments import ShipmentTracker
from circulation.validators import TextValidator

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


def resolve_effective_borrower(
    user: User,
    on_behalf_of: Optional[User] = None,
    parent: Optional[User] = None,
) -> Tuple[User, User]:
    """Return ``(billed, beneficiary)`` for a loan requested by ``user``.

    An explicit delegate must be a child account of ``user``; the loan is
    billed to ``user``. Without a delegate, a child account is billed to its
    ``parent`` and keeps the book for itself.
    """
    if on_behalf_of is not None:
        if on_behalf_of.parent_account_id != user.id:
            raise ValidationError(f"User {on_behalf_of.id} is not a child account of {user.id}")
        return user, on_behalf_of
    if user.parent_account_id:
        if parent is None or parent.id != user.parent_account_id:
            raise ValidationError(f"Parent account {user.parent_account_id} could not be resolved")
        return parent, user
    return user, user


def depreciated_value(replacement_cost: float, acquired: Optional[datetime], now: datetime) -> float:
    """Replacement cost reduced by age, never below the configured floor."""
    if acquired is None:
        age_years = 0.0
    else:
        age_years = max(0.0, (now - acquired).total_seconds() / timedelta(days=DAYS_PER_YEAR).total_seconds())
    factor = max(settings.depreciation_floor, 1 - age_years * settings.depreciation_rate)
    return round(replacement_cost * factor, 2)


@dataclass
class ReturnOutcome:
    borrow: Borrow
    shipment: Optional[Shipment] = None
    damage_report: Optional[DamageReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "borrow": self.borrow.to_dict(),
            "shipment": self.shipment.to_dict() if self.shipment else None,
            "damage_report": self.damage_report.to_dict() if self.damage_report else None,
        }


class CirculationService:
    def __init__(
        self,
        directory: Directory,
        ledger: FinePolicyLedger,
        reservations: ReservationQueue,
        shipments: ShipmentTracker,
        events: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.directory = directory
        self.ledger = ledger
        self.reservations = reservations
        self.shipments = shipments
        self.events = events
        self.clock = clock

    # ------------------------- Borrow ------------------------- #
    def borrow(
        self,
        user_id: str,
        copy_id: str,
        library_id: str,
        on_behalf_of: Optional[str] = None,
    ) -> Borrow:
        now = self.clock()
        try:
            with transaction() as conn:
                user = self.directory.get_user(user_id, conn)
                delegate = self.directory.get_user(on_behalf_of, conn) if on_behalf_of else None
                parent = None
                if delegate is None and user.parent_account_id:
                    parent = self.directory.get_user(user.parent_account_id, conn)
                billed, beneficiary = resolve_effective_borrower(user, delegate, parent)

                open_loans = conn.execute(
                    "SELECT COUNT(*) FROM borrows WHERE borrower_id = ? AND status = ?",
                    (billed.id, BorrowStatus.BORROWED.value),
                ).fetchone()[0]
                if open_loans >= billed.global_borrow_limit:
                    raise LimitExceeded(
                        f"Borrow limit reached for {billed.id} ({open_loans}/{billed.global_borrow_limit})"
                    )

                library = self.directory.get_library(library_id, conn)
                copy = self.directory.get_copy(copy_id, conn)
                if not library.is_active or not copy.is_borrowable_at(library_id):
                    raise NotAvailable(f"Copy {copy_id} is not available at library {library_id}")

                head = self.reservations.top_pending(copy.edition_id, conn)
                if head is not None and head.user_id not in (billed.id, beneficiary.id):
                    raise ReservedForOther("This edition is currently reserved for another user")

                duplicate = conn.execute(
                    "SELECT id FROM borrows WHERE borrower_id = ? AND beneficiary_id = ? AND copy_id = ? AND status = ?",
                    (billed.id, beneficiary.id, copy_id, BorrowStatus.BORROWED.value),
                ).fetchone()
                if duplicate is not None:
                    raise DuplicateLoan("You have already borrowed this copy")

                if head is not None:
                    self.reservations.mark_fulfilled(head, conn)

                self._move_copy(conn, copy, CopyStatus.BORROWED)

                due_date = now + timedelta(days=library.loan_period_days)
                cursor = conn.execute(
                    "INSERT INTO borrows (borrower_id, beneficiary_id, acting_user_id, copy_id, edition_id, library_id, "
                    "borrowed_at, due_date, status, fine, condition_at_borrow) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)",
                    (billed.id, beneficiary.id, user.id, copy.id, copy.edition_id, library_id,
                     to_iso(now), to_iso(due_date), BorrowStatus.BORROWED.value, copy.condition.value),
                )
                borrow = Borrow(
                    id=cursor.lastrowid,
                    borrower_id=billed.id,
                    beneficiary_id=beneficiary.id,
                    acting_user_id=user.id,
                    copy_id=copy.id,
                    edition_id=copy.edition_id,
                    library_id=library_id,
                    borrowed_at=now,
                    due_date=due_date,
                    condition_at_borrow=copy.condition,
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateLoan(f"Copy {copy_id} already has an open loan") from e

        logger.info(
            f"Borrow {borrow.id}: copy {copy_id} from {library_id} to {beneficiary.id} "
            f"(billed to {billed.id}), due {due_date.date().isoformat()}"
        )
        return borrow

    # ------------------------- Return ------------------------- #
    def return_copy(
        self,
        borrow_id: int,
        user_id: str,
        return_to_library_id: Optional[str] = None,
        condition: Optional[CopyCondition] = None,
        notes: Optional[str] = None,
    ) -> ReturnOutcome:
        now = self.clock()
        notes = TextValidator.sanitize_notes(notes)
        shipment = None
        report = None

        with transaction() as conn:
            row = conn.execute(
                "SELECT * FROM borrows WHERE id = ? AND status = ? AND (borrower_id = ? OR beneficiary_id = ?)",
                (borrow_id, BorrowStatus.BORROWED.value, user_id, user_id),
            ).fetchone()
            if row is None:
                raise NotFound(f"Active borrow record {borrow_id} not found")
            borrow = Borrow.from_row(row)

            destination = return_to_library_id or borrow.library_id
            self.directory.get_library(destination, conn)

            fine = self.ledger.calculate_fine(borrow.library_id, borrow.due_date, now, conn)
            conn.execute(
                "UPDATE borrows SET status = ?, return_date = ?, returned_to_library_id = ?, fine = ?, "
                "fine_breakdown = ?, condition_at_return = ?, notes = ? WHERE id = ? AND status = ?",
                (BorrowStatus.RETURNED.value, to_iso(now), destination, fine.total,
                 json.dumps([s.to_dict() for s in fine.breakdown]),
                 condition.value if condition else None, notes, borrow.id, BorrowStatus.BORROWED.value),
            )
            borrow.status = BorrowStatus.RETURNED
            borrow.return_date = now
            borrow.returned_to_library_id = destination
            borrow.fine = fine.total
            borrow.fine_breakdown = list(fine.breakdown)
            borrow.condition_at_return = condition
            borrow.notes = notes

            copy = self.directory.get_copy(borrow.copy_id, conn)
            if condition is CopyCondition.DAMAGED:
                self._move_copy(conn, copy, CopyStatus.DAMAGED_PULLED, condition=CopyCondition.DAMAGED)
                report = self._open_damage_report(
                    conn, copy, borrow.id, user_id, notes or "Returned in damaged condition", now
                )
            elif destination != borrow.library_id:
                self._move_copy(conn, copy, CopyStatus.IN_TRANSIT, library_id=destination, condition=condition)
                shipment = self.shipments.create(
                    conn, copy.id, destination, borrow.library_id, ShipmentReason.INTER_LIBRARY_RETURN, user_id
                )
            else:
                self._move_copy(conn, copy, CopyStatus.AVAILABLE, library_id=destination, condition=condition)

        logger.info(
            f"Borrow {borrow.id} returned to {destination}: fine {fine.total:.2f}, "
            f"copy {borrow.copy_id} -> {'DAMAGED_PULLED' if report else ('IN_TRANSIT' if shipment else 'AVAILABLE')}"
        )
        if report is None:
            self.events.publish(ReturnCompleted(
                copy_id=borrow.copy_id,
                edition_id=borrow.edition_id,
                borrow_id=borrow.id,
                library_id=borrow.library_id,
                returned_to_library_id=destination,
                occurred_at=now,
            ))
        return ReturnOutcome(borrow=borrow, shipment=shipment, damage_report=report)

    @staticmethod
    def _move_copy(
        conn: sqlite3.Connection,
        copy: Copy,
        target: CopyStatus,
        library_id: Optional[str] = None,
        condition: Optional[CopyCondition] = None,
    ) -> None:
        ensure_transition(COPY_TRANSITIONS, copy.status, target, f"Copy {copy.id}")
        cursor = conn.execute(
            "UPDATE copies SET status = ?, current_library_id = ?, condition = ? WHERE id = ? AND status = ?",
            (target.value, library_id or copy.current_library_id, (condition or copy.condition).value,
             copy.id, copy.status.value),
        )
        if cursor.rowcount == 0:
            raise NotAvailable(f"Copy {copy.id} changed state concurrently")
        copy.status = target
        copy.current_library_id = library_id or copy.current_library_id
        copy.condition = condition or copy.condition

    # ------------------------- Damage ------------------------- #
    def _open_damage_report(
        self,
        conn: sqlite3.Connection,
        copy: Copy,
        borrow_id: Optional[int],
        reported_by: str,
        description: str,
        now: datetime,
    ) -> DamageReport:
        edition = self.directory.get_edition(copy.edition_id, conn)
        value = depreciated_value(edition.replacement_cost, copy.acquired_date, now)

        flagged: List[str] = []
        rows = conn.execute(
            "SELECT borrower_id FROM borrows WHERE copy_id = ? ORDER BY borrowed_at DESC, id DESC", (copy.id,)
        ).fetchall()
        for r in rows:
            if r["borrower_id"] not in flagged:
                flagged.append(r["borrower_id"])
            if len(flagged) >= settings.damage_flag_limit:
                break

        cursor = conn.execute(
            "INSERT INTO damage_reports (copy_id, borrow_id, reported_by, description, replacement_cost, "
            "depreciated_value, damage_fee, flagged_borrowers, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (copy.id, borrow_id, reported_by, description, edition.replacement_cost, value, value,
             json.dumps(flagged), DamageStatus.OPEN.value, to_iso(now)),
        )
        report = DamageReport(
            id=cursor.lastrowid,
            copy_id=copy.id,
            borrow_id=borrow_id,
            reported_by=reported_by,
            description=description,
            replacement_cost=edition.replacement_cost,
            depreciated_value=value,
            damage_fee=value,
            flagged_borrowers=flagged,
            created_at=now,
        )
        logger.info(f"Damage report {report.id} for copy {copy.id}: fee {value:.2f}, flagged {flagged}")
        return report

    def report_damage(self, copy_id: str, reported_by: str, description: str) -> DamageReport:
        """Pull a shelved copy out of circulation. Staff only."""
        now = self.clock()
        description = TextValidator.sanitize_notes(description)
        if not description:
            raise ValidationError("A damage description is required")
        with transaction() as conn:
            actor = self.directory.get_user(reported_by, conn)
            if not actor.is_staff:
                raise Forbidden("Only library staff can file damage reports")
            copy = self.directory.get_copy(copy_id, conn)
            if copy.status is not CopyStatus.AVAILABLE:
                raise InvalidState(f"Copy {copy_id} is {copy.status.value}; only shelved copies can be pulled")
            self._move_copy(conn, copy, CopyStatus.DAMAGED_PULLED, condition=CopyCondition.DAMAGED)
            return self._open_damage_report(conn, copy, None, reported_by, description, now)

    def update_damage_status(self, report_id: int, status: DamageStatus, actor_id: str) -> DamageReport:
        with transaction() as conn:
            actor = self.directory.get_user(actor_id, conn)
            if not actor.is_staff:
                raise Forbidden("Only library staff can update damage reports")
            row = conn.execute("SELECT * FROM damage_reports WHERE id = ?", (report_id,)).fetchone()
            if row is None:
                raise NotFound(f"Damage report {report_id} not found")
            report = DamageReport.from_row(row)
            ensure_transition(DAMAGE_TRANSITIONS, report.status, status, f"Damage report {report_id}")
            conn.execute("UPDATE damage_reports SET status = ? WHERE id = ?", (status.value, report_id))
            report.status = status

        logger.info(f"Damage report {report_id} -> {status.value} by {actor_id}")
        return report

    def list_damage_reports(self, status: Optional[DamageStatus] = None) -> List[DamageReport]:
        sql = "SELECT * FROM damage_reports"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status.value,)
        sql += " ORDER BY created_at DESC, id DESC"
        conn = get_db_connection()
        try:
            return [DamageReport.from_row(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    # ------------------------- Listings ------------------------- #
    def current_loans(self, user_id: str) -> List[Dict[str, Any]]:
        """Open loans billed to or held by ``user_id``, with a running fine estimate."""
        now = self.clock()
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM borrows WHERE status = ? AND (borrower_id = ? OR beneficiary_id = ?) "
                "ORDER BY due_date, id",
                (BorrowStatus.BORROWED.value, user_id, user_id),
            ).fetchall()
            loans = []
            for r in rows:
                borrow = Borrow.from_row(r)
                estimate = self.ledger.calculate_fine(borrow.library_id, borrow.due_date, now, conn)
                item = borrow.to_dict(now)
                item["fine_estimate"] = estimate.total
                loans.append(item)
            return loans
        finally:
            conn.close()

    def reading_history(self, user_id: str) -> List[Borrow]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM borrows WHERE status = ? AND (borrower_id = ? OR beneficiary_id = ?) "
                "ORDER BY return_date DESC, id DESC",
                (BorrowStatus.RETURNED.value, user_id, user_id),
            ).fetchall()
            return [Borrow.from_row(r) for r in rows]
        finally:
            conn.close()

    def get_borrow(self, borrow_id: int) -> Borrow:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM borrows WHERE id = ?", (borrow_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Borrow {borrow_id} not found")
        return Borrow.from_row(row)
