"""Reservation priority queue.

Each edition has a waiting list ordered by ``(effective_priority DESC,
created_at ASC)``. Priority is ``base + days waiting`` where the base
depends on the membership tier captured when the reservation was made.
Standard-tier reservations that have waited long enough receive a single,
permanent boost to the premium base.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from circulation.database import get_db_connection, transaction
from circulation.directory import Directory
from circulation.errors import CopiesAvailable, DuplicatePending, InvalidState, NotFound
from circulation.models import (
    PRIORITY_TIERS,
    MembershipTier,
    NotificationCategory,
    Reservation,
    ReservationStatus,
    to_iso,
    utcnow,
)
from circulation.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


def days_waiting(created_at: datetime, now: datetime) -> int:
    return max(0, (now - created_at).days)


def compute_priority(
    tier: MembershipTier,
    created_at: datetime,
    boosted_at: Optional[datetime],
    now: datetime,
) -> Tuple[int, bool]:
    """Return ``(priority, boost_due)``.

    ``boost_due`` is True when a standard-tier reservation has reached the
    waiting threshold and has not been boosted yet; the returned priority
    already reflects the boost.
    """
    waited = days_waiting(created_at, now)
    boost_due = (
        tier not in PRIORITY_TIERS
        and boosted_at is None
        and waited >= settings.priority_boost_days
    )
    if tier in PRIORITY_TIERS or boosted_at is not None or boost_due:
        base = settings.premium_priority_base
    else:
        base = settings.standard_priority_base
    return base + waited, boost_due


def current_priority(reservation: Reservation, now: datetime) -> int:
    priority, _ = compute_priority(
        reservation.membership_tier, reservation.created_at, reservation.priority_boosted_at, now
    )
    return priority


class ReservationQueue:
    def __init__(
        self,
        directory: Directory,
        notifier: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.directory = directory
        self.notifier = notifier
        self.clock = clock

    def create_reservation(
        self,
        user_id: str,
        edition_id: str,
        preferred_library_id: Optional[str] = None,
    ) -> Reservation:
        now = self.clock()
        try:
            with transaction() as conn:
                user = self.directory.get_user(user_id, conn)
                self.directory.get_edition(edition_id, conn)
                if preferred_library_id:
                    self.directory.get_library(preferred_library_id, conn)

                if self.directory.count_available(edition_id, conn) > 0:
                    raise CopiesAvailable("A copy of this edition is available; borrow it directly instead")

                existing = conn.execute(
                    "SELECT id FROM reservations WHERE user_id = ? AND edition_id = ? AND status = ?",
                    (user_id, edition_id, ReservationStatus.PENDING.value),
                ).fetchone()
                if existing is not None:
                    raise DuplicatePending("You already have a pending reservation for this edition")

                last = conn.execute(
                    "SELECT MAX(position) FROM reservations WHERE edition_id = ? AND status = ?",
                    (edition_id, ReservationStatus.PENDING.value),
                ).fetchone()[0]
                position = (last or 0) + 1
                priority, _ = compute_priority(user.membership_type, now, None, now)

                cursor = conn.execute(
                    "INSERT INTO reservations (user_id, edition_id, preferred_library_id, position, status, "
                    "membership_tier, effective_priority, priority_boosted_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)",
                    (user_id, edition_id, preferred_library_id, position, ReservationStatus.PENDING.value,
                     user.membership_type.value, priority, to_iso(now), to_iso(now)),
                )
                reservation = Reservation(
                    id=cursor.lastrowid,
                    user_id=user_id,
                    edition_id=edition_id,
                    position=position,
                    membership_tier=user.membership_type,
                    effective_priority=priority,
                    created_at=now,
                    preferred_library_id=preferred_library_id,
                    updated_at=now,
                )
        except sqlite3.IntegrityError as e:
            raise DuplicatePending("You already have a pending reservation for this edition") from e

        logger.info(
            f"Reservation {reservation.id}: user {user_id} queued for edition {edition_id} "
            f"at position {position} (priority {reservation.effective_priority})"
        )
        return reservation

    def cancel(self, reservation_id: int, user_id: str) -> Reservation:
        now = self.clock()
        with transaction() as conn:
            row = conn.execute(
                "SELECT * FROM reservations WHERE id = ? AND user_id = ?", (reservation_id, user_id)
            ).fetchone()
            if row is None:
                raise NotFound(f"Reservation {reservation_id} not found")
            reservation = Reservation.from_row(row)
            if reservation.status is not ReservationStatus.PENDING:
                raise InvalidState(f"Cannot cancel a {reservation.status.value} reservation")
            conn.execute(
                "UPDATE reservations SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (ReservationStatus.CANCELLED.value, to_iso(now), reservation_id, ReservationStatus.PENDING.value),
            )
            reservation.status = ReservationStatus.CANCELLED
            reservation.updated_at = now

        logger.info(f"Reservation {reservation_id} cancelled by user {user_id}")
        return reservation

    def recalculate_priorities(self) -> Dict[str, int]:
        """Recompute every pending priority and grant due boosts.

        Idempotent: a second run at the same moment changes nothing.
        """
        now = self.clock()
        updated = 0
        promoted = 0
        with transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM reservations WHERE status = ? ORDER BY id", (ReservationStatus.PENDING.value,)
            ).fetchall()
            for row in rows:
                reservation = Reservation.from_row(row)
                priority, boost_due = compute_priority(
                    reservation.membership_tier, reservation.created_at, reservation.priority_boosted_at, now
                )
                boosted_at = now if boost_due else reservation.priority_boosted_at
                if boost_due:
                    promoted += 1
                if priority == reservation.effective_priority and not boost_due:
                    continue
                conn.execute(
                    "UPDATE reservations SET effective_priority = ?, priority_boosted_at = ?, updated_at = ? WHERE id = ?",
                    (priority, to_iso(boosted_at), to_iso(now), reservation.id),
                )
                updated += 1

        logger.info(f"Priorities recalculated: {updated} updated, {promoted} promoted")
        return {"updated": updated, "promoted": promoted}

    def top_pending(self, edition_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Reservation]:
        """Highest-priority pending reservation, ranking by the priority as of now."""
        queue = self.pending_queue(edition_id, conn)
        return queue[0] if queue else None

    def pending_queue(self, edition_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Reservation]:
        now = self.clock()
        sql = "SELECT * FROM reservations WHERE edition_id = ? AND status = ?"
        params = (edition_id, ReservationStatus.PENDING.value)
        if conn is not None:
            rows = conn.execute(sql, params).fetchall()
        else:
            own = get_db_connection()
            try:
                rows = own.execute(sql, params).fetchall()
            finally:
                own.close()
        queue = [Reservation.from_row(r) for r in rows]
        for reservation in queue:
            reservation.effective_priority = current_priority(reservation, now)
        queue.sort(key=lambda r: r.sort_key())
        return queue

    def mark_fulfilled(self, reservation: Reservation, conn: sqlite3.Connection) -> None:
        """Fulfil ``reservation`` inside the caller's transaction."""
        now = self.clock()
        cursor = conn.execute(
            "UPDATE reservations SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (ReservationStatus.FULFILLED.value, to_iso(now), reservation.id, ReservationStatus.PENDING.value),
        )
        if cursor.rowcount == 0:
            raise InvalidState(f"Reservation {reservation.id} is no longer pending")
        reservation.status = ReservationStatus.FULFILLED
        reservation.updated_at = now

    def check_and_notify_next_user(self, edition_id: str) -> Optional[Reservation]:
        """Tell the holder at the head of the queue that a copy is available.

        No loan is created here; the holder claims the copy by borrowing it.
        """
        nxt = self.top_pending(edition_id)
        if nxt is None:
            return None

        edition = self.directory.get_edition(edition_id)
        title = edition.title or "requested book"
        self.notifier.notify(
            nxt.user_id,
            "Book Available",
            f'The book "{title}" you reserved is now available.',
            NotificationCategory.RESERVATION_AVAILABLE,
        )
        logger.info(f"User {nxt.user_id} notified for edition {edition_id} (reservation {nxt.id})")
        return nxt

    def list_for_user(self, user_id: str) -> List[Reservation]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM reservations WHERE user_id = ? ORDER BY created_at DESC, id DESC", (user_id,)
            ).fetchall()
            return [Reservation.from_row(r) for r in rows]
        finally:
            conn.close()
