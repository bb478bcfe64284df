"""Daily reminder sweep: due-soon and overdue notices, then queue upkeep."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from circulation.database import get_db_connection
from circulation.models import BorrowStatus, NotificationCategory, to_iso, utcnow
from circulation.reservations import ReservationQueue
from circulation.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

DUE_SOON_WINDOW = timedelta(days=1)


class ReminderJob:
    def __init__(
        self,
        notifier: NotificationDispatcher,
        reservations: ReservationQueue,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.notifier = notifier
        self.reservations = reservations
        self.clock = clock

    def _open_loans(self, lower: datetime, upper: datetime) -> List[Tuple[str, str]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT b.beneficiary_id, w.title FROM borrows b "
                "JOIN editions e ON e.id = b.edition_id JOIN works w ON w.id = e.work_id "
                "WHERE b.status = ? AND b.due_date >= ? AND b.due_date < ? ORDER BY b.due_date, b.id",
                (BorrowStatus.BORROWED.value, to_iso(lower), to_iso(upper)),
            ).fetchall()
            return [(r["beneficiary_id"], r["title"] or "Unknown Book") for r in rows]
        finally:
            conn.close()

    def run(self) -> Dict[str, int]:
        now = self.clock()

        due_soon = self._open_loans(now, now + DUE_SOON_WINDOW)
        for user_id, title in due_soon:
            self.notifier.notify(
                user_id, "Book Due Soon", f'The book "{title}" is due tomorrow.', NotificationCategory.DUE_SOON
            )
        logger.info(f"Sent {len(due_soon)} due soon notifications")

        overdue = self._open_loans(datetime.min, now)
        for user_id, title in overdue:
            self.notifier.notify(
                user_id,
                "Book Overdue",
                f'The book "{title}" is overdue. Please return it as soon as possible.',
                NotificationCategory.OVERDUE,
            )
        logger.info(f"Sent {len(overdue)} overdue notifications")

        priorities = self.reservations.recalculate_priorities()
        return {
            "due_soon": len(due_soon),
            "overdue": len(overdue),
            "priorities_updated": priorities["updated"],
            "priorities_promoted": priorities["promoted"],
        }
