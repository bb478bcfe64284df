"""CirculationDesk wires the engine's components together.

The API and the CLI each build one desk and call through it.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from circulation import database
from circulation.circulation import CirculationService
from circulation.directory import Directory
from circulation.events import EventBus, ReturnCompleted
from circulation.fines import FinePolicyLedger
from circulation.models import utcnow
from circulation.rebalancer import Rebalancer
from circulation.reminders import ReminderJob
from circulation.reservations import ReservationQueue
from circulation.services.notifications import NotificationDispatcher
from circulation.shipments import ShipmentTracker

logger = logging.getLogger(__name__)


class CirculationDesk:
    def __init__(
        self,
        db_file: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        synchronous_events: bool = False,
        webhook_url: Optional[str] = None,
    ):
        if db_file:
            database.DATABASE_FILE = db_file
        database.initialize_database()

        self.clock = clock or utcnow
        self.directory = Directory()
        self.notifier = NotificationDispatcher(clock=self.clock, webhook_url=webhook_url)
        self.ledger = FinePolicyLedger(self.directory, clock=self.clock)
        self.reservations = ReservationQueue(self.directory, self.notifier, clock=self.clock)
        self.shipments = ShipmentTracker(self.directory, clock=self.clock)
        self.rebalancer = Rebalancer(self.directory, self.shipments)
        self.events = EventBus(synchronous=synchronous_events)
        self.circulation = CirculationService(
            self.directory, self.ledger, self.reservations, self.shipments, self.events, clock=self.clock
        )
        self.reminders = ReminderJob(self.notifier, self.reservations, clock=self.clock)

        self.events.subscribe(ReturnCompleted, self.notify_next_in_line)
        self.events.subscribe(ReturnCompleted, self.rebalance_after_return)
        logger.info(f"Circulation desk ready (database: {database.DATABASE_FILE})")

    def notify_next_in_line(self, event: ReturnCompleted) -> None:
        self.reservations.check_and_notify_next_user(event.edition_id)

    def rebalance_after_return(self, event: ReturnCompleted) -> None:
        self.rebalancer.run(triggered_by="system")

    def close(self) -> None:
        self.events.shutdown(wait=True)
