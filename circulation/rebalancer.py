"""Inventory rebalancer.

``rebalance`` is a pure function over an immutable snapshot of copy
locations and returns the shipments that would even out each edition.
``Rebalancer.run`` takes the snapshot from the database, applies the
orders and reports what moved.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from config import settings
from circulation.database import transaction
from circulation.directory import Directory
from circulation.models import CopyStatus, ShipmentReason, ShipmentStatus
from circulation.shipments import ShipmentTracker

logger = logging.getLogger(__name__)

# Copies that count towards a library's share of an edition
TRACKED_STATUSES = frozenset({CopyStatus.AVAILABLE, CopyStatus.BORROWED})


@dataclass(frozen=True)
class CopyLocation:
    copy_id: str
    library_id: str
    status: CopyStatus


@dataclass(frozen=True)
class EditionSnapshot:
    edition_id: str
    isbn: str
    copies: Tuple[CopyLocation, ...]
    # Copies already on their way to a library, keyed by destination
    inbound: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class InventorySnapshot:
    library_ids: Tuple[str, ...]
    editions: Tuple[EditionSnapshot, ...]


@dataclass(frozen=True)
class ShipmentOrder:
    edition_id: str
    copy_id: str
    from_library_id: str
    to_library_id: str


def rebalance_edition(
    edition: EditionSnapshot,
    library_ids: Sequence[str],
    threshold: Optional[float] = None,
) -> List[ShipmentOrder]:
    threshold = settings.overload_threshold if threshold is None else threshold
    tracked = [c for c in edition.copies if c.status in TRACKED_STATUSES]
    if len(tracked) < 2:
        return []

    counts = Counter(c.library_id for c in tracked)
    total = len(tracked)
    empty = [
        lib for lib in sorted(library_ids)
        if counts.get(lib, 0) == 0 and edition.inbound.get(lib, 0) == 0
    ]
    overloaded = sorted(lib for lib, n in counts.items() if n / total > threshold)
    if not empty or not overloaded:
        return []

    orders: List[ShipmentOrder] = []
    for source in overloaded:
        pool = sorted(
            c.copy_id for c in tracked
            if c.library_id == source and c.status is CopyStatus.AVAILABLE
        )
        while pool and empty:
            orders.append(ShipmentOrder(edition.edition_id, pool.pop(0), source, empty.pop(0)))
    return orders


def rebalance(snapshot: InventorySnapshot, threshold: Optional[float] = None) -> List[ShipmentOrder]:
    """Greedy first-fit pass over every edition, in edition id order.

    Deterministic for a given snapshot.
    """
    orders: List[ShipmentOrder] = []
    for edition in sorted(snapshot.editions, key=lambda e: e.edition_id):
        orders.extend(rebalance_edition(edition, snapshot.library_ids, threshold))
    return orders


class Rebalancer:
    def __init__(self, directory: Directory, shipments: ShipmentTracker):
        self.directory = directory
        self.shipments = shipments

    def take_snapshot(self, conn) -> InventorySnapshot:
        libraries = self.directory.list_active_libraries(conn)
        editions = []
        for edition in self.directory.list_editions(conn):
            copies = tuple(
                CopyLocation(c.id, c.current_library_id, c.status)
                for c in self.directory.list_copies(edition.id, conn)
            )
            inbound_rows = conn.execute(
                "SELECT s.to_library_id, COUNT(*) AS n FROM shipments s JOIN copies c ON c.id = s.copy_id "
                "WHERE c.edition_id = ? AND s.status != ? GROUP BY s.to_library_id",
                (edition.id, ShipmentStatus.DELIVERED.value),
            ).fetchall()
            inbound = {r["to_library_id"]: r["n"] for r in inbound_rows}
            editions.append(EditionSnapshot(edition.id, edition.isbn, copies, inbound))
        return InventorySnapshot(tuple(lib.id for lib in libraries), tuple(editions))

    def run(self, triggered_by: str = "system") -> List[Dict[str, Any]]:
        """Rebalance every edition and return one report entry per edition touched."""
        report: Dict[str, Dict[str, Any]] = {}
        with transaction() as conn:
            snapshot = self.take_snapshot(conn)
            orders = rebalance(snapshot)
            if not orders:
                logger.info("Rebalancing found nothing to move")
                return []

            names = {lib.id: lib.name for lib in self.directory.list_active_libraries(conn)}
            isbns = {e.edition_id: e.isbn for e in snapshot.editions}
            for order in orders:
                cursor = conn.execute(
                    "UPDATE copies SET status = ? WHERE id = ? AND status = ?",
                    (CopyStatus.IN_TRANSIT.value, order.copy_id, CopyStatus.AVAILABLE.value),
                )
                if cursor.rowcount == 0:
                    logger.warning(f"Copy {order.copy_id} changed state during rebalancing, skipped")
                    continue
                self.shipments.create(
                    conn, order.copy_id, order.from_library_id, order.to_library_id,
                    ShipmentReason.REBALANCING, triggered_by,
                )
                entry = report.setdefault(order.edition_id, {
                    "edition_id": order.edition_id,
                    "isbn": isbns.get(order.edition_id),
                    "shipments_created": 0,
                    "details": [],
                })
                entry["shipments_created"] += 1
                entry["details"].append({
                    "copy_id": order.copy_id,
                    "from_library_id": order.from_library_id,
                    "from_library": names.get(order.from_library_id, order.from_library_id),
                    "to_library_id": order.to_library_id,
                    "to_library": names.get(order.to_library_id, order.to_library_id),
                })

        results = list(report.values())
        logger.info(
            f"Rebalancing by {triggered_by}: {sum(r['shipments_created'] for r in results)} shipment(s) "
            f"across {len(results)} edition(s)"
        )
        return results
