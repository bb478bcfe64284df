"""Shipment tracker: PENDING -> IN_TRANSIT -> DELIVERED."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional

from circulation.database import get_db_connection, transaction
from circulation.directory import Directory
from circulation.errors import Forbidden, InvalidState, NotFound
from circulation.models import (
    COPY_TRANSITIONS,
    SHIPMENT_TRANSITIONS,
    CopyStatus,
    Shipment,
    ShipmentReason,
    ShipmentStatus,
    ensure_transition,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


class ShipmentTracker:
    def __init__(self, directory: Directory, clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.clock = clock

    def create(
        self,
        conn: sqlite3.Connection,
        copy_id: str,
        from_library_id: str,
        to_library_id: str,
        reason: ShipmentReason,
        triggered_by: Optional[str] = None,
    ) -> Shipment:
        """Record a new PENDING shipment inside the caller's transaction."""
        now = self.clock()
        cursor = conn.execute(
            "INSERT INTO shipments (copy_id, from_library_id, to_library_id, reason, status, triggered_by, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (copy_id, from_library_id, to_library_id, reason.value, ShipmentStatus.PENDING.value,
             triggered_by, to_iso(now)),
        )
        shipment = Shipment(
            id=cursor.lastrowid,
            copy_id=copy_id,
            from_library_id=from_library_id,
            to_library_id=to_library_id,
            reason=reason,
            triggered_by=triggered_by,
            created_at=now,
        )
        logger.info(
            f"Shipment {shipment.id} created: copy {copy_id} {from_library_id} -> {to_library_id} ({reason.value})"
        )
        return shipment

    def get(self, shipment_id: int, conn: Optional[sqlite3.Connection] = None) -> Shipment:
        sql = "SELECT * FROM shipments WHERE id = ?"
        if conn is not None:
            row = conn.execute(sql, (shipment_id,)).fetchone()
        else:
            own = get_db_connection()
            try:
                row = own.execute(sql, (shipment_id,)).fetchone()
            finally:
                own.close()
        if row is None:
            raise NotFound(f"Shipment {shipment_id} not found")
        return Shipment.from_row(row)

    def update_status(self, shipment_id: int, status: ShipmentStatus, actor_id: str) -> Shipment:
        """Advance a shipment one step. Staff only.

        Delivery puts the copy back into circulation at the destination.
        """
        now = self.clock()
        with transaction() as conn:
            actor = self.directory.get_user(actor_id, conn)
            if not actor.is_staff:
                raise Forbidden("Only library staff can update shipments")

            shipment = self.get(shipment_id, conn)
            ensure_transition(SHIPMENT_TRANSITIONS, shipment.status, status, f"Shipment {shipment_id}")

            delivered_at = now if status is ShipmentStatus.DELIVERED else None
            conn.execute(
                "UPDATE shipments SET status = ?, delivered_at = COALESCE(?, delivered_at) WHERE id = ? AND status = ?",
                (status.value, to_iso(delivered_at), shipment_id, shipment.status.value),
            )

            if status is ShipmentStatus.DELIVERED:
                copy = self.directory.get_copy(shipment.copy_id, conn)
                ensure_transition(COPY_TRANSITIONS, copy.status, CopyStatus.AVAILABLE, f"Copy {copy.id}")
                cursor = conn.execute(
                    "UPDATE copies SET status = ?, current_library_id = ? WHERE id = ? AND status = ?",
                    (CopyStatus.AVAILABLE.value, shipment.to_library_id, copy.id, CopyStatus.IN_TRANSIT.value),
                )
                if cursor.rowcount == 0:
                    raise InvalidState(f"Copy {copy.id} is no longer in transit")
                shipment.delivered_at = delivered_at

            previous = shipment.status
            shipment.status = status

        logger.info(f"Shipment {shipment_id}: {previous.value} -> {status.value} by {actor_id}")
        return shipment

    def list_shipments(self, status: Optional[ShipmentStatus] = None, library_id: Optional[str] = None) -> List[Shipment]:
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if library_id:
            clauses.append("(from_library_id = ? OR to_library_id = ?)")
            params.extend([library_id, library_id])

        sql = "SELECT * FROM shipments"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC"

        conn = get_db_connection()
        try:
            return [Shipment.from_row(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()
