"""Fine policy ledger.

A library's daily fine rate is versioned: each FinePolicy applies over a
range of calendar days and at most one policy per library is open-ended.
Fines are billed per started day counted from the due instant, and each
billing day is charged at the rate in force when that day starts.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence

from circulation.database import get_db_connection, transaction
from circulation.directory import Directory
from circulation.errors import InvalidState, ValidationError
from circulation.models import FinePolicy, FineResult, FineSegment, to_iso, utcnow
from circulation.validators import ValueValidator

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def _days_spanned(start: datetime, end: datetime) -> int:
    """Number of started days in [start, end)."""
    return math.ceil((end - start).total_seconds() / ONE_DAY.total_seconds())


def compute_fine(
    policies: Sequence[FinePolicy],
    due: datetime,
    end: datetime,
    default_rate: float,
) -> FineResult:
    """Bill the span [due, end) against ``policies``.

    Consecutive billing days under the same policy collapse into one
    segment. Days no policy covers are charged at ``default_rate``. The
    returned segments are chronological and tile [due, end) exactly.
    """
    if end <= due:
        return FineResult()

    ordered = sorted(policies, key=lambda p: p.effective_from)
    total_days = _days_spanned(due, end)
    segments: List[FineSegment] = []
    day_index = 0

    while day_index < total_days:
        seg_start = due + day_index * ONE_DAY
        policy = next((p for p in ordered if p.covers(seg_start)), None)
        if policy is not None:
            rate = policy.rate_per_day
            boundary = policy.ends_at
        else:
            rate = default_rate
            upcoming = [p.starts_at for p in ordered if p.starts_at > seg_start]
            boundary = upcoming[0] if upcoming else None
        if boundary is None or boundary > end:
            boundary = end

        days = min(max(1, _days_spanned(seg_start, boundary)), total_days - day_index)
        day_index += days
        seg_end = min(due + day_index * ONE_DAY, end)
        segments.append(FineSegment(start=seg_start, end=seg_end, days=days, rate=rate, amount=round(days * rate, 2)))

    total = round(sum(s.amount for s in segments), 2)
    return FineResult(total=total, breakdown=segments)


class FinePolicyLedger:
    def __init__(self, directory: Directory, clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.clock = clock

    def calculate_fine(
        self,
        library_id: str,
        due: datetime,
        end: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> FineResult:
        """Fine owed for a loan from ``library_id`` due at ``due`` and closed at ``end``."""
        if end <= due:
            return FineResult()

        library = self.directory.get_library(library_id, conn)
        policies = self._policies_between(library_id, due.date(), end.date(), conn)
        result = compute_fine(policies, due, end, library.fine_rate_per_day)
        logger.info(
            f"Fine for library {library_id} over {due.isoformat()} -> {end.isoformat()}: "
            f"{result.total:.2f} in {len(result.breakdown)} segment(s)"
        )
        return result

    def quote_fine(self, library_id: str, due: datetime, end: Optional[datetime] = None) -> FineResult:
        """Fine a loan would owe if it closed at ``end`` (default: now)."""
        return self.calculate_fine(library_id, due, end or self.clock())

    def create_policy(
        self,
        library_id: str,
        rate_per_day: float,
        effective_from: date,
        created_by: Optional[str] = None,
    ) -> FinePolicy:
        """Add a policy, closing the library's open-ended one the day before ``effective_from``."""
        rate = ValueValidator.rate(rate_per_day)
        effective_from = ValueValidator.day(effective_from, "effective_from")
        now = self.clock()

        try:
            with transaction() as conn:
                self.directory.get_library(library_id, conn)

                open_row = conn.execute(
                    "SELECT * FROM fine_policies WHERE library_id = ? AND effective_to IS NULL",
                    (library_id,),
                ).fetchone()
                if open_row is not None:
                    current = FinePolicy.from_row(open_row)
                    if effective_from <= current.effective_from:
                        raise ValidationError(
                            f"New policy must start after the current one ({current.effective_from.isoformat()})"
                        )
                    closed_on = effective_from - ONE_DAY
                    conn.execute(
                        "UPDATE fine_policies SET effective_to = ? WHERE id = ?",
                        (closed_on.isoformat(), current.id),
                    )
                    logger.info(f"Closed fine policy {current.id} for library {library_id} on {closed_on.isoformat()}")

                clash = conn.execute(
                    "SELECT id FROM fine_policies WHERE library_id = ? AND effective_to >= ?",
                    (library_id, effective_from.isoformat()),
                ).fetchone()
                if clash is not None:
                    raise ValidationError(f"Policy would overlap existing policy {clash['id']}")

                cursor = conn.execute(
                    "INSERT INTO fine_policies (library_id, rate_per_day, effective_from, effective_to, created_by, created_at) "
                    "VALUES (?, ?, ?, NULL, ?, ?)",
                    (library_id, rate, effective_from.isoformat(), created_by, to_iso(now)),
                )
                policy = FinePolicy(
                    id=cursor.lastrowid,
                    library_id=library_id,
                    rate_per_day=rate,
                    effective_from=effective_from,
                    created_by=created_by,
                    created_at=now,
                )
        except sqlite3.IntegrityError as e:
            raise InvalidState(f"Library {library_id} already has an open-ended fine policy") from e

        logger.info(f"Fine policy {policy.id} for library {library_id}: {rate:.2f}/day from {effective_from.isoformat()}")
        return policy

    def get_policies(self, library_id: str) -> List[FinePolicy]:
        """All policies of a library, newest first."""
        self.directory.get_library(library_id)
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM fine_policies WHERE library_id = ? ORDER BY effective_from DESC",
                (library_id,),
            ).fetchall()
            return [FinePolicy.from_row(r) for r in rows]
        finally:
            conn.close()

    # ------------------------- Persistence ------------------------- #
    @staticmethod
    def _policies_between(
        library_id: str,
        first_day: date,
        last_day: date,
        conn: Optional[sqlite3.Connection],
    ) -> List[FinePolicy]:
        sql = (
            "SELECT * FROM fine_policies WHERE library_id = ? AND effective_from <= ? "
            "AND (effective_to IS NULL OR effective_to >= ?) ORDER BY effective_from"
        )
        params = (library_id, last_day.isoformat(), first_day.isoformat())
        if conn is not None:
            rows = conn.execute(sql, params).fetchall()
        else:
            own = get_db_connection()
            try:
                rows = own.execute(sql, params).fetchall()
            finally:
                own.close()
        return [FinePolicy.from_row(r) for r in rows]
