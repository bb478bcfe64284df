"""User, library and catalog lookups used by the circulation engine.

These are thin sqlite-backed collaborators. The ``add_*`` helpers exist for
cataloging and seeding; editing catalog metadata is handled elsewhere.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from config import settings
from circulation.database import get_db_connection
from circulation.errors import NotFound, ValidationError
from circulation.models import (
    Copy,
    CopyCondition,
    CopyStatus,
    Edition,
    Library,
    MembershipTier,
    User,
    UserRole,
    to_iso,
    utcnow,
)
from circulation.validators import IdValidator

logger = logging.getLogger(__name__)

_EDITION_SELECT = """
    SELECT e.id, e.work_id, e.isbn, e.format, e.replacement_cost, w.title, w.author
    FROM editions e JOIN works w ON w.id = e.work_id
"""


class Directory:
    """Resolves users, libraries, editions and copies by id."""

    # ------------------------- Users ------------------------- #
    def get_user(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> User:
        row = self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,), conn)
        if row is None:
            raise NotFound(f"User {user_id} not found")
        return User.from_row(row)

    def add_user(
        self,
        user_id: str,
        name: str,
        email: str,
        *,
        role: UserRole = UserRole.MEMBER,
        membership_type: MembershipTier = MembershipTier.STANDARD,
        global_borrow_limit: Optional[int] = None,
        parent_account_id: Optional[str] = None,
    ) -> User:
        user_id = IdValidator.require(user_id, "user id")
        user = User(
            id=user_id,
            name=name,
            email=email,
            role=role,
            membership_type=membership_type,
            global_borrow_limit=global_borrow_limit if global_borrow_limit is not None else settings.default_borrow_limit,
            parent_account_id=parent_account_id,
        )
        self._insert(
            "INSERT INTO users (id, name, email, role, membership_type, global_borrow_limit, parent_account_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (user.id, user.name, user.email, user.role.value, user.membership_type.value,
             user.global_borrow_limit, user.parent_account_id),
            f"User {user_id} already exists",
        )
        return user

    # ------------------------- Libraries ------------------------- #
    def get_library(self, library_id: str, conn: Optional[sqlite3.Connection] = None) -> Library:
        row = self._fetch_one("SELECT * FROM libraries WHERE id = ?", (library_id,), conn)
        if row is None:
            raise NotFound(f"Library {library_id} not found")
        return Library.from_row(row)

    def list_active_libraries(self, conn: Optional[sqlite3.Connection] = None) -> List[Library]:
        rows = self._fetch_all("SELECT * FROM libraries WHERE is_active = 1 ORDER BY id", (), conn)
        return [Library.from_row(r) for r in rows]

    def add_library(
        self,
        library_id: str,
        name: str,
        code: Optional[str] = None,
        *,
        loan_period_days: Optional[int] = None,
        fine_rate_per_day: Optional[float] = None,
        borrowing_limit: Optional[int] = None,
        is_active: bool = True,
    ) -> Library:
        library_id = IdValidator.require(library_id, "library id")
        library = Library(
            id=library_id,
            name=name,
            code=code or library_id.upper(),
            loan_period_days=loan_period_days if loan_period_days is not None else settings.default_loan_period_days,
            fine_rate_per_day=fine_rate_per_day if fine_rate_per_day is not None else settings.default_fine_rate,
            borrowing_limit=borrowing_limit if borrowing_limit is not None else settings.default_borrow_limit,
            is_active=is_active,
        )
        self._insert(
            "INSERT INTO libraries (id, name, code, loan_period_days, fine_rate_per_day, borrowing_limit, is_active) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (library.id, library.name, library.code, library.loan_period_days,
             library.fine_rate_per_day, library.borrowing_limit, int(library.is_active)),
            f"Library {library_id} already exists",
        )
        return library

    # ------------------------- Catalog ------------------------- #
    def get_edition(self, edition_id: str, conn: Optional[sqlite3.Connection] = None) -> Edition:
        row = self._fetch_one(_EDITION_SELECT + " WHERE e.id = ?", (edition_id,), conn)
        if row is None:
            raise NotFound(f"Edition {edition_id} not found")
        return Edition.from_row(row)

    def list_editions(self, conn: Optional[sqlite3.Connection] = None) -> List[Edition]:
        rows = self._fetch_all(_EDITION_SELECT + " ORDER BY e.id", (), conn)
        return [Edition.from_row(r) for r in rows]

    def add_work(self, work_id: str, title: str, author: str = "") -> None:
        self._insert(
            "INSERT INTO works (id, title, author) VALUES (?, ?, ?)",
            (work_id, title, author),
            f"Work {work_id} already exists",
        )

    def add_edition(
        self,
        edition_id: str,
        work_id: str,
        isbn: str,
        *,
        format: str = "PAPERBACK",
        replacement_cost: float = 0.0,
    ) -> Edition:
        self._insert(
            "INSERT INTO editions (id, work_id, isbn, format, replacement_cost) VALUES (?, ?, ?, ?, ?)",
            (edition_id, work_id, isbn, format, replacement_cost),
            f"Edition {edition_id} already exists",
        )
        return self.get_edition(edition_id)

    # ------------------------- Copies ------------------------- #
    def get_copy(self, copy_id: str, conn: Optional[sqlite3.Connection] = None) -> Copy:
        row = self._fetch_one("SELECT * FROM copies WHERE id = ?", (copy_id,), conn)
        if row is None:
            raise NotFound(f"Copy {copy_id} not found")
        return Copy.from_row(row)

    def list_copies(self, edition_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Copy]:
        rows = self._fetch_all("SELECT * FROM copies WHERE edition_id = ? ORDER BY id", (edition_id,), conn)
        return [Copy.from_row(r) for r in rows]

    def count_available(self, edition_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM copies WHERE edition_id = ? AND status = ?",
            (edition_id, CopyStatus.AVAILABLE.value),
            conn,
        )
        return row["n"]

    def add_copy(
        self,
        copy_id: str,
        edition_id: str,
        library_id: str,
        *,
        copy_code: Optional[str] = None,
        condition: CopyCondition = CopyCondition.GOOD,
        status: CopyStatus = CopyStatus.AVAILABLE,
        current_library_id: Optional[str] = None,
        acquired_date: Optional[datetime] = None,
    ) -> Copy:
        copy_id = IdValidator.require(copy_id, "copy id")
        copy = Copy(
            id=copy_id,
            edition_id=edition_id,
            copy_code=copy_code or copy_id,
            owning_library_id=library_id,
            current_library_id=current_library_id or library_id,
            condition=condition,
            status=status,
            acquired_date=acquired_date or utcnow(),
        )
        self._insert(
            "INSERT INTO copies (id, edition_id, copy_code, owning_library_id, current_library_id, "
            "condition, status, acquired_date) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (copy.id, copy.edition_id, copy.copy_code, copy.owning_library_id, copy.current_library_id,
             copy.condition.value, copy.status.value, to_iso(copy.acquired_date)),
            f"Copy {copy_id} already exists",
        )
        return copy

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch_one(sql: str, params: tuple, conn: Optional[sqlite3.Connection]):
        if conn is not None:
            return conn.execute(sql, params).fetchone()
        own = get_db_connection()
        try:
            return own.execute(sql, params).fetchone()
        finally:
            own.close()

    @staticmethod
    def _fetch_all(sql: str, params: tuple, conn: Optional[sqlite3.Connection]):
        if conn is not None:
            return conn.execute(sql, params).fetchall()
        own = get_db_connection()
        try:
            return own.execute(sql, params).fetchall()
        finally:
            own.close()

    @staticmethod
    def _insert(sql: str, params: tuple, duplicate_message: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValidationError(duplicate_message) from e
        finally:
            conn.close()
