"""Domain models for the circulation engine.

Status fields are closed enums. The copy and shipment lifecycles are
described by explicit transition tables which are checked for
exhaustiveness when the module is imported.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from circulation.errors import InvalidState


class CopyStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    IN_TRANSIT = "IN_TRANSIT"
    DAMAGED_PULLED = "DAMAGED_PULLED"
    LOST = "LOST"


class CopyCondition(str, Enum):
    NEW = "NEW"
    GOOD = "GOOD"
    FAIR = "FAIR"
    DAMAGED = "DAMAGED"


class BorrowStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    # Derived from the due date, never persisted
    OVERDUE = "OVERDUE"


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"


class ShipmentStatus(str, Enum):
    PENDING = "PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"


class ShipmentReason(str, Enum):
    INTER_LIBRARY_RETURN = "INTER_LIBRARY_RETURN"
    REBALANCING = "REBALANCING"
    TRANSFER = "TRANSFER"


class MembershipTier(str, Enum):
    STANDARD = "STANDARD"
    STUDENT = "STUDENT"
    ADULT = "ADULT"
    PREMIUM = "PREMIUM"
    FACULTY = "FACULTY"


PRIORITY_TIERS = frozenset({MembershipTier.PREMIUM, MembershipTier.FACULTY})


class UserRole(str, Enum):
    MEMBER = "MEMBER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"


STAFF_ROLES = frozenset({UserRole.LIBRARIAN, UserRole.ADMIN})


class DamageStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"


class NotificationCategory(str, Enum):
    DUE_SOON = "DUE_SOON"
    OVERDUE = "OVERDUE"
    RESERVATION_AVAILABLE = "RESERVATION_AVAILABLE"
    SYSTEM = "SYSTEM"


# ------------------------- Transition tables ------------------------- #
COPY_TRANSITIONS: Mapping[CopyStatus, FrozenSet[CopyStatus]] = {
    CopyStatus.AVAILABLE: frozenset({CopyStatus.BORROWED, CopyStatus.IN_TRANSIT, CopyStatus.DAMAGED_PULLED, CopyStatus.LOST}),
    CopyStatus.BORROWED: frozenset({CopyStatus.AVAILABLE, CopyStatus.IN_TRANSIT, CopyStatus.DAMAGED_PULLED, CopyStatus.LOST}),
    CopyStatus.IN_TRANSIT: frozenset({CopyStatus.AVAILABLE}),
    # Restoration is a manual, out-of-band procedure
    CopyStatus.DAMAGED_PULLED: frozenset(),
    CopyStatus.LOST: frozenset(),
}

SHIPMENT_TRANSITIONS: Mapping[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    ShipmentStatus.PENDING: frozenset({ShipmentStatus.IN_TRANSIT}),
    ShipmentStatus.IN_TRANSIT: frozenset({ShipmentStatus.DELIVERED}),
    ShipmentStatus.DELIVERED: frozenset(),
}

DAMAGE_TRANSITIONS: Mapping[DamageStatus, FrozenSet[DamageStatus]] = {
    DamageStatus.OPEN: frozenset({DamageStatus.INVESTIGATING, DamageStatus.RESOLVED}),
    DamageStatus.INVESTIGATING: frozenset({DamageStatus.RESOLVED}),
    DamageStatus.RESOLVED: frozenset(),
}


def _check_exhaustive(table: Mapping, enum_cls) -> None:
    missing = set(enum_cls) - set(table)
    if missing:
        raise RuntimeError(f"Transition table for {enum_cls.__name__} misses {sorted(m.value for m in missing)}")


_check_exhaustive(COPY_TRANSITIONS, CopyStatus)
_check_exhaustive(SHIPMENT_TRANSITIONS, ShipmentStatus)
_check_exhaustive(DAMAGE_TRANSITIONS, DamageStatus)


def ensure_transition(table: Mapping, current: Enum, target: Enum, what: str) -> None:
    """Raise InvalidState unless ``current -> target`` is listed in ``table``."""
    if target not in table[current]:
        raise InvalidState(f"{what} cannot move from {current.value} to {target.value}")


# ------------------------- Time helpers ------------------------- #
def utcnow() -> datetime:
    """Naive UTC timestamp; all stored instants use this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).replace("Z", ""))


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def start_of_day(day: date) -> datetime:
    return datetime(day.year, day.month, day.day)


# ------------------------- Directory entities ------------------------- #
@dataclass
class Library:
    id: str
    name: str
    code: str
    loan_period_days: int = 14
    fine_rate_per_day: float = 0.25
    # Recorded per branch but not enforced; loans count against the member's global limit
    borrowing_limit: int = 5
    is_active: bool = True

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Library":
        return Library(
            id=row["id"],
            name=row["name"],
            code=row["code"],
            loan_period_days=row["loan_period_days"],
            fine_rate_per_day=row["fine_rate_per_day"],
            borrowing_limit=row["borrowing_limit"],
            is_active=bool(row["is_active"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "loan_period_days": self.loan_period_days,
            "fine_rate_per_day": self.fine_rate_per_day,
            "borrowing_limit": self.borrowing_limit,
            "is_active": self.is_active,
        }


@dataclass
class User:
    id: str
    name: str
    email: str
    role: UserRole = UserRole.MEMBER
    membership_type: MembershipTier = MembershipTier.STANDARD
    global_borrow_limit: int = 5
    parent_account_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=UserRole(row["role"]),
            membership_type=MembershipTier(row["membership_type"]),
            global_borrow_limit=row["global_borrow_limit"],
            parent_account_id=row["parent_account_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "membership_type": self.membership_type.value,
            "global_borrow_limit": self.global_borrow_limit,
            "parent_account_id": self.parent_account_id,
        }


@dataclass
class Edition:
    id: str
    work_id: str
    isbn: str
    title: str = ""
    author: str = ""
    format: str = "PAPERBACK"
    replacement_cost: float = 0.0

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Edition":
        keys = row.keys()
        return Edition(
            id=row["id"],
            work_id=row["work_id"],
            isbn=row["isbn"],
            title=row["title"] if "title" in keys and row["title"] else "",
            author=row["author"] if "author" in keys and row["author"] else "",
            format=row["format"],
            replacement_cost=row["replacement_cost"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "work_id": self.work_id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "format": self.format,
            "replacement_cost": self.replacement_cost,
        }


@dataclass
class Copy:
    id: str
    edition_id: str
    copy_code: str
    owning_library_id: str
    current_library_id: str
    condition: CopyCondition = CopyCondition.GOOD
    status: CopyStatus = CopyStatus.AVAILABLE
    acquired_date: Optional[datetime] = None

    def is_borrowable_at(self, library_id: str) -> bool:
        return self.status is CopyStatus.AVAILABLE and self.current_library_id == library_id

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Copy":
        return Copy(
            id=row["id"],
            edition_id=row["edition_id"],
            copy_code=row["copy_code"],
            owning_library_id=row["owning_library_id"],
            current_library_id=row["current_library_id"],
            condition=CopyCondition(row["condition"]),
            status=CopyStatus(row["status"]),
            acquired_date=parse_datetime(row["acquired_date"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "edition_id": self.edition_id,
            "copy_code": self.copy_code,
            "owning_library_id": self.owning_library_id,
            "current_library_id": self.current_library_id,
            "condition": self.condition.value,
            "status": self.status.value,
            "acquired_date": to_iso(self.acquired_date),
        }


# ------------------------- Fines ------------------------- #
@dataclass(frozen=True)
class FineSegment:
    start: datetime
    end: datetime
    days: int
    rate: float
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start.isoformat(),
            "end_date": self.end.isoformat(),
            "days": self.days,
            "rate": self.rate,
            "amount": self.amount,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "FineSegment":
        return FineSegment(
            start=parse_datetime(data["start_date"]),
            end=parse_datetime(data["end_date"]),
            days=int(data["days"]),
            rate=float(data["rate"]),
            amount=float(data["amount"]),
        )


@dataclass
class FineResult:
    total: float = 0.0
    breakdown: List[FineSegment] = field(default_factory=list)

    @property
    def days(self) -> int:
        return sum(s.days for s in self.breakdown)

    def to_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "breakdown": [s.to_dict() for s in self.breakdown]}


@dataclass
class FinePolicy:
    """A daily rate effective for a library from ``effective_from`` through
    ``effective_to`` (inclusive calendar days; ``None`` means open-ended)."""

    id: Optional[int]
    library_id: str
    rate_per_day: float
    effective_from: date
    effective_to: Optional[date] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def starts_at(self) -> datetime:
        return start_of_day(self.effective_from)

    @property
    def ends_at(self) -> Optional[datetime]:
        """Exclusive end instant, or None when open-ended."""
        if self.effective_to is None:
            return None
        return start_of_day(self.effective_to) + timedelta(days=1)

    def covers(self, instant: datetime) -> bool:
        if instant < self.starts_at:
            return False
        return self.ends_at is None or instant < self.ends_at

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "FinePolicy":
        return FinePolicy(
            id=row["id"],
            library_id=row["library_id"],
            rate_per_day=row["rate_per_day"],
            effective_from=parse_date(row["effective_from"]),
            effective_to=parse_date(row["effective_to"]),
            created_by=row["created_by"],
            created_at=parse_datetime(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "library_id": self.library_id,
            "rate_per_day": self.rate_per_day,
            "effective_from": self.effective_from.isoformat(),
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "created_by": self.created_by,
            "created_at": to_iso(self.created_at),
        }


# ------------------------- Circulation records ------------------------- #
@dataclass
class Borrow:
    id: Optional[int]
    borrower_id: str
    beneficiary_id: str
    acting_user_id: str
    copy_id: str
    edition_id: str
    library_id: str
    borrowed_at: datetime
    due_date: datetime
    status: BorrowStatus = BorrowStatus.BORROWED
    return_date: Optional[datetime] = None
    returned_to_library_id: Optional[str] = None
    fine: float = 0.0
    fine_breakdown: List[FineSegment] = field(default_factory=list)
    condition_at_borrow: CopyCondition = CopyCondition.GOOD
    condition_at_return: Optional[CopyCondition] = None
    notes: Optional[str] = None

    def effective_status(self, now: datetime) -> BorrowStatus:
        if self.status is BorrowStatus.BORROWED and now > self.due_date:
            return BorrowStatus.OVERDUE
        return self.status

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Borrow":
        breakdown_raw = json.loads(row["fine_breakdown"]) if row["fine_breakdown"] else []
        return Borrow(
            id=row["id"],
            borrower_id=row["borrower_id"],
            beneficiary_id=row["beneficiary_id"],
            acting_user_id=row["acting_user_id"],
            copy_id=row["copy_id"],
            edition_id=row["edition_id"],
            library_id=row["library_id"],
            borrowed_at=parse_datetime(row["borrowed_at"]),
            due_date=parse_datetime(row["due_date"]),
            status=BorrowStatus(row["status"]),
            return_date=parse_datetime(row["return_date"]),
            returned_to_library_id=row["returned_to_library_id"],
            fine=row["fine"] or 0.0,
            fine_breakdown=[FineSegment.from_dict(s) for s in breakdown_raw],
            condition_at_borrow=CopyCondition(row["condition_at_borrow"]),
            condition_at_return=CopyCondition(row["condition_at_return"]) if row["condition_at_return"] else None,
            notes=row["notes"],
        )

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        status = self.effective_status(now) if now is not None else self.status
        return {
            "id": self.id,
            "borrower_id": self.borrower_id,
            "beneficiary_id": self.beneficiary_id,
            "acting_user_id": self.acting_user_id,
            "copy_id": self.copy_id,
            "edition_id": self.edition_id,
            "library_id": self.library_id,
            "borrowed_at": to_iso(self.borrowed_at),
            "due_date": to_iso(self.due_date),
            "status": status.value,
            "return_date": to_iso(self.return_date),
            "returned_to_library_id": self.returned_to_library_id,
            "fine": self.fine,
            "fine_breakdown": [s.to_dict() for s in self.fine_breakdown],
            "condition_at_borrow": self.condition_at_borrow.value,
            "condition_at_return": self.condition_at_return.value if self.condition_at_return else None,
            "notes": self.notes,
        }


@dataclass
class Reservation:
    id: Optional[int]
    user_id: str
    edition_id: str
    position: int
    membership_tier: MembershipTier
    effective_priority: int
    created_at: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    preferred_library_id: Optional[str] = None
    priority_boosted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def sort_key(self):
        """Queue order: highest priority first, earliest request breaks ties."""
        return (-self.effective_priority, self.created_at, self.id or 0)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Reservation":
        return Reservation(
            id=row["id"],
            user_id=row["user_id"],
            edition_id=row["edition_id"],
            position=row["position"],
            membership_tier=MembershipTier(row["membership_tier"]),
            effective_priority=row["effective_priority"],
            created_at=parse_datetime(row["created_at"]),
            status=ReservationStatus(row["status"]),
            preferred_library_id=row["preferred_library_id"],
            priority_boosted_at=parse_datetime(row["priority_boosted_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "edition_id": self.edition_id,
            "position": self.position,
            "membership_tier": self.membership_tier.value,
            "effective_priority": self.effective_priority,
            "created_at": to_iso(self.created_at),
            "status": self.status.value,
            "preferred_library_id": self.preferred_library_id,
            "priority_boosted_at": to_iso(self.priority_boosted_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class Shipment:
    id: Optional[int]
    copy_id: str
    from_library_id: str
    to_library_id: str
    reason: ShipmentReason
    status: ShipmentStatus = ShipmentStatus.PENDING
    triggered_by: Optional[str] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Shipment":
        return Shipment(
            id=row["id"],
            copy_id=row["copy_id"],
            from_library_id=row["from_library_id"],
            to_library_id=row["to_library_id"],
            reason=ShipmentReason(row["reason"]),
            status=ShipmentStatus(row["status"]),
            triggered_by=row["triggered_by"],
            created_at=parse_datetime(row["created_at"]),
            delivered_at=parse_datetime(row["delivered_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "copy_id": self.copy_id,
            "from_library_id": self.from_library_id,
            "to_library_id": self.to_library_id,
            "reason": self.reason.value,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "created_at": to_iso(self.created_at),
            "delivered_at": to_iso(self.delivered_at),
        }


@dataclass
class DamageReport:
    id: Optional[int]
    copy_id: str
    borrow_id: Optional[int]
    reported_by: str
    description: str
    replacement_cost: float
    depreciated_value: float
    damage_fee: float
    flagged_borrowers: List[str] = field(default_factory=list)
    status: DamageStatus = DamageStatus.OPEN
    created_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "DamageReport":
        return DamageReport(
            id=row["id"],
            copy_id=row["copy_id"],
            borrow_id=row["borrow_id"],
            reported_by=row["reported_by"],
            description=row["description"],
            replacement_cost=row["replacement_cost"],
            depreciated_value=row["depreciated_value"],
            damage_fee=row["damage_fee"],
            flagged_borrowers=json.loads(row["flagged_borrowers"] or "[]"),
            status=DamageStatus(row["status"]),
            created_at=parse_datetime(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "copy_id": self.copy_id,
            "borrow_id": self.borrow_id,
            "reported_by": self.reported_by,
            "description": self.description,
            "replacement_cost": self.replacement_cost,
            "depreciated_value": self.depreciated_value,
            "damage_fee": self.damage_fee,
            "flagged_borrowers": list(self.flagged_borrowers),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class Notification:
    id: Optional[int]
    user_id: str
    title: str
    message: str
    category: NotificationCategory
    is_read: bool = False
    created_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Notification":
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            message=row["message"],
            category=NotificationCategory(row["category"]),
            is_read=bool(row["is_read"]),
            created_at=parse_datetime(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "category": self.category.value,
            "is_read": self.is_read,
            "created_at": to_iso(self.created_at),
        }
