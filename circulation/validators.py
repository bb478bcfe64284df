import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from circulation.errors import ValidationError
from circulation.models import parse_date, parse_datetime

E = TypeVar("E", bound=Enum)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")


class IdValidator:
    """Identifiers are short slugs such as ``lib-north`` or ``copy:0042``."""

    @staticmethod
    def is_valid(raw: Optional[str]) -> bool:
        if raw is None:
            return False
        return bool(_ID_PATTERN.match(str(raw).strip()))

    @staticmethod
    def require(raw: Optional[str], what: str) -> str:
        if not IdValidator.is_valid(raw):
            raise ValidationError(f"Invalid {what}: {raw!r}")
        return str(raw).strip()


class ValueValidator:
    @staticmethod
    def rate(raw: Any) -> float:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Rate must be a number, got {raw!r}")
        if value < 0:
            raise ValidationError("Rate cannot be negative")
        return round(value, 2)

    @staticmethod
    def enum(enum_cls: Type[E], raw: Any, what: str) -> E:
        if isinstance(raw, enum_cls):
            return raw
        try:
            return enum_cls(str(raw).strip().upper())
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise ValidationError(f"Invalid {what} {raw!r}; expected one of {allowed}")

    @staticmethod
    def day(raw: Any, what: str) -> date:
        try:
            value = parse_date(raw)
        except ValueError:
            raise ValidationError(f"Invalid {what}: {raw!r} (expected YYYY-MM-DD)")
        if value is None:
            raise ValidationError(f"{what} is required")
        return value

    @staticmethod
    def instant(raw: Any, what: str) -> datetime:
        try:
            value = parse_datetime(raw)
        except ValueError:
            raise ValidationError(f"Invalid {what}: {raw!r} (expected ISO 8601)")
        if value is None:
            raise ValidationError(f"{what} is required")
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class TextValidator:
    @staticmethod
    def sanitize_notes(text: Optional[str], max_length: int = 2000) -> Optional[str]:
        if text is None:
            return None
        cleaned = re.sub(r"<[^>]*>", "", text).strip()
        if len(cleaned) > max_length:
            raise ValidationError(f"Notes are limited to {max_length} characters")
        return cleaned or None
