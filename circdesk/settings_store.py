"""Circulation policy: loan days, loan limits and fine rates per patron class.

The engine is handed a provider instead of reaching for a global. Two
providers ship here: ``StaticSettingsProvider`` for fixed policies (tests,
embedding) and ``LibrarySettings``, which reads the ``library_settings`` table
and keeps a small in-memory TTL cache in front of it.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Tuple

from circdesk import database
from circdesk.config import settings
from circdesk.database import read_connection, transaction
from circdesk.errors import ValidationError
from circdesk.models import PatronClass, money

logger = logging.getLogger(__name__)

DEFAULT_LOST_BOOK_FEE = Decimal("500.00")

# Lower bounds for policy settings
_MINIMUMS: Dict[str, Any] = {
    "default_loan_days": 1,
    "faculty_loan_days": 1,
    "max_loans_per_student": 1,
    "max_loans_per_faculty": 1,
    "fine_per_day": Decimal("0"),
    "faculty_fine_per_day": Decimal("0"),
    "lost_book_default_fee": Decimal("0"),
}

# patron class -> (loan days key, max loans key, fine per day key)
_POLICY_KEYS: Dict[PatronClass, Tuple[str, str, str]] = {
    PatronClass.STUDENT: ("default_loan_days", "max_loans_per_student", "fine_per_day"),
    PatronClass.FACULTY: ("faculty_loan_days", "max_loans_per_faculty", "faculty_fine_per_day"),
}


class SettingsProvider(Protocol):
    def loan_days(self, patron_class: PatronClass) -> int: ...

    def max_loans(self, patron_class: PatronClass) -> int: ...

    def fine_per_day(self, patron_class: PatronClass) -> Decimal: ...

    def lost_book_fee(self) -> Decimal: ...


@dataclass(frozen=True)
class LoanPolicy:
    loan_days: int
    max_loans: int
    fine_per_day: Decimal


DEFAULT_POLICIES: Dict[PatronClass, LoanPolicy] = {
    PatronClass.STUDENT: LoanPolicy(loan_days=7, max_loans=3, fine_per_day=Decimal("5.00")),
    PatronClass.FACULTY: LoanPolicy(loan_days=14, max_loans=5, fine_per_day=Decimal("0.00")),
}


class StaticSettingsProvider:
    """Fixed, in-memory policy."""

    def __init__(
        self,
        policies: Optional[Dict[PatronClass, LoanPolicy]] = None,
        lost_book_fee: Decimal = DEFAULT_LOST_BOOK_FEE,
    ) -> None:
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._lost_book_fee = money(lost_book_fee)

    def loan_days(self, patron_class: PatronClass) -> int:
        return self.policies[patron_class].loan_days

    def max_loans(self, patron_class: PatronClass) -> int:
        return self.policies[patron_class].max_loans

    def fine_per_day(self, patron_class: PatronClass) -> Decimal:
        return money(self.policies[patron_class].fine_per_day)

    def lost_book_fee(self) -> Decimal:
        return self._lost_book_fee


def cast_value(value: str, value_type: str) -> Any:
    """Convert a stored setting string to its declared type."""
    if value_type == "integer":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "decimal":
        return money(value)
    if value_type == "boolean":
        return value.strip().lower() in ("true", "1", "yes", "on")
    if value_type == "json":
        return json.loads(value)
    return value


def _to_storage(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class LibrarySettings:
    """Settings provider backed by the ``library_settings`` table."""

    _ALL_KEY = "__all__"

    def __init__(self, db_file: Optional[str] = None, ttl_seconds: Optional[int] = None) -> None:
        self.db_file = db_file
        self.ttl_seconds = settings.settings_cache_ttl if ttl_seconds is None else ttl_seconds
        self._cache: Dict[Tuple[str, str], Tuple[float, Any]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------- cache
    def _cache_key(self, key: str) -> Tuple[str, str]:
        # Entries are per database file; the default file can change at runtime
        return (self.db_file or database.DATABASE_FILE, key)

    def _cache_get(self, key: str) -> Tuple[bool, Any]:
        cache_key = self._cache_key(key)
        with self._lock:
            entry = self._cache.get(cache_key)
            if entry is None:
                return False, None
            expires_at, value = entry
            if expires_at < time.monotonic():
                del self._cache[cache_key]
                return False, None
            return True, value

    def _cache_set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[self._cache_key(key)] = (time.monotonic() + self.ttl_seconds, value)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # ------------------------------------------------------------ access
    def get_value(self, key: str, default: Any = None) -> Any:
        hit, value = self._cache_get(key)
        if hit:
            return value
        with read_connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT value, type FROM library_settings WHERE key = ?", (key,)
            ).fetchone()
        value = cast_value(row["value"], row["type"]) if row else default
        self._cache_set(key, value)
        return value

    def set_value(self, key: str, value: Any) -> bool:
        """Update an existing setting. Unknown keys are not created."""
        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT type FROM library_settings WHERE key = ?", (key,)).fetchone()
            if row is None:
                return False
            stored = _to_storage(value)
            try:
                typed = cast_value(stored, row["type"])
            except (ValueError, ArithmeticError) as e:
                raise ValidationError(f"Invalid value for setting {key}: {value!r}", key=key) from e
            minimum = _MINIMUMS.get(key)
            if minimum is not None and typed < minimum:
                raise ValidationError(f"Setting {key} must be at least {minimum}.", key=key, value=stored)
            conn.execute(
                "UPDATE library_settings SET value = ?, updated_at = CURRENT_TIMESTAMP WHERE key = ?",
                (stored, key),
            )
        self.clear_cache()
        logger.info(f"Library setting updated: {key}={stored}")
        return True

    def bulk_update(self, values: Dict[str, Any]) -> int:
        updated = 0
        for key, value in values.items():
            if self.set_value(key, value):
                updated += 1
        return updated

    def all_settings(self) -> Dict[str, Dict[str, Any]]:
        hit, value = self._cache_get(self._ALL_KEY)
        if hit:
            return value
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                'SELECT key, value, type, "group", description FROM library_settings ORDER BY key'
            ).fetchall()
        result = {
            row["key"]: {
                "value": cast_value(row["value"], row["type"]),
                "type": row["type"],
                "group": row["group"],
                "description": row["description"],
            }
            for row in rows
        }
        self._cache_set(self._ALL_KEY, result)
        return result

    def simple_settings(self) -> Dict[str, Any]:
        return {key: data["value"] for key, data in self.all_settings().items()}

    # ------------------------------------------------------------ policy
    def loan_days(self, patron_class: PatronClass) -> int:
        key = _POLICY_KEYS[patron_class][0]
        return int(self.get_value(key, DEFAULT_POLICIES[patron_class].loan_days))

    def max_loans(self, patron_class: PatronClass) -> int:
        key = _POLICY_KEYS[patron_class][1]
        return int(self.get_value(key, DEFAULT_POLICIES[patron_class].max_loans))

    def fine_per_day(self, patron_class: PatronClass) -> Decimal:
        key = _POLICY_KEYS[patron_class][2]
        return money(self.get_value(key, DEFAULT_POLICIES[patron_class].fine_per_day))

    def lost_book_fee(self) -> Decimal:
        return money(self.get_value("lost_book_default_fee", DEFAULT_LOST_BOOK_FEE))

    def library_name(self) -> str:
        return str(self.get_value("library_name", "Library"))
