"""Domain records for the circulation desk.

Rows come out of SQLite as ``sqlite3.Row`` objects; each record knows how to
build itself from one (``from_row``) and how to render itself for the HTTP and
CLI surfaces (``to_dict``). Money is always ``Decimal`` quantized to cents and
timestamps are naive local datetimes stored as ISO strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Mapping, Optional

CENTS = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Coerce a stored or user supplied amount to a 2-place Decimal."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        value = repr(value)
    return Decimal(str(value)).quantize(CENTS)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    if value is None or value == "":
        return None
    return date.fromisoformat(value[:10])


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="seconds") if value else None


class PatronClass(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"


class PatronStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AssetStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    DAMAGED = "damaged"
    LOST = "lost"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


SETTLED_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.WAIVED)


@dataclass
class Patron:
    id: int
    patron_code: str
    name: str
    patron_class: PatronClass
    status: PatronStatus = PatronStatus.ACTIVE
    email: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_faculty(self) -> bool:
        return self.patron_class is PatronClass.FACULTY

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Patron":
        return Patron(
            id=row["id"],
            patron_code=row["patron_code"],
            name=row["name"],
            patron_class=PatronClass(row["patron_class"]),
            status=PatronStatus(row["status"]),
            email=row["email"],
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patron_code": self.patron_code,
            "name": self.name,
            "patron_class": self.patron_class.value,
            "status": self.status.value,
            "email": self.email,
        }


@dataclass
class Title:
    id: int
    title: str
    author: str
    isbn: Optional[str] = None
    call_number: Optional[str] = None
    category: Optional[str] = None
    price: Decimal = Decimal("0.00")
    deleted_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Title":
        return Title(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            call_number=row["call_number"],
            category=row["category"],
            price=money(row["price"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "call_number": self.call_number,
            "category": self.category,
            "price": str(self.price),
        }


@dataclass
class Asset:
    id: int
    title_id: int
    asset_code: str
    status: AssetStatus = AssetStatus.AVAILABLE
    building: Optional[str] = None
    aisle: Optional[str] = None
    shelf: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def location(self) -> str:
        return " - ".join(part or "?" for part in (self.building, self.aisle, self.shelf))

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Asset":
        return Asset(
            id=row["id"],
            title_id=row["title_id"],
            asset_code=row["asset_code"],
            status=AssetStatus(row["status"]),
            building=row["building"],
            aisle=row["aisle"],
            shelf=row["shelf"],
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title_id": self.title_id,
            "asset_code": self.asset_code,
            "status": self.status.value,
            "location": self.location,
            "deleted": self.is_deleted,
        }


@dataclass
class Loan:
    id: int
    patron_id: int
    patron_class: PatronClass
    asset_id: int
    borrowed_at: datetime
    due_date: date
    returned_at: Optional[datetime] = None
    penalty_amount: Decimal = Decimal("0.00")
    payment_status: Optional[PaymentStatus] = None
    payment_date: Optional[datetime] = None
    remarks: Optional[str] = None
    processed_by: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    @property
    def is_settled(self) -> bool:
        return self.penalty_amount == 0 or self.payment_status in SETTLED_PAYMENT_STATUSES

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        status = row["payment_status"]
        return Loan(
            id=row["id"],
            patron_id=row["patron_id"],
            patron_class=PatronClass(row["patron_class"]),
            asset_id=row["asset_id"],
            borrowed_at=parse_datetime(row["borrowed_at"]),
            due_date=parse_date(row["due_date"]),
            returned_at=parse_datetime(row["returned_at"]),
            penalty_amount=money(row["penalty_amount"]),
            payment_status=PaymentStatus(status) if status else None,
            payment_date=parse_datetime(row["payment_date"]),
            remarks=row["remarks"],
            processed_by=row["processed_by"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "patron_class": self.patron_class.value,
            "asset_id": self.asset_id,
            "borrowed_at": format_datetime(self.borrowed_at),
            "due_date": self.due_date.isoformat(),
            "returned_at": format_datetime(self.returned_at),
            "penalty_amount": str(self.penalty_amount),
            "payment_status": self.payment_status.value if self.payment_status else None,
            "payment_date": format_datetime(self.payment_date),
            "remarks": self.remarks,
        }


# ---------------------------------------------------------------- results


@dataclass
class BorrowReceipt:
    loan: Loan
    due_date: date
    loan_days: int

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "due_date": self.due_date.isoformat(),
            "loan_days": self.loan_days,
        }


@dataclass
class ReturnReceipt:
    loan: Loan
    penalty: Decimal
    days_late: int
    asset_status: AssetStatus

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "penalty": str(self.penalty),
            "days_late": self.days_late,
            "asset_status": self.asset_status.value,
        }


@dataclass
class OverdueLoan:
    loan: Loan
    asset_code: str
    title: str
    patron_name: str
    days_overdue: int
    projected_fine: Decimal

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "asset_code": self.asset_code,
            "title": self.title,
            "patron_name": self.patron_name,
            "days_overdue": self.days_overdue,
            "projected_fine": str(self.projected_fine),
        }


@dataclass
class ClearanceReport:
    patron_id: int
    patron_class: PatronClass
    pending_fines: Decimal
    accrued_fines: Decimal
    active_loans: int
    max_loans: int
    overdue_loan_ids: List[int] = field(default_factory=list)
    unsettled_lost_loan_ids: List[int] = field(default_factory=list)
    block_reasons: List[str] = field(default_factory=list)

    @property
    def total_owed(self) -> Decimal:
        return self.pending_fines + self.accrued_fines

    @property
    def is_cleared(self) -> bool:
        return (
            self.total_owed == 0
            and not self.overdue_loan_ids
            and self.active_loans < self.max_loans
            and not self.unsettled_lost_loan_ids
        )

    def to_dict(self) -> dict:
        return {
            "patron_id": self.patron_id,
            "patron_class": self.patron_class.value,
            "pending_fines": str(self.pending_fines),
            "accrued_fines": str(self.accrued_fines),
            "total_owed": str(self.total_owed),
            "active_loans": self.active_loans,
            "max_loans": self.max_loans,
            "overdue_loan_ids": list(self.overdue_loan_ids),
            "unsettled_lost_loan_ids": list(self.unsettled_lost_loan_ids),
            "is_cleared": self.is_cleared,
            "block_reasons": list(self.block_reasons),
        }
