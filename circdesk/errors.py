"""Exception hierarchy for circulation operations.

Every business failure carries a stable ``code`` and a ``details`` mapping so
callers can render a message (pending amount, loan counts, blocking loan id)
without parsing strings. ``StorageError`` is kept apart from the business
errors: it means the system failed, not that a rule blocked the request.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class CirculationError(Exception):
    """Base class for every error raised by the circulation core."""

    code = "circulation_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = str(value) if isinstance(value, Decimal) else value
        return payload


class NotFoundError(CirculationError):
    code = "not_found"

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(f"{entity.capitalize()} {key} not found.", entity=entity, key=key)


# --- invalid state


class InvalidStateError(CirculationError):
    code = "invalid_state"


class AssetUnavailableError(InvalidStateError):
    code = "asset_unavailable"

    def __init__(self, asset_code: str, status: str, required: str = "available") -> None:
        super().__init__(
            f"Asset {asset_code} is {status}; this operation requires {required}.",
            asset_code=asset_code,
            status=status,
            required=required,
        )


class NotCurrentlyBorrowedError(InvalidStateError):
    code = "not_currently_borrowed"

    def __init__(self, asset_code: str) -> None:
        super().__init__(f"Asset {asset_code} is not currently borrowed.", asset_code=asset_code)


class PaymentStateError(InvalidStateError):
    code = "payment_state"

    def __init__(self, loan_id: int, payment_status: Optional[str], reason: str) -> None:
        super().__init__(reason, loan_id=loan_id, payment_status=payment_status)


# --- policy


class PolicyBlockedError(CirculationError):
    code = "policy_blocked"


class PatronInactiveError(PolicyBlockedError):
    code = "patron_inactive"

    def __init__(self, patron_id: int) -> None:
        super().__init__(
            "This faculty member is inactive and cannot borrow books.", patron_id=patron_id
        )


class FinesPendingError(PolicyBlockedError):
    code = "fines_pending"

    def __init__(self, patron_id: int, pending_fines: Decimal) -> None:
        super().__init__(
            f"Patron has pending fines of {pending_fines:.2f}. Please settle before borrowing.",
            patron_id=patron_id,
            pending_fines=pending_fines,
        )


class LoanLimitReachedError(PolicyBlockedError):
    code = "loan_limit_reached"

    def __init__(self, patron_id: int, current_loans: int, max_loans: int) -> None:
        super().__init__(
            f"Patron has reached the maximum limit of {max_loans} active loans.",
            patron_id=patron_id,
            current_loans=current_loans,
            max_loans=max_loans,
        )


class FineUnsettledError(PolicyBlockedError):
    code = "fine_unsettled"

    def __init__(self, asset_code: str, loan_id: int, penalty_amount: Decimal) -> None:
        super().__init__(
            f"Asset {asset_code} has an unsettled fine on loan {loan_id}.",
            asset_code=asset_code,
            loan_id=loan_id,
            penalty_amount=penalty_amount,
        )


# --- in progress


class AlreadyInProgressError(CirculationError):
    code = "already_in_progress"


class AlreadyBorrowedError(AlreadyInProgressError):
    code = "already_borrowed"

    def __init__(self, asset_code: str, loan_id: Optional[int] = None, patron_class: Optional[str] = None) -> None:
        who = f" by a {patron_class}" if patron_class else ""
        super().__init__(
            f"Asset {asset_code} is already borrowed{who}.",
            asset_code=asset_code,
            loan_id=loan_id,
            patron_class=patron_class,
        )


# --- input / system


class ValidationError(CirculationError):
    code = "validation_error"


class StorageError(CirculationError):
    code = "storage_error"

    def __init__(self, operation: str) -> None:
        super().__init__(f"Storage failure during {operation}.", operation=operation)


class ExternalServiceError(Exception):
    """Raised when a metadata lookup service cannot be reached."""
