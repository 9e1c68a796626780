"""Borrow / return / fine lifecycle.

``CirculationEngine`` owns the Loan records and every transition of
``Asset.status``:

    available -> borrowed   borrow
    borrowed  -> available  return_asset
    borrowed  -> lost       mark_lost
    available -> damaged    mark_damaged
    damaged   -> available  repair
    lost      -> available  restore_from_lost (only once the fine is settled)

Each operation is a single ``BEGIN IMMEDIATE`` transaction: all preconditions
are checked on the same connection that performs the writes, and any failure
rolls everything back. The partial unique index on open loans backs up the
"one open loan per asset" rule at the storage layer. Side effects that must
not influence the outcome (statistics) run after commit.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from circdesk.catalog import fetch_asset, fetch_asset_by_code, fetch_title, update_asset_status
from circdesk.database import read_connection, transaction
from circdesk.errors import (
    AlreadyBorrowedError,
    AssetUnavailableError,
    CirculationError,
    FinesPendingError,
    FineUnsettledError,
    LoanLimitReachedError,
    NotCurrentlyBorrowedError,
    NotFoundError,
    PatronInactiveError,
    PaymentStateError,
    StorageError,
    ValidationError,
)
from circdesk.fines import compute_late_fee, replacement_fee
from circdesk.models import (
    AssetStatus,
    BorrowReceipt,
    ClearanceReport,
    Loan,
    OverdueLoan,
    Patron,
    PatronClass,
    PatronStatus,
    PaymentStatus,
    ReturnReceipt,
    format_datetime,
    money,
)
from circdesk.patrons import fetch_patron
from circdesk.settings_store import SettingsProvider, StaticSettingsProvider

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


class CirculationEngine:
    def __init__(
        self,
        db_file: Optional[str] = None,
        policy: Optional[SettingsProvider] = None,
        statistics=None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db_file = db_file
        self.policy = policy or StaticSettingsProvider()
        self.statistics = statistics
        self.clock = clock

    # ------------------------------------------------------------ plumbing
    @contextmanager
    def _atomic(self, operation: str) -> Iterator[sqlite3.Connection]:
        """One transaction per operation; storage faults become StorageError."""
        try:
            with transaction(self.db_file) as conn:
                yield conn
        except CirculationError:
            raise
        except sqlite3.Error as e:
            logger.error(f"Storage failure during {operation}: {e}", exc_info=True)
            raise StorageError(operation) from e

    @staticmethod
    def _require_code(asset_code: str) -> str:
        if not asset_code or not str(asset_code).strip():
            raise ValidationError("Asset code is required.")
        return str(asset_code).strip()

    @staticmethod
    def _fetch_loan(conn: sqlite3.Connection, loan_id: int) -> Optional[Loan]:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    @staticmethod
    def _open_loan(conn: sqlite3.Connection, asset_id: int) -> Optional[Loan]:
        row = conn.execute(
            "SELECT * FROM loans WHERE asset_id = ? AND returned_at IS NULL", (asset_id,)
        ).fetchone()
        return Loan.from_row(row) if row else None

    @staticmethod
    def _open_loans_for(conn: sqlite3.Connection, patron_id: int) -> List[Loan]:
        rows = conn.execute(
            "SELECT * FROM loans WHERE patron_id = ? AND returned_at IS NULL ORDER BY due_date",
            (patron_id,),
        ).fetchall()
        return [Loan.from_row(row) for row in rows]

    @staticmethod
    def _pending_fines(conn: sqlite3.Connection, patron_id: int) -> Decimal:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(penalty_amount), 0) AS total FROM loans
            WHERE patron_id = ? AND payment_status = 'pending' AND penalty_amount > 0
            """,
            (patron_id,),
        ).fetchone()
        return money(row["total"])

    @staticmethod
    def _require_patron(conn: sqlite3.Connection, patron_id: int) -> Patron:
        patron = fetch_patron(conn, patron_id)
        if patron is None:
            raise NotFoundError("patron", patron_id)
        return patron

    def _record_borrow(self, call_number: Optional[str], patron_class: PatronClass, when: datetime) -> None:
        if self.statistics is None or not call_number:
            return
        try:
            self.statistics.record_borrow(call_number, patron_class, when)
        except Exception as e:
            # The loan is already committed; statistics are best effort.
            logger.warning(f"Statistics recording failed for call number {call_number!r}: {e}")

    # -------------------------------------------------------------- borrow
    def borrow(self, patron_id: int, asset_code: str, processed_by: Optional[str] = None) -> BorrowReceipt:
        """Lend an available copy to a patron.

        Checks, in order: patron exists (and is active if faculty), no pending
        fines, below the loan limit, asset exists and is available, no open
        loan for the asset. The first failing check raises; nothing is written.
        """
        asset_code = self._require_code(asset_code)
        now = self.clock()
        with self._atomic("borrow") as conn:
            patron = self._require_patron(conn, patron_id)
            if patron.is_faculty and patron.status is not PatronStatus.ACTIVE:
                raise PatronInactiveError(patron.id)

            pending = self._pending_fines(conn, patron.id)
            if pending > 0:
                raise FinesPendingError(patron.id, pending)

            max_loans = self.policy.max_loans(patron.patron_class)
            active = len(self._open_loans_for(conn, patron.id))
            if active >= max_loans:
                raise LoanLimitReachedError(patron.id, active, max_loans)

            asset = fetch_asset_by_code(conn, asset_code)
            if asset is None:
                raise NotFoundError("asset", asset_code)
            if asset.status is not AssetStatus.AVAILABLE:
                raise AssetUnavailableError(asset.asset_code, asset.status.value)

            existing = self._open_loan(conn, asset.id)
            if existing is not None:
                raise AlreadyBorrowedError(asset.asset_code, existing.id, existing.patron_class.value)

            loan_days = self.policy.loan_days(patron.patron_class)
            due_date = (now + timedelta(days=loan_days)).date()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO loans (patron_id, patron_class, asset_id, borrowed_at, due_date, penalty_amount, processed_by)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (patron.id, patron.patron_class.value, asset.id, format_datetime(now), due_date.isoformat(), processed_by),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyBorrowedError(asset.asset_code) from e
            update_asset_status(conn, asset.id, AssetStatus.BORROWED)
            loan = self._fetch_loan(conn, cursor.lastrowid)
            title = fetch_title(conn, asset.title_id)

        logger.info(
            f"Asset {asset.asset_code} borrowed by {patron.patron_class.value} {patron.patron_code}, due {due_date}"
        )
        self._record_borrow(title.call_number if title else None, patron.patron_class, now)
        return BorrowReceipt(loan=loan, due_date=due_date, loan_days=loan_days)

    # ------------------------------------------------------- return / lost
    def return_asset(self, asset_code: str) -> ReturnReceipt:
        """Close the open loan on a copy and put it back on the shelf."""
        return self._close_loan(asset_code, lost=False)

    def mark_lost(self, asset_code: str) -> ReturnReceipt:
        """Close the open loan on a copy that will not come back.

        The patron is charged the title's price (or the default replacement
        fee); the charge is always left pending.
        """
        return self._close_loan(asset_code, lost=True)

    def _close_loan(self, asset_code: str, lost: bool) -> ReturnReceipt:
        asset_code = self._require_code(asset_code)
        operation = "mark_lost" if lost else "return"
        now = self.clock()
        with self._atomic(operation) as conn:
            asset = fetch_asset_by_code(conn, asset_code, include_deleted=True)
            if asset is None:
                raise NotFoundError("asset", asset_code)
            loan = self._open_loan(conn, asset.id)
            if loan is None:
                raise NotCurrentlyBorrowedError(asset.asset_code)

            late_fee = compute_late_fee(loan.due_date, now, self.policy.fine_per_day(loan.patron_class))
            if lost:
                title = fetch_title(conn, asset.title_id)
                penalty = replacement_fee(title.price if title else Decimal("0"), self.policy.lost_book_fee())
                payment_status = PaymentStatus.PENDING
                asset_status = AssetStatus.LOST
            else:
                penalty = late_fee.penalty
                payment_status = PaymentStatus.PENDING if penalty > 0 else PaymentStatus.PAID
                asset_status = AssetStatus.AVAILABLE

            conn.execute(
                "UPDATE loans SET returned_at = ?, penalty_amount = ?, payment_status = ? WHERE id = ?",
                (format_datetime(now), penalty, payment_status.value, loan.id),
            )
            update_asset_status(conn, asset.id, asset_status)
            closed = self._fetch_loan(conn, loan.id)

        logger.info(
            f"Asset {asset.asset_code} {'marked lost' if lost else 'returned'}: "
            f"loan {loan.id}, days late {late_fee.days_late}, penalty {penalty}"
        )
        return ReturnReceipt(loan=closed, penalty=penalty, days_late=late_fee.days_late, asset_status=asset_status)

    # ------------------------------------------------- inventory transitions
    def _transition(
        self,
        asset_id: int,
        source: AssetStatus,
        target: AssetStatus,
        operation: str,
        gate: Optional[Callable[[sqlite3.Connection, object], None]] = None,
    ):
        with self._atomic(operation) as conn:
            asset = fetch_asset(conn, asset_id)
            if asset is None:
                raise NotFoundError("asset", asset_id)
            if asset.status is not source:
                raise AssetUnavailableError(asset.asset_code, asset.status.value, required=source.value)
            if gate is not None:
                gate(conn, asset)
            update_asset_status(conn, asset.id, target)
            updated = fetch_asset(conn, asset.id)
        logger.info(f"Asset {asset.asset_code}: {source.value} -> {target.value} ({operation})")
        return updated

    def mark_damaged(self, asset_id: int):
        """Only a copy sitting on the shelf can be flagged as damaged."""
        return self._transition(asset_id, AssetStatus.AVAILABLE, AssetStatus.DAMAGED, "mark_damaged")

    def repair(self, asset_id: int):
        return self._transition(asset_id, AssetStatus.DAMAGED, AssetStatus.AVAILABLE, "repair")

    def restore_from_lost(self, asset_id: int):
        """Bring a lost copy back into circulation once its fine is settled."""

        def fine_settled(conn: sqlite3.Connection, asset) -> None:
            row = conn.execute(
                "SELECT * FROM loans WHERE asset_id = ? ORDER BY borrowed_at DESC, id DESC LIMIT 1",
                (asset.id,),
            ).fetchone()
            if row is None:
                return
            last = Loan.from_row(row)
            if not last.is_settled:
                raise FineUnsettledError(asset.asset_code, last.id, last.penalty_amount)

        return self._transition(asset_id, AssetStatus.LOST, AssetStatus.AVAILABLE, "restore_from_lost", fine_settled)

    # ------------------------------------------------------------ payments
    def _require_loan(self, conn: sqlite3.Connection, loan_id: int) -> Loan:
        loan = self._fetch_loan(conn, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def pay(self, loan_id: int) -> Loan:
        now = self.clock()
        with self._atomic("pay") as conn:
            loan = self._require_loan(conn, loan_id)
            status = loan.payment_status.value if loan.payment_status else None
            if loan.penalty_amount <= 0:
                raise PaymentStateError(loan.id, status, "No penalty to pay.")
            if loan.payment_status is not PaymentStatus.PENDING:
                raise PaymentStateError(loan.id, status, "This loan has no pending fine.")
            conn.execute(
                "UPDATE loans SET payment_status = ?, payment_date = ? WHERE id = ?",
                (PaymentStatus.PAID.value, format_datetime(now), loan.id),
            )
            paid = self._fetch_loan(conn, loan.id)
        logger.info(f"Fine of {paid.penalty_amount} paid on loan {paid.id}")
        return paid

    def waive(self, loan_id: int, reason: str) -> Loan:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to waive a fine.", loan_id=loan_id)
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"Waive reason must be at most {MAX_REASON_LENGTH} characters.", loan_id=loan_id
            )
        now = self.clock()
        with self._atomic("waive") as conn:
            loan = self._require_loan(conn, loan_id)
            if loan.payment_status is not PaymentStatus.PENDING:
                status = loan.payment_status.value if loan.payment_status else None
                raise PaymentStateError(loan.id, status, "This loan has no pending fine to waive.")
            conn.execute(
                "UPDATE loans SET payment_status = ?, payment_date = ?, remarks = ? WHERE id = ?",
                (PaymentStatus.WAIVED.value, format_datetime(now), reason, loan.id),
            )
            waived = self._fetch_loan(conn, loan.id)
        logger.info(f"Fine of {waived.penalty_amount} waived on loan {waived.id}: {reason}")
        return waived

    def unpay(self, loan_id: int) -> Loan:
        """Correction path: put a paid or waived fine back to pending."""
        with self._atomic("unpay") as conn:
            loan = self._require_loan(conn, loan_id)
            if loan.payment_status not in (PaymentStatus.PAID, PaymentStatus.WAIVED):
                status = loan.payment_status.value if loan.payment_status else None
                raise PaymentStateError(loan.id, status, "Only paid or waived fines can be reverted.")
            conn.execute(
                "UPDATE loans SET payment_status = ?, payment_date = NULL WHERE id = ?",
                (PaymentStatus.PENDING.value, loan.id),
            )
            reverted = self._fetch_loan(conn, loan.id)
        logger.info(f"Fine on loan {reverted.id} reverted to pending")
        return reverted

    # ----------------------------------------------------------- clearance
    def evaluate_clearance(self, patron_id: int) -> ClearanceReport:
        """Project what the patron owes and whether they may borrow.

        Nothing is written. Fines accruing on open overdue loans are computed
        with the same function ``return_asset`` uses, so the projection equals
        the charge a return at this instant would record.
        """
        now = self.clock()
        with read_connection(self.db_file) as conn:
            patron = self._require_patron(conn, patron_id)
            pending = self._pending_fines(conn, patron.id)
            open_loans = self._open_loans_for(conn, patron.id)
            lost_rows = conn.execute(
                """
                SELECT l.id FROM loans l JOIN assets a ON a.id = l.asset_id
                WHERE l.patron_id = ? AND a.status = 'lost'
                  AND l.id = (SELECT MAX(id) FROM loans WHERE asset_id = l.asset_id)
                  AND l.penalty_amount > 0
                  AND (l.payment_status IS NULL OR l.payment_status = 'pending')
                ORDER BY l.id
                """,
                (patron.id,),
            ).fetchall()

        accrued = Decimal("0.00")
        overdue_ids: List[int] = []
        for loan in open_loans:
            fee = compute_late_fee(loan.due_date, now, self.policy.fine_per_day(loan.patron_class))
            if fee.days_late > 0:
                overdue_ids.append(loan.id)
                accrued += fee.penalty

        report = ClearanceReport(
            patron_id=patron.id,
            patron_class=patron.patron_class,
            pending_fines=pending,
            accrued_fines=money(accrued),
            active_loans=len(open_loans),
            max_loans=self.policy.max_loans(patron.patron_class),
            overdue_loan_ids=overdue_ids,
            unsettled_lost_loan_ids=[row["id"] for row in lost_rows],
        )
        if report.pending_fines > 0:
            report.block_reasons.append(f"Pending fines: {report.pending_fines:.2f}")
        if report.accrued_fines > 0:
            report.block_reasons.append(f"Accrued overdue fines: {report.accrued_fines:.2f}")
        if overdue_ids:
            report.block_reasons.append(f"{len(overdue_ids)} overdue loan(s)")
        if report.active_loans >= report.max_loans:
            report.block_reasons.append(f"Max {report.max_loans} books reached")
        if report.unsettled_lost_loan_ids:
            report.block_reasons.append("Unsettled lost book(s)")
        return report

    # ------------------------------------------------------------- queries
    def get_loan(self, loan_id: int) -> Loan:
        with read_connection(self.db_file) as conn:
            return self._require_loan(conn, loan_id)

    def overdue_loans(self, now: Optional[datetime] = None) -> List[OverdueLoan]:
        """Open loans past their due date, oldest first (for reminder jobs)."""
        now = now or self.clock()
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT l.*, a.asset_code, t.title AS title_name, p.name AS patron_name
                FROM loans l
                JOIN assets a ON a.id = l.asset_id
                JOIN titles t ON t.id = a.title_id
                JOIN patrons p ON p.id = l.patron_id
                WHERE l.returned_at IS NULL AND l.due_date < ?
                ORDER BY l.due_date, l.id
                """,
                (now.date().isoformat(),),
            ).fetchall()
        result = []
        for row in rows:
            loan = Loan.from_row(row)
            fee = compute_late_fee(loan.due_date, now, self.policy.fine_per_day(loan.patron_class))
            result.append(
                OverdueLoan(
                    loan=loan,
                    asset_code=row["asset_code"],
                    title=row["title_name"],
                    patron_name=row["patron_name"],
                    days_overdue=fee.days_late,
                    projected_fine=fee.penalty,
                )
            )
        return result

    def loans_due_on(self, day: date) -> List[Loan]:
        """Open loans due on ``day`` (for "due tomorrow" reminders)."""
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM loans WHERE returned_at IS NULL AND due_date = ? ORDER BY id",
                (day.isoformat(),),
            ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def patron_fines(self, patron_id: int) -> Tuple[List[Loan], Decimal]:
        """Pending, non-zero fines of a patron and their total."""
        with read_connection(self.db_file) as conn:
            self._require_patron(conn, patron_id)
            rows = conn.execute(
                """
                SELECT * FROM loans
                WHERE patron_id = ? AND payment_status = 'pending' AND penalty_amount > 0
                ORDER BY returned_at, id
                """,
                (patron_id,),
            ).fetchall()
        fines = [Loan.from_row(row) for row in rows]
        return fines, money(sum((loan.penalty_amount for loan in fines), Decimal("0")))

    def loan_history(self, patron_id: Optional[int] = None, limit: int = 100) -> List[Loan]:
        sql = "SELECT * FROM loans"
        params: tuple = ()
        if patron_id is not None:
            sql += " WHERE patron_id = ?"
            params = (patron_id,)
        sql += " ORDER BY borrowed_at DESC, id DESC LIMIT ?"
        with read_connection(self.db_file) as conn:
            rows = conn.execute(sql, params + (max(1, limit),)).fetchall()
        return [Loan.from_row(row) for row in rows]

    def lookup_asset(self, asset_code: str) -> Dict[str, object]:
        """Scan lookup: copy details plus the current borrower if it is out."""
        asset_code = self._require_code(asset_code)
        now = self.clock()
        with read_connection(self.db_file) as conn:
            asset = fetch_asset_by_code(conn, asset_code)
            if asset is None:
                raise NotFoundError("asset", asset_code)
            title = fetch_title(conn, asset.title_id)
            loan = self._open_loan(conn, asset.id)
            borrower = fetch_patron(conn, loan.patron_id) if loan else None

        return {
            "asset_code": asset.asset_code,
            "status": asset.status.value,
            "title": title.title if title else "Unknown",
            "author": title.author if title else "Unknown",
            "call_number": title.call_number if title else None,
            "location": asset.location,
            "borrower": borrower.to_dict() if borrower else None,
            "due_date": loan.due_date.isoformat() if loan else None,
            "is_overdue": bool(loan and now.date() > loan.due_date),
        }
