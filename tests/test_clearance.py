from decimal import Decimal

import pytest

from circdesk.errors import NotFoundError


def test_new_patron_is_cleared(engine, library):
    report = engine.evaluate_clearance(library.student.id)

    assert report.is_cleared
    assert report.total_owed == Decimal("0.00")
    assert report.active_loans == 0
    assert report.max_loans == 3
    assert report.block_reasons == []


def test_loans_within_the_due_date_do_not_block(engine, library, clock):
    engine.borrow(library.student.id, library.codes[0])
    clock.advance(days=7)

    report = engine.evaluate_clearance(library.student.id)

    assert report.is_cleared
    assert report.active_loans == 1
    assert report.overdue_loan_ids == []


def test_overdue_loan_accrues_projected_fine(engine, library, clock):
    receipt = engine.borrow(library.student.id, library.codes[0])
    clock.advance(days=10)

    report = engine.evaluate_clearance(library.student.id)

    assert not report.is_cleared
    assert report.pending_fines == Decimal("0.00")
    assert report.accrued_fines == Decimal("15.00")
    assert report.overdue_loan_ids == [receipt.loan.id]
    assert report.total_owed == Decimal("15.00")


def test_projection_equals_the_fine_charged_on_return(engine, library, clock):
    engine.borrow(library.student.id, library.codes[0])
    clock.advance(days=12, hours=5)

    projected = engine.evaluate_clearance(library.student.id).accrued_fines
    charged = engine.return_asset(library.codes[0]).penalty

    assert projected == charged == Decimal("25.00")
    assert engine.evaluate_clearance(library.student.id).pending_fines == charged


def test_overdue_faculty_loan_blocks_even_without_a_fine(engine, library, clock):
    engine.borrow(library.faculty.id, library.codes[0])
    clock.advance(days=20)

    report = engine.evaluate_clearance(library.faculty.id)

    assert report.accrued_fines == Decimal("0.00")
    assert not report.is_cleared
    assert "1 overdue loan(s)" in report.block_reasons


def test_reaching_the_limit_blocks(engine, library):
    for code in library.codes[:3]:
        engine.borrow(library.student.id, code)

    report = engine.evaluate_clearance(library.student.id)

    assert not report.is_cleared
    assert "Max 3 books reached" in report.block_reasons


def test_unsettled_lost_book_blocks_until_paid(engine, library):
    engine.borrow(library.student.id, library.codes[0])
    lost = engine.mark_lost(library.codes[0])

    report = engine.evaluate_clearance(library.student.id)
    assert report.unsettled_lost_loan_ids == [lost.loan.id]
    assert report.pending_fines == Decimal("350.00")
    assert not report.is_cleared

    engine.pay(lost.loan.id)
    report = engine.evaluate_clearance(library.student.id)
    assert report.unsettled_lost_loan_ids == []
    assert report.is_cleared


def test_clearance_does_not_write(engine, library, clock, db_file):
    from circdesk.database import read_connection

    engine.borrow(library.student.id, library.codes[0])
    clock.advance(days=30)
    engine.evaluate_clearance(library.student.id)

    with read_connection(db_file) as conn:
        row = conn.execute("SELECT returned_at, penalty_amount, payment_status FROM loans").fetchone()
    assert row["returned_at"] is None
    assert row["payment_status"] is None
    assert row["penalty_amount"] == 0


def test_report_serializes_amounts_as_strings(engine, library):
    payload = engine.evaluate_clearance(library.student.id).to_dict()
    assert payload["total_owed"] == "0.00"
    assert payload["is_cleared"] is True


def test_unknown_patron(engine, library):
    with pytest.raises(NotFoundError):
        engine.evaluate_clearance(12345)


def test_zero_fee_lost_book_does_not_block(db_file, clock, library):
    from circdesk.circulation import CirculationEngine
    from circdesk.models import AssetStatus
    from circdesk.settings_store import StaticSettingsProvider

    engine = CirculationEngine(db_file=db_file, policy=StaticSettingsProvider(lost_book_fee=Decimal("0")), clock=clock)
    engine.borrow(library.student.id, library.codes[4])
    receipt = engine.mark_lost(library.codes[4])
    assert receipt.penalty == Decimal("0.00")

    report = engine.evaluate_clearance(library.student.id)
    assert report.unsettled_lost_loan_ids == []
    assert report.is_cleared
    assert engine.restore_from_lost(library.assets[4].id).status is AssetStatus.AVAILABLE
