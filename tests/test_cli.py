import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from circdesk.cli import app
from circdesk.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes to the environment; keep it from leaking between tests
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


def test_init_db(db_file):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert f"Database initialized at {db_file}" in result.stdout


def test_borrow_and_return(library):
    result = runner.invoke(app, ["borrow", str(library.student.id), library.codes[0], "--by", "desk-2"])
    assert result.exit_code == 0
    assert "Borrowed" in result.stdout
    assert "loan_days: 7" in result.stdout

    result = runner.invoke(app, ["return", library.codes[0]])
    assert result.exit_code == 0
    assert "penalty: 0.00" in result.stdout
    assert "payment_status: paid" in result.stdout


def test_borrow_error_exits_non_zero(library):
    result = runner.invoke(app, ["borrow", "999", library.codes[0]])
    assert result.exit_code == 1
    assert "Error: Patron 999 not found." in result.stdout


def test_json_output(library):
    result = runner.invoke(app, ["--output", "json", "borrow", str(library.faculty.id), library.codes[0]])
    assert result.exit_code == 0
    payload = json.loads(result.stdout.strip().splitlines()[-1])
    assert payload["loan_days"] == 14
    assert payload["asset_code"] == library.codes[0]


def test_lost_and_fine_payment(library):
    runner.invoke(app, ["borrow", str(library.student.id), library.codes[0]])
    result = runner.invoke(app, ["lost", library.codes[0]])
    assert result.exit_code == 0
    assert "penalty: 350.00" in result.stdout

    result = runner.invoke(app, ["clearance", str(library.student.id)])
    assert "Not cleared" in result.stdout

    result = runner.invoke(app, ["waive", "1", "--reason", "Replaced by the patron"])
    assert result.exit_code == 0
    assert "reason: Replaced by the patron" in result.stdout

    result = runner.invoke(app, ["unpay", "1"])
    assert "payment_status: pending" in result.stdout

    result = runner.invoke(app, ["pay", "1"])
    assert result.exit_code == 0
    assert "amount: 350.00" in result.stdout

    result = runner.invoke(app, ["clearance", str(library.student.id)])
    assert "Cleared" in result.stdout


def test_pay_unknown_loan(library):
    result = runner.invoke(app, ["pay", "1"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_overdue_empty(library):
    result = runner.invoke(app, ["overdue"])
    assert result.exit_code == 0
    assert "No overdue loans." in result.stdout


def test_settings_commands(db_file):
    result = runner.invoke(app, ["set-setting", "max_loans_per_student", "4"])
    assert result.exit_code == 0
    assert "max_loans_per_student = 4" in result.stdout

    result = runner.invoke(app, ["settings"])
    assert "max_loans_per_student | 4 | circulation" in result.stdout

    result = runner.invoke(app, ["set-setting", "unknown_key", "1"])
    assert result.exit_code == 1
    assert "Unknown setting: unknown_key" in result.stdout

    result = runner.invoke(app, ["set-setting", "default_loan_days", "soon"])
    assert result.exit_code == 1


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, db_file):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "circdesk.api:app" in args
    assert args[args.index("--port") + 1] == "8123"
