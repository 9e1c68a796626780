import subprocess
import sys
from functools import lru_cache
from typing import Optional

import typer

from circdesk import database
from circdesk.circulation import CirculationEngine
from circdesk.config import configure_logging, settings
from circdesk.errors import CirculationError
from circdesk.settings_store import LibrarySettings
from circdesk.statistics import StatisticsRecorder
from circdesk.ui_helpers import print_error, print_record, print_rows, set_output_mode

app = typer.Typer(help="Circulation desk CLI")

OVERDUE_COLUMNS = ("loan_id", "asset_code", "title", "patron", "due_date", "days_overdue", "projected_fine")


@lru_cache(maxsize=1)
def _library_settings() -> LibrarySettings:
    return LibrarySettings()


def _engine() -> CirculationEngine:
    """Engine wired to the configured database and its stored settings."""
    library_settings = _library_settings()
    return CirculationEngine(policy=library_settings, statistics=StatisticsRecorder(library_settings=library_settings))


def _fail(error: CirculationError) -> None:
    print_error(error.message, error.to_dict())
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    configure_logging()
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the tables and seed the default library settings."""
    database.initialize_database()
    print(f"Database initialized at {database.DATABASE_FILE}")


@app.command("borrow")
def cli_borrow(
    patron_id: int,
    asset_code: str,
    processed_by: Optional[str] = typer.Option(None, "--by", help="Operator id recorded on the loan"),
):
    """Lend a copy to a patron."""
    try:
        receipt = _engine().borrow(patron_id, asset_code, processed_by=processed_by)
    except CirculationError as e:
        _fail(e)
    print_record(
        "Borrowed",
        {
            "loan_id": receipt.loan.id,
            "asset_code": asset_code,
            "due_date": receipt.due_date.isoformat(),
            "loan_days": receipt.loan_days,
        },
    )


@app.command("return")
def cli_return(asset_code: str):
    """Return a borrowed copy and compute any late fee."""
    try:
        receipt = _engine().return_asset(asset_code)
    except CirculationError as e:
        _fail(e)
    print_record(
        "Returned",
        {
            "loan_id": receipt.loan.id,
            "days_late": receipt.days_late,
            "penalty": str(receipt.penalty),
            "payment_status": receipt.loan.payment_status.value,
        },
    )


@app.command("lost")
def cli_lost(asset_code: str):
    """Close the loan on a copy that was lost and charge its replacement fee."""
    try:
        receipt = _engine().mark_lost(asset_code)
    except CirculationError as e:
        _fail(e)
    print_record("Marked lost", {"loan_id": receipt.loan.id, "penalty": str(receipt.penalty)})


@app.command("pay")
def cli_pay(loan_id: int):
    try:
        loan = _engine().pay(loan_id)
    except CirculationError as e:
        _fail(e)
    print_record("Paid", {"loan_id": loan.id, "amount": str(loan.penalty_amount)})


@app.command("waive")
def cli_waive(loan_id: int, reason: str = typer.Option(..., "--reason", "-r", help="Why the fine is waived")):
    try:
        loan = _engine().waive(loan_id, reason)
    except CirculationError as e:
        _fail(e)
    print_record("Waived", {"loan_id": loan.id, "amount": str(loan.penalty_amount), "reason": loan.remarks})


@app.command("unpay")
def cli_unpay(loan_id: int):
    """Revert a paid or waived fine to pending."""
    try:
        loan = _engine().unpay(loan_id)
    except CirculationError as e:
        _fail(e)
    print_record("Reverted", {"loan_id": loan.id, "payment_status": loan.payment_status.value})


@app.command("clearance")
def cli_clearance(patron_id: int):
    """Show what a patron owes and whether they are cleared."""
    try:
        report = _engine().evaluate_clearance(patron_id)
    except CirculationError as e:
        _fail(e)
    record = report.to_dict()
    record["block_reasons"] = "; ".join(report.block_reasons) or "-"
    print_record("Cleared" if report.is_cleared else "Not cleared", record)


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date."""
    rows = [
        {
            "loan_id": item.loan.id,
            "asset_code": item.asset_code,
            "title": item.title,
            "patron": item.patron_name,
            "due_date": item.loan.due_date.isoformat(),
            "days_overdue": item.days_overdue,
            "projected_fine": str(item.projected_fine),
        }
        for item in _engine().overdue_loans()
    ]
    print_rows("Overdue loans", OVERDUE_COLUMNS, rows, "No overdue loans.")


@app.command("settings")
def cli_settings():
    """Show the library settings."""
    rows = [
        {"key": key, "value": data["value"], "group": data["group"]}
        for key, data in _library_settings().all_settings().items()
    ]
    print_rows("Library settings", ("key", "value", "group"), rows, "No settings found.")


@app.command("set-setting")
def cli_set_setting(key: str, value: str):
    try:
        updated = _library_settings().set_value(key, value)
    except CirculationError as e:
        _fail(e)
    if not updated:
        print_error(f"Unknown setting: {key}")
        raise typer.Exit(code=1)
    print(f"{key} = {value}")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "circdesk.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        print_error("uvicorn could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
