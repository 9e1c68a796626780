import json
import os
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_record(title: str, record: Dict[str, Any]) -> None:
    """Print one result (a receipt, a clearance report...).
    - plain: 'key: value' lines under the title
    - json: the record as a JSON object
    - rich: a Panel
    """
    mode = get_output_mode()
    if mode == "json":
        _json(record)
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {value}")


def print_rows(title: str, columns: Sequence[str], rows: List[Dict[str, Any]], empty_message: str) -> None:
    """Print a list of records with the given columns."""
    mode = get_output_mode()

    if not rows:
        print(empty_message)
        return

    if mode == "json":
        _json(rows)
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(str(row.get(column, "")) for column in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(str(row.get(column, "")) for column in columns))


def print_error(message: str, details: Dict[str, Any] = None) -> None:
    if get_output_mode() == "json":
        _json({"error": message, **(details or {})})
    elif get_output_mode() == "rich":
        _console.print(f"[bold red]Error:[/] {message}")
    else:
        print(f"Error: {message}")
