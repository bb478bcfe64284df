import os
import json
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable that selects CLI output: 'plain' (default), 'json' or 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_records(
    title: str,
    columns: Sequence[Tuple[str, str]],
    records: List[Dict[str, Any]],
    empty_message: str,
) -> None:
    """Print a list of records in the current output mode.

    ``columns`` pairs a header with the record key to show.
    - plain: one ``key=value`` line per record
    - json: the records as a JSON array
    - rich: a table
    """
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(records, ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for header, _ in columns:
            table.add_column(header)
        for record in records:
            table.add_row(*[_fmt(record.get(key)) for _, key in columns])
        _console.print(table)
    else:
        for record in records:
            print("  ".join(f"{key}={_fmt(record.get(key))}" for _, key in columns))


def print_summary(title: str, values: Dict[str, Any]) -> None:
    """Print a flat mapping of results (counts, ids) in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(values, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {_fmt(v)}" for k, v in values.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in values.items():
            print(f"{key.replace('_', ' ').title()}: {_fmt(value)}")


def print_fine(fine: Dict[str, Any]) -> None:
    """Print a fine total and its per-policy segments."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(fine, ensure_ascii=False))
        return

    segments = fine.get("breakdown", [])
    if mode == "rich":
        table = Table(title=f"Fine: {fine.get('total', 0):.2f}", header_style="bold cyan")
        for header in ("From", "To", "Days", "Rate", "Amount"):
            table.add_column(header)
        for s in segments:
            table.add_row(s["start_date"], s["end_date"], str(s["days"]), f"{s['rate']:.2f}", f"{s['amount']:.2f}")
        _console.print(table)
    else:
        print(f"Fine total: {fine.get('total', 0):.2f}")
        for s in segments:
            print(f"  {s['start_date']} -> {s['end_date']}: {s['days']} day(s) x {s['rate']:.2f} = {s['amount']:.2f}")


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)
