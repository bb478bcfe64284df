import logging
import os
import subprocess
import sys
from datetime import date
from typing import Optional

import typer
from rich.console import Console

from config import settings
from circulation import database
from circulation.desk import CirculationDesk
from circulation.errors import CirculationError
from circulation.models import CopyCondition, DamageStatus, ShipmentStatus
from circulation.seed import seed_sample_consortium
from circulation.ui_helpers import print_fine, print_records, print_summary, set_output_mode
from circulation.validators import ValueValidator

APP_NAME = "Circulation CLI"

console = Console()


class DeskManager:
    """Keeps one desk per database file for the lifetime of the process."""

    _instance: Optional[CirculationDesk] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> CirculationDesk:
        current_db = database.DATABASE_FILE
        if cls._instance is not None and cls._db_file_snapshot != current_db:
            cls._instance.close()
            cls._instance = None
        if cls._instance is None:
            # The process ends with the command, so post-return handlers run inline
            cls._instance = CirculationDesk(synchronous_events=True)
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(error: CirculationError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log circulation events to stderr"),
):
    """Global options such as the output mode."""
    if output:
        set_output_mode(output)
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command("borrow")
def cli_borrow(
    user_id: str,
    copy_id: str,
    library_id: str,
    on_behalf_of: Optional[str] = typer.Option(None, "--for", help="Child account the loan is for"),
):
    """Lend a copy from a library."""
    desk = DeskManager.get_instance()
    try:
        borrow = desk.circulation.borrow(user_id, copy_id, library_id, on_behalf_of)
    except CirculationError as e:
        _fail(e)
    print_summary("Borrowed", {
        "borrow_id": borrow.id,
        "copy_id": borrow.copy_id,
        "borrower": borrow.borrower_id,
        "beneficiary": borrow.beneficiary_id,
        "due_date": borrow.due_date.date().isoformat(),
    })


@app.command("return")
def cli_return(
    borrow_id: int,
    user_id: str,
    to_library: Optional[str] = typer.Option(None, "--to", help="Library receiving the copy"),
    condition: Optional[str] = typer.Option(None, "--condition", help="NEW | GOOD | FAIR | DAMAGED"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Return a borrowed copy."""
    desk = DeskManager.get_instance()
    try:
        parsed = ValueValidator.enum(CopyCondition, condition, "condition") if condition else None
        outcome = desk.circulation.return_copy(borrow_id, user_id, to_library, parsed, notes)
    except CirculationError as e:
        _fail(e)
    summary = {"borrow_id": outcome.borrow.id, "fine": outcome.borrow.fine}
    if outcome.shipment:
        summary["shipment_id"] = outcome.shipment.id
    if outcome.damage_report:
        summary["damage_report_id"] = outcome.damage_report.id
        summary["damage_fee"] = outcome.damage_report.damage_fee
    print_summary("Returned", summary)


@app.command("loans")
def cli_loans(user_id: str):
    """Show a member's open loans."""
    desk = DeskManager.get_instance()
    loans = desk.circulation.current_loans(user_id)
    print_records(
        "Loans",
        [("Borrow", "id"), ("Copy", "copy_id"), ("Due", "due_date"), ("Status", "status"), ("Fine", "fine_estimate")],
        loans,
        "No open loans.",
    )


@app.command("reserve")
def cli_reserve(
    user_id: str,
    edition_id: str,
    library_id: Optional[str] = typer.Option(None, "--library", help="Preferred pickup library"),
):
    """Join the waiting list for an edition."""
    desk = DeskManager.get_instance()
    try:
        reservation = desk.reservations.create_reservation(user_id, edition_id, library_id)
    except CirculationError as e:
        _fail(e)
    print_summary("Reserved", {
        "reservation_id": reservation.id,
        "position": reservation.position,
        "priority": reservation.effective_priority,
    })


@app.command("cancel")
def cli_cancel(reservation_id: int, user_id: str):
    """Cancel a pending reservation."""
    desk = DeskManager.get_instance()
    try:
        desk.reservations.cancel(reservation_id, user_id)
    except CirculationError as e:
        _fail(e)
    print(f"Reservation {reservation_id} cancelled.")


@app.command("reservations")
def cli_reservations(user_id: str):
    """List a member's reservations."""
    desk = DeskManager.get_instance()
    records = [r.to_dict() for r in desk.reservations.list_for_user(user_id)]
    print_records(
        "Reservations",
        [("Id", "id"), ("Edition", "edition_id"), ("Status", "status"), ("Priority", "effective_priority")],
        records,
        "No reservations.",
    )


@app.command("recalc-priorities")
def cli_recalc_priorities():
    """Recompute waiting-list priorities and grant due boosts."""
    desk = DeskManager.get_instance()
    print_summary("Priorities", desk.reservations.recalculate_priorities())


@app.command("rebalance")
def cli_rebalance(triggered_by: str = typer.Option("staff", "--by", help="Recorded as the trigger")):
    """Move copies from overloaded branches to branches that have none."""
    desk = DeskManager.get_instance()
    results = desk.rebalancer.run(triggered_by=triggered_by)
    if not results:
        print("Nothing to rebalance.")
        return
    rows = [
        {"isbn": r["isbn"], "copy_id": d["copy_id"], "from": d["from_library"], "to": d["to_library"]}
        for r in results
        for d in r["details"]
    ]
    print_records("Rebalancing", [("ISBN", "isbn"), ("Copy", "copy_id"), ("From", "from"), ("To", "to")], rows, "")


@app.command("shipments")
def cli_shipments(
    status: Optional[str] = typer.Option(None, "--status", help="PENDING | IN_TRANSIT | DELIVERED"),
    library_id: Optional[str] = typer.Option(None, "--library"),
):
    """List shipments."""
    desk = DeskManager.get_instance()
    try:
        parsed = ValueValidator.enum(ShipmentStatus, status, "status") if status else None
    except CirculationError as e:
        _fail(e)
    records = [s.to_dict() for s in desk.shipments.list_shipments(parsed, library_id)]
    print_records(
        "Shipments",
        [("Id", "id"), ("Copy", "copy_id"), ("From", "from_library_id"), ("To", "to_library_id"),
         ("Reason", "reason"), ("Status", "status")],
        records,
        "No shipments.",
    )


@app.command("ship-status")
def cli_ship_status(shipment_id: int, status: str, actor_id: str):
    """Advance a shipment (staff only)."""
    desk = DeskManager.get_instance()
    try:
        shipment = desk.shipments.update_status(
            shipment_id, ValueValidator.enum(ShipmentStatus, status, "status"), actor_id
        )
    except CirculationError as e:
        _fail(e)
    print(f"Shipment {shipment.id} is now {shipment.status.value}.")


@app.command("fine-policies")
def cli_fine_policies(library_id: str):
    """List a library's fine policies, newest first."""
    desk = DeskManager.get_instance()
    try:
        policies = desk.ledger.get_policies(library_id)
    except CirculationError as e:
        _fail(e)
    print_records(
        "Fine policies",
        [("Id", "id"), ("Rate", "rate_per_day"), ("From", "effective_from"), ("To", "effective_to")],
        [p.to_dict() for p in policies],
        "No fine policies.",
    )


@app.command("add-fine-policy")
def cli_add_fine_policy(
    library_id: str,
    rate: float,
    effective_from: str,
    created_by: Optional[str] = typer.Option(None, "--by"),
):
    """Add a fine policy starting on EFFECTIVE_FROM (YYYY-MM-DD)."""
    desk = DeskManager.get_instance()
    try:
        day: date = ValueValidator.day(effective_from, "effective_from")
        policy = desk.ledger.create_policy(library_id, rate, day, created_by)
    except CirculationError as e:
        _fail(e)
    print(f"Fine policy {policy.id}: {policy.rate_per_day:.2f}/day from {policy.effective_from.isoformat()}")


@app.command("fine-quote")
def cli_fine_quote(
    library_id: str,
    due: str,
    end: Optional[str] = typer.Option(None, "--end", help="Closing instant, defaults to now"),
):
    """Show the fine a loan due at DUE would owe."""
    desk = DeskManager.get_instance()
    try:
        due_at = ValueValidator.instant(due, "due")
        end_at = ValueValidator.instant(end, "end") if end else None
        fine = desk.ledger.quote_fine(library_id, due_at, end_at)
    except CirculationError as e:
        _fail(e)
    print_fine(fine.to_dict())


@app.command("damage-reports")
def cli_damage_reports(status: Optional[str] = typer.Option(None, "--status")):
    """List damage reports."""
    desk = DeskManager.get_instance()
    try:
        parsed = ValueValidator.enum(DamageStatus, status, "status") if status else None
    except CirculationError as e:
        _fail(e)
    records = [r.to_dict() for r in desk.circulation.list_damage_reports(parsed)]
    print_records(
        "Damage reports",
        [("Id", "id"), ("Copy", "copy_id"), ("Fee", "damage_fee"), ("Status", "status")],
        records,
        "No damage reports.",
    )


@app.command("reminders")
def cli_reminders():
    """Send due-soon and overdue notices and refresh reservation priorities."""
    desk = DeskManager.get_instance()
    print_summary("Reminders", desk.reminders.run())


@app.command("seed")
def cli_seed():
    """Load a sample consortium into an empty database."""
    desk = DeskManager.get_instance()
    counts = seed_sample_consortium(desk.directory, clock=desk.clock)
    if not any(counts.values()):
        print("Database already has libraries; nothing seeded.")
        return
    print_summary("Seeded", counts)


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting circulation API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=3)
        else:
            args.append("--reload")
            subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")


if __name__ == "__main__":
    app()
