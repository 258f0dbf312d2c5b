"""Entry point for the `vigil` console script."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vigil.config import settings
from vigil.liveness.engine import WellbeingService
from vigil.liveness.errors import VigilError
from vigil.liveness.models import Actor, Role
from vigil.liveness.store import LivenessStore
from vigil.nominees import SqliteNomineeDirectory
from vigil.notifications import build_channel

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

# Whoever can run the CLI on the host already has the database.
OPERATOR = Actor(id="cli-operator", role=Role.ADMIN)


def _build_service() -> WellbeingService:
    store = LivenessStore()
    return WellbeingService(store, SqliteNomineeDirectory(store.db_path), build_channel())


def run_server() -> None:
    """Start the FastAPI server."""
    token_status = "SET" if settings.gateway_token else "NOT SET (all requests rejected)"
    console.print(
        Panel.fit(
            f"[bold]Vigil API Server[/bold]\n"
            f"Bind:     {settings.api_host}:{settings.api_port}\n"
            f"Database: {settings.database_path}\n"
            f"Sweep:    every {settings.sweep_interval_seconds}s\n"
            f"Gateway token: {token_status}",
            title="vigil",
            border_style="green",
        )
    )
    uvicorn.run(
        "vigil.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_sweep() -> None:
    """Run one liveness sweep and print what it did."""
    service = _build_service()
    try:
        with console.status("[bold green]Sweeping profiles..."):
            report = service.run_sweep(OPERATOR)
    finally:
        service.shutdown()

    if report.skipped_lease:
        console.print("[yellow]Another sweep holds the lease, nothing done.[/yellow]")
        return

    table = Table(title="Sweep report")
    table.add_column("Outcome")
    table.add_column("Count", justify="right")
    table.add_column("Users")
    table.add_row("scanned", str(report.scanned), "")
    table.add_row("skipped", str(report.skipped), "")
    for label, users in (
        ("advanced", report.advanced),
        ("escalated", report.escalated),
        ("failed", report.failed),
        ("timed out", report.timed_out),
        ("excluded", report.excluded),
    ):
        table.add_row(label, str(len(users)), ", ".join(users[:10]))
    console.print(table)
    if report.deadline_hit:
        console.print("[yellow]Deadline reached; remaining profiles wait for the next sweep.[/yellow]")


def show_reviews() -> None:
    """List pending admin reviews."""
    service = _build_service()
    try:
        reviews = service.list_pending_reviews(OPERATOR)
    finally:
        service.shutdown()

    if not reviews:
        console.print("[dim]No pending reviews.[/dim]")
        return
    table = Table(title=f"Pending reviews ({len(reviews)})")
    table.add_column("Review")
    table.add_column("User")
    table.add_column("Opened")
    for r in reviews:
        table.add_row(r.id, r.user_id, r.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


def show_followups() -> None:
    """List nominee deliveries that need manual follow-up."""
    service = _build_service()
    try:
        items = service.list_followups(OPERATOR)
    finally:
        service.shutdown()

    if not items:
        console.print("[dim]Nothing to follow up.[/dim]")
        return
    table = Table(title=f"Exhausted notifications ({len(items)})")
    table.add_column("Review")
    table.add_column("User")
    table.add_column("Nominee")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for item in items:
        table.add_row(
            item["review_id"], item["user_id"], item["nominee_id"],
            str(item["attempt_count"]), (item.get("last_error") or "")[:60],
        )
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(description="Vigil well-being check-in engine")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("sweep", help="Run one liveness sweep now")
    sub.add_parser("reviews", help="List pending admin reviews")
    sub.add_parser("followups", help="List notifications needing manual follow-up")

    args = parser.parse_args()

    commands = {
        "serve": run_server,
        "sweep": run_sweep,
        "reviews": show_reviews,
        "followups": show_followups,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    try:
        handler()
    except VigilError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        sys.exit(2)


if __name__ == "__main__":
    main()
