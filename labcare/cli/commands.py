"""CLI commands for LabCare."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as ModelValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from labcare.config import get_settings
from labcare.core.errors import WorkflowError

app = typer.Typer(
    name="labcare",
    help="Encounter workflow for diagnostic laboratory visits",
    add_completion=False,
)
console = Console()


def get_repository():
    """Get the configured encounter repository."""
    from labcare.api.app import build_repository

    return build_repository(get_settings())


@app.command()
def reconcile(
    worksheet_file: Path = typer.Argument(..., help="JSON file with a billing worksheet"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Reconcile a collection worksheet and show whether it may leave collection."""
    from labcare.billing.reconciliation import reconcile as reconcile_worksheet
    from labcare.billing.worksheet import BillingWorksheet

    if not worksheet_file.exists():
        console.print(f"[red]Worksheet file not found: {worksheet_file}[/red]")
        raise typer.Exit(1)

    try:
        worksheet = BillingWorksheet.model_validate(json.loads(worksheet_file.read_text()))
    except (json.JSONDecodeError, ModelValidationError) as e:
        console.print(f"[red]Invalid worksheet: {e}[/red]")
        raise typer.Exit(1)

    summary = reconcile_worksheet(worksheet)

    if output_json:
        console.print(summary.model_dump_json(indent=2))
        return

    table = Table(title="Reconciliation")
    table.add_column("Line")
    table.add_column("Amount", justify="right")
    table.add_row("Subtotal", f"{summary.subtotal:.2f}")
    table.add_row("Coinsurance", f"{summary.coinsurance:.2f}")
    iva_label = "IVA (not chosen)" if summary.iva_percentage is None else f"IVA {summary.iva_percentage}%"
    table.add_row(iva_label, f"{summary.iva:.2f}")
    table.add_row("[bold]Grand total[/bold]", f"[bold]{summary.grand_total:.2f}[/bold]")
    table.add_row("Paid", f"{summary.total_paid:.2f}")
    table.add_row("Remaining", f"{summary.remaining:.2f}")
    console.print(table)

    if summary.can_leave_collection:
        console.print(Panel("[green]Ready to leave collection[/green]", title="Gate"))
    else:
        console.print(
            Panel("\n".join(f"- {f}" for f in summary.gate_failures), title="Gate", style="red")
        )
        raise typer.Exit(2)


@app.command()
def queue():
    """Show the extraction queue and box occupancy from the configured repository."""
    from labcare.extraction.allocator import ResourceAllocator, ResourcePool
    from labcare.extraction.poller import QueuePoller

    settings = get_settings()
    repository = get_repository()
    allocator = ResourceAllocator(repository, ResourcePool.from_count(settings.extraction_box_count))

    async def refresh():
        try:
            return await QueuePoller(allocator).poll_once()
        finally:
            await repository.close()

    try:
        snapshot = asyncio.run(refresh())
    except WorkflowError as e:
        console.print(f"[red]Queue refresh failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Waiting ({len(snapshot.waiting)})")
    table.add_column("#")
    table.add_column("Encounter")
    table.add_column("Patient")
    table.add_column("Urgent")
    table.add_column("Admitted")
    for position, encounter in enumerate(snapshot.waiting, 1):
        table.add_row(
            str(position),
            encounter.encounter_number or encounter.id,
            encounter.patient_ref or "-",
            "[red]yes[/red]" if encounter.urgent else "no",
            encounter.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)

    boxes = Table(title="Boxes")
    boxes.add_column("Box")
    boxes.add_column("Extractor")
    boxes.add_column("Status")
    for status in snapshot.boxes:
        state = f"[yellow]busy ({status.encounter_id})[/yellow]" if status.busy else "[green]free[/green]"
        boxes.add_row(
            status.resource.display_name,
            status.resource.assigned_operator_id or "-",
            state,
        )
    console.print(boxes)


@app.command()
def stats(
    log_type: str = typer.Option("transitions", "--type", "-t", help="transitions, allocations or polls"),
    limit: Optional[int] = typer.Option(None, "--recent", "-n", help="Also list the N most recent events"),
):
    """Show workflow telemetry statistics."""
    from labcare.observability import ObservabilityLogger

    settings = get_settings()
    obs = ObservabilityLogger(log_dir=settings.observability_log_dir, enabled=False)
    summary = obs.get_stats(log_type)

    if summary["total"] == 0:
        console.print("[yellow]No events recorded yet.[/yellow]")
        return

    console.print(Panel.fit(f"[bold]{log_type}[/bold]"))
    console.print(f"Events: {summary['total']}")
    console.print(f"Errors: {summary['errors']} ({summary['error_rate']:.1%})")
    console.print(f"Avg duration: {summary['avg_duration_ms']:.1f} ms")

    if limit:
        table = Table(title="Recent events")
        table.add_column("Time")
        table.add_column("Type")
        table.add_column("Encounter")
        table.add_column("Detail")
        for event in obs.get_recent_events(log_type, limit=limit):
            table.add_row(
                event.get("timestamp", ""),
                event.get("event_type", ""),
                event.get("encounter_id") or "-",
                event.get("operation") or event.get("reason") or event.get("error_message") or "",
            )
        console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting LabCare API server on {host}:{port}")
    uvicorn.run(
        "labcare.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def version():
    """Show version information."""
    from labcare import __version__

    console.print(f"LabCare v{__version__}")
