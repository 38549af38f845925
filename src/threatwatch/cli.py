from __future__ import annotations

import asyncio
import json

import typer
from rich.console import Console
from rich.table import Table

from threatwatch.errors import ThreatwatchError
from threatwatch.extract import extract as extract_iocs, hashes_by_kind, ioc_density
from threatwatch.models import EntityType
from threatwatch.pipeline import correlate_stored, lookup_indicator, run_pipeline

app = typer.Typer(add_completion=False)
console = Console()

CONFIG_OPTION = typer.Option("config/config.yaml", "--config", help="Path to config YAML")


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {e}")
    raise typer.Exit(code=1)


@app.command()
def run(config: str = CONFIG_OPTION) -> None:
    """
    Process collector records (extract -> enrich -> reputation -> score), correlate, write reports.
    """
    try:
        summary = asyncio.run(run_pipeline(config))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return
    except ThreatwatchError as e:
        _fail(e)
        return
    console.print(
        f"[bold]Processed[/bold] {summary.processed}/{summary.read} "
        f"(skipped {summary.skipped}, invalid {summary.invalid}), correlations {summary.edges}"
    )


@app.command()
def correlate(config: str = CONFIG_OPTION) -> None:
    """Correlate the stored findings of the trailing window."""
    try:
        edges = correlate_stored(config)
    except ThreatwatchError as e:
        _fail(e)
        return

    table = Table(title=f"Correlations ({len(edges)})")
    table.add_column("finding a")
    table.add_column("finding b")
    table.add_column("score", justify="right")
    table.add_column("shared")
    table.add_column("techniques")
    for e in edges:
        shared = "; ".join(f"{k}: {', '.join(v)}" for k, v in e.shared_iocs.items())
        table.add_row(e.finding_id_a, e.finding_id_b, f"{e.score:.2f}", shared, ", ".join(t.id for t in e.mitre_techniques))
    console.print(table)


@app.command()
def extract(
    text: str = typer.Argument(..., help="Text to scan for indicators"),
    stats: bool = typer.Option(False, "--stats", help="Also print hash kinds and IOC density"),
) -> None:
    """Print the indicators found in TEXT as JSON."""
    iocs = extract_iocs(text)
    out = iocs.to_dict()
    if stats:
        out = {
            "iocs": out,
            "hash_kinds": {kind.value: hashes for kind, hashes in hashes_by_kind(iocs).items()},
            "ioc_density": round(ioc_density(text, iocs), 2),
        }
    console.print_json(json.dumps(out))


@app.command()
def lookup(
    entity_type: EntityType = typer.Argument(..., help="ip, domain, url or hash"),
    value: str = typer.Argument(...),
    config: str = CONFIG_OPTION,
) -> None:
    """Enrich one indicator and show its reputation."""
    try:
        record, result = asyncio.run(lookup_indicator(config, entity_type, value))
    except ThreatwatchError as e:
        _fail(e)
        return

    console.print(f"[bold]{record.key}[/bold] {result.classification.value} (score {result.score})")
    if result.factors:
        console.print(f"Factors: {', '.join(result.factors)}")
    table = Table(title="Providers")
    table.add_column("provider")
    table.add_column("status")
    table.add_column("payload")
    for name, status in record.outcomes.items():
        table.add_row(name, status.value, json.dumps(record.payloads.get(name, {}), default=str)[:120])
    if record.cached:
        for name, payload in record.payloads.items():
            table.add_row(name, "cached", json.dumps(payload, default=str)[:120])
    console.print(table)


if __name__ == "__main__":
    app()
