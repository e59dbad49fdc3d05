"""Typer CLI for the CDC replicator."""

from __future__ import annotations

import sys
from collections import Counter
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cdc_replicator.config.loader import load_replicator_config
from cdc_replicator.config.models import ReplicatorConfig
from cdc_replicator.observability.health import Status, check_replicator_health
from cdc_replicator.observability.logging import configure_logging
from cdc_replicator.store.postgres import PostgresStore

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cdc-replicator", help="CDC replicator CLI")


def _load(config_path: str | None) -> ReplicatorConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return load_replicator_config(config_path)
    except ValueError as exc:
        console.print(f"[red]Invalid config:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to replicator YAML"),
) -> None:
    """Validate a replicator configuration file."""
    config = _load(config_path)
    console.print("[green]Valid[/green]")
    console.print(
        f"  source: {config.source.database}@{config.source.host}:{config.source.port}"
    )
    console.print(
        f"  target: {config.target.database}@{config.target.host}:{config.target.port}"
        f" (schema {config.schema_catalog.target_schema})"
    )
    console.print(f"  kafka:  {config.kafka.bootstrap_servers}")
    subscription = config.kafka.topics or [config.kafka.topic_pattern]
    console.print(f"  topics: {subscription}")
    console.print(f"  ack policy: {config.ack_policy.value}")
    console.print(f"  worker threads: {config.worker_threads}")


@app.command()
def health(
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="Replicator YAML"
    ),
) -> None:
    """Check connectivity to source, target and Kafka."""
    config = _load(config_path)
    result = check_replicator_health(config)

    table = Table(title="Replicator Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)


@app.command()
def run(
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="Replicator YAML"
    ),
) -> None:
    """Consume change events from Kafka and apply them to the target."""
    config = _load(config_path)
    configure_logging(config.logging)

    from cdc_replicator.pipeline.runner import Replicator

    console.print(
        f"[yellow]Starting replicator:[/yellow] "
        f"{config.source.database} → {config.target.database}"
    )
    replicator = Replicator(config)
    try:
        replicator.start()
    except KeyboardInterrupt:
        replicator.stop()


@app.command()
def apply(
    events_path: str = typer.Argument(
        ..., help="File of newline-delimited change envelopes ('-' for stdin)"
    ),
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="Replicator YAML"
    ),
) -> None:
    """Apply change envelopes from a file without Kafka (replays, backfills)."""
    config = _load(config_path)
    configure_logging(config.logging)

    from cdc_replicator.pipeline.router import RouteOutcome
    from cdc_replicator.pipeline.runner import build_router

    if events_path == "-":
        lines = sys.stdin.read().splitlines()
    else:
        path = Path(events_path)
        if not path.exists():
            console.print(f"[red]Events file not found: {path}[/red]")
            raise typer.Exit(1)
        lines = path.read_text().splitlines()

    outcomes: Counter[str] = Counter()
    with (
        PostgresStore(config.source, name="source") as source,
        PostgresStore(config.target, name="target") as target,
    ):
        router = build_router(config, source, target)
        for line_no, line in enumerate(lines, start=1):
            try:
                outcome = router.route(line)
            except Exception as exc:
                outcomes["failed"] += 1
                logger.error("apply.event_failed", line=line_no, error=str(exc))
                continue
            if outcome != RouteOutcome.TOMBSTONE or line.strip():
                outcomes[outcome.value] += 1

    table = Table(title=f"Applied {events_path}")
    table.add_column("Outcome", style="cyan")
    table.add_column("Events", justify="right")
    for name, count in sorted(outcomes.items()):
        table.add_row(name, str(count))
    console.print(table)
    if outcomes["failed"]:
        raise typer.Exit(1)
