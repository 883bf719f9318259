"""Command-line interface for literacy impact monitoring."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from aggregation import (
    ImpactAggregationEngine,
    district_league,
    league_json,
    report_fact_pack,
    to_public_response,
)
from database import (
    DatabaseConnectionError,
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
    StoreUnavailableError,
    close_database_pool,
    get_database_pool,
)
from geography import GeographyResolver, UnknownScopeError, load_reference
from literacy_impact.config import get_settings
from models import GeoScope, ScopeLevel
from scoring import classify as classify_wpm
from scoring import summarize
from utils.redaction import PrivacyViolationError

app = typer.Typer(
    name="literacy-impact",
    help="Literacy Impact - EGRA scoring and impact aggregation for school programmes",
    add_completion=False,
)

console = Console()

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for CLI runs."""
    level = (level or get_settings().app.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def _load_json(path: Path):
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


async def _open_store(data: Optional[Path]) -> RecordStore:
    if data is not None:
        return InMemoryRecordStore.from_snapshot(_load_json(data))
    return PostgresRecordStore(await get_database_pool())


async def _with_engine(data: Optional[Path], strict: bool, work):
    settings = get_settings()
    geography = GeographyResolver(load_reference(), settings.aggregation.default_region)
    try:
        store = await _open_store(data)
        engine = ImpactAggregationEngine(store, geography, settings=settings.aggregation, strict=strict)
        return await work(engine)
    finally:
        if data is None:
            await close_database_pool()


def _scope(level: ScopeLevel, scope_id: Optional[str]) -> GeoScope:
    try:
        return GeoScope(level=level, id=scope_id or "")
    except ValueError as e:
        console.print(f"[red]❌ Invalid scope: {e}[/red]")
        raise typer.Exit(code=2)


def _run(coroutine):
    try:
        return asyncio.run(coroutine)
    except UnknownScopeError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=3)
    except (StoreUnavailableError, DatabaseConnectionError) as e:
        console.print(f"[red]❌ Record store unavailable: {e}[/red]")
        raise typer.Exit(code=4)
    except PrivacyViolationError as e:
        console.print(f"[red]❌ Blocked output: {e}[/red]")
        raise typer.Exit(code=5)


@app.callback()
def setup(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (defaults to LOG_LEVEL)")
):
    configure_logging(log_level)


@app.command()
def version():
    """Show version information."""
    from literacy_impact import __version__

    console.print(Panel.fit(
        f"[bold blue]Literacy Impact[/bold blue]\n"
        f"Version: [green]{__version__}[/green]",
        title="Version Info"
    ))


@app.command()
def aggregate(
    level: ScopeLevel = typer.Option(ScopeLevel.COUNTRY, "--level", "-l", help="Scope level"),
    scope_id: Optional[str] = typer.Option(None, "--id", help="Region, sub-region, district or school id"),
    period: str = typer.Option("FY", "--period", "-p", help="FY, TERM or QTR"),
    data: Optional[Path] = typer.Option(None, "--data", "-d", exists=True, help="JSON snapshot instead of PostgreSQL"),
    public: bool = typer.Option(False, "--public", help="Emit the privacy-checked public response"),
    strict: bool = typer.Option(False, "--strict", help="Fail on unknown scopes"),
):
    """Compute the impact aggregate for a scope and period."""
    scope = _scope(level, scope_id)

    async def work(engine: ImpactAggregationEngine):
        result = await engine.aggregate(scope, period)
        return to_public_response(result) if public else result.to_json_dict()

    console.print_json(data=_run(_with_engine(data, strict, work)))


@app.command("fact-pack")
def fact_pack(
    level: ScopeLevel = typer.Option(ScopeLevel.COUNTRY, "--level", "-l", help="Scope level"),
    scope_id: Optional[str] = typer.Option(None, "--id", help="Region, sub-region, district or school id"),
    period: str = typer.Option("FY", "--period", "-p", help="FY, TERM or QTR"),
    data: Optional[Path] = typer.Option(None, "--data", "-d", exists=True, help="JSON snapshot instead of PostgreSQL"),
):
    """Build the numeric fact pack for an impact report."""
    scope = _scope(level, scope_id)

    async def work(engine: ImpactAggregationEngine):
        return (await report_fact_pack(engine, scope, period)).to_json_dict()

    console.print_json(data=_run(_with_engine(data, False, work)))


@app.command()
def league(
    period: str = typer.Option("FY", "--period", "-p", help="FY, TERM or QTR"),
    data: Optional[Path] = typer.Option(None, "--data", "-d", exists=True, help="JSON snapshot instead of PostgreSQL"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
):
    """Rank districts by learning outcomes and fidelity."""

    async def work(engine: ImpactAggregationEngine):
        return await district_league(engine, period)

    rows = _run(_with_engine(data, False, work))
    if as_json:
        console.print_json(data=league_json(rows))
        return

    table = Table(title=f"District league ({period.upper()})")
    for column in ("Rank", "District", "Region", "Outcomes", "Fidelity", "Flag", "Schools"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            str(row.rank),
            row.district,
            row.region,
            "n/a" if row.outcomes_score is None else f"{row.outcomes_score:.1f}",
            f"{row.fidelity_score:.1f}",
            row.priority_flag.value,
            str(row.schools_supported),
        )
    console.print(table)


@app.command()
def classify(wpm: str = typer.Argument(..., help="Story reading words per minute")):
    """Classify a story reading score into a fluency level."""
    level = classify_wpm(wpm)
    if not level:
        console.print("[yellow]No valid score; learner is unclassified[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]{level.value}[/green]")


@app.command("summarize-egra")
def summarize_egra(
    rows_file: Path = typer.Argument(..., exists=True, help="JSON array of learner rows"),
):
    """Summarize an EGRA class sheet."""
    rows = _load_json(rows_file)
    if not isinstance(rows, list):
        console.print("[red]❌ Expected a JSON array of learner rows[/red]")
        raise typer.Exit(code=2)
    console.print_json(data=summarize(rows).model_dump(by_alias=True, mode="json"))


@app.command()
def geography(
    region: Optional[str] = typer.Option(None, "--region", "-r", help="Only this region"),
    sub_region: Optional[str] = typer.Option(None, "--sub-region", "-s", help="Only this sub-region"),
):
    """Show the region → sub-region → district hierarchy."""
    resolver = GeographyResolver(load_reference(), get_settings().aggregation.default_region)
    tree = Tree(f"[bold]{resolver.reference.country}[/bold]")

    for region_name in resolver.regions():
        if region and region_name.casefold() != region.casefold():
            continue
        region_node = tree.add(f"[blue]{region_name}[/blue]")
        for sub_region_name in resolver.sub_regions(region=region_name):
            if sub_region and sub_region_name.casefold() != sub_region.casefold():
                continue
            sub_region_node = region_node.add(f"[cyan]{sub_region_name}[/cyan]")
            for district in resolver.districts(sub_region=sub_region_name):
                sub_region_node.add(district)

    console.print(tree)


@app.command()
def test_db():
    """Test database connectivity."""
    console.print("[yellow]Testing database connection...[/yellow]")

    async def check() -> bool:
        try:
            pool = await get_database_pool()
            return await pool.health_check()
        finally:
            await close_database_pool()

    try:
        healthy = asyncio.run(check())
    except DatabaseConnectionError as e:
        console.print(f"[red]❌ Database connection failed: {e}[/red]")
        raise typer.Exit(code=1)

    if healthy:
        console.print("[green]✅ Database connection successful![/green]")
    else:
        console.print("[red]❌ Database health check failed[/red]")
        raise typer.Exit(code=1)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
