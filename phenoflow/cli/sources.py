"""Source listing and reachability probe commands."""
import click

from phenoflow.api.sources import DEFAULT_SOURCES
from phenoflow.cli.common import console, resolve_sources, source_choices
from phenoflow.config import config
from phenoflow.processing.orchestrator import SourceOrchestrator
from phenoflow.utils.geometry import load_geojson


@click.command(name="sources")
def list_sources():
    """List predefined imagery sources."""
    enabled = set(config.enabled_sources)
    console.print(f"\n[bold cyan]{len(DEFAULT_SOURCES)} sources[/bold cyan]\n")
    for source in DEFAULT_SOURCES.values():
        state = "[green]enabled[/green]" if source.source_id in enabled else "[dim]disabled[/dim]"
        console.print(f"[bold]{source.source_id}[/bold] ({source.display_name}) {state}")
        console.print(f"  Catalog: {source.search_url}")
        console.print(f"  Collection: {source.collection}")
        console.print(f"  Auth: {source.auth_kind.value}")
        console.print()


@click.command(name="probe")
@click.option("--geojson", required=True, type=click.Path(exists=True), help="Path to AOI GeoJSON")
@click.option("--start-date", required=True, help="Start date (YYYY-MM-DD)")
@click.option("--end-date", required=True, help="End date (YYYY-MM-DD)")
@click.option("--source", "source_ids", multiple=True, type=click.Choice(source_choices()),
              help="Source to probe (repeatable, default: enabled in config)")
def probe(geojson, start_date, end_date, source_ids):
    """Check catalog and token latency for each source."""
    aoi_geom, _, _ = load_geojson(geojson)
    orchestrator = SourceOrchestrator(resolve_sources(source_ids))

    for result in orchestrator.probe(aoi_geom, start_date, end_date):
        if result.ok:
            timing = f"search {result.search_seconds * 1000:.0f}ms"
            if result.token_seconds is not None:
                timing += f", token {result.token_seconds * 1000:.0f}ms"
            console.print(f"[green]✓[/green] {result.source_id}: {timing}")
        else:
            console.print(f"[red]✗[/red] {result.source_id}: {result.error}")
