"""Fetch command: run an acquisition session for an AOI."""
from pathlib import Path

import click

from phenoflow.cli.common import console, print_frame_table, resolve_sources, save_frames, source_choices
from phenoflow.config import config
from phenoflow.processing.orchestrator import SessionState, SourceOrchestrator
from phenoflow.utils.geometry import load_geojson


@click.command(name="fetch")
@click.option("--geojson", required=True, type=click.Path(exists=True), help="Path to AOI GeoJSON")
@click.option("--start-date", required=True, help="Start date (YYYY-MM-DD)")
@click.option("--end-date", required=True, help="End date (YYYY-MM-DD)")
@click.option("--source", "source_ids", multiple=True, type=click.Choice(source_choices()),
              help="Source to use (repeatable, default: enabled in config)")
@click.option("--vi", "vi_mode", type=click.Choice(["ndvi", "dvi"]), default=None, help="Vegetation index")
@click.option("--max-cloud", type=float, default=None, help="Cloud-cover ceiling in percent")
@click.option("--concurrency", type=int, default=None, help="Max concurrent scenes")
@click.option("--output", type=click.Path(dir_okay=False), default=None, help="Save frames to .npz")
def fetch(geojson, start_date, end_date, source_ids, vi_mode, max_cloud, concurrency, output):
    """Fetch vegetation-index frames for an AOI and date range."""
    overrides = {}
    if vi_mode:
        overrides["vi_mode"] = vi_mode
    if max_cloud is not None:
        overrides["cloud_threshold"] = max_cloud
    if concurrency is not None:
        overrides["max_concurrency"] = concurrency
    settings = config.fetch_settings(**overrides)

    aoi_geom, _, area_sqkm = load_geojson(geojson)
    console.print(f"[bold]AOI:[/bold] {Path(geojson).stem}")
    console.print(f"[bold]Area:[/bold] {area_sqkm:.2f} sq km")
    console.print(f"[bold]Date Range:[/bold] {start_date} to {end_date}")

    orchestrator = SourceOrchestrator(resolve_sources(source_ids), settings=settings)
    try:
        result = orchestrator.run(aoi_geom, start_date, end_date)
    except KeyboardInterrupt:
        orchestrator.cancel()
        raise

    if result.state is SessionState.ERROR:
        console.print(f"[red]Error: {result.error}[/red]")
        raise SystemExit(1)

    console.print(f"\n[bold cyan]{len(result.frames)} frames[/bold cyan] from {result.scene_count} scenes")
    console.print(
        f"Retries: {result.retry_count}  HTTP errors: {result.http_error_count}  "
        f"Dropped: {result.dropped_count}"
    )
    print_frame_table(result.frames)

    if output and result.frames:
        save_frames(result.frames, output)
        console.print(f"[green]Saved frames to {output}[/green]")
