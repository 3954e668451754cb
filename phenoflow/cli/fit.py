"""Fit command: run the phenology pipeline on saved frames."""
import click
import numpy as np

from phenoflow.cli.common import console, load_frames, print_params
from phenoflow.config import config
from phenoflow.phenology.pipeline import run_phenology


@click.command(name="fit")
@click.option("--frames", "frames_path", required=True, type=click.Path(exists=True),
              help="Frames archive written by 'fetch --output'")
@click.option("--field-only", is_flag=True, help="Skip per-pixel fitting")
@click.option("--runs", type=int, default=None, help="Field ensemble runs")
@click.option("--rmse-threshold", type=float, default=None, help="Good/poor RMSE threshold")
@click.option("--workers", type=int, default=None, help="Per-pixel worker threads")
@click.option("--seed", type=int, default=None, help="Random seed for reproducible ensembles")
def fit(frames_path, field_only, runs, rmse_threshold, workers, seed):
    """Fit double-logistic phenology to saved frames."""
    overrides = {}
    if runs is not None:
        overrides["field_ensemble_runs"] = runs
    if rmse_threshold is not None:
        overrides["rmse_threshold"] = rmse_threshold
    if workers is not None:
        overrides["pixel_workers"] = workers

    frames = load_frames(frames_path)
    if not frames:
        console.print("[yellow]No frames in archive.[/yellow]")
        return
    overrides.setdefault("vi_mode", frames[0].vi_mode)
    settings = config.fit_settings(**overrides)

    console.print(f"[bold]Frames:[/bold] {len(frames)} ({frames[0].date_str} to {frames[-1].date_str})")
    run = run_phenology(
        frames, settings, rng=np.random.default_rng(seed), per_pixel=not field_only
    )

    print_params("Field fit", run.field_fit.best)
    console.print(f"Viable ensemble members: {len(run.field_fit.ensemble)}")
    if run.pixels is None:
        return

    counts = run.pixels.summary()
    console.print(
        f"\n[bold cyan]Pixels[/bold cyan] good={counts['good']} poor={counts['poor']} "
        f"skipped={counts['skipped']} outlier={counts['outlier']} "
        f"({run.pixels.compute_time_seconds:.1f}s)"
    )
    for name, median, iqr in run.pixels.parameter_uncertainty():
        console.print(f"  {name}: median {median:.3f}, IQR {iqr:.3f}")
    if run.refit is not None:
        print_params("Cleaned refit", run.refit.best)
