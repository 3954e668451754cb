"""Main CLI application entry point."""
import click

from phenoflow import __version__
from phenoflow.cli.common import console
from phenoflow.utils.logs import configure_logging


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Log level (default: from config / PHENOFLOW_LOG_LEVEL)")
@click.pass_context
def cli(ctx, log_level):
    """Phenoflow - vegetation-index time series and phenology from satellite archives."""
    ctx.ensure_object(dict)
    configure_logging(level=log_level, console=console)


# Import command modules
from phenoflow.cli import sources, fetch, fit  # noqa: E402

# Register commands
cli.add_command(sources.list_sources)
cli.add_command(sources.probe)
cli.add_command(fetch.fetch)
cli.add_command(fit.fit)


if __name__ == "__main__":
    cli()
