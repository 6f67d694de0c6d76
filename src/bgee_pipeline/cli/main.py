"""Main CLI entry point for bgee-calls.

Provides command group with global options and subcommands for call processing.
"""

import logging
from pathlib import Path

import click

from bgee_pipeline import __version__
from bgee_pipeline.config.loader import load_config
from bgee_pipeline.cli.calls_cmd import download_files, filter_conflicts, propagate


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@click.group()
@click.option(
    '--config',
    type=click.Path(exists=True, path_type=Path),
    default='config/default.yaml',
    help='Path to pipeline configuration YAML file'
)
@click.option(
    '--verbose',
    is_flag=True,
    help='Enable verbose logging (DEBUG level)'
)
@click.pass_context
def cli(ctx, config, verbose):
    """bgee-calls: conflict filtering, propagation and merge of expression calls.

    Typical order: filter-conflicts, propagate, propagate --no-expression,
    download-files.
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Verbose logging enabled")


@cli.command()
@click.pass_context
def info(ctx):
    """Display pipeline information and configuration summary."""
    config_path = ctx.obj['config_path']

    click.echo(f"bgee-calls v{__version__}")
    click.echo(f"Config: {config_path}")
    click.echo()

    try:
        config = load_config(config_path)

        config_hash = config.config_hash()
        click.echo(f"Config Hash: {config_hash[:16]}...")
        click.echo()

        click.echo(click.style("Paths:", bold=True))
        click.echo(f"  DuckDB Path: {config.duckdb_path}")
        click.echo(f"  Output Directory: {config.output_dir}")
        click.echo()

        click.echo(click.style("Species:", bold=True))
        click.echo(f"  {', '.join(config.species_ids) if config.species_ids else 'all species in store'}")
        click.echo()

        click.echo(click.style("Options:", bold=True))
        click.echo(
            "  Restrict no-expression propagation: "
            f"{config.propagation.restrict_no_expression_to_allowed}"
        )
        click.echo(f"  Download file types: {', '.join(config.download_files.file_types)}")
        click.echo(f"  Filter non-informative: {config.download_files.filter_non_informative}")

    except Exception as e:
        click.echo(click.style(f"Error loading config: {e}", fg='red'), err=True)
        ctx.exit(1)


cli.add_command(filter_conflicts)
cli.add_command(propagate)
cli.add_command(download_files)


if __name__ == '__main__':
    cli()
