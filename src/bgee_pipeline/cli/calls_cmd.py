"""Call commands: conflict filtering, global call propagation and download files.

Commands for:
- Removing no-expression evidence contradicted by expression calls
- Inserting global expression / no-expression calls
- Writing expression download files
"""

import logging
import sys

import click

from bgee_pipeline.config.loader import load_config_with_overrides
from bgee_pipeline.config.schema import EXPR_COMPLETE, EXPR_SIMPLE, FILE_TYPES
from bgee_pipeline.persistence import CallStore, ProvenanceTracker
from bgee_pipeline.pipeline import (
    filter_no_expression_calls,
    generate_expression_files,
    insert_global_calls,
)

logger = logging.getLogger(__name__)

species_option = click.option(
    '--species',
    'species',
    multiple=True,
    help='Species ID to process (repeatable, default: config species_ids or all species)'
)


def _load_config(ctx, species, extra_overrides=None):
    overrides = {'species_ids': species, **(extra_overrides or {})}
    return load_config_with_overrides(ctx.obj['config_path'], overrides)


@click.command('filter-conflicts')
@species_option
@click.pass_context
def filter_conflicts(ctx, species):
    """Remove basic no-expression data contradicted by basic expression calls.

    For each species, no-expression data types with expression evidence in
    the same or a descendant anatomical entity and stage are discarded:
    no-expression calls left without data are deleted, the others updated,
    and conflicting raw data are detached from their no-expression call.

    Examples:

        bgee-calls filter-conflicts

        bgee-calls filter-conflicts --species 9606 --species 10090
    """
    click.echo(click.style("=== No-Expression Conflict Filtering ===", bold=True))
    click.echo()

    store = None
    try:
        config = _load_config(ctx, species)
        store = CallStore.from_config(config)
        provenance = ProvenanceTracker.from_config(config)

        summary = filter_no_expression_calls(store, config.species_ids, provenance=provenance)

        for species_id, counts in summary.items():
            click.echo(
                f"  Species {species_id}: {counts['examined']} examined, "
                f"{counts['deleted']} deleted, {counts['updated']} updated, "
                f"{counts['raw_data_updated']} raw data rows detached"
            )
        provenance.save_to_store(store)

        click.echo()
        click.echo(click.style("Conflict filtering complete", fg='green'))

    except Exception as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        logger.exception("Conflict filtering failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()


@click.command('propagate')
@species_option
@click.option(
    '--no-expression',
    is_flag=True,
    help='Propagate no-expression calls to descendants instead of expression calls to ancestors'
)
@click.pass_context
def propagate(ctx, species, no_expression):
    """Generate global calls by propagation along anatomical relations.

    Expression calls are propagated to ancestor anatomical entities,
    no-expression calls to descendant anatomical entities. Calls landing on
    the same gene, anatomical entity and stage are merged into one global call,
    linked to its basic calls.

    Examples:

        bgee-calls propagate

        bgee-calls propagate --no-expression --species 9606
    """
    call_type = "no-expression" if no_expression else "expression"
    click.echo(click.style(f"=== Global {call_type} Call Generation ===", bold=True))
    click.echo()

    store = None
    try:
        config = _load_config(ctx, species)
        store = CallStore.from_config(config)
        provenance = ProvenanceTracker.from_config(config)

        summary = insert_global_calls(
            store,
            config.species_ids,
            no_expression=no_expression,
            restrict_to_allowed=config.propagation.restrict_no_expression_to_allowed,
            provenance=provenance,
        )

        for species_id, counts in summary.items():
            click.echo(
                f"  Species {species_id}: {counts['basic_calls']} basic calls, "
                f"{counts['global_calls']} global calls, {counts['join_rows']} join rows"
            )
        provenance.save_to_store(store)

        click.echo()
        click.echo(click.style("Propagation complete", fg='green'))

    except Exception as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        logger.exception("Propagation failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()


@click.command('download-files')
@species_option
@click.option(
    '--file-type',
    'file_types',
    multiple=True,
    type=click.Choice(list(FILE_TYPES)),
    help=f'File type to generate (repeatable, default: config file_types, i.e. {EXPR_SIMPLE} and {EXPR_COMPLETE})'
)
@click.pass_context
def download_files(ctx, species, file_types):
    """Write expression download files (TSV) per species.

    Simple files report one expression/no-expression category per gene,
    anatomical entity and stage; complete files add per-data-type states and
    whether they were inferred by propagation.

    Examples:

        bgee-calls download-files

        bgee-calls download-files --file-type expr-complete --species 9606
    """
    click.echo(click.style("=== Expression Download Files ===", bold=True))
    click.echo()

    store = None
    try:
        config = _load_config(ctx, species, {'download_files.file_types': file_types})
        store = CallStore.from_config(config)
        provenance = ProvenanceTracker.from_config(config)

        outputs = generate_expression_files(
            store,
            config.output_dir,
            config.species_ids,
            config.download_files.file_types,
            filter_non_informative=config.download_files.filter_non_informative,
            provenance=provenance,
        )

        for species_id, files in outputs.items():
            for file_type, paths in files.items():
                click.echo(f"  Species {species_id} ({file_type}): {paths['tsv']}")

        click.echo()
        click.echo(click.style("Download files generated", fg='green'))

    except Exception as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        logger.exception("Download file generation failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
