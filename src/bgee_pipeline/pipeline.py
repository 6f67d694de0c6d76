"""Per-species drivers chaining store loads, call transformations and writes.

Each driver validates its parameters before touching any species, then
processes species one at a time; all writes of a species happen in a single
store transaction, so a ConsistencyError leaves that species unchanged.
"""

from collections.abc import Iterable
from pathlib import Path

import structlog

from bgee_pipeline.calls.conflicts import group_calls_by_gene, resolve_conflicts
from bgee_pipeline.calls.merge import merge_calls
from bgee_pipeline.calls.models import NoExpressionCall
from bgee_pipeline.calls.propagation import (
    CallIdSequence,
    build_join_rows,
    compute_allowed_anat_entities,
    finalize_global_expression,
    finalize_global_no_expression,
    propagate_expression,
    propagate_no_expression,
)
from bgee_pipeline.config.schema import (
    DIFFEXPR_COMPLETE,
    DIFFEXPR_SIMPLE,
    EXPR_COMPLETE,
    EXPR_SIMPLE,
    FILE_TYPES,
)
from bgee_pipeline.errors import CallValidationError, ConsistencyError
from bgee_pipeline.output.writers import build_download_frame, write_download_file
from bgee_pipeline.persistence.duckdb_store import CallStore
from bgee_pipeline.persistence.provenance import ProvenanceTracker

logger = structlog.get_logger(__name__)


def _check_count(action: str, expected: int, actual: int, species_id: str) -> None:
    if expected != actual:
        raise ConsistencyError(
            f"Incorrect number of {action} for species {species_id}, "
            f"expected: {expected} but was: {actual}"
        )


def filter_no_expression_calls(
    store: CallStore,
    species_ids: Iterable[str] | None = None,
    provenance: ProvenanceTracker | None = None,
) -> dict[str, dict[str, int]]:
    """
    Remove no-expression evidence contradicted by expression calls, per species.

    For each species, conflicting raw data are detached from their
    no-expression calls, no-expression calls left without data are deleted
    and the others with downgraded data types are updated.

    Args:
        store: CallStore holding basic calls and relations
        species_ids: Species to process; None or empty means all species
        provenance: Optional tracker recording one step per species

    Returns:
        Species ID -> counts of deleted calls, updated calls and detached raw data rows

    Raises:
        CallValidationError: If a requested species is unknown
        ConsistencyError: If the data are inconsistent, or if the store does not
            delete/update the expected number of calls
    """
    species_ids = store.check_species_ids(species_ids)
    summary: dict[str, dict[str, int]] = {}

    for species_id in species_ids:
        logger.info("filter_no_expression_started", species_id=species_id)
        relations = store.load_relation_index(species_id)
        no_expr_calls = store.load_basic_no_expression_calls(species_id)
        expr_calls_by_gene = group_calls_by_gene(store.load_basic_expression_calls(species_id))

        resolution = resolve_conflicts(
            no_expr_calls,
            expr_calls_by_gene,
            relations.anat_entities.children_of_ancestor,
            relations.stages.children_of_ancestor,
        )

        raw_data_updated = 0
        with store.transaction():
            for data_type, call_ids in resolution.raw_data_exclusions.items():
                if call_ids:
                    raw_data_updated += store.update_raw_data_exclusion(data_type, call_ids)
            if resolution.to_delete:
                deleted = store.delete_no_expression_calls(resolution.to_delete)
                _check_count("no-expression calls deleted", len(resolution.to_delete), deleted, species_id)
            if resolution.to_update:
                updated = store.update_no_expression_calls(resolution.to_update)
                _check_count("no-expression calls updated", len(resolution.to_update), updated, species_id)

        summary[species_id] = {
            "examined": len(no_expr_calls),
            "deleted": len(resolution.to_delete),
            "updated": len(resolution.to_update),
            "raw_data_updated": raw_data_updated,
        }
        logger.info("filter_no_expression_complete", species_id=species_id, **summary[species_id])
        if provenance is not None:
            provenance.record_species_step("filter_no_expression_calls", species_id, summary[species_id])

    return summary


def insert_global_calls(
    store: CallStore,
    species_ids: Iterable[str] | None = None,
    no_expression: bool = False,
    restrict_to_allowed: bool = True,
    provenance: ProvenanceTracker | None = None,
) -> dict[str, dict[str, int]]:
    """
    Generate and insert global expression or no-expression calls, per species.

    Global call IDs continue after the highest ID already stored. For
    no-expression calls, the allowed anatomical entities are computed once
    over all species in the store, whatever the requested species, so that
    no-expression calls of a species are propagated the same way in any run.

    Args:
        store: CallStore holding basic calls and relations
        species_ids: Species to process; None or empty means all species
        no_expression: Propagate no-expression calls instead of expression calls
        restrict_to_allowed: Restrict no-expression propagation to anatomical
            entities with calls and their ancestors
        provenance: Optional tracker recording one step per species

    Returns:
        Species ID -> counts of basic calls, global calls and join rows

    Raises:
        CallValidationError: If a requested species is unknown
        ConsistencyError: If the data are inconsistent, or if the store does not
            insert the expected number of rows
    """
    species_ids = store.check_species_ids(species_ids)
    call_type = "no-expression" if no_expression else "expression"

    id_sequence = CallIdSequence.after(store.get_max_call_id(no_expression=no_expression))

    allowed_anat_entities = None
    if no_expression and restrict_to_allowed:
        all_species_ids = store.load_species_ids()
        all_relations = store.load_relation_index(all_species_ids)
        allowed_anat_entities = compute_allowed_anat_entities(
            store.load_call_anat_entity_ids(all_species_ids),
            all_relations.anat_entities.ancestors_of_child,
        )

    summary: dict[str, dict[str, int]] = {}
    for species_id in species_ids:
        logger.info("propagation_started", species_id=species_id, call_type=call_type)
        relations = store.load_relation_index(species_id)

        if no_expression:
            basic_calls = store.load_basic_no_expression_calls(species_id)
            buckets = propagate_no_expression(
                basic_calls,
                relations.anat_entities.children_of_ancestor,
                allowed_anat_entities,
            )
            global_map = finalize_global_no_expression(buckets, id_sequence)
        else:
            basic_calls = store.load_basic_expression_calls(species_id)
            buckets = propagate_expression(basic_calls, relations.anat_entities.ancestors_of_child)
            global_map = finalize_global_expression(buckets, id_sequence)

        join_rows = build_join_rows(global_map)

        with store.transaction():
            inserted = store.insert_global_calls(global_map.keys())
            _check_count(f"global {call_type} calls inserted", len(global_map), inserted, species_id)
            inserted_rows = store.insert_join_rows(join_rows, no_expression=no_expression)
            _check_count(f"{call_type} join rows inserted", len(join_rows), inserted_rows, species_id)

        summary[species_id] = {
            "basic_calls": len(basic_calls),
            "global_calls": len(global_map),
            "join_rows": len(join_rows),
        }
        logger.info("propagation_complete", species_id=species_id, call_type=call_type, **summary[species_id])
        if provenance is not None:
            step_name = "insert_global_no_expression_calls" if no_expression else "insert_global_expression_calls"
            provenance.record_species_step(step_name, species_id, summary[species_id])

    return summary


def check_file_types(file_types: Iterable[str] | None, include_substages: bool = False) -> list[str]:
    """
    Validate requested download file types.

    Args:
        file_types: Requested file types; None or empty means all supported types
        include_substages: Whether sub-stage data were requested

    Returns:
        Requested file types, in a stable order

    Raises:
        CallValidationError: For unknown file types, differential expression
            file types, or sub-stage inclusion
    """
    if include_substages:
        raise CallValidationError("Propagation of data to parent stages is not supported in download files")
    if not file_types:
        return [EXPR_SIMPLE, EXPR_COMPLETE]

    requested = list(dict.fromkeys(file_types))
    unknown = [file_type for file_type in requested if file_type not in FILE_TYPES]
    if unknown:
        raise CallValidationError(f"Unknown file types {unknown}, expected values among {list(FILE_TYPES)}")
    unsupported = [file_type for file_type in requested if file_type in (DIFFEXPR_SIMPLE, DIFFEXPR_COMPLETE)]
    if unsupported:
        raise CallValidationError(f"Differential expression files are not supported: {unsupported}")
    return [file_type for file_type in (EXPR_SIMPLE, EXPR_COMPLETE) if file_type in requested]


def _drop_non_informative(
    calls: list[NoExpressionCall],
    non_informative: set[str],
) -> list[NoExpressionCall]:
    return [call for call in calls if call.anat_entity_id not in non_informative]


def generate_expression_files(
    store: CallStore,
    output_dir: Path,
    species_ids: Iterable[str] | None = None,
    file_types: Iterable[str] | None = None,
    filter_non_informative: bool = True,
    include_substages: bool = False,
    provenance: ProvenanceTracker | None = None,
) -> dict[str, dict[str, dict]]:
    """
    Write expression download files, per species and file type.

    Simple files merge basic expression, basic no-expression and global
    no-expression calls; complete files merge all four kinds of calls and
    report per-data-type states and inferred flags.

    Args:
        store: CallStore holding basic and global calls
        output_dir: Directory receiving <species>_<file type>.tsv files
        species_ids: Species to process; None or empty means all species
        file_types: expr-simple and/or expr-complete; None means both
        filter_non_informative: Drop no-expression calls in non-informative
            anatomical entities
        include_substages: Unsupported; must be False
        provenance: Optional tracker, recorded in the file sidecars

    Returns:
        Species ID -> file type -> paths returned by write_download_file

    Raises:
        CallValidationError: If a species or file type is invalid
        ConsistencyError: If calls of a triplet are inconsistent
    """
    file_types = check_file_types(file_types, include_substages)
    species_ids = store.check_species_ids(species_ids)

    non_informative = store.load_non_informative_anat_entities() if filter_non_informative else set()

    outputs: dict[str, dict[str, dict]] = {}
    for species_id in species_ids:
        logger.info("download_files_started", species_id=species_id, file_types=file_types)

        basic_expr = store.load_basic_expression_calls(species_id)
        basic_no_expr = _drop_non_informative(store.load_basic_no_expression_calls(species_id), non_informative)
        global_no_expr = _drop_non_informative(store.load_global_no_expression_calls(species_id), non_informative)
        names = store.load_names(species_id)

        outputs[species_id] = {}
        for file_type in file_types:
            calls = [*basic_expr, *basic_no_expr, *global_no_expr]
            if file_type == EXPR_COMPLETE:
                calls.extend(store.load_global_expression_calls(species_id))

            rows = merge_calls(calls)
            df = build_download_frame(rows, names, file_type)
            if provenance is not None:
                provenance.record_species_step(
                    "generate_expression_files", species_id, {f"{file_type}_rows": df.height}
                )
            outputs[species_id][file_type] = write_download_file(
                df,
                output_dir,
                species_id,
                file_type,
                provenance=provenance.create_metadata() if provenance is not None else None,
            )
            logger.info("download_file_written", species_id=species_id, file_type=file_type, rows=df.height)

    return outputs
