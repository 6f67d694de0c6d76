"""Detection and removal of no-expression evidence contradicted by expression evidence."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from bgee_pipeline.calls.models import (
    NO_EXPRESSION_DATA_TYPES,
    RAW_DATA_TYPES,
    DataState,
    DataType,
    ExpressionCall,
    NoExpressionCall,
    NoExpressionOrigin,
)
from bgee_pipeline.errors import ConsistencyError

logger = structlog.get_logger(__name__)

# Expression data type checked against each no-expression data type:
# relaxed in situ no-expression is contradicted by in situ expression.
CONFLICTING_EXPRESSION_DATA_TYPE = {
    DataType.AFFYMETRIX: DataType.AFFYMETRIX,
    DataType.IN_SITU: DataType.IN_SITU,
    DataType.RELAXED_IN_SITU: DataType.IN_SITU,
    DataType.RNA_SEQ: DataType.RNA_SEQ,
}


@dataclass
class ConflictResolution:
    """Changes to apply to basic no-expression calls of one species.

    Attributes:
        to_delete: IDs of no-expression calls left without any data
        to_update: No-expression calls with at least one data type downgraded to NODATA
        raw_data_exclusions: For each raw data type (Affymetrix, in situ, RNA-Seq),
            IDs of no-expression calls whose raw data rows must be detached
    """

    to_delete: set[int] = field(default_factory=set)
    to_update: set[NoExpressionCall] = field(default_factory=set)
    raw_data_exclusions: dict[DataType, set[int]] = field(
        default_factory=lambda: {data_type: set() for data_type in RAW_DATA_TYPES}
    )


def group_calls_by_gene(
    expr_calls: Iterable[ExpressionCall],
) -> dict[str, list[ExpressionCall]]:
    """Group expression calls by gene ID."""
    calls_by_gene: dict[str, list[ExpressionCall]] = {}
    for call in expr_calls:
        calls_by_gene.setdefault(call.gene_id, []).append(call)
    return calls_by_gene


def find_conflicting_data_types(
    no_expr_call: NoExpressionCall,
    expr_calls: Iterable[ExpressionCall],
    anat_entity_ids: set[str],
    stage_ids: set[str],
) -> set[DataType]:
    """
    Find the data types of a no-expression call contradicted by expression calls.

    An expression call contradicts a no-expression call when it is for the
    same gene, in the same or a descendant anatomical entity and stage, and
    has data for the corresponding data type.

    Args:
        no_expr_call: Basic no-expression call examined
        expr_calls: Basic expression calls of the same gene
        anat_entity_ids: Descendants of the no-expression call anatomical entity, including itself
        stage_ids: Descendants of the no-expression call stage, including itself

    Returns:
        Set of no-expression data types with conflicting expression evidence
    """
    with_data = {
        data_type
        for data_type in NO_EXPRESSION_DATA_TYPES
        if no_expr_call.data_state(data_type) != DataState.NODATA
    }
    conflicting: set[DataType] = set()

    for expr_call in expr_calls:
        if (
            expr_call.gene_id != no_expr_call.gene_id
            or expr_call.anat_entity_id not in anat_entity_ids
            or expr_call.stage_id not in stage_ids
        ):
            continue

        for data_type in with_data - conflicting:
            expr_state = expr_call.data_state(CONFLICTING_EXPRESSION_DATA_TYPE[data_type])
            if expr_state != DataState.NODATA:
                conflicting.add(data_type)

        # No remaining accepted data: further expression calls cannot change the outcome
        if conflicting == with_data:
            break

    return conflicting


def resolve_conflicts(
    no_expr_calls: Iterable[NoExpressionCall],
    expr_calls_by_gene: Mapping[str, Iterable[ExpressionCall]],
    anat_entity_descendants: Mapping[str, set[str]],
    stage_descendants: Mapping[str, set[str]],
) -> ConflictResolution:
    """
    Identify basic no-expression calls contradicted by basic expression calls.

    For each no-expression call, data types with conflicting expression evidence
    in the same or a descendant condition are set to NODATA. Calls left without
    any data are deleted, others with at least one downgraded data type are
    updated. Raw data associated to conflicting data types are recorded for
    detachment, independently of the delete/update decision.

    Args:
        no_expr_calls: Basic no-expression calls of one species (IDs required)
        expr_calls_by_gene: Basic expression calls grouped by gene ID
        anat_entity_descendants: anat entity ID -> descendants including itself
        stage_descendants: stage ID -> descendants including itself

    Returns:
        ConflictResolution with the IDs to delete, the calls to update and the
        raw data exclusions per data type

    Raises:
        ConsistencyError: If a call is not a basic call with an ID, or if its
            anatomical entity or stage is unknown to the ontology
    """
    resolution = ConflictResolution()
    examined = 0

    for no_expr_call in no_expr_calls:
        examined += 1
        if (
            no_expr_call.id is None
            or no_expr_call.is_global
            or no_expr_call.origin != NoExpressionOrigin.SELF
        ):
            raise ConsistencyError(
                "No-expression cleaning can be performed only on basic no-expression "
                f"calls with an ID, offending call: {no_expr_call!r}"
            )

        anat_entity_ids = anat_entity_descendants.get(no_expr_call.anat_entity_id)
        if anat_entity_ids is None:
            raise ConsistencyError(
                f"The anatomical entity {no_expr_call.anat_entity_id} is not defined as existing "
                f"in the species of gene {no_expr_call.gene_id}, while it has no-expression data in it"
            )
        stage_ids = stage_descendants.get(no_expr_call.stage_id)
        if stage_ids is None:
            raise ConsistencyError(
                f"The stage {no_expr_call.stage_id} is not defined as existing "
                f"in the species of gene {no_expr_call.gene_id}, while it has no-expression data in it"
            )

        expr_calls = expr_calls_by_gene.get(no_expr_call.gene_id)
        if not expr_calls:
            continue

        conflicting = find_conflicting_data_types(no_expr_call, expr_calls, anat_entity_ids, stage_ids)
        if not conflicting:
            continue

        updated_call = no_expr_call.model_copy(
            update={data_type.field_name: DataState.NODATA for data_type in conflicting}
        )
        if updated_call.has_data():
            resolution.to_update.add(updated_call)
        else:
            resolution.to_delete.add(no_expr_call.id)

        for data_type in conflicting:
            if data_type in resolution.raw_data_exclusions:
                resolution.raw_data_exclusions[data_type].add(no_expr_call.id)

    logger.info(
        "conflict_resolution_complete",
        examined=examined,
        to_delete=len(resolution.to_delete),
        to_update=len(resolution.to_update),
        **{
            f"{data_type.value}_exclusions": len(ids)
            for data_type, ids in resolution.raw_data_exclusions.items()
        },
    )

    return resolution
