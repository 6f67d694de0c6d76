"""Propagation of basic calls along anatomical relations and aggregation into global calls."""

from collections.abc import Iterable, Mapping
from typing import TypeVar

import structlog

from bgee_pipeline.calls.models import (
    CallKey,
    DataState,
    ExpressionCall,
    ExpressionOrigin,
    NoExpressionCall,
    NoExpressionOrigin,
    best_state,
)
from bgee_pipeline.errors import ConsistencyError

logger = structlog.get_logger(__name__)

CallT = TypeVar("CallT", ExpressionCall, NoExpressionCall)


class CallIdSequence:
    """Source of fresh call IDs, seeded above the highest ID already stored."""

    def __init__(self, start: int = 1):
        self._next_id = start

    @classmethod
    def after(cls, max_id: int) -> "CallIdSequence":
        return cls(max_id + 1)

    @property
    def peek(self) -> int:
        return self._next_id

    def next_id(self) -> int:
        call_id = self._next_id
        self._next_id += 1
        return call_id


def propagate_expression(
    basic_calls: Iterable[ExpressionCall],
    ancestors_of_child: Mapping[str, set[str]],
) -> dict[CallKey, list[ExpressionCall]]:
    """
    Propagate basic expression calls to all ancestor anatomical entities.

    The relations are reflexive, so each call also lands on its own
    anatomical entity.

    Args:
        basic_calls: Basic expression calls
        ancestors_of_child: anat entity ID -> ancestors including itself

    Returns:
        Buckets mapping each (gene, anat entity, stage) key to its source calls

    Raises:
        ConsistencyError: If a call anatomical entity is unknown to the relations
    """
    buckets: dict[CallKey, list[ExpressionCall]] = {}
    for call in basic_calls:
        parent_ids = ancestors_of_child.get(call.anat_entity_id)
        if parent_ids is None:
            raise ConsistencyError(
                f"No relations for anatomical entity {call.anat_entity_id} of expression call {call.key}"
            )
        for parent_id in parent_ids:
            key = CallKey(call.gene_id, parent_id, call.stage_id)
            buckets.setdefault(key, []).append(call)
    return buckets


def propagate_no_expression(
    basic_calls: Iterable[NoExpressionCall],
    children_of_ancestor: Mapping[str, set[str]],
    allowed_anat_entities: set[str] | None = None,
) -> dict[CallKey, list[NoExpressionCall]]:
    """
    Propagate basic no-expression calls to descendant anatomical entities.

    Propagation to a descendant only happens if it is in allowed_anat_entities,
    to avoid generating global no-expression calls in every anatomical term.
    The reflexive target (the call own anatomical entity) is always kept.

    Args:
        basic_calls: Basic no-expression calls
        children_of_ancestor: anat entity ID -> descendants including itself
        allowed_anat_entities: Anatomical entities allowed as propagation
            targets; None disables the restriction

    Returns:
        Buckets mapping each (gene, anat entity, stage) key to its source calls

    Raises:
        ConsistencyError: If a call anatomical entity is unknown to the relations
    """
    buckets: dict[CallKey, list[NoExpressionCall]] = {}
    for call in basic_calls:
        child_ids = children_of_ancestor.get(call.anat_entity_id)
        if child_ids is None:
            raise ConsistencyError(
                f"No relations for anatomical entity {call.anat_entity_id} of no-expression call {call.key}"
            )
        for child_id in child_ids:
            if (
                child_id != call.anat_entity_id
                and allowed_anat_entities is not None
                and child_id not in allowed_anat_entities
            ):
                continue
            key = CallKey(call.gene_id, child_id, call.stage_id)
            buckets.setdefault(key, []).append(call)
    return buckets


def _aggregate(
    key: CallKey,
    sources: list[CallT],
    call_class: type[CallT],
    propagated_origin: ExpressionOrigin | NoExpressionOrigin,
    id_sequence: CallIdSequence,
) -> CallT:
    best_states: dict[str, DataState] = {}
    anat_entity_ids: set[str] = set()
    for source in sources:
        for data_type, state in source.data_states().items():
            best_states[data_type.field_name] = best_state(
                best_states.get(data_type.field_name, DataState.NODATA), state
            )
        anat_entity_ids.add(source.anat_entity_id)

    origin_class = type(propagated_origin)
    if key.anat_entity_id in anat_entity_ids:
        origin = origin_class.SELF if len(anat_entity_ids) == 1 else origin_class.BOTH
    else:
        origin = propagated_origin

    return call_class(
        id=id_sequence.next_id(),
        gene_id=key.gene_id,
        anat_entity_id=key.anat_entity_id,
        stage_id=key.stage_id,
        is_global=True,
        origin=origin,
        **best_states,
    )


def finalize_global(
    buckets: Mapping[CallKey, list[CallT]],
    call_class: type[CallT],
    id_sequence: CallIdSequence,
) -> dict[CallT, list[CallT]]:
    """
    Fold each propagation bucket into one global call.

    For each bucket the global call gets, per data type, the best state of
    its source calls, and an origin: SELF if its own anatomical entity is the
    only contributing one, BOTH if it contributes along with others,
    DESCENT (expression) or PARENT (no-expression) if it does not contribute.
    Buckets are processed in ascending key order, so that IDs drawn from
    id_sequence are reproducible.

    Args:
        buckets: Output of propagate_expression or propagate_no_expression
        call_class: ExpressionCall or NoExpressionCall
        id_sequence: Sequence providing the IDs of the global calls

    Returns:
        Mapping from each global call to the basic calls it summarizes
    """
    if call_class is ExpressionCall:
        propagated_origin = ExpressionOrigin.DESCENT
    elif call_class is NoExpressionCall:
        propagated_origin = NoExpressionOrigin.PARENT
    else:
        raise TypeError(f"No propagation implemented for {call_class!r}")

    global_map: dict[CallT, list[CallT]] = {}
    for key in sorted(buckets):
        sources = buckets[key]
        global_call = _aggregate(key, sources, call_class, propagated_origin, id_sequence)
        global_map[global_call] = sources

    logger.debug(
        "global_calls_finalized",
        call_type=call_class.__name__,
        global_calls=len(global_map),
        next_id=id_sequence.peek,
    )
    return global_map


def finalize_global_expression(
    buckets: Mapping[CallKey, list[ExpressionCall]],
    id_sequence: CallIdSequence,
) -> dict[ExpressionCall, list[ExpressionCall]]:
    return finalize_global(buckets, ExpressionCall, id_sequence)


def finalize_global_no_expression(
    buckets: Mapping[CallKey, list[NoExpressionCall]],
    id_sequence: CallIdSequence,
) -> dict[NoExpressionCall, list[NoExpressionCall]]:
    return finalize_global(buckets, NoExpressionCall, id_sequence)


def build_join_rows(global_map: Mapping[CallT, list[CallT]]) -> set[tuple[int, int]]:
    """
    Build (global call ID, basic call ID) pairs linking global calls to their sources.

    Raises:
        ConsistencyError: If a global call or a source call has no ID
    """
    rows: set[tuple[int, int]] = set()
    for global_call, sources in global_map.items():
        if global_call.id is None:
            raise ConsistencyError(f"Global call without ID: {global_call!r}")
        for source in sources:
            if source.id is None:
                raise ConsistencyError(
                    f"Basic call without ID used to generate global call {global_call.id}: {source!r}"
                )
            rows.add((global_call.id, source.id))
    return rows


def compute_allowed_anat_entities(
    anat_entity_ids: Iterable[str],
    ancestors_of_child: Mapping[str, set[str]],
) -> set[str]:
    """
    Anatomical entities allowed as no-expression propagation targets.

    These are the anatomical entities with expression or no-expression calls,
    and all their ancestors (for a consistent graph propagation).

    Args:
        anat_entity_ids: Anatomical entities with expression or no-expression calls
        ancestors_of_child: anat entity ID -> ancestors including itself

    Returns:
        Set of allowed anatomical entity IDs
    """
    allowed = set(anat_entity_ids)
    ancestor_ids: set[str] = set()
    for anat_entity_id in allowed:
        ancestor_ids.update(ancestors_of_child.get(anat_entity_id, ()))
    allowed.update(ancestor_ids)

    logger.info("allowed_anat_entities_computed", allowed_count=len(allowed))
    return allowed
