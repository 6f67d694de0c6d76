"""Call records and the three call transformations: conflict resolution, propagation and merge."""

from bgee_pipeline.calls.conflicts import (
    ConflictResolution,
    find_conflicting_data_types,
    group_calls_by_gene,
    resolve_conflicts,
)
from bgee_pipeline.calls.merge import (
    CallGroup,
    ExpressionSummary,
    InferenceOrigin,
    MergedRow,
    infer_origin,
    merge_call_group,
    merge_calls,
    merge_data_states,
    summarize_expression_call,
)
from bgee_pipeline.calls.models import (
    CallKey,
    DataState,
    DataType,
    ExpressionCall,
    ExpressionOrigin,
    NoExpressionCall,
    NoExpressionOrigin,
    best_state,
)
from bgee_pipeline.calls.propagation import (
    CallIdSequence,
    build_join_rows,
    compute_allowed_anat_entities,
    finalize_global,
    finalize_global_expression,
    finalize_global_no_expression,
    propagate_expression,
    propagate_no_expression,
)

__all__ = [
    # Models
    "CallKey",
    "DataState",
    "DataType",
    "ExpressionCall",
    "ExpressionOrigin",
    "NoExpressionCall",
    "NoExpressionOrigin",
    "best_state",
    # Conflict resolution
    "ConflictResolution",
    "find_conflicting_data_types",
    "group_calls_by_gene",
    "resolve_conflicts",
    # Propagation
    "CallIdSequence",
    "build_join_rows",
    "compute_allowed_anat_entities",
    "finalize_global",
    "finalize_global_expression",
    "finalize_global_no_expression",
    "propagate_expression",
    "propagate_no_expression",
    # Merge
    "CallGroup",
    "ExpressionSummary",
    "InferenceOrigin",
    "MergedRow",
    "infer_origin",
    "merge_call_group",
    "merge_calls",
    "merge_data_states",
    "summarize_expression_call",
]
