"""Merge of basic and global calls of a (gene, anat entity, stage) triplet into one download file row.

Each triplet can have up to four calls: basic expression, basic no-expression,
global expression and global no-expression. Which of them are present selects
how the overall "Expression/No-expression" category is computed; see
RESUME_RULES for the fifteen possible combinations.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from bgee_pipeline.calls.models import (
    CallKey,
    DataState,
    DataType,
    ExpressionCall,
    NoExpressionCall,
)
from bgee_pipeline.errors import ConsistencyError

logger = structlog.get_logger(__name__)

GENE_ID_COLUMN = "Gene ID"
GENE_NAME_COLUMN = "Gene name"
STAGE_ID_COLUMN = "Developmental stage ID"
STAGE_NAME_COLUMN = "Developmental stage name"
ANAT_ENTITY_ID_COLUMN = "Anatomical entity ID"
ANAT_ENTITY_NAME_COLUMN = "Anatomical entity name"
EXPRESSION_COLUMN = "Expression/No-expression"

DATA_COLUMNS = {
    DataType.AFFYMETRIX: ("Affymetrix data", "Affymetrix data inferred"),
    DataType.EST: ("EST data", "EST data inferred"),
    DataType.IN_SITU: ("In situ data", "In situ inferred"),
    DataType.RELAXED_IN_SITU: ("Relaxed in situ data", "Relaxed in situ inferred"),
    DataType.RNA_SEQ: ("RNA-Seq data", "RNA-Seq data inferred"),
}


class ExpressionSummary(Enum):
    """Expression/no-expression category of a data type, or of a whole row (resume)."""

    NODATA = "no data"
    NOEXPRESSION = "absent high quality"
    LOWQUALITY = "expression low quality"
    HIGHQUALITY = "expression high quality"
    LOWAMBIGUITY = "low ambiguity"
    HIGHAMBIGUITY = "high ambiguity"


class InferenceOrigin(Enum):
    """Whether the evidence of a data type is observed, inferred by propagation, or both."""

    INFERRED = "yes"
    BOTH = "both"
    NOTINFERRED = "no"
    NODATA = "-"


@dataclass
class CallGroup:
    """The calls available for one (gene, anat entity, stage) triplet."""

    key: CallKey
    basic_expr: ExpressionCall | None = None
    basic_no_expr: NoExpressionCall | None = None
    global_expr: ExpressionCall | None = None
    global_no_expr: NoExpressionCall | None = None

    @property
    def presence(self) -> tuple[bool, bool, bool, bool]:
        """(basic expr, basic no-expr, global expr, global no-expr) presence flags."""
        return (
            self.basic_expr is not None,
            self.basic_no_expr is not None,
            self.global_expr is not None,
            self.global_no_expr is not None,
        )

    def add(self, call: ExpressionCall | NoExpressionCall) -> None:
        if call.key != self.key:
            raise ConsistencyError(f"Call {call.key} added to the group of {self.key}")
        if isinstance(call, ExpressionCall):
            slot = "global_expr" if call.is_global else "basic_expr"
        elif isinstance(call, NoExpressionCall):
            slot = "global_no_expr" if call.is_global else "basic_no_expr"
        else:
            raise TypeError(f"Unsupported call type for expression data: {type(call)!r}")
        if getattr(self, slot) is not None:
            raise ConsistencyError(f"Several {slot} calls for the triplet {self.key}")
        setattr(self, slot, call)


@dataclass
class MergedRow:
    """Merged expression data of one triplet."""

    key: CallKey
    resume: ExpressionSummary
    data: dict[DataType, ExpressionSummary] = field(default_factory=dict)
    origins: dict[DataType, InferenceOrigin] = field(default_factory=dict)

    def to_row(self) -> dict[str, str]:
        row = {
            GENE_ID_COLUMN: self.key.gene_id,
            ANAT_ENTITY_ID_COLUMN: self.key.anat_entity_id,
            STAGE_ID_COLUMN: self.key.stage_id,
        }
        for data_type, (data_column, origin_column) in DATA_COLUMNS.items():
            row[data_column] = self.data.get(data_type, ExpressionSummary.NODATA).value
            row[origin_column] = self.origins.get(data_type, InferenceOrigin.NODATA).value
        row[EXPRESSION_COLUMN] = self.resume.value
        return row


def summarize_expression_call(call: ExpressionCall) -> ExpressionSummary:
    """Best expression category over all data types of an expression call."""
    states = set(call.data_states().values())
    if DataState.HIGHQUALITY in states:
        return ExpressionSummary.HIGHQUALITY
    if DataState.LOWQUALITY in states:
        return ExpressionSummary.LOWQUALITY
    return ExpressionSummary.NODATA


def convert_data_state(state: DataState, is_no_expression: bool) -> ExpressionSummary:
    if state == DataState.NODATA:
        return ExpressionSummary.NODATA
    if is_no_expression:
        return ExpressionSummary.NOEXPRESSION
    if state == DataState.HIGHQUALITY:
        return ExpressionSummary.HIGHQUALITY
    return ExpressionSummary.LOWQUALITY


def merge_data_states(expr_state: DataState, no_expr_state: DataState) -> ExpressionSummary:
    """
    Merge the expression and no-expression states of one data type.

    Raises:
        ConsistencyError: If both states have data
    """
    if expr_state == DataState.NODATA and no_expr_state == DataState.NODATA:
        return ExpressionSummary.NODATA
    if no_expr_state == DataState.NODATA:
        return convert_data_state(expr_state, is_no_expression=False)
    if expr_state == DataState.NODATA:
        return ExpressionSummary.NOEXPRESSION
    raise ConsistencyError(
        "An expression call and a no-expression call have data for the same data type: "
        f"{expr_state.representation} and {no_expr_state.representation}"
    )


def _inference_origin(basic: DataState | None, global_: DataState | None, call_type: str) -> InferenceOrigin:
    if basic is None or basic == DataState.NODATA:
        return InferenceOrigin.INFERRED
    if global_ is None:
        return InferenceOrigin.NOTINFERRED
    if global_ == DataState.NODATA:
        raise ConsistencyError(
            f"No data in the global {call_type} call while the basic {call_type} call has data"
        )
    if basic < global_:
        return InferenceOrigin.BOTH
    if basic == global_:
        return InferenceOrigin.NOTINFERRED
    raise ConsistencyError(
        f"The data of the global {call_type} call ({global_.representation}) is weaker than "
        f"the data of the corresponding basic {call_type} call ({basic.representation})"
    )


def infer_origin(
    basic_expr: DataState | None,
    basic_no_expr: DataState | None,
    global_expr: DataState | None,
    global_no_expr: DataState | None,
) -> InferenceOrigin:
    """
    Compute whether the evidence of one data type is observed or inferred.

    None means the corresponding call is absent; NODATA means it is present
    without data for this data type.

    Raises:
        ConsistencyError: If expression and no-expression evidence coexist, or if
            a global call reports weaker evidence than its basic call
    """
    has_expression = any(state not in (None, DataState.NODATA) for state in (basic_expr, global_expr))
    has_no_expression = any(state not in (None, DataState.NODATA) for state in (basic_no_expr, global_no_expr))

    if has_expression and has_no_expression:
        raise ConsistencyError("Expression and no-expression evidence for the same data type")
    if has_expression:
        return _inference_origin(basic_expr, global_expr, "expression")
    if has_no_expression:
        return _inference_origin(basic_no_expr, global_no_expr, "no-expression")
    return InferenceOrigin.NODATA


def _state(call: ExpressionCall | NoExpressionCall | None, data_type: DataType) -> DataState | None:
    if call is None or data_type not in call.data_types:
        return None
    return call.data_state(data_type)


def _missing_global_no_expression(group: CallGroup) -> ExpressionSummary:
    raise ConsistencyError(
        f"There is a no-expression call while there is no global no-expression call for the triplet {group.key}"
    )


def _no_evidence(group: CallGroup) -> ExpressionSummary:
    raise ConsistencyError(f"No basic and global calls for the triplet {group.key}")


def _constant(summary: ExpressionSummary) -> Callable[[CallGroup], ExpressionSummary]:
    return lambda group: summary


# (basic expr, basic no-expr, global expr, global no-expr) -> resume computation
RESUME_RULES: dict[tuple[bool, bool, bool, bool], Callable[[CallGroup], ExpressionSummary]] = {
    (False, False, False, False): _no_evidence,
    (True, False, False, False): lambda group: summarize_expression_call(group.basic_expr),
    (False, True, False, False): _constant(ExpressionSummary.NOEXPRESSION),
    (False, False, True, False): lambda group: summarize_expression_call(group.global_expr),
    (False, False, False, True): _constant(ExpressionSummary.NOEXPRESSION),
    (True, True, False, False): _constant(ExpressionSummary.HIGHAMBIGUITY),
    (True, False, True, False): lambda group: summarize_expression_call(group.global_expr),
    (True, False, False, True): _constant(ExpressionSummary.LOWAMBIGUITY),
    (False, True, True, False): _missing_global_no_expression,
    (False, True, False, True): _constant(ExpressionSummary.NOEXPRESSION),
    (False, False, True, True): _constant(ExpressionSummary.LOWAMBIGUITY),
    (True, True, True, False): _missing_global_no_expression,
    (True, True, False, True): _constant(ExpressionSummary.HIGHAMBIGUITY),
    (True, False, True, True): _constant(ExpressionSummary.HIGHAMBIGUITY),
    (False, True, True, True): _constant(ExpressionSummary.HIGHAMBIGUITY),
    (True, True, True, True): _constant(ExpressionSummary.HIGHAMBIGUITY),
}


def merge_call_group(group: CallGroup) -> MergedRow:
    """
    Merge the calls of one triplet into a MergedRow.

    The resume is computed from RESUME_RULES. Per data type, the reported
    category merges the most propagated expression call (global if present,
    else basic) with the most propagated no-expression call.

    Raises:
        ConsistencyError: For the combinations of calls that cannot exist once
            propagation has run, and for inconsistent data states
    """
    resume = RESUME_RULES[group.presence](group)

    expr_call = group.global_expr or group.basic_expr
    no_expr_call = group.global_no_expr or group.basic_no_expr

    data: dict[DataType, ExpressionSummary] = {}
    origins: dict[DataType, InferenceOrigin] = {}
    for data_type in DataType:
        expr_state = _state(expr_call, data_type) or DataState.NODATA
        no_expr_state = _state(no_expr_call, data_type) or DataState.NODATA
        data[data_type] = merge_data_states(expr_state, no_expr_state)
        origins[data_type] = infer_origin(
            _state(group.basic_expr, data_type),
            _state(group.basic_no_expr, data_type),
            _state(group.global_expr, data_type),
            _state(group.global_no_expr, data_type),
        )

    return MergedRow(key=group.key, resume=resume, data=data, origins=origins)


def group_calls(calls: Iterable[ExpressionCall | NoExpressionCall]) -> list[CallGroup]:
    """Group calls by (gene, anat entity, stage), in ascending key order."""
    groups: dict[CallKey, CallGroup] = {}
    for call in calls:
        key = call.key
        if key not in groups:
            groups[key] = CallGroup(key=key)
        groups[key].add(call)
    return [groups[key] for key in sorted(groups)]


def merge_calls(calls: Iterable[ExpressionCall | NoExpressionCall]) -> list[dict[str, str]]:
    """
    Merge calls into download file rows, one per (gene, anat entity, stage).

    Args:
        calls: Any mix of basic/global expression/no-expression calls

    Returns:
        Rows (column name -> value) sorted by gene ID, anat entity ID, stage ID
    """
    groups = group_calls(calls)
    rows = [merge_call_group(group).to_row() for group in groups]
    logger.info("calls_merged", row_count=len(rows))
    return rows
