"""Data models for basic and global expression / no-expression calls."""

from enum import Enum, IntEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, model_validator


class DataState(IntEnum):
    """Confidence of the evidence produced by one data type.

    Values are explicit: "best" state selection and conflict detection
    compare states with this total order.
    """

    NODATA = 0
    LOWQUALITY = 1
    HIGHQUALITY = 2

    @property
    def representation(self) -> str:
        return _DATA_STATE_REPRESENTATIONS[self]

    @classmethod
    def from_representation(cls, value: str) -> "DataState":
        """Convert a stored representation ("poor quality", "LOWQUALITY", ...) to a DataState."""
        for state, representation in _DATA_STATE_REPRESENTATIONS.items():
            if value == representation or value == state.name:
                return state
        raise ValueError(f"Unknown data state: {value!r}")


_DATA_STATE_REPRESENTATIONS = {
    DataState.NODATA: "no data",
    DataState.LOWQUALITY: "poor quality",
    DataState.HIGHQUALITY: "high quality",
}


def best_state(state1: DataState, state2: DataState) -> DataState:
    """Return the best of two data states (either one when equal)."""
    if state1 < state2:
        return state2
    return state1


class DataType(str, Enum):
    """Experimental data types supporting a call."""

    AFFYMETRIX = "affymetrix"
    EST = "est"
    IN_SITU = "in_situ"
    RELAXED_IN_SITU = "relaxed_in_situ"
    RNA_SEQ = "rna_seq"

    @property
    def field_name(self) -> str:
        """Name of the call attribute holding the state for this data type."""
        return f"{self.value}_data"


EXPRESSION_DATA_TYPES = (
    DataType.AFFYMETRIX,
    DataType.EST,
    DataType.IN_SITU,
    DataType.RNA_SEQ,
)

NO_EXPRESSION_DATA_TYPES = (
    DataType.AFFYMETRIX,
    DataType.IN_SITU,
    DataType.RELAXED_IN_SITU,
    DataType.RNA_SEQ,
)

# Data types with raw data rows pointing to no-expression calls
# (relaxed in situ data have no raw data of their own).
RAW_DATA_TYPES = (
    DataType.AFFYMETRIX,
    DataType.IN_SITU,
    DataType.RNA_SEQ,
)


class ExpressionOrigin(str, Enum):
    """Where the evidence of an expression call comes from."""

    SELF = "self"
    DESCENT = "descent"
    BOTH = "both"


class NoExpressionOrigin(str, Enum):
    """Where the evidence of a no-expression call comes from."""

    SELF = "self"
    PARENT = "parent"
    BOTH = "both"


class CallKey(NamedTuple):
    """Biological identity of a call, used to group and order calls."""

    gene_id: str
    anat_entity_id: str
    stage_id: str


class _Call(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    gene_id: str
    anat_entity_id: str
    stage_id: str
    is_global: bool = False

    @property
    def key(self) -> CallKey:
        return CallKey(self.gene_id, self.anat_entity_id, self.stage_id)

    @property
    def data_types(self) -> tuple[DataType, ...]:
        raise NotImplementedError

    def data_state(self, data_type: DataType) -> DataState:
        """Return the state for data_type, NODATA if this kind of call does not carry it."""
        if data_type not in self.data_types:
            return DataState.NODATA
        return getattr(self, data_type.field_name)

    def data_states(self) -> dict[DataType, DataState]:
        return {data_type: self.data_state(data_type) for data_type in self.data_types}

    def has_data(self) -> bool:
        return any(state != DataState.NODATA for state in self.data_states().values())


class ExpressionCall(_Call):
    """Expression call, basic (observed) or global (propagated from descendants).

    Attributes:
        id: Call ID in the store (None for calls not yet persisted)
        gene_id: Gene ID
        anat_entity_id: Anatomical entity ID
        stage_id: Developmental stage ID
        affymetrix_data / est_data / in_situ_data / rna_seq_data: per-data-type states
        is_global: False for basic calls, True for propagated/aggregated calls
        origin: SELF, DESCENT or BOTH
    """

    affymetrix_data: DataState = DataState.NODATA
    est_data: DataState = DataState.NODATA
    in_situ_data: DataState = DataState.NODATA
    rna_seq_data: DataState = DataState.NODATA
    origin: ExpressionOrigin = ExpressionOrigin.SELF

    @property
    def data_types(self) -> tuple[DataType, ...]:
        return EXPRESSION_DATA_TYPES

    @model_validator(mode="after")
    def check_basic_origin(self) -> "ExpressionCall":
        if not self.is_global and self.origin != ExpressionOrigin.SELF:
            raise ValueError(f"Basic expression calls must have origin SELF, got {self.origin.value}")
        return self


class NoExpressionCall(_Call):
    """No-expression call, basic (observed) or global (propagated from parents).

    Same identity fields as ExpressionCall; carries relaxed in situ data
    instead of EST data, and origin SELF, PARENT or BOTH.
    """

    affymetrix_data: DataState = DataState.NODATA
    in_situ_data: DataState = DataState.NODATA
    relaxed_in_situ_data: DataState = DataState.NODATA
    rna_seq_data: DataState = DataState.NODATA
    origin: NoExpressionOrigin = NoExpressionOrigin.SELF

    @property
    def data_types(self) -> tuple[DataType, ...]:
        return NO_EXPRESSION_DATA_TYPES

    @model_validator(mode="after")
    def check_basic_origin(self) -> "NoExpressionCall":
        if not self.is_global and self.origin != NoExpressionOrigin.SELF:
            raise ValueError(f"Basic no-expression calls must have origin SELF, got {self.origin.value}")
        return self
