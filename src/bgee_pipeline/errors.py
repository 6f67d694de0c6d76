"""Exception types raised by the call pipeline."""


class PipelineError(Exception):
    """Base class for all errors raised by the call pipeline."""


class ConsistencyError(PipelineError):
    """Data integrity violation detected while processing a species.

    Raised for example when an observed condition is unknown to the
    ontology, when a data type carries both expression and no-expression
    evidence after conflict resolution, or when a global call reports
    weaker evidence than its basic counterpart. Fatal for the species
    being processed: the enclosing transaction must be rolled back.
    """


class CallValidationError(PipelineError):
    """Invalid caller-supplied parameters, detected before any processing.

    Unknown species IDs, unknown or unsupported download file types, and
    unsupported call parameters (such as sub-stage inclusion).
    """
