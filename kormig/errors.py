"""
Pipeline exceptions.

Only build-dependency and schema violations are raised. Data-level problems
(unresolved codes, missing joins, division pathologies) are handled inside
the stages and reported through the lineage tracker.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class MissingStageInputError(PipelineError):
    """A required staged file has not been produced yet."""

    def __init__(self, name: str, producer: str | None = None):
        self.name = name
        self.producer = producer
        message = f"CRITICAL: staged input '{name}' not found"
        if producer:
            message += f" (run stage '{producer}' first)"
        super().__init__(message)


class SchemaError(PipelineError):
    """An input table does not match its declared layout."""


class ConcordanceError(PipelineError):
    """A concordance table is malformed."""
