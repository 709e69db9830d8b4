"""
Error types shared by every stage of the basket-groups pipeline.

Each error carries the name of the stage that raised it so the
orchestrator can report where a batch run stopped.
"""


class PipelineError(Exception):
    """Base class for failures that abort a batch run."""

    def __init__(self, message: str, stage: str = "pipeline"):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {self.args[0]}"


class InputError(PipelineError):
    """Transaction data is missing, malformed or empty."""


class ParameterError(PipelineError):
    """A run parameter is outside its allowed range."""


class ComputationError(PipelineError):
    """A numeric or per-unit computation could not be completed."""


class UnassignedEntityWarning(UserWarning):
    """An item or customer fell back to a sentinel group / segment label."""
