class PipelineError(Exception):
    """A pipeline run could not produce a complete, validated result."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InferenceError(PipelineError):
    """The inference service kept failing after every retry."""


class SchemaViolation(PipelineError, ValueError):
    """Model output parsed but does not satisfy the expected structure."""
