# =============================================================================
# Error Types
# =============================================================================
# Exceptions raised by the pipeline and the evaluation harness. Provider
# errors (openai, qdrant_client) are not wrapped here; the pipeline driver
# turns them into a single PipelineError for callers.


class RAGError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(RAGError):
    """
    Required credentials or identifiers are missing.

    Raised before any provider is contacted. `missing` lists every absent
    environment variable name.
    """

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            f"Missing required environment variables: {', '.join(self.missing)}\n"
            f"Please ensure these are set in your .env file or environment."
        )


class PipelineError(RAGError):
    """Opaque failure returned to whoever asked the pipeline a question."""

    def __init__(self, message="Failed to generate response"):
        super().__init__(message)


class JudgeOutputError(RAGError):
    """The concept-coverage judge answered with something that is not a number."""


class EvaluationStateError(RAGError):
    """The evaluation harness was asked to do a step out of order."""
