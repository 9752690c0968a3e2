"""Exception types raised by the memory pipeline."""


class RecallError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(RecallError):
    """An input value failed validation (bad config value, bad payload shape)."""


class MigrationError(RecallError):
    """A schema migration could not be applied. Fatal at startup."""


class TransientStoreError(RecallError):
    """The store stayed locked after all retries. Safe to retry later."""


class InvalidTransitionError(RecallError):
    """A suggestion was asked to move to a state it cannot reach."""


class NotFoundError(RecallError):
    """A referenced record does not exist."""


class PipelineUnavailableError(RecallError):
    """The pipeline is disabled or its schema is not ready."""


class ProviderError(RecallError):
    """A vision/LLM provider call failed."""


class AnalysisParseError(RecallError):
    """A provider response did not contain a usable analysis object."""
