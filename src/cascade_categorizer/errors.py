class CategorizationError(Exception):
    """Base class for errors raised by the categorization core."""


class RuleValidationError(CategorizationError, ValueError):
    """A rule failed validation when it was written."""


class TransientStageError(CategorizationError):
    """A stage could not produce an answer this time (timeout, bad JSON, provider error).

    The coordinator treats it as zero confidence and keeps cascading.
    """


class StorageUnavailableError(CategorizationError):
    """Storage could not be reached. Aborts the attempt so the caller can retry."""


class NotFoundError(CategorizationError, LookupError):
    pass
