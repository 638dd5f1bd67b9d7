"""Exception hierarchy shared by the store, ranker and distributor."""


class ContextDocsError(Exception):
    """Base class for contextdocs errors."""


class InvalidContextError(ContextDocsError, ValueError):
    """A context event or request is missing required data."""


class InvalidFeedbackError(ContextDocsError, ValueError):
    """Feedback verdict outside helpful/not_helpful/irrelevant."""


class SuggestionNotFoundError(ContextDocsError, LookupError):
    """No durable suggestion record with the given id."""


class StoreError(ContextDocsError):
    """The durable store could not complete an operation."""


class OracleUnavailableError(StoreError):
    """The search index failed or timed out."""


class QueueFullError(ContextDocsError):
    """The work queue is at capacity."""
