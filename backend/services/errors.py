class EventProcessingError(Exception):
    """Base class for failures while turning free-form input into a health event."""

    code = "processing_error"


class InputValidationError(EventProcessingError):
    """Raised before any external call when user id or text is missing/malformed."""

    code = "invalid_input"


class ClassifierError(EventProcessingError):
    """Raised when the classifier call fails or returns unusable output."""

    code = "classifier_error"


class UnknownEventTypeError(ClassifierError):
    """Raised when the classifier returns an event type outside the schema table."""

    code = "unknown_event_type"


class PersistenceError(EventProcessingError):
    """Raised when an audit record or event cannot be written."""

    code = "persistence_error"


class ConfirmationError(EventProcessingError):
    """Raised when a pending event cannot be resolved from the user's choice."""

    code = "confirmation_error"


class ConfirmationNotFoundError(ConfirmationError):
    code = "confirmation_not_found"


class ConfirmationConflictError(ConfirmationError):
    """The pending event was already resolved or is not awaiting input."""

    code = "confirmation_conflict"


class IncompleteEventError(ConfirmationError):
    code = "incomplete_event"

    def __init__(self, message: str, missing_fields: list[str]):
        super().__init__(message)
        self.missing_fields = missing_fields


class SearchSourceError(Exception):
    """An individual product catalog source failed or timed out."""


class RegistryUpsertError(Exception):
    """A post-persistence registry counter update failed and was ignored."""
