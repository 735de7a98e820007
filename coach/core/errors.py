"""Exception hierarchy for the chat pipeline."""


class CoachError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(CoachError):
    """Malformed or missing input. Rejected before any provider call."""


class SessionBusyError(CoachError):
    """Another turn already holds the conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} already has an active turn")
        self.conversation_id = conversation_id


class ProviderError(CoachError):
    """Model backend failure, including rate limiting."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class EmbeddingError(CoachError):
    """Embedding generation failed."""


class PersistenceError(CoachError):
    """A Persistence Coordinator write or read failed."""


class UnsupportedMediaKind(CoachError):
    """An attachment declared a MIME kind the pipeline does not recognise."""

    def __init__(self, file_type: str, label: str = ""):
        super().__init__(f"Unsupported media kind {file_type!r} for {label or 'attachment'}")
        self.file_type = file_type
        self.label = label


class InvalidTransition(CoachError):
    """Illegal streaming session state change."""


class TurnCancelled(CoachError):
    """Raised internally when a turn is stopped by the client."""
