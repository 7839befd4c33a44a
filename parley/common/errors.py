"""
Error types shared by the external collaborators.

Every network-facing client raises a TransportError subclass so the
orchestrator can treat "a collaborator failed" as one category.
"""


class TransportError(Exception):
    """A call to an external collaborator failed."""
    pass


class EmbeddingError(TransportError):
    """Embedding request failed or returned no vector."""
    pass


class CompletionError(TransportError):
    """Completion request failed or returned an empty completion."""
    pass


class ChannelError(TransportError):
    """Outbound message could not be delivered to the platform."""
    pass


class DuplicateMessageError(Exception):
    """An interaction with the same inbound message id is already stored."""

    def __init__(self, message_id: str):
        super().__init__(f"Interaction with message id {message_id!r} already exists")
        self.message_id = message_id
