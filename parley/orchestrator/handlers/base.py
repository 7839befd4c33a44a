"""
Base Handler

Abstract base class for platform-specific webhook handlers.
A handler turns a raw delivery envelope into a list of classified
InboundEvents before any business logic runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List


class EventKind(str, Enum):
    """Closed set of inbound event kinds"""
    DUPLICATE_SKIP = "duplicate_skip"
    SYSTEM_ECHO = "system_echo"
    PLAIN_TEXT = "plain_text"
    SHARE_ONLY = "share_only"
    SHARE_WITH_TEXT = "share_with_text"
    UNSUPPORTED_ATTACHMENT = "unsupported_attachment"

    @property
    def is_actionable(self) -> bool:
        return self in (EventKind.PLAIN_TEXT, EventKind.SHARE_ONLY, EventKind.SHARE_WITH_TEXT)


class MalformedEventError(ValueError):
    """Payload does not have the expected envelope shape"""
    pass


@dataclass(frozen=True)
class SharedObject:
    """A post/reel the customer shared into the conversation"""
    object_id: str
    url: Optional[str] = None
    attachment_type: str = "share"


@dataclass(frozen=True)
class InboundEvent:
    """
    Common event format for all platforms.

    This is the standardized shape the orchestrator works with; every
    field access on the raw payload happens in the handler.
    """
    kind: EventKind
    page_id: Optional[str]
    sender_id: str
    source: str  # "instagram"
    message_id: Optional[str] = None
    text: Optional[str] = None
    share: Optional[SharedObject] = None
    timestamp: Optional[int] = None  # epoch milliseconds from the platform
    raw_data: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())


class BaseHandler(ABC):
    """
    Abstract base class for platform handlers.

    Each handler must implement:
    - parse_payload: Convert a delivery envelope to InboundEvents
    - verify_signature: Verify webhook signature (if applicable)
    """

    def __init__(self, source_name: str):
        """
        Initialize handler.

        Args:
            source_name: Name of the source (e.g., "instagram")
        """
        self.source_name = source_name

    @abstractmethod
    def parse_payload(self, raw_data: Dict[str, Any]) -> List[InboundEvent]:
        """
        Parse a delivery envelope into classified events.

        Args:
            raw_data: Decoded webhook body

        Returns:
            Events in delivery order (system events included, classified)

        Raises:
            MalformedEventError: envelope structure is not recognised
        """
        pass

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            signature: Signature from headers

        Returns:
            True if signature is valid
        """
        pass
