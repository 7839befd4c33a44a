"""
Conversation Schemas

Interaction: one persisted turn of dialogue between a customer and a tenant.
KnowledgeChunk: one retrievable unit of grounding text with its embedding.

Interactions are append-only. The inbound message id is the single
deduplication key and is globally unique across tenants when present.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


def utc_now() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class AuthorRole(str, Enum):
    """Who wrote an interaction"""
    USER = "user"
    ASSISTANT = "assistant"


# ============================================================================
# Models
# ============================================================================

class Interaction(BaseModel):
    """
    One turn of dialogue.

    Only inbound (user-authored) interactions carry a message_id; generated
    replies and synthesized share descriptions without a delivery have none.
    """
    tenant_id: str
    sender_id: str = Field(..., description="Platform-scoped id of the customer")
    author: AuthorRole
    text: str
    timestamp: datetime = Field(default_factory=utc_now)
    message_id: Optional[str] = Field(default=None, description="Inbound message id (mid)")

    @property
    def is_user(self) -> bool:
        return self.author == AuthorRole.USER


class KnowledgeChunk(BaseModel):
    """
    A retrievable unit of grounding text.

    Chunks are superseded, not mutated: a re-sync writes a new chunk for the
    same source_id and retires the older ones afterwards.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    text: str
    embedding: List[float] = Field(default_factory=list)
    source_id: Optional[str] = Field(default=None, description="Linked catalog/source entity")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        """Chunks without an explicit is_active flag count as active"""
        return bool(self.metadata.get("is_active", True))

    def matches(self, filter: Optional[Dict[str, Any]]) -> bool:
        """Check equality of every filter key against metadata"""
        if not filter:
            return True
        for key, expected in filter.items():
            if key == "is_active":
                if self.is_active != bool(expected):
                    return False
            elif self.metadata.get(key) != expected:
                return False
        return True


class ScoredChunk(BaseModel):
    """Nearest-neighbour hit: chunk plus its distance to the query"""
    chunk: KnowledgeChunk
    distance: float

    @property
    def score(self) -> float:
        """Convert distance to similarity"""
        return 1.0 - self.distance
