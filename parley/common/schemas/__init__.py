"""
Parley Schemas

Persisted conversation and knowledge models.
"""

from .conversation import (
    Interaction,
    KnowledgeChunk,
    ScoredChunk,
    AuthorRole,
    utc_now,
)

__all__ = [
    "Interaction",
    "KnowledgeChunk",
    "ScoredChunk",
    "AuthorRole",
    "utc_now",
]
