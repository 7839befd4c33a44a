"""
Parley Common Module

Shared infrastructure: configuration, tenants, and the external
collaborators (stores, embedding, completion, reply channel).
"""

from .config import ParleyConfig, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient, ConversationTurn
from .interaction_store import InteractionStore, JsonInteractionStore
from .knowledge_index import KnowledgeIndex, LocalKnowledgeIndex, KnowledgeIndexer
from .instagram_client import InstagramClient
from .tenants import Tenant, TenantRegistry, ChannelCredentials

__all__ = [
    "ParleyConfig",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "ConversationTurn",
    "InteractionStore",
    "JsonInteractionStore",
    "KnowledgeIndex",
    "LocalKnowledgeIndex",
    "KnowledgeIndexer",
    "InstagramClient",
    "Tenant",
    "TenantRegistry",
    "ChannelCredentials",
]
