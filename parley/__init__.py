"""
Parley

Conversational orchestrator between Instagram direct messages and a
retrieval-grounded generative model.

Philosophy:
- Every inbound message is processed at most once (message id is the only dedup key)
- A share followed by a caption is one turn, not two
- Replies are grounded in the tenant's knowledge base or admit uncertainty
- Silence is the failure signal; internal errors never reach the chat

Usage:
    from parley.common import load_config, EmbeddingService, LLMClient
    from parley.orchestrator import EventOrchestrator, CorrelationCache, ReplyDispatcher
"""

__version__ = "0.1.0"
