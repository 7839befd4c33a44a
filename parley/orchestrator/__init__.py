"""
Parley Orchestrator

Turns Instagram webhook deliveries into grounded replies.

Components:
- handlers: payload parsing and event classification
- CorrelationCache: share/text correlation window
- ContextBuilder: history, inactivity framing and retrieval grounding
- ReplyDispatcher: chunked, ordered reply delivery
- EventOrchestrator: end-to-end processing of one delivery
- server: FastAPI webhook endpoint
"""

from .correlation_cache import CorrelationCache, PendingCorrelation
from .context_builder import ContextBuilder, CompletionContext, describe_inactivity
from .reply_dispatcher import ReplyDispatcher, split_message
from .processor import EventOrchestrator

__all__ = [
    "CorrelationCache",
    "PendingCorrelation",
    "ContextBuilder",
    "CompletionContext",
    "describe_inactivity",
    "ReplyDispatcher",
    "split_message",
    "EventOrchestrator",
]
