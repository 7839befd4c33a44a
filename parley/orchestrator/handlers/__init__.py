"""
Platform Handlers

Each handler converts platform-specific webhook envelopes to classified
InboundEvents.

Available Handlers:
- InstagramHandler: Instagram Messaging webhooks
"""

from .base import BaseHandler, EventKind, InboundEvent, MalformedEventError, SharedObject
from .instagram import InstagramHandler

__all__ = [
    "BaseHandler",
    "EventKind",
    "InboundEvent",
    "MalformedEventError",
    "SharedObject",
    "InstagramHandler",
]
