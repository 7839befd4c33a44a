"""
Context Builder

Retrieval-augmented context assembly for one reply.

Output shape handed to the completion client:
- system frame: tenant persona + no-grounding fallback + inactivity note
- history: last N interactions of the sender, oldest first
- current user turn: grounding block (only when retrieval found something),
  a blank line, then the message

Grounding is folded into the current user turn rather than sent as its own
turn so user/assistant roles keep alternating.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..common.embedding_service import EmbeddingService
from ..common.interaction_store import InteractionStore
from ..common.knowledge_index import KnowledgeIndex
from ..common.llm_client import ConversationTurn, USER, ASSISTANT
from ..common.schemas import Interaction, ScoredChunk, utc_now
from ..common.tenants import Tenant

logger = logging.getLogger("parley.orchestrator.context_builder")


FALLBACK_INSTRUCTION = (
    "If the message contains no knowledge base context and the customer asks "
    "about a concrete fact (price, size, availability, delivery terms), do not "
    "guess. Say that you need to confirm it with a human colleague."
)

GROUNDING_HEADER = (
    "### Knowledge Base Context (Source of Truth) ###\n"
    "This is the only reliable information. Answer STRICTLY from it. "
    "Do NOT invent anything that is not in this context.\n\n"
)
GROUNDING_SEPARATOR = "\n---\n"
GROUNDING_FOOTER = "\n### End of Context ###\n"

REGREET_INSTRUCTION = "Greet the customer politely again before answering."
CONTINUE_INSTRUCTION = "Continue the conversation without greeting the customer again."

MERGED_SHARE_PROMPT = (
    "The customer replied to a post they shared. About the post: {description}\n"
    "Customer's message: \"{text}\"\n"
    "Give a helpful answer that takes both the post and the message into account."
)

LONE_SHARE_PROMPT = (
    "The customer just shared a post with us and wrote nothing else. "
    "About the post: {description}\n"
    "Greet them and ask what exactly interests them about it."
)

SHARE_DESCRIPTION = "[Shared a post: {description}]"


@dataclass
class CompletionContext:
    """Everything the completion client needs for one reply"""
    system_frame: str
    history: List[ConversationTurn]
    tools: Optional[List[Dict[str, Any]]] = None
    grounding_chunks: List[ScoredChunk] = field(default_factory=list)

    @property
    def is_grounded(self) -> bool:
        return bool(self.grounding_chunks)


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def describe_inactivity(
    last_user_activity: Optional[datetime],
    now: datetime,
    regreet_after_hours: float = 12.0,
) -> Optional[str]:
    """
    Human-readable note about how long the customer has been silent.

    Returns None when there is no previous user activity or the timestamp
    lies in the future.
    """
    if last_user_activity is None:
        return None

    elapsed = now - last_user_activity
    if elapsed < timedelta(0):
        return None

    total_minutes = int(elapsed.total_seconds() // 60)
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(_plural(days, "day"))
    if hours:
        parts.append(_plural(hours, "hour"))
    if minutes:
        parts.append(_plural(minutes, "minute"))

    ago = " ".join(parts) + " ago" if parts else "less than a minute ago"

    if elapsed >= timedelta(hours=regreet_after_hours):
        instruction = REGREET_INSTRUCTION
    else:
        instruction = CONTINUE_INSTRUCTION

    return f"The customer's last activity was {ago}. {instruction}"


def format_grounding(chunks: List[ScoredChunk]) -> str:
    """Grounding block for the current user turn, empty when nothing was found"""
    if not chunks:
        return ""
    body = GROUNDING_SEPARATOR.join(scored.chunk.text for scored in chunks)
    return GROUNDING_HEADER + body + GROUNDING_FOOTER


class ContextBuilder:
    """
    Assembles system frame, history and grounding for a tenant/sender pair.

    History is always re-read from the store; nothing is cached across turns.
    """

    def __init__(
        self,
        store: InteractionStore,
        index: KnowledgeIndex,
        embedding_service: EmbeddingService,
        history_limit: int = 10,
        top_k: int = 3,
        regreet_after_hours: float = 12.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._index = index
        self._embedding = embedding_service
        self.history_limit = history_limit
        self.top_k = top_k
        self.regreet_after_hours = regreet_after_hours
        self._clock = clock

    def build(
        self,
        tenant: Tenant,
        sender_id: str,
        message: str,
        retrieval_query: Optional[str] = None,
    ) -> CompletionContext:
        """
        Build the completion context for the next reply.

        Args:
            tenant: Tenant owning the conversation
            sender_id: Customer id
            message: Text of the current user turn
            retrieval_query: Text to embed for retrieval (defaults to message)

        Returns:
            CompletionContext with the current turn last

        Raises:
            EmbeddingError: the query could not be embedded
        """
        window = self.conversation_window(tenant.tenant_id, sender_id)

        system_frame = self.build_system_frame(tenant, window)

        chunks = self.retrieve(tenant.tenant_id, retrieval_query or message)
        grounding = format_grounding(chunks)
        current = f"{grounding}\n{message}" if grounding else message

        history = [
            ConversationTurn(role=USER if item.is_user else ASSISTANT, text=item.text)
            for item in window
        ]
        history.append(ConversationTurn(role=USER, text=current))

        tools = None
        if tenant.file_search_store:
            tools = [{"file_search": {"file_search_store_names": [tenant.file_search_store]}}]

        logger.debug(
            "Context for tenant=%s sender=%s: %d history turns, %d grounding chunks",
            tenant.tenant_id, sender_id, len(window), len(chunks),
        )
        return CompletionContext(
            system_frame=system_frame,
            history=history,
            tools=tools,
            grounding_chunks=chunks,
        )

    def conversation_window(self, tenant_id: str, sender_id: str) -> List[Interaction]:
        """Most recent interactions, strictly chronological"""
        recent = self._store.find_recent(tenant_id, sender_id, self.history_limit)
        window = list(reversed(recent))
        # Stable sort keeps insertion order for equal timestamps
        window.sort(key=lambda item: item.timestamp)
        return window

    def build_system_frame(self, tenant: Tenant, window: List[Interaction]) -> str:
        parts = [tenant.system_prompt.strip()] if tenant.system_prompt.strip() else []
        parts.append(FALLBACK_INSTRUCTION)

        last_user = next((item for item in reversed(window) if item.is_user), None)
        descriptor = describe_inactivity(
            last_user.timestamp if last_user else None,
            self._clock(),
            self.regreet_after_hours,
        )
        if descriptor:
            parts.append(descriptor)

        return "\n\n".join(parts)

    def retrieve(self, tenant_id: str, query: str) -> List[ScoredChunk]:
        """Nearest active chunks of the tenant for the query text"""
        if not query or not query.strip() or self.top_k <= 0:
            return []
        vector = self._embedding.embed_single(query)
        return self._index.nearest_neighbors(
            tenant_id, vector, self.top_k, filter={"is_active": True}
        )

    def describe_shared_object(
        self,
        tenant_id: str,
        shared_object_id: str,
        url: Optional[str] = None,
    ) -> str:
        """Text describing a shared post, from knowledge linked to it if any"""
        chunks = self._index.find_by_source(tenant_id, shared_object_id)
        active = [chunk for chunk in chunks if chunk.is_active]
        if active:
            return " ".join(chunk.text for chunk in active)
        if url:
            return f"post {shared_object_id} ({url})"
        return f"post {shared_object_id}"

    def merged_share_prompt(self, description: str, text: str) -> str:
        return MERGED_SHARE_PROMPT.format(description=description, text=text)

    def lone_share_prompt(self, description: str) -> str:
        return LONE_SHARE_PROMPT.format(description=description)

    def share_interaction_text(self, description: str) -> str:
        return SHARE_DESCRIPTION.format(description=description)
