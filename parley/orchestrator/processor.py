"""
Event Orchestrator

Processes one raw webhook payload end to end:

1. Parse the envelope into classified InboundEvents (malformed -> log, return)
2. Drop non-actionable events (echoes, receipts, unsupported attachments)
3. Resolve the tenant from the page id (unknown -> log, skip)
4. Deduplicate on the inbound message id before any side effect
5. Route by kind:
   - plain_text: merge with a pending share of the sender, or plain reply
   - share_only: park in the correlation cache for a follow-up text
   - share_with_text: merged reply right away
6. Build grounded context, complete, persist user then assistant
   interaction, dispatch

Nothing raised while handling an event escapes process_inbound_payload.
A failed event produces no reply and is not retried.
"""

import json
import logging
import threading
from collections import Counter
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, List, Optional, Union

from ..common.errors import DuplicateMessageError
from ..common.interaction_store import InteractionStore
from ..common.llm_client import LLMClient
from ..common.schemas import AuthorRole, Interaction, utc_now
from ..common.tenants import Tenant, TenantRegistry
from .context_builder import ContextBuilder
from .correlation_cache import CorrelationCache, PendingCorrelation
from .handlers import BaseHandler, EventKind, InboundEvent, MalformedEventError
from .reply_dispatcher import ReplyDispatcher

logger = logging.getLogger("parley.orchestrator.processor")

RawPayload = Union[bytes, str, Dict[str, Any]]


class EventOrchestrator:
    """
    Glue between intake, correlation, context assembly and delivery.

    Usage:
        orchestrator = EventOrchestrator(handler, tenants, store, builder,
                                         llm, dispatcher, cache, executor)
        orchestrator.submit(body)  # from the webhook endpoint
    """

    def __init__(
        self,
        handler: BaseHandler,
        tenants: TenantRegistry,
        store: InteractionStore,
        context_builder: ContextBuilder,
        llm_client: LLMClient,
        dispatcher: ReplyDispatcher,
        correlation_cache: CorrelationCache,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            handler: Platform handler that parses and classifies payloads
            tenants: Page id -> tenant lookup
            store: Interaction store (dedup backstop and history)
            context_builder: RAG context assembly
            llm_client: Completion client
            dispatcher: Reply dispatcher
            correlation_cache: Pending shares; its expiry callback is set here
            executor: Worker pool for payloads and lone-share resolution
                (None runs everything on the calling thread)
        """
        self._handler = handler
        self._tenants = tenants
        self._store = store
        self._context = context_builder
        self._llm = llm_client
        self._dispatcher = dispatcher
        self._cache = correlation_cache
        self._executor = executor

        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

        self._routes: Dict[EventKind, Callable[[Tenant, InboundEvent], None]] = {
            EventKind.DUPLICATE_SKIP: self._skip_duplicate,
            EventKind.PLAIN_TEXT: self._handle_plain_text,
            EventKind.SHARE_ONLY: self._handle_share_only,
            EventKind.SHARE_WITH_TEXT: self._handle_share_with_text,
        }

        self._cache.set_expiry_callback(self._on_share_expired)

    # =========================================================================
    # Intake
    # =========================================================================

    def submit(self, raw_payload: RawPayload) -> Optional[Future]:
        """Hand a payload to the worker pool (or process inline without one)"""
        if self._executor is None:
            self.process_inbound_payload(raw_payload)
            return None
        return self._executor.submit(self.process_inbound_payload, raw_payload)

    def process_inbound_payload(self, raw_payload: RawPayload) -> None:
        """
        Process one webhook delivery. Never raises.

        Args:
            raw_payload: Request body as bytes/str, or already decoded JSON
        """
        try:
            events = self._handler.parse_payload(self._decode(raw_payload))
        except MalformedEventError as e:
            self._count("malformed")
            logger.warning("Ignoring malformed payload: %s", e)
            return
        except Exception:
            self._count("malformed")
            logger.exception("Unexpected error while parsing payload")
            return

        for event in events:
            self._process_event(event)

    @staticmethod
    def _decode(raw_payload: RawPayload) -> Dict[str, Any]:
        if isinstance(raw_payload, dict):
            return raw_payload
        try:
            return json.loads(raw_payload)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise MalformedEventError(f"Body is not valid JSON: {e}") from e

    def _process_event(self, event: InboundEvent) -> None:
        if not event.kind.is_actionable:
            if event.kind == EventKind.UNSUPPORTED_ATTACHMENT:
                logger.info("Ignoring unsupported attachment %s from %s", event.message_id, event.sender_id)
            else:
                logger.debug("Ignoring system event from %s", event.sender_id)
            self._count("ignored")
            return

        tenant = self._tenants.find_by_page_id(event.page_id)
        if tenant is None:
            self._count("routing_miss")
            logger.warning("No tenant registered for page %s, skipping %s", event.page_id, event.message_id)
            return

        try:
            kind = self.classify(event)
            self._routes[kind](tenant, event)
        except Exception:
            self._count("failed")
            logger.exception(
                "Failed to process message %s for tenant=%s sender=%s",
                event.message_id, tenant.tenant_id, event.sender_id,
            )

    def classify(self, event: InboundEvent) -> EventKind:
        """Final kind of an actionable event, duplicates included"""
        if event.message_id and self._store.exists_by_message_id(event.message_id):
            return EventKind.DUPLICATE_SKIP
        return event.kind

    # =========================================================================
    # Routes
    # =========================================================================

    def _skip_duplicate(self, tenant: Tenant, event: InboundEvent) -> None:
        self._count("duplicate")
        logger.info(
            "Duplicate message %s for tenant=%s sender=%s, ignoring",
            event.message_id, tenant.tenant_id, event.sender_id,
        )

    def _handle_plain_text(self, tenant: Tenant, event: InboundEvent) -> None:
        pending = self._cache.consume_if_present(event.sender_id)
        if pending is not None:
            self._reply_to_share(tenant, event, pending)
            return

        user_record = Interaction(
            tenant_id=tenant.tenant_id,
            sender_id=event.sender_id,
            author=AuthorRole.USER,
            text=event.text,
            message_id=event.message_id,
        )
        self._generate_and_deliver(tenant, event.sender_id, event.text, [user_record])

    def _handle_share_only(self, tenant: Tenant, event: InboundEvent) -> None:
        self._count("share_pending")
        self._cache.record_pending_share(
            tenant_id=tenant.tenant_id,
            sender_id=event.sender_id,
            shared_object_id=event.share.object_id,
            originating_message_id=event.message_id,
            share_url=event.share.url,
        )
        logger.info(
            "Share %s from tenant=%s sender=%s waiting for a follow-up text",
            event.share.object_id, tenant.tenant_id, event.sender_id,
        )

    def _handle_share_with_text(self, tenant: Tenant, event: InboundEvent) -> None:
        # This share supersedes anything still pending for the sender
        if self._cache.discard(event.sender_id):
            logger.info("Discarded stale pending share of sender=%s", event.sender_id)

        description = self._context.describe_shared_object(
            tenant.tenant_id, event.share.object_id, event.share.url
        )
        user_record = Interaction(
            tenant_id=tenant.tenant_id,
            sender_id=event.sender_id,
            author=AuthorRole.USER,
            text=f"{self._context.share_interaction_text(description)}\n{event.text}",
            message_id=event.message_id,
        )
        self._generate_and_deliver(
            tenant,
            event.sender_id,
            self._context.merged_share_prompt(description, event.text),
            [user_record],
            retrieval_query=f"{description}\n{event.text}",
        )

    def _reply_to_share(self, tenant: Tenant, event: InboundEvent, pending: PendingCorrelation) -> None:
        """Text that follows a share from an earlier delivery"""
        self._count("merged")
        description = self._context.describe_shared_object(
            tenant.tenant_id, pending.shared_object_id, pending.share_url
        )
        text_record = Interaction(
            tenant_id=tenant.tenant_id,
            sender_id=event.sender_id,
            author=AuthorRole.USER,
            text=event.text,
            message_id=event.message_id,
        )
        share_record = Interaction(
            tenant_id=tenant.tenant_id,
            sender_id=event.sender_id,
            author=AuthorRole.USER,
            text=self._context.share_interaction_text(description),
            message_id=pending.originating_message_id,
            timestamp=pending.created_at,
        )
        self._generate_and_deliver(
            tenant,
            event.sender_id,
            self._context.merged_share_prompt(description, event.text),
            [text_record, share_record],
            retrieval_query=f"{description}\n{event.text}",
        )

    # =========================================================================
    # Lone shares
    # =========================================================================

    def _on_share_expired(self, entry: PendingCorrelation) -> None:
        """Called from the timer thread when no text consumed the share"""
        if self._executor is None:
            self.resolve_lone_share(entry)
            return
        try:
            self._executor.submit(self.resolve_lone_share, entry)
        except RuntimeError:
            # Pool already shut down
            logger.warning("Worker pool closed, dropping lone share %s", entry.originating_message_id)

    def flush_pending_shares(self) -> int:
        """
        Close the correlation cache and answer every share still waiting.

        Call before the worker pool shuts down so the lone-share replies can
        still be submitted to it.

        Returns:
            Number of shares handed off for resolution
        """
        pending = self._cache.shutdown()
        for entry in pending:
            self._on_share_expired(entry)
        if pending:
            logger.info("Resolving %d pending shares before shutdown", len(pending))
        return len(pending)

    def resolve_lone_share(self, entry: PendingCorrelation) -> None:
        """Reply to a share that got no follow-up text. Never raises."""
        try:
            tenant = self._tenants.get(entry.tenant_id)
            if tenant is None:
                self._count("routing_miss")
                logger.warning("Tenant %s disappeared before share %s resolved", entry.tenant_id, entry.originating_message_id)
                return

            if self._store.exists_by_message_id(entry.originating_message_id):
                self._count("duplicate")
                logger.info(
                    "Share %s for tenant=%s sender=%s already handled, skipping",
                    entry.originating_message_id, entry.tenant_id, entry.sender_id,
                )
                return

            self._count("lone_share")
            description = self._context.describe_shared_object(
                tenant.tenant_id, entry.shared_object_id, entry.share_url
            )
            share_record = Interaction(
                tenant_id=tenant.tenant_id,
                sender_id=entry.sender_id,
                author=AuthorRole.USER,
                text=self._context.share_interaction_text(description),
                message_id=entry.originating_message_id,
                timestamp=entry.created_at,
            )
            self._generate_and_deliver(
                tenant,
                entry.sender_id,
                self._context.lone_share_prompt(description),
                [share_record],
                retrieval_query=description,
            )
        except Exception:
            self._count("failed")
            logger.exception(
                "Failed to resolve lone share %s for tenant=%s sender=%s",
                entry.originating_message_id, entry.tenant_id, entry.sender_id,
            )

    # =========================================================================
    # Reply pipeline
    # =========================================================================

    def _generate_and_deliver(
        self,
        tenant: Tenant,
        sender_id: str,
        prompt: str,
        user_records: List[Interaction],
        retrieval_query: Optional[str] = None,
    ) -> bool:
        """
        Complete, persist and dispatch one reply.

        The first user record carries the message id this event is
        deduplicated on. If saving it hits the unique constraint another
        worker already owns the event and this one stops without side
        effects. Further records (an earlier share folded into this turn)
        are saved best effort.

        Returns:
            True if a reply was persisted and dispatched
        """
        context = self._context.build(tenant, sender_id, prompt, retrieval_query=retrieval_query)
        reply = self._llm.complete(context.system_frame, context.history, tools=context.tools)

        primary, extra = user_records[0], user_records[1:]
        try:
            self._store.save(primary)
        except DuplicateMessageError as e:
            self._count("duplicate")
            logger.info(
                "Message %s for tenant=%s sender=%s was processed concurrently, dropping reply",
                e.message_id, tenant.tenant_id, sender_id,
            )
            return False

        for record in extra:
            try:
                self._store.save(record)
            except DuplicateMessageError as e:
                logger.info("Share %s of sender=%s already recorded", e.message_id, sender_id)

        self._store.save(Interaction(
            tenant_id=tenant.tenant_id,
            sender_id=sender_id,
            author=AuthorRole.ASSISTANT,
            text=reply,
            timestamp=utc_now(),
        ))

        delivered = self._dispatcher.send_reply(tenant.credentials, sender_id, reply)
        self._count("replied")
        logger.info(
            "Replied to tenant=%s sender=%s (%d chars, %d messages delivered, grounded=%s)",
            tenant.tenant_id, sender_id, len(reply), delivered, context.is_grounded,
        )
        return True

    # =========================================================================
    # Stats
    # =========================================================================

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._stats)
        return {
            "events": counters,
            "pending_shares": self._cache.pending_count,
            "tenants": len(self._tenants),
        }
