"""
Correlation Cache

Bridges a share-only delivery and the text the customer types right after it.

A share records a PendingCorrelation for the sender and schedules a deferred
resolution after the correlation window. Whichever comes first wins:
- the next text event from the sender consumes the entry (merged reply)
- the timer expires the entry and hands it to the lone-share callback

Both paths remove the entry under the same lock, so exactly one of them
sees it.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..common.schemas import utc_now

logger = logging.getLogger("parley.orchestrator.correlation_cache")

# scheduler(delay_seconds, callback) -> handle with cancel()
Scheduler = Callable[[float, Callable[[], None]], object]


@dataclass
class PendingCorrelation:
    """A share waiting for a follow-up text from the same sender"""
    tenant_id: str
    sender_id: str
    shared_object_id: str
    originating_message_id: str
    share_url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


def timer_scheduler(delay: float, callback: Callable[[], None]) -> threading.Timer:
    """Default scheduler: a daemon threading.Timer"""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class CorrelationCache:
    """
    Time-windowed sender -> pending share mapping.

    Usage:
        cache = CorrelationCache(2.0, on_expire=orchestrator.resolve_lone_share)
        cache.record_pending_share("t1", "u1", "post-9", "m1")
        pending = cache.consume_if_present("u1")  # None if the timer won
    """

    def __init__(
        self,
        window_seconds: float = 2.0,
        on_expire: Optional[Callable[[PendingCorrelation], None]] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize cache.

        Args:
            window_seconds: How long a share waits for a follow-up text
            on_expire: Called with the entry when the window elapses unconsumed
            scheduler: Deferred-call factory (tests inject a manual one)
        """
        self.window_seconds = window_seconds
        self._on_expire = on_expire
        self._scheduler = scheduler or timer_scheduler
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingCorrelation] = {}
        self._timers: Dict[int, object] = {}
        self._closed = False

    def set_expiry_callback(self, on_expire: Callable[[PendingCorrelation], None]) -> None:
        self._on_expire = on_expire

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def record_pending_share(
        self,
        tenant_id: str,
        sender_id: str,
        shared_object_id: str,
        originating_message_id: str,
        share_url: Optional[str] = None,
    ) -> PendingCorrelation:
        """
        Store a pending share for the sender, replacing any unresolved one.

        The replaced entry's timer still fires but finds a different entry
        under the sender key and does nothing.
        """
        entry = PendingCorrelation(
            tenant_id=tenant_id,
            sender_id=sender_id,
            shared_object_id=shared_object_id,
            originating_message_id=originating_message_id,
            share_url=share_url,
        )

        with self._lock:
            if self._closed:
                raise RuntimeError("Correlation cache is shut down")
            replaced = self._pending.get(sender_id)
            self._pending[sender_id] = entry

        if replaced is not None:
            logger.info(
                "Share %s from %s supersedes pending share %s",
                originating_message_id, sender_id, replaced.originating_message_id,
            )

        handle = self._scheduler(self.window_seconds, lambda: self._expire(entry))
        with self._lock:
            # The timer may already have fired with a zero window
            if self._pending.get(sender_id) is entry:
                self._timers[id(entry)] = handle

        logger.debug(
            "Pending share %s recorded for %s (window %.1fs)",
            shared_object_id, sender_id, self.window_seconds,
        )
        return entry

    def consume_if_present(self, sender_id: str) -> Optional[PendingCorrelation]:
        """Atomically remove and return the sender's pending share"""
        with self._lock:
            entry = self._pending.pop(sender_id, None)
            if entry is not None:
                self._cancel_timer(entry)
        if entry is not None:
            logger.debug("Pending share %s consumed by text from %s", entry.shared_object_id, sender_id)
        return entry

    def discard(self, sender_id: str) -> bool:
        """Drop a pending share without resolving it"""
        return self.consume_if_present(sender_id) is not None

    def _expire(self, entry: PendingCorrelation) -> None:
        """Deferred resolution: resolve the entry only if nobody consumed it"""
        with self._lock:
            self._timers.pop(id(entry), None)
            if self._pending.get(entry.sender_id) is not entry:
                return
            del self._pending[entry.sender_id]

        logger.info(
            "No follow-up text from %s within %.1fs, resolving share %s alone",
            entry.sender_id, self.window_seconds, entry.shared_object_id,
        )
        if self._on_expire is None:
            logger.warning("No expiry callback set, dropping share %s", entry.shared_object_id)
            return
        try:
            self._on_expire(entry)
        except Exception:
            logger.exception(
                "Lone-share resolution failed for tenant=%s sender=%s",
                entry.tenant_id, entry.sender_id,
            )

    def _cancel_timer(self, entry: PendingCorrelation) -> None:
        """Caller holds the lock"""
        handle = self._timers.pop(id(entry), None)
        cancel = getattr(handle, "cancel", None)
        if cancel is not None:
            cancel()

    def shutdown(self) -> List[PendingCorrelation]:
        """Cancel outstanding timers and return the entries left unresolved"""
        with self._lock:
            self._closed = True
            for handle in self._timers.values():
                cancel = getattr(handle, "cancel", None)
                if cancel is not None:
                    cancel()
            self._timers.clear()
            dropped = list(self._pending.values())
            self._pending.clear()

        if dropped:
            logger.info("Correlation cache closed with %d unresolved pending shares", len(dropped))
        return dropped
