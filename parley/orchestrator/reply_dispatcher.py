"""
Reply Dispatcher

Delivers a generated reply through the reply channel, splitting replies
longer than the platform limit into ordered chunks.

Chunks go out one after another on the calling thread. A failed chunk is
logged and the remaining chunks are still sent.
"""

import logging
import time
from typing import Callable, List

from ..common.errors import ChannelError
from ..common.instagram_client import InstagramClient
from ..common.tenants import ChannelCredentials

logger = logging.getLogger("parley.orchestrator.reply_dispatcher")


def split_message(text: str, size: int) -> List[str]:
    """
    Split text into consecutive slices of at most `size` characters.

    Boundaries are purely length based; "".join(result) == text.
    """
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    return [text[i:i + size] for i in range(0, len(text), size)]


class ReplyDispatcher:
    """
    Ordered, best-effort delivery of one reply.

    Usage:
        dispatcher = ReplyDispatcher(InstagramClient(url))
        delivered = dispatcher.send_reply(tenant.credentials, "1789...", reply)
    """

    def __init__(
        self,
        channel: InstagramClient,
        max_message_length: int = 1000,
        chunk_size: int = 990,
        chunk_delay_seconds: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize dispatcher.

        Args:
            channel: Reply channel with send(recipient, text, credentials)
            max_message_length: Longest text sent as a single message
            chunk_size: Slice length for longer texts (kept under the limit)
            chunk_delay_seconds: Pause between consecutive chunks
            sleep: Sleep function (tests pass a no-op)
        """
        if chunk_size > max_message_length:
            raise ValueError("chunk_size must not exceed max_message_length")
        self._channel = channel
        self.max_message_length = max_message_length
        self.chunk_size = chunk_size
        self.chunk_delay_seconds = chunk_delay_seconds
        self._sleep = sleep

    def plan(self, text: str) -> List[str]:
        """Messages that send_reply would send for this text"""
        if not text:
            return []
        if len(text) <= self.max_message_length:
            return [text]
        return split_message(text, self.chunk_size)

    def send_reply(self, credentials: ChannelCredentials, recipient_id: str, text: str) -> int:
        """
        Send a reply, chunked if needed.

        Args:
            credentials: Page credentials of the tenant
            recipient_id: Customer id
            text: Full reply text

        Returns:
            Number of messages the channel accepted
        """
        chunks = self.plan(text)
        if not chunks:
            logger.warning("Empty reply for %s, nothing to send", recipient_id)
            return 0

        if len(chunks) > 1:
            logger.info("Reply to %s is %d chars, sending %d chunks", recipient_id, len(text), len(chunks))

        delivered = 0
        for position, chunk in enumerate(chunks, start=1):
            if position > 1 and self.chunk_delay_seconds > 0:
                self._sleep(self.chunk_delay_seconds)
            try:
                ok = self._channel.send(recipient_id, chunk, credentials)
            except ChannelError as e:
                logger.error("Chunk %d/%d to %s failed: %s", position, len(chunks), recipient_id, e)
                continue
            except Exception:
                logger.exception("Chunk %d/%d to %s failed unexpectedly", position, len(chunks), recipient_id)
                continue
            if ok:
                delivered += 1
            else:
                logger.error("Chunk %d/%d to %s was rejected", position, len(chunks), recipient_id)

        if delivered < len(chunks):
            logger.warning("Delivered %d of %d messages to %s", delivered, len(chunks), recipient_id)
        return delivered
