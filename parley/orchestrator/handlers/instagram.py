"""
Instagram Handler

Handles Instagram Messaging webhook deliveries and converts them to
classified InboundEvents.
"""

import hmac
import hashlib
import logging
from typing import Optional, Dict, Any, List
from urllib.parse import urlparse, parse_qs

from .base import BaseHandler, EventKind, InboundEvent, MalformedEventError, SharedObject

logger = logging.getLogger("parley.orchestrator.handlers.instagram")

# Attachment types that reference a post the customer shared
SHARE_ATTACHMENT_TYPES = ("share", "ig_post", "ig_reel")


class InstagramHandler(BaseHandler):
    """
    Handler for Instagram Messaging webhooks.

    Processes:
    - text messages
    - shared posts/reels, with or without a caption in the same event

    Classifies but ignores:
    - echoes of our own sends
    - read receipts, delivery receipts, reactions, postbacks
    - image/audio/sticker attachments
    """

    def __init__(self, verify_token: str = "", app_secret: str = ""):
        """
        Initialize Instagram handler.

        Args:
            verify_token: Token configured for the subscription handshake
            app_secret: App secret for X-Hub-Signature-256 verification
        """
        super().__init__("instagram")
        self._verify_token = verify_token
        self._app_secret = app_secret

    def parse_payload(self, raw_data: Dict[str, Any]) -> List[InboundEvent]:
        if not isinstance(raw_data, dict):
            raise MalformedEventError("Payload is not a JSON object")

        entries = raw_data.get("entry")
        if not isinstance(entries, list) or not entries:
            raise MalformedEventError("Payload has no entry list")

        # A bad item is skipped so its siblings still get processed; the
        # delivery only counts as malformed when nothing in it was usable.
        events = []
        last_error: Optional[MalformedEventError] = None
        for entry in entries:
            if not isinstance(entry, dict):
                last_error = MalformedEventError("Entry is not an object")
                logger.warning("Skipping entry: %s", last_error)
                continue
            messaging = entry.get("messaging")
            if not isinstance(messaging, list):
                last_error = MalformedEventError("Entry has no messaging list")
                logger.warning("Skipping entry %s: %s", entry.get("id"), last_error)
                continue
            for item in messaging:
                try:
                    events.append(self._parse_messaging(item, entry.get("id")))
                except MalformedEventError as e:
                    last_error = e
                    logger.warning("Skipping messaging item in entry %s: %s", entry.get("id"), e)

        if not events and last_error is not None:
            raise last_error
        return events

    def _parse_messaging(self, item: Any, entry_id: Optional[str]) -> InboundEvent:
        """Parse and classify one messaging item"""
        if not isinstance(item, dict):
            raise MalformedEventError("Messaging item is not an object")

        sender_id = _get_id(item.get("sender"))
        if not sender_id:
            raise MalformedEventError("Messaging item has no sender id")

        page_id = str(entry_id) if entry_id else _get_id(item.get("recipient"))
        timestamp = item.get("timestamp")

        base = {
            "page_id": page_id,
            "sender_id": sender_id,
            "source": self.source_name,
            "timestamp": timestamp if isinstance(timestamp, int) else None,
            "raw_data": item,
        }

        message = item.get("message")
        if not isinstance(message, dict):
            # read, delivery, reaction, postback
            return InboundEvent(kind=EventKind.SYSTEM_ECHO, **base)

        if message.get("is_echo") or message.get("is_deleted"):
            return InboundEvent(kind=EventKind.SYSTEM_ECHO, **base)

        text = message.get("text")
        if text is not None and not isinstance(text, str):
            raise MalformedEventError("Message text is not a string")
        attachments = message.get("attachments") or []
        if not isinstance(attachments, list):
            raise MalformedEventError("Message attachments is not a list")

        if not (text and text.strip()) and not attachments:
            return InboundEvent(kind=EventKind.SYSTEM_ECHO, **base)

        message_id = message.get("mid")
        if not message_id:
            raise MalformedEventError("Message has no mid")

        share = self._extract_share(attachments)
        has_text = bool(text and text.strip())

        if share and has_text:
            kind = EventKind.SHARE_WITH_TEXT
        elif share:
            kind = EventKind.SHARE_ONLY
        elif has_text:
            kind = EventKind.PLAIN_TEXT
        else:
            kind = EventKind.UNSUPPORTED_ATTACHMENT

        return InboundEvent(
            kind=kind,
            message_id=str(message_id),
            text=text if has_text else None,
            share=share,
            **base,
        )

    def _extract_share(self, attachments: List[Any]) -> Optional[SharedObject]:
        """Return the first shared post among the attachments"""
        for attachment in attachments:
            if not isinstance(attachment, dict):
                continue
            attachment_type = attachment.get("type", "")
            if attachment_type not in SHARE_ATTACHMENT_TYPES:
                continue

            payload = attachment.get("payload") or {}
            url = payload.get("url")
            object_id = (
                payload.get("ig_post_media_id")
                or payload.get("id")
                or _extract_asset_id(url)
                or url
            )
            if not object_id:
                logger.debug("Share attachment without a usable reference, ignoring")
                continue
            return SharedObject(object_id=str(object_id), url=url, attachment_type=attachment_type)
        return None

    def verify_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify Meta request signature.

        Args:
            body: Raw request body
            signature: X-Hub-Signature-256 header ("sha256=<hex>")

        Returns:
            True if signature is valid
        """
        if not self._app_secret:
            # Skip verification if no secret configured
            return True

        if not signature or not signature.startswith("sha256="):
            return False

        expected_sig = "sha256=" + hmac.new(
            self._app_secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected_sig, signature)

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Return the challenge to echo back if the handshake matches"""
        if mode != "subscribe" or not self._verify_token or challenge is None:
            return None
        if not hmac.compare_digest(self._verify_token, token or ""):
            return None
        return challenge


def _get_id(obj: Any) -> Optional[str]:
    if isinstance(obj, dict) and obj.get("id"):
        return str(obj["id"])
    return None


def _extract_asset_id(url: Optional[str]) -> Optional[str]:
    """Pull asset_id out of an Instagram CDN share URL"""
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get("asset_id")
    return values[0] if values else None
