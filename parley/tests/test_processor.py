"""
Event Orchestrator Scenario Tests

Drives EventOrchestrator with real stores, a mocked completion client and a
mocked reply channel through the flows a shop's Instagram inbox sees:
- plain question, redelivered by the platform
- share followed by a question (merged reply)
- share with no follow-up (lone share resolved by the timer)
- share and caption in one event
- failures: malformed body, unknown page, completion error, concurrent redelivery
"""

import json

import pytest
from unittest.mock import Mock

from parley.common.errors import CompletionError
from parley.common.interaction_store import JsonInteractionStore
from parley.common.knowledge_index import LocalKnowledgeIndex
from parley.common.schemas import AuthorRole, KnowledgeChunk
from parley.common.tenants import Tenant, TenantRegistry
from parley.orchestrator.context_builder import ContextBuilder
from parley.orchestrator.correlation_cache import CorrelationCache
from parley.orchestrator.handlers import InstagramHandler
from parley.orchestrator.processor import EventOrchestrator
from parley.orchestrator.reply_dispatcher import ReplyDispatcher

SHARE_URL = "https://lookaside.fbsbx.com/ig_messaging_cdn/?asset_id=1789&signature=abc"


# ============================================================================
# Payload builders
# ============================================================================

def text_payload(mid, text, sender="u1", page="p1"):
    return {
        "object": "instagram",
        "entry": [{
            "id": page,
            "time": 1700000000000,
            "messaging": [{
                "sender": {"id": sender},
                "recipient": {"id": page},
                "timestamp": 1700000000000,
                "message": {"mid": mid, "text": text},
            }],
        }],
    }


def share_payload(mid, sender="u1", page="p1", text=None, url=SHARE_URL):
    payload = text_payload(mid, text, sender=sender, page=page)
    message = payload["entry"][0]["messaging"][0]["message"]
    if text is None:
        del message["text"]
    message["attachments"] = [{"type": "share", "payload": {"url": url}}]
    return payload


# ============================================================================
# Fixtures
# ============================================================================

class ManualScheduler:
    def __init__(self):
        self.callbacks = []

    def __call__(self, delay, callback):
        self.callbacks.append(callback)
        return Mock()

    def fire_all(self):
        callbacks, self.callbacks = self.callbacks, []
        for callback in callbacks:
            callback()


@pytest.fixture
def store():
    return JsonInteractionStore()


@pytest.fixture
def index():
    idx = LocalKnowledgeIndex(dimensions=2)
    idx.add(KnowledgeChunk(tenant_id="t1", text="Size M is in stock", embedding=[1.0, 0.0]))
    idx.add(KnowledgeChunk(
        tenant_id="t1", text="Red sneakers, 45 EUR", embedding=[0.0, 1.0], source_id="1789",
    ))
    return idx


@pytest.fixture
def llm():
    client = Mock()
    client.complete.return_value = "Yes, we have size M."
    return client


@pytest.fixture
def channel():
    ch = Mock()
    ch.send.return_value = True
    return ch


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def tenants():
    return TenantRegistry([
        Tenant(tenant_id="t1", page_id="p1", system_prompt="You sell sneakers.", access_token="tok"),
    ])


@pytest.fixture
def orchestrator(store, index, llm, channel, scheduler, tenants):
    embedding = Mock()
    embedding.embed_single.return_value = [1.0, 0.0]
    return EventOrchestrator(
        handler=InstagramHandler(),
        tenants=tenants,
        store=store,
        context_builder=ContextBuilder(store, index, embedding),
        llm_client=llm,
        dispatcher=ReplyDispatcher(channel, chunk_delay_seconds=0),
        correlation_cache=CorrelationCache(window_seconds=2.0, scheduler=scheduler),
    )


def all_interactions(store, sender="u1"):
    return list(reversed(store.find_recent("t1", sender, 100)))


# ============================================================================
# Plain text
# ============================================================================

class TestPlainText:
    def test_m1_u1_p1_scenario(self, orchestrator, store, llm, channel):
        store.exists_by_message_id = Mock(wraps=store.exists_by_message_id)

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        interactions = all_interactions(store)
        assert [(i.author, i.text, i.message_id) for i in interactions] == [
            (AuthorRole.USER, "Do you have size M?", "m1"),
            (AuthorRole.ASSISTANT, "Yes, we have size M.", None),
        ]
        channel.send.assert_called_once()
        recipient, text, creds = channel.send.call_args.args
        assert recipient == "u1"
        assert text == "Yes, we have size M."
        assert creds.page_id == "p1"
        assert store.exists_by_message_id.call_count == 1

    def test_redelivery_is_a_no_op(self, orchestrator, store, llm, channel):
        payload = json.dumps(text_payload("m1", "Do you have size M?")).encode()

        orchestrator.process_inbound_payload(payload)
        orchestrator.process_inbound_payload(payload)

        assert store.count() == 2
        assert llm.complete.call_count == 1
        assert channel.send.call_count == 1

    def test_grounding_reaches_completion(self, orchestrator, llm):
        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        system, history = llm.complete.call_args.args[:2]
        assert system.startswith("You sell sneakers.")
        assert "Size M is in stock" in history[-1].text
        assert history[-1].text.endswith("Do you have size M?")

    def test_history_includes_previous_turns(self, orchestrator, llm):
        orchestrator.process_inbound_payload(text_payload("m1", "hi"))
        orchestrator.process_inbound_payload(text_payload("m2", "Do you have size M?"))

        history = llm.complete.call_args.args[1]
        assert [t.text for t in history[:2]] == ["hi", "Yes, we have size M."]

    def test_long_reply_is_chunked(self, orchestrator, llm, channel, store):
        llm.complete.return_value = "x" * 1500

        orchestrator.process_inbound_payload(text_payload("m1", "tell me everything"))

        assert [len(c.args[1]) for c in channel.send.call_args_list] == [990, 510]
        assert all_interactions(store)[-1].text == "x" * 1500


# ============================================================================
# Shares
# ============================================================================

class TestShareCorrelation:
    def test_share_then_text_merges(self, orchestrator, store, llm, channel, scheduler):
        orchestrator.process_inbound_payload(share_payload("m2"))
        llm.complete.assert_not_called()

        orchestrator.process_inbound_payload(text_payload("m3", "is this in size 42?"))
        scheduler.fire_all()

        assert llm.complete.call_count == 1
        prompt = llm.complete.call_args.args[1][-1].text
        assert "Red sneakers, 45 EUR" in prompt
        assert "is this in size 42?" in prompt
        assert channel.send.call_count == 1

        interactions = all_interactions(store)
        assert [i.message_id for i in interactions] == ["m2", "m3", None]
        assert interactions[0].text.startswith("[Shared a post")

    def test_lone_share_resolves_after_window(self, orchestrator, store, llm, channel, scheduler):
        orchestrator.process_inbound_payload(share_payload("m2"))
        assert channel.send.call_count == 0

        scheduler.fire_all()

        assert llm.complete.call_count == 1
        prompt = llm.complete.call_args.args[1][-1].text
        assert "Greet them and ask" in prompt
        interactions = all_interactions(store)
        assert [(i.author, i.message_id) for i in interactions] == [
            (AuthorRole.USER, "m2"),
            (AuthorRole.ASSISTANT, None),
        ]
        assert channel.send.call_count == 1

    def test_text_after_expiry_is_plain(self, orchestrator, llm, scheduler, store):
        orchestrator.process_inbound_payload(share_payload("m2"))
        scheduler.fire_all()
        orchestrator.process_inbound_payload(text_payload("m3", "how much?"))

        assert llm.complete.call_count == 2
        assert llm.complete.call_args.args[1][-1].text.endswith("how much?")
        assert "replied to a post" not in llm.complete.call_args.args[1][-1].text

    def test_lone_share_skips_already_handled_share(self, orchestrator, store, llm, scheduler):
        orchestrator.process_inbound_payload(share_payload("m2"))
        # Same share redelivered: recorded again, the newer timer owns it
        orchestrator.process_inbound_payload(share_payload("m2"))

        scheduler.fire_all()

        assert llm.complete.call_count == 1
        orchestrator.process_inbound_payload(share_payload("m2"))
        scheduler.fire_all()
        assert llm.complete.call_count == 1

    def test_share_with_text_replies_immediately(self, orchestrator, store, llm, channel, scheduler):
        orchestrator.process_inbound_payload(share_payload("m4", text="still available?"))

        assert llm.complete.call_count == 1
        user = all_interactions(store)[0]
        assert user.message_id == "m4"
        assert "Red sneakers, 45 EUR" in user.text
        assert user.text.endswith("still available?")
        assert channel.send.call_count == 1

    def test_share_with_text_discards_stale_pending(self, orchestrator, llm, scheduler):
        orchestrator.process_inbound_payload(share_payload("m2"))
        orchestrator.process_inbound_payload(share_payload("m4", text="this one instead"))

        scheduler.fire_all()

        assert llm.complete.call_count == 1

    def test_lone_share_resolution_uses_executor(self, store, index, llm, channel, scheduler, tenants):
        executor = Mock()
        orchestrator = EventOrchestrator(
            handler=InstagramHandler(),
            tenants=tenants,
            store=store,
            context_builder=ContextBuilder(store, index, Mock(embed_single=Mock(return_value=[1.0, 0.0]))),
            llm_client=llm,
            dispatcher=ReplyDispatcher(channel, chunk_delay_seconds=0),
            correlation_cache=CorrelationCache(scheduler=scheduler),
            executor=executor,
        )
        orchestrator.process_inbound_payload(share_payload("m2"))

        scheduler.fire_all()

        fn, entry = executor.submit.call_args.args
        assert fn == orchestrator.resolve_lone_share
        assert entry.originating_message_id == "m2"

    def test_pending_share_answered_on_shutdown_flush(self, orchestrator, store, llm, channel, scheduler):
        orchestrator.process_inbound_payload(share_payload("m2"))

        assert orchestrator.flush_pending_shares() == 1

        assert llm.complete.call_count == 1
        assert "Greet them and ask" in llm.complete.call_args.args[1][-1].text
        assert store.exists_by_message_id("m2")
        assert channel.send.call_count == 1
        # Cancelled timer firing late does not answer twice
        scheduler.fire_all()
        assert llm.complete.call_count == 1
        assert orchestrator.get_stats()["pending_shares"] == 0

    def test_flush_with_nothing_pending(self, orchestrator, llm):
        assert orchestrator.flush_pending_shares() == 0
        llm.complete.assert_not_called()


# ============================================================================
# Ignored and failing events
# ============================================================================

class TestIgnoredEvents:
    def test_malformed_body(self, orchestrator, llm, caplog):
        orchestrator.process_inbound_payload(b"{not json")
        orchestrator.process_inbound_payload({"entry": "nope"})

        llm.complete.assert_not_called()
        assert "malformed" in caplog.text
        assert orchestrator.get_stats()["events"]["malformed"] == 2

    def test_unknown_page_is_routing_miss(self, orchestrator, store, llm, caplog):
        orchestrator.process_inbound_payload(text_payload("m1", "hi", page="p404"))

        llm.complete.assert_not_called()
        assert store.count() == 0
        assert "No tenant registered for page p404" in caplog.text

    def test_echo_ignored(self, orchestrator, llm, store):
        payload = text_payload("m1", "our own reply")
        payload["entry"][0]["messaging"][0]["message"]["is_echo"] = True

        orchestrator.process_inbound_payload(payload)

        llm.complete.assert_not_called()
        assert store.count() == 0

    def test_unsupported_attachment_ignored(self, orchestrator, llm):
        payload = share_payload("m1")
        payload["entry"][0]["messaging"][0]["message"]["attachments"] = [
            {"type": "audio", "payload": {"url": "https://cdn/voice.mp4"}}
        ]

        orchestrator.process_inbound_payload(payload)

        llm.complete.assert_not_called()

    def test_bad_item_does_not_block_valid_sibling(self, orchestrator, store, channel):
        payload = text_payload("m1", "Do you have size M?")
        payload["entry"][0]["messaging"].insert(0, {"message": {"mid": "m0", "text": "who sent this?"}})

        orchestrator.process_inbound_payload(payload)

        assert store.exists_by_message_id("m1")
        assert not store.exists_by_message_id("m0")
        assert channel.send.call_count == 1
        assert "malformed" not in orchestrator.get_stats()["events"]


class TestFailures:
    def test_completion_failure_leaves_no_trace(self, orchestrator, store, llm, channel, caplog):
        llm.complete.side_effect = CompletionError("google completion failed: 503")

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        assert store.count() == 0
        channel.send.assert_not_called()
        assert "tenant=t1 sender=u1" in caplog.text

    def test_embedding_failure_leaves_no_trace(self, orchestrator, store, llm, channel):
        orchestrator._context._embedding.embed_single.side_effect = RuntimeError("Embedding service is not available")

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        llm.complete.assert_not_called()
        assert store.count() == 0
        channel.send.assert_not_called()

    def test_concurrent_redelivery_loses_at_save(self, orchestrator, store, llm, channel):
        # Another worker stored m1 after this one passed the existence check
        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))
        store.exists_by_message_id = Mock(return_value=False)

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        assert store.count() == 2
        assert channel.send.call_count == 1

    def test_failed_write_lets_redelivery_answer(self, tmp_path, index, llm, channel, scheduler, tenants):
        store = JsonInteractionStore(tmp_path / "interactions.jsonl")
        write = store._append_line
        failures = [OSError(28, "No space left on device")]

        def flaky(interaction):
            if failures:
                raise failures.pop()
            write(interaction)

        store._append_line = flaky
        orchestrator = EventOrchestrator(
            handler=InstagramHandler(),
            tenants=tenants,
            store=store,
            context_builder=ContextBuilder(store, index, Mock(embed_single=Mock(return_value=[1.0, 0.0]))),
            llm_client=llm,
            dispatcher=ReplyDispatcher(channel, chunk_delay_seconds=0),
            correlation_cache=CorrelationCache(scheduler=scheduler),
        )

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))
        assert not store.exists_by_message_id("m1")
        channel.send.assert_not_called()

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        assert store.exists_by_message_id("m1")
        assert [i.author for i in all_interactions(store)] == [AuthorRole.USER, AuthorRole.ASSISTANT]
        assert channel.send.call_count == 1

    def test_send_failure_keeps_persisted_reply(self, orchestrator, store, channel):
        channel.send.return_value = False

        orchestrator.process_inbound_payload(text_payload("m1", "Do you have size M?"))

        assert store.count() == 2


class TestSubmit:
    def test_submit_without_executor_runs_inline(self, orchestrator, channel):
        assert orchestrator.submit(json.dumps(text_payload("m1", "hi"))) is None
        assert channel.send.call_count == 1

    def test_stats(self, orchestrator, scheduler):
        orchestrator.process_inbound_payload(text_payload("m1", "hi"))
        orchestrator.process_inbound_payload(text_payload("m1", "hi"))
        orchestrator.process_inbound_payload(share_payload("m2"))

        stats = orchestrator.get_stats()

        assert stats["events"]["replied"] == 1
        assert stats["events"]["duplicate"] == 1
        assert stats["pending_shares"] == 1
        assert stats["tenants"] == 1
