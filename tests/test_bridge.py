"""End-to-end tests of the conversation pipeline against a fake platform."""

from datetime import datetime, timedelta, timezone

import pytest

from ambient import ReactionPolicy
from bridge import PROACTIVE, ConversationBridge
from errors import AlreadyActive, BackendUnavailable, InvalidArgument, NotFound
from history import HistoryStore, StoredMessage
from orchestrator import ToolOrchestrator
from persona import PromptManager
from providers import TEXT, BackendResponse
from rate_limiter import LeakyBucketRateLimiter
from request_queue import RequestQueue
from conftest import BOT_ID, FakeBackend, FakePlatform, FakeTools

CHANNEL = 100


@pytest.fixture
def store():
    s = HistoryStore(":memory:")
    yield s
    s.close()


def _bridge(store, tmp_path, platform=None, backend=None, capacity=10, reactions=None):
    platform = platform or FakePlatform(directory={1: "Alice", 2: "Bob"})
    backend = backend or FakeBackend()
    orchestrator = ToolOrchestrator(backend, FakeTools(), LeakyBucketRateLimiter(capacity, 60))
    bridge = ConversationBridge(
        platform, store, orchestrator, PromptManager("Wernstrom", prompts_dir=str(tmp_path)),
        reactions=reactions, request_queue=RequestQueue(delay=0),
    )
    return bridge, platform, backend


async def _feed(bridge, *events):
    for event in events:
        await bridge.on_inbound_event(event)
    await bridge.wait_idle()


class TestReplies:

    @pytest.mark.asyncio
    async def test_mention_gets_reply_with_native_mentions(self, store, tmp_path, make_event):
        backend = FakeBackend([BackendResponse(kind=TEXT, text="Wernstrom: [[Alice]], it is sunny.")])
        bridge, platform, _ = _bridge(store, tmp_path, backend=backend)

        await _feed(bridge, make_event(f"<@{BOT_ID}> weather?", mentions_self=True))

        assert platform.sent == [(CHANNEL, "<@1>, it is sunny.", True, 5000)]
        history = store.get_recent_messages_sync("discord", CHANNEL, 10)
        assert [m.body for m in history] == ["[[Wernstrom]] weather?", "[[Alice]], it is sunny."]
        assert history[-1].is_from_self
        assert history[-1].id == 5000

    @pytest.mark.asyncio
    async def test_context_uses_canonical_names(self, store, tmp_path, make_event):
        bridge, _, backend = _bridge(store, tmp_path)
        bridge.platform.directory[3] = "Mary Jane"

        await _feed(
            bridge,
            make_event("morning", sender_id=3, sender_label="Mary Jane"),
            make_event("hi bot", mentions_self=True),
        )

        messages = backend.calls[0]["messages"]
        assert messages[0]["role"] == "system"
        assert "[[Mary_Jane]]" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "morning", "name": "Mary_Jane"}
        assert messages[2] == {"role": "user", "content": "hi bot", "name": "Alice"}

    @pytest.mark.asyncio
    async def test_unaddressed_chatter_is_stored_not_answered(self, store, tmp_path, make_event):
        bridge, platform, backend = _bridge(store, tmp_path)
        await _feed(bridge, make_event("just chatting"))
        assert platform.sent == []
        assert backend.calls == []
        assert len(store.get_recent_messages_sync("discord", CHANNEL, 10)) == 1

    @pytest.mark.asyncio
    async def test_burst_of_mentions_is_answered_in_full(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        for _ in range(4):
            await bridge.on_inbound_event(make_event("hey bot", mentions_self=True))
        await bridge.wait_idle()
        assert len(platform.sent) == 4

    @pytest.mark.asyncio
    async def test_reply_to_bot_gets_reply(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("go on", reply_to_self=True))
        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_self_echo_is_ignored(self, store, tmp_path, make_event):
        bridge, platform, backend = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hi", mentions_self=True))
        [(_, text, _, sent_id)] = platform.sent

        await _feed(bridge, make_event(text, sender_id=BOT_ID, sender_label="Wernstrom", id=sent_id))

        assert len(platform.sent) == 1
        assert len(backend.calls) == 1
        assert len(store.get_recent_messages_sync("discord", CHANNEL, 10)) == 2

    @pytest.mark.asyncio
    async def test_empty_message_is_skipped(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("<@42>", mentions_self=True))
        assert platform.sent == []
        assert store.get_recent_messages_sync("discord", CHANNEL, 10) == []

    @pytest.mark.asyncio
    async def test_rate_limited_turn_is_silent(self, store, tmp_path, make_event):
        bridge, platform, backend = _bridge(store, tmp_path, capacity=1)
        await _feed(bridge, make_event("one", mentions_self=True), make_event("two", mentions_self=True, sender_id=2, sender_label="Bob"))
        assert len(platform.sent) == 1
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_backend_exception_does_not_stop_pipeline(self, store, tmp_path, make_event):
        bridge, platform, backend = _bridge(store, tmp_path)
        backend.errors.append(RuntimeError("provider exploded"))

        await _feed(bridge, make_event("one", mentions_self=True))
        await _feed(bridge, make_event("two", mentions_self=True, sender_id=2, sender_label="Bob"))

        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_is_not_persisted(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        platform.fail_send = True
        await _feed(bridge, make_event("hi", mentions_self=True))
        assert all(not m.is_from_self for m in store.get_recent_messages_sync("discord", CHANNEL, 10))

    @pytest.mark.asyncio
    async def test_roster_is_loaded_on_first_sight(self, store, tmp_path, make_event):
        platform = FakePlatform(roster={CHANNEL: [(1, "Alice"), (2, "Bob")]})
        bridge, _, _ = _bridge(store, tmp_path, platform=platform)
        await _feed(bridge, make_event("hello"))
        channel = bridge.cache.get_channel(CHANNEL)
        assert [u.canonical_name for u in channel.users] == ["Alice", "Bob"]
        assert channel.label == "home/#general"


class TestSelfHistoryMerge:

    @pytest.mark.asyncio
    async def test_own_messages_are_merged_when_platform_omits_them(self, store, tmp_path, make_event):
        platform = FakePlatform(name="matrix", omits_self_history=True)
        bridge, _, backend = _bridge(store, tmp_path, platform=platform)
        channel = bridge.cache.get_or_create_channel(CHANNEL, "room")
        channel.add_user(BOT_ID, "Wernstrom")

        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        store.append_message_sync("matrix", StoredMessage(
            id="$own", timestamp=earlier, user_id=str(BOT_ID), user_label="Wernstrom",
            body="I said this", is_from_self=True, channel_id=CHANNEL,
        ))
        await _feed(bridge, make_event("and then?", mentions_self=True))

        messages = backend.calls[0]["messages"]
        assert messages[1]["role"] == "assistant"
        assert messages[1]["content"] == "I said this"
        assert messages[2]["content"] == "and then?"


class TestProactiveDialogue:

    @pytest.mark.asyncio
    async def test_dialogue_answers_next_messages_then_stops(self, store, tmp_path, make_event):
        bridge, platform, backend = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        assert platform.sent == []

        assert await bridge.start_proactive_dialogue(CHANNEL, 1, 3)
        assert len(platform.sent) == 1
        assert "[[Alice]]" in backend.calls[0]["messages"][-1]["content"]
        assert bridge.dialogue.remaining == 3

        for n in range(3):
            await _feed(bridge, make_event(f"answer {n}"))
        assert len(platform.sent) == 4
        assert not bridge.dialogue.is_active

        await _feed(bridge, make_event("anyone?"))
        assert len(platform.sent) == 4

    @pytest.mark.asyncio
    async def test_mentions_consume_dialogue_messages(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        await bridge.start_proactive_dialogue(CHANNEL, 1, 2)

        await _feed(bridge, make_event("hey bot", mentions_self=True), make_event("more"))
        assert not bridge.dialogue.is_active
        assert len(platform.sent) == 3

    @pytest.mark.asyncio
    async def test_back_to_back_identical_answers_all_get_replies(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        await bridge.start_proactive_dialogue(CHANNEL, 1, 3)

        for _ in range(3):
            await bridge.on_inbound_event(make_event("ok"))
        await bridge.wait_idle()

        assert len(platform.sent) == 4
        assert not bridge.dialogue.is_active

    @pytest.mark.asyncio
    async def test_failed_opener_cancels_dialogue(self, store, tmp_path, make_event, monkeypatch):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))

        async def broken(*args):
            raise RuntimeError("disk gone")

        monkeypatch.setattr(store, "get_recent_messages", broken)
        with pytest.raises(BackendUnavailable):
            await bridge.start_proactive_dialogue(CHANNEL, 1, 3)
        assert not bridge.dialogue.is_active
        assert platform.sent == []

    @pytest.mark.asyncio
    async def test_already_active(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        await bridge.start_proactive_dialogue(CHANNEL, 1, 2)
        with pytest.raises(AlreadyActive):
            await bridge.start_proactive_dialogue(CHANNEL, 1, 2)
        assert bridge.dialogue.remaining == 2
        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_channel_or_user(self, store, tmp_path, make_event):
        bridge, platform, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        with pytest.raises(NotFound):
            await bridge.start_proactive_dialogue(12345, 1, 2)
        with pytest.raises(NotFound):
            await bridge.start_proactive_dialogue(CHANNEL, 777, 2)
        assert not bridge.dialogue.is_active
        assert platform.sent == []

    @pytest.mark.asyncio
    async def test_invalid_count(self, store, tmp_path, make_event):
        bridge, _, _ = _bridge(store, tmp_path)
        await _feed(bridge, make_event("hello all"))
        with pytest.raises(InvalidArgument):
            await bridge.start_proactive_dialogue(CHANNEL, 1, 0)

    @pytest.mark.asyncio
    async def test_opener_counts_as_proactive_response(self, store, tmp_path, make_event, monkeypatch):
        bridge, _, _ = _bridge(store, tmp_path)
        reasons = []
        monkeypatch.setattr("bridge.metrics_manager.record_response",
                            lambda platform, reason, success, duration: reasons.append((reason, success)))
        await _feed(bridge, make_event("hello all"))
        assert await bridge.start_proactive_dialogue(CHANNEL, 1, 1)
        assert reasons == [(PROACTIVE, True)]


class TestReactions:

    @pytest.mark.asyncio
    async def test_reacts_to_unanswered_message(self, store, tmp_path, make_event, clock):
        class Always:
            def random(self):
                return 0.0

            def choice(self, options):
                return options[0]

        reactions = ReactionPolicy(clock=clock, rng=Always())
        clock.advance(3600)
        bridge, platform, _ = _bridge(store, tmp_path, reactions=reactions)

        await _feed(bridge, make_event("nice weather"))
        assert platform.reactions == [(1, "👍")]

        await _feed(bridge, make_event("still nice"))
        assert len(platform.reactions) == 1
