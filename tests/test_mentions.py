"""Tests for mention encoding and decoding."""

import pytest

from channel_cache import JoinedChannel
from mentions import decode_mentions, encode_mentions, truncate_body
from conftest import BOT_ID, FakePlatform


def _channel():
    channel = JoinedChannel(id=100, label="general")
    channel.add_user(1, "Alice")
    channel.add_user(2, "Bob Smith")
    return channel


def _discord_mention(user):
    return f"<@{user.platform_id}>"


class TestEncodeMentions:

    @pytest.mark.asyncio
    async def test_known_users(self):
        text = await encode_mentions("hey <@1> and <@!2>", _channel(), FakePlatform())
        assert text == "hey [[Alice]] and [[Bob_Smith]]"

    @pytest.mark.asyncio
    async def test_resolves_and_caches_new_user(self):
        channel = _channel()
        text = await encode_mentions(f"<@{BOT_ID}> weather?", channel, FakePlatform())
        assert text == "[[Wernstrom]] weather?"
        assert channel.get_user(BOT_ID).canonical_name == "Wernstrom"

    @pytest.mark.asyncio
    async def test_unresolvable_mention_is_dropped(self):
        text = await encode_mentions("hi <@42> there", _channel(), FakePlatform())
        assert text == "hi there"

    @pytest.mark.asyncio
    async def test_truncates_long_bodies(self):
        text = await encode_mentions("x" * 500, _channel(), FakePlatform())
        assert len(text) == 300

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await encode_mentions("", _channel(), FakePlatform()) == ""


class TestDecodeMentions:

    def test_known_names_become_native(self):
        text, has_mentions = decode_mentions("[[Alice]], ask [[bob_smith]]", _channel(), _discord_mention)
        assert text == "<@1>, ask <@2>"
        assert has_mentions

    def test_backticks_around_token_are_consumed(self):
        text, _ = decode_mentions("`[[Alice]]` hi", _channel(), _discord_mention)
        assert text == "<@1> hi"

    def test_unknown_names_emit_bare_text(self):
        text, has_mentions = decode_mentions("hi [[Zed]]", _channel(), _discord_mention)
        assert text == "hi Zed"
        assert not has_mentions

    def test_total_on_missing_inputs(self):
        assert decode_mentions(None, _channel(), _discord_mention) == ("", False)
        assert decode_mentions("[[Alice]]", None, _discord_mention) == ("Alice", False)

    def test_plain_text_untouched(self):
        assert decode_mentions("no mentions [here]", _channel(), _discord_mention) == ("no mentions [here]", False)


def test_truncate_body():
    assert truncate_body("short") == "short"
    assert truncate_body("abcdef", limit=3) == "abc"
