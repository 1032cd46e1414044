"""Shared fakes for the bridge tests."""

import itertools
import re
from datetime import datetime, timedelta, timezone

import pytest

from bridge import InboundEvent, SentMessage
from channel_cache import ChannelUser
from providers import TEXT, TOOL_CALLS, BackendResponse, ToolCall

BOT_ID = 999


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePlatform:
    """In-memory platform speaking a Discord-like mention syntax."""

    mention_pattern = re.compile(r'<@!?(?P<id>\d+)>')

    def __init__(self, name: str = "discord", omits_self_history: bool = False,
                 directory: dict = None, roster: dict = None):
        self.name = name
        self.omits_self_history = omits_self_history
        self.directory = {BOT_ID: "Wernstrom", **(directory or {})}
        self.roster = roster or {}
        self.sent = []
        self.reactions = []
        self.typing = 0
        self.fail_send = False
        self._ids = itertools.count(5000)

    def current_self_id(self):
        return BOT_ID

    def parse_id(self, raw):
        return int(raw)

    def format_mention(self, user: ChannelUser) -> str:
        return f"<@{user.platform_id}>"

    async def send_message(self, channel_id, text, has_mentions):
        if self.fail_send:
            return None
        message = SentMessage(id=next(self._ids), timestamp=datetime.now(timezone.utc))
        self.sent.append((channel_id, text, has_mentions, message.id))
        return message

    async def send_typing(self, channel_id):
        self.typing += 1

    async def resolve_mention(self, channel_id, user_id):
        return self.directory.get(user_id)

    async def load_roster(self, channel_id):
        return list(self.roster.get(channel_id, []))

    async def available_reactions(self, event):
        return ["👍"]

    async def add_reaction(self, event, emoji):
        self.reactions.append((event.id, emoji))


class FakeBackend:
    """Replays scripted BackendResponses; repeats `default` once the script runs out."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default or BackendResponse(kind=TEXT, text="Sure thing.")
        self.calls = []
        self.errors = []

    async def submit(self, messages, tools=None, max_tokens=300):
        self.calls.append({"messages": list(messages), "tools": tools, "max_tokens": max_tokens})
        if self.errors:
            raise self.errors.pop(0)
        if self.responses:
            return self.responses.pop(0)
        return self.default


class FakeTools:
    def __init__(self, handlers=None):
        self.handlers = handlers or {}
        self.calls = []

    def has_tool(self, name):
        return name in self.handlers

    async def dispatch(self, name, arguments):
        self.calls.append((name, arguments))
        result = self.handlers[name]
        if isinstance(result, Exception):
            raise result
        return result


def tool_calls(*names) -> BackendResponse:
    return BackendResponse(
        kind=TOOL_CALLS,
        tool_calls=[ToolCall(id=f"call_{i}", name=n, arguments="{}") for i, n in enumerate(names)],
    )


class EventFactory:
    def __init__(self, channel_id=100, channel_label="home/#general"):
        self.channel_id = channel_id
        self.channel_label = channel_label
        self._ids = itertools.count(1)
        self._ts = datetime.now(timezone.utc) - timedelta(minutes=5)

    def __call__(self, body, sender_id=1, sender_label="Alice", **kwargs) -> InboundEvent:
        self._ts += timedelta(seconds=1)
        kwargs.setdefault("channel_id", self.channel_id)
        kwargs.setdefault("channel_label", self.channel_label)
        return InboundEvent(
            id=kwargs.pop("id", next(self._ids)),
            timestamp=kwargs.pop("timestamp", self._ts),
            sender_id=sender_id,
            sender_label=sender_label,
            body=body,
            is_from_self=kwargs.pop("is_from_self", sender_id == BOT_ID),
            **kwargs,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_event():
    return EventFactory()
