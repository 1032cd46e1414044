"""
Home Bridge - Conversation Bridge
The pipeline every platform shares: ingest, persist, decide, reply.

Platforms plug in through the `Platform` protocol; everything stateful
(cache, dialogue counter, reaction policy) is injected per bridge so two
platform workers never share mutable state by accident.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol, Tuple

import logger as log
from ambient import ReactionPolicy
from channel_cache import ChannelUser, ChannelUserCache, JoinedChannel
from constants import HISTORY_LIMIT
from dialogue import DialogueState, ResponsePolicy
from errors import AlreadyActive, BackendUnavailable, NotFound, RateLimited
from history import HistoryStore, StoredMessage
from mentions import decode_mentions, encode_mentions, truncate_body
from names import sanitize_name
from orchestrator import AIMessage, ToolOrchestrator
from persona import PromptManager
from prometheus_metrics import metrics_manager
from request_queue import RequestQueue
from response_sanitizer import sanitize_response

PROACTIVE = "proactive"


@dataclass
class InboundEvent:
    """A chat message as received from any platform."""
    id: Any
    timestamp: datetime
    channel_id: Any
    channel_label: str
    sender_id: Any
    sender_label: str
    body: str
    is_from_self: bool = False
    mentions_self: bool = False
    reply_to_self: bool = False
    raw: Any = field(default=None, repr=False)


@dataclass
class SentMessage:
    id: Any
    timestamp: datetime


class Platform(Protocol):
    """Capabilities a chat platform provides to the bridge."""
    name: str
    mention_pattern: re.Pattern
    omits_self_history: bool

    def current_self_id(self) -> Any: ...

    def parse_id(self, raw: str) -> Any: ...

    def format_mention(self, user: ChannelUser) -> str: ...

    async def send_message(self, channel_id, text: str, has_mentions: bool) -> Optional[SentMessage]: ...

    async def send_typing(self, channel_id) -> None: ...

    async def resolve_mention(self, channel_id, user_id) -> Optional[str]: ...

    async def load_roster(self, channel_id) -> Iterable[Tuple[Any, str]]: ...

    async def available_reactions(self, event: InboundEvent) -> List[str]: ...

    async def add_reaction(self, event: InboundEvent, emoji: str) -> None: ...


class ConversationBridge:
    """Shared ingest/reply pipeline for one platform."""

    def __init__(self, platform: Platform, store: HistoryStore, orchestrator: ToolOrchestrator,
                 prompts: PromptManager, cache: ChannelUserCache = None, dialogue: DialogueState = None,
                 reactions: ReactionPolicy = None, history_limit: int = HISTORY_LIMIT,
                 request_queue: RequestQueue = None):
        self.platform = platform
        self.store = store
        self.orchestrator = orchestrator
        self.prompts = prompts
        self.cache = cache or ChannelUserCache()
        self.dialogue = dialogue or DialogueState()
        self.policy = ResponsePolicy(self.dialogue)
        self.reactions = reactions
        self.history_limit = history_limit
        self.queue = request_queue or RequestQueue(
            on_depth_change=lambda depth: metrics_manager.update_queue_depth(platform.name, depth)
        )
        self.queue.set_processor(self._process_request)
        self._running = False
        self._ambient_tasks = set()

    @property
    def name(self) -> str:
        return self.platform.name

    # --- Status ---

    @property
    def is_running(self) -> bool:
        return self._running

    def set_running(self, running: bool):
        self._running = running

    @property
    def text_channels(self) -> Tuple[JoinedChannel, ...]:
        return self.cache.snapshot()

    async def wait_idle(self):
        """Wait for queued replies and ambient tasks to finish."""
        await self.queue.wait_idle()
        while self._ambient_tasks:
            await asyncio.gather(*list(self._ambient_tasks), return_exceptions=True)

    def _update_gauges(self):
        metrics_manager.update_cache_size(self.name, len(self.cache.snapshot()), self.cache.user_count)
        metrics_manager.update_dialogue_remaining(self.name, self.dialogue.remaining)

    # --- Ingest ---

    async def on_inbound_event(self, event: InboundEvent):
        """Handle one received message. Never raises."""
        try:
            await self._ingest(event)
        except Exception as e:
            metrics_manager.record_error(self.name, type(e).__name__)
            log.exception(f"Failed to handle message {event.id}", e, self.name)

    async def _channel_for(self, event: InboundEvent) -> JoinedChannel:
        channel = self.cache.get_or_create_channel(event.channel_id, event.channel_label)
        loader = getattr(self.platform, "load_roster", None)
        if loader is not None:
            await self.cache.ensure_roster(channel, loader)
        return channel

    async def _ingest(self, event: InboundEvent):
        channel = await self._channel_for(event)
        sender = channel.add_user(event.sender_id, event.sender_label)
        body = await encode_mentions(event.body, channel, self.platform)
        metrics_manager.record_message(self.name, event.is_from_self)

        if not body.strip():
            log.debug(f"Skipping empty message {event.id} in {channel.label}", self.name)
            return

        await self.store.append_message(self.name, StoredMessage(
            id=event.id,
            timestamp=event.timestamp,
            user_id=event.sender_id,
            user_label=sender.display_name,
            body=body,
            is_from_self=event.is_from_self,
            channel_id=channel.id,
        ))
        log.debug(f"{channel.label} | {sender.canonical_name}: {body}", self.name)

        decision = self.policy.decide(event)
        self._update_gauges()

        if decision.respond:
            await self.queue.add_request(channel.id, {
                'event': event,
                'reason': decision.reason,
            })
        elif not event.is_from_self and self.reactions is not None and self.reactions.should_react():
            self._spawn_ambient(self._react(event))

    # --- Reply ---

    async def _process_request(self, request: dict):
        event: InboundEvent = request['event']
        channel = self.cache.get_channel(event.channel_id)
        if channel is None:
            # Full resync dropped the channel while the request was queued
            channel = await self._channel_for(event)
        await self._reply(channel, request['reason'])

    async def _load_context(self, channel: JoinedChannel) -> List[StoredMessage]:
        messages = await self.store.get_recent_messages(self.name, channel.id, self.history_limit)
        if self.platform.omits_self_history:
            own = await self.store.get_self_messages_today_plus_last(self.name, channel.id)
            merged = {m.id: m for m in messages}
            for m in own:
                merged.setdefault(m.id, m)
            messages = sorted(merged.values(), key=lambda m: m.timestamp)[-self.history_limit:]
        return messages

    def _self_user(self, channel: JoinedChannel) -> ChannelUser:
        return channel.add_user(self.platform.current_self_id(), self.prompts.bot_name)

    def _participant(self, channel: JoinedChannel, message: StoredMessage) -> str:
        user = channel.get_user(message.user_id)
        if user is not None:
            return user.canonical_name
        return sanitize_name(message.user_label)

    def _to_inputs(self, channel: JoinedChannel, messages: List[StoredMessage]) -> List[AIMessage]:
        return [
            AIMessage(is_self=m.is_from_self, message=m.body, participant_name=self._participant(channel, m))
            for m in messages
        ]

    def _system_prompt(self, channel: JoinedChannel) -> str:
        return self.prompts.build_system_prompt(
            self.name, channel.label, [u.canonical_name for u in channel.users],
        )

    async def _reply(self, channel: JoinedChannel, reason: str, extra: AIMessage = None) -> bool:
        start = time.monotonic()
        self_user = self._self_user(channel)
        try:
            await self.platform.send_typing(channel.id)
        except Exception as e:
            log.debug(f"Typing notice failed: {e}", self.name)

        inputs = self._to_inputs(channel, await self._load_context(channel))
        if extra is not None:
            inputs.append(extra)

        try:
            reply = await self.orchestrator.generate_response(self._system_prompt(channel), inputs)
        except RateLimited:
            log.debug(f"Rate limited, not replying in {channel.label}", self.name)
            return False

        reply = sanitize_response(reply, self_user.canonical_name)
        if not reply:
            log.warn(f"Model returned an empty reply in {channel.label}", self.name)
            metrics_manager.record_response(self.name, reason, False, time.monotonic() - start)
            return False

        sent = await self._deliver(channel, reply)
        metrics_manager.record_response(self.name, reason, sent is not None, time.monotonic() - start)
        return sent is not None

    async def _deliver(self, channel: JoinedChannel, reply: str) -> Optional[SentMessage]:
        """Decode mentions, send, and persist the reply under the platform's message id."""
        text, has_mentions = decode_mentions(reply, channel, self.platform.format_mention)
        sent = await self.platform.send_message(channel.id, text, has_mentions)
        if sent is None:
            log.warn(f"Reply in {channel.label} was not delivered", self.name)
            return None

        self_user = self._self_user(channel)
        await self.store.append_message(self.name, StoredMessage(
            id=sent.id,
            timestamp=sent.timestamp or datetime.now(timezone.utc),
            user_id=self_user.platform_id,
            user_label=self_user.display_name,
            body=truncate_body(reply),
            is_from_self=True,
            channel_id=channel.id,
        ))
        return sent

    # --- Proactive dialogue ---

    async def start_proactive_dialogue(self, channel_id, user_id, message_count: int) -> bool:
        """Open a conversation with a user and answer their next messages unconditionally.

        Raises:
            AlreadyActive: a dialogue is running
            NotFound: channel or user is not in the cache
            InvalidArgument: message_count is not positive
            BackendUnavailable: the opening message failed; dialogue mode is cancelled

        Returns:
            True if the opening message was sent
        """
        if self.dialogue.is_active:
            raise AlreadyActive(f"dialogue already running with {self.dialogue.remaining} messages left")
        channel = self.cache.get_channel(channel_id)
        if channel is None:
            raise NotFound(f"unknown channel {channel_id!r}")
        user = channel.get_user(user_id)
        if user is None:
            raise NotFound(f"unknown user {user_id!r} in {channel.label}")

        self.dialogue.start(message_count, channel.id, user.platform_id)
        self._update_gauges()
        log.info(f"Starting dialogue with {user.canonical_name} in {channel.label} ({message_count} messages)", self.name)

        opener = AIMessage(is_self=False, message=self.prompts.build_dialogue_prompt(user.canonical_name))
        try:
            return await self._reply(channel, PROACTIVE, extra=opener)
        except asyncio.CancelledError:
            self.dialogue.cancel()
            self._update_gauges()
            raise
        except Exception as e:
            self.dialogue.cancel()
            self._update_gauges()
            metrics_manager.record_error(self.name, type(e).__name__)
            log.exception(f"Opening message for {user.canonical_name} failed, dialogue cancelled", e, self.name)
            raise BackendUnavailable(f"opening message failed: {e}") from e

    # --- Ambient ---

    def _spawn_ambient(self, coro):
        task = asyncio.create_task(coro)
        self._ambient_tasks.add(task)
        task.add_done_callback(self._ambient_tasks.discard)

    async def _react(self, event: InboundEvent):
        try:
            emoji = self.reactions.choose(await self.platform.available_reactions(event))
            if not emoji:
                return
            await self.platform.add_reaction(event, emoji)
            self.reactions.record_reaction()
            metrics_manager.record_reaction(self.name)
            log.debug(f"Reacted with {emoji} to {event.id}", self.name)
        except Exception as e:
            log.warn(f"Reaction failed: {e}", self.name)
