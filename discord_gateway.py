"""
Home Bridge - Discord Gateway
discord.py adapter: turns gateway events into InboundEvents and implements
the platform capabilities the bridge needs.
"""

import asyncio
import re
from datetime import timezone
from typing import Dict, Iterable, List, Optional, Tuple

import discord
from discord import app_commands

import logger as log
from bridge import ConversationBridge, InboundEvent, SentMessage
from commands import setup_all_commands
from channel_cache import AsyncOnce, ChannelUser, JoinedChannel
from constants import DISCORD_MAX_MESSAGE_LENGTH, FALLBACK_REACTIONS, STATUS_ROTATION_MINUTES
from errors import GatewayFault

RE_DISCORD_MENTION = re.compile(r'<@!?(?P<id>\d+)>')


def split_message(content: str, max_length: int = DISCORD_MAX_MESSAGE_LENGTH) -> List[str]:
    """Split a long message into Discord-compatible chunks."""
    if len(content) <= max_length:
        return [content]

    chunks = []
    current_chunk = ""
    for para in content.split('\n\n'):
        if len(current_chunk) + len(para) + 2 <= max_length:
            current_chunk += ('\n\n' if current_chunk else '') + para
            continue
        if current_chunk:
            chunks.append(current_chunk)
        if len(para) <= max_length:
            current_chunk = para
            continue
        current_chunk = ""
        for sentence in re.split(r'(?<=[.!?])\s+', para):
            while len(sentence) > max_length:
                if current_chunk:
                    chunks.append(current_chunk)
                    current_chunk = ""
                chunks.append(sentence[:max_length])
                sentence = sentence[max_length:]
            if len(current_chunk) + len(sentence) + 1 <= max_length:
                current_chunk += (' ' if current_chunk else '') + sentence
            else:
                if current_chunk:
                    chunks.append(current_chunk)
                current_chunk = sentence

    if current_chunk:
        chunks.append(current_chunk)
    return chunks


def get_user_display_name(user) -> str:
    """Server nickname if set, otherwise global name, otherwise username."""
    return getattr(user, "display_name", None) or getattr(user, "global_name", None) or user.name


def channel_label(channel) -> str:
    guild = getattr(channel, "guild", None)
    name = getattr(channel, "name", None) or "direct message"
    return f"{guild.name}/#{name}" if guild else name


class DiscordPlatform:
    """Discord implementation of the bridge's Platform protocol."""

    name = "discord"
    mention_pattern = RE_DISCORD_MENTION
    omits_self_history = False

    def __init__(self, token: str, admin_id: Optional[int] = None,
                 status_interval_minutes: float = STATUS_ROTATION_MINUTES):
        self.token = token
        self.admin_id = admin_id
        self.status_interval_minutes = status_interval_minutes
        self.bridge: Optional[ConversationBridge] = None
        self.status_rotator = None
        self.client: Optional[discord.Client] = None
        self.tree: Optional[app_commands.CommandTree] = None
        self._emojis: Dict[int, AsyncOnce] = {}
        self._status_task: Optional[asyncio.Task] = None

    def attach(self, bridge: ConversationBridge, status_rotator=None):
        self.bridge = bridge
        self.status_rotator = status_rotator

    # --- Connection ---

    def _create_client(self) -> discord.Client:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.emojis = True
        client = discord.Client(intents=intents, max_messages=100)
        self.tree = app_commands.CommandTree(client)

        setup_all_commands(self)
        return client

    async def connect(self, supervisor):
        """One gateway session; discord.py's own reconnect is off so the supervisor owns retries."""
        self.client = client = self._create_client()
        self._emojis.clear()

        @client.event
        async def on_ready():
            supervisor.notify_event()
            self._resync(client)
            try:
                synced = await self.tree.sync()
                log.ok(f"Synced {len(synced)} commands", self.name)
            except discord.HTTPException as e:
                log.error(f"Command sync failed: {e}", self.name)
            if self.status_rotator is not None and (self._status_task is None or self._status_task.done()):
                self._status_task = asyncio.create_task(self._rotate_status())
            log.online(f"{client.user} is online in {len(client.guilds)} guilds", self.name)

        @client.event
        async def on_message(message: discord.Message):
            supervisor.notify_event()
            if message.type not in (discord.MessageType.default, discord.MessageType.reply):
                return
            await self.bridge.on_inbound_event(self._to_event(message))

        try:
            await client.start(self.token, reconnect=False)
        except discord.LoginFailure as e:
            raise GatewayFault(f"login failed: {e}") from e
        except (discord.ConnectionClosed, discord.GatewayNotFound, discord.HTTPException, OSError) as e:
            raise GatewayFault(f"gateway connection lost: {e}") from e
        finally:
            if self._status_task is not None:
                self._status_task.cancel()
                self._status_task = None
            if not client.is_closed():
                await client.close()

    def _resync(self, client: discord.Client):
        """Rebuild the channel cache from the guilds the bot can see."""
        channels = []
        for guild in client.guilds:
            for channel in guild.text_channels:
                channels.append(JoinedChannel(id=channel.id, label=channel_label(channel)))
        self.bridge.cache.replace(channels)
        log.info(f"Cached {len(channels)} text channels", self.name)

    async def _rotate_status(self):
        while True:
            try:
                status = await self.status_rotator.next_status()
                if status and self.client is not None:
                    await self.client.change_presence(activity=discord.CustomActivity(name=status))
                    log.debug(f"Status: {status}", self.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warn(f"Status rotation failed: {e}", self.name)
            await asyncio.sleep(self.status_interval_minutes * 60)

    # --- Event conversion ---

    def _to_event(self, message: discord.Message) -> InboundEvent:
        me = self.client.user
        reply_to_self = False
        reference = message.reference
        if reference is not None and isinstance(reference.resolved, discord.Message):
            reply_to_self = reference.resolved.author.id == me.id

        timestamp = message.created_at
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return InboundEvent(
            id=message.id,
            timestamp=timestamp,
            channel_id=message.channel.id,
            channel_label=channel_label(message.channel),
            sender_id=message.author.id,
            sender_label=get_user_display_name(message.author),
            body=message.content,
            is_from_self=message.author.id == me.id,
            mentions_self=any(u.id == me.id for u in message.mentions),
            reply_to_self=reply_to_self,
            raw=message,
        )

    # --- Platform capabilities ---

    def current_self_id(self) -> Optional[int]:
        return self.client.user.id if self.client and self.client.user else None

    def parse_id(self, raw) -> int:
        return int(raw)

    def format_mention(self, user: ChannelUser) -> str:
        return f"<@{user.platform_id}>"

    async def _get_channel(self, channel_id: int):
        channel = self.client.get_channel(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        return channel

    async def send_message(self, channel_id: int, text: str, has_mentions: bool) -> Optional[SentMessage]:
        try:
            channel = await self._get_channel(channel_id)
            allowed = discord.AllowedMentions(users=has_mentions, roles=False, everyone=False)
            first = None
            for chunk in split_message(text):
                sent = await channel.send(chunk, allowed_mentions=allowed)
                first = first or sent
        except discord.HTTPException as e:
            log.error(f"Send failed in {channel_id}: {e}", self.name)
            return None
        return SentMessage(id=first.id, timestamp=first.created_at) if first else None

    async def send_typing(self, channel_id: int):
        channel = await self._get_channel(channel_id)
        await channel.typing()

    async def resolve_mention(self, channel_id: int, user_id: int) -> Optional[str]:
        channel = self.client.get_channel(channel_id)
        guild = getattr(channel, "guild", None)
        member = guild.get_member(user_id) if guild else None
        if member is not None:
            return get_user_display_name(member)
        user = self.client.get_user(user_id)
        if user is None:
            try:
                user = await self.client.fetch_user(user_id)
            except discord.NotFound:
                return None
        return get_user_display_name(user)

    async def load_roster(self, channel_id: int) -> Iterable[Tuple[int, str]]:
        channel = self.client.get_channel(channel_id) if self.client else None
        members = getattr(channel, "members", None) or []
        return [(m.id, get_user_display_name(m)) for m in members]

    async def available_reactions(self, event: InboundEvent) -> List[str]:
        guild = getattr(event.raw, "guild", None)
        if guild is None:
            return list(FALLBACK_REACTIONS)

        once = self._emojis.get(guild.id)
        if once is None:
            async def load():
                return [str(e) for e in guild.emojis if e.available]
            once = self._emojis.setdefault(guild.id, AsyncOnce(load))
        emojis = await once.get()
        return emojis or list(FALLBACK_REACTIONS)

    async def add_reaction(self, event: InboundEvent, emoji: str):
        await event.raw.add_reaction(emoji)
