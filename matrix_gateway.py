"""
Home Bridge - Matrix Gateway
Minimal Matrix client-server API adapter over aiohttp: password login,
long-poll /sync, text messages, typing notices and reactions.
"""

import html
import re
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

import logger as log
from bridge import ConversationBridge, InboundEvent, SentMessage
from channel_cache import AsyncOnce, ChannelUser
from constants import FALLBACK_REACTIONS, MATRIX_MAX_EVENT_AGE, MATRIX_SENT_EVENT_CACHE, MATRIX_SYNC_TIMEOUT_MS
from errors import GatewayFault

API_PREFIX = "/_matrix/client/v3"

RE_MXID = re.compile(r'(?P<id>@[A-Za-z0-9._=\-/+]+:[A-Za-z0-9.\-]+(?::\d+)?)')
RE_PILL = re.compile(r'<a\s+href="https://matrix\.to/#/(?P<id>@[^"/?]+)"[^>]*>.*?</a>', re.IGNORECASE | re.DOTALL)
RE_REPLY_FALLBACK = re.compile(r'<mx-reply>.*?</mx-reply>', re.IGNORECASE | re.DOTALL)
RE_HTML_TAG = re.compile(r'<[^>]+>')
RE_BR = re.compile(r'<br\s*/?>', re.IGNORECASE)


def html_to_text(formatted: str) -> str:
    """Flatten a formatted body: pills become MXIDs, other markup is dropped."""
    text = RE_REPLY_FALLBACK.sub('', formatted)
    text = RE_PILL.sub(lambda m: m.group('id'), text)
    text = RE_BR.sub('\n', text)
    text = RE_HTML_TAG.sub('', text)
    return html.unescape(text).strip()


def render_formatted(text: str) -> str:
    """HTML body for an outgoing message: pills stay markup, the rest is escaped."""
    parts = []
    last = 0
    for match in RE_PILL.finditer(text):
        parts.append(html.escape(text[last:match.start()], quote=False))
        parts.append(match.group(0))
        last = match.end()
    parts.append(html.escape(text[last:], quote=False))
    return "".join(parts).replace("\n", "<br>")


def pills_to_mxids(text: str) -> str:
    return RE_PILL.sub(lambda m: m.group('id'), text)


def reply_target(raw: dict) -> Optional[str]:
    return raw.get("content", {}).get("m.relates_to", {}).get("m.in_reply_to", {}).get("event_id")


def strip_reply_fallback(body: str) -> str:
    """Drop the quoted "> <@user> ..." lines clients prepend to replies."""
    lines = body.splitlines()
    while lines and lines[0].startswith('>'):
        lines.pop(0)
    if lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines).strip()


class MatrixPlatform:
    """Matrix implementation of the bridge's Platform protocol."""

    name = "matrix"
    mention_pattern = RE_MXID
    omits_self_history = True

    def __init__(self, homeserver: str, user_id: str, password: str, device_name: str = "home-bridge",
                 max_event_age: float = MATRIX_MAX_EVENT_AGE, sync_timeout_ms: int = MATRIX_SYNC_TIMEOUT_MS,
                 sent_event_cache: int = MATRIX_SENT_EVENT_CACHE):
        self.homeserver = homeserver.rstrip('/')
        self.user_id = user_id
        self.password = password
        self.device_name = device_name
        self.max_event_age = max_event_age
        self.sync_timeout_ms = sync_timeout_ms
        self.bridge: Optional[ConversationBridge] = None
        self.access_token: Optional[str] = None
        self.display_name: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._room_names: Dict[str, str] = {}
        self._members: Dict[str, AsyncOnce] = {}
        self.sent_event_cache = sent_event_cache
        self._sent_event_ids: "OrderedDict[str, None]" = OrderedDict()

    def attach(self, bridge: ConversationBridge):
        self.bridge = bridge

    # --- HTTP ---

    def _url(self, path: str) -> str:
        return f"{self.homeserver}{API_PREFIX}{path}"

    async def _request(self, method: str, path: str, json: dict = None, params: dict = None,
                       auth: bool = True) -> dict:
        if self._session is None:
            raise GatewayFault("not connected")
        headers = {"Authorization": f"Bearer {self.access_token}"} if auth else {}
        try:
            async with self._session.request(method, self._url(path), json=json, params=params,
                                             headers=headers) as response:
                payload = await response.json(content_type=None)
                if response.status != 200:
                    errcode = payload.get("errcode") if isinstance(payload, dict) else None
                    raise GatewayFault(f"{method} {path} answered {response.status} {errcode or ''}".strip())
                return payload or {}
        except aiohttp.ClientError as e:
            raise GatewayFault(f"{method} {path} failed: {e}") from e

    # --- Connection ---

    async def _login(self):
        payload = await self._request("POST", "/login", auth=False, json={
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self.user_id},
            "password": self.password,
            "initial_device_display_name": self.device_name,
        })
        self.access_token = payload["access_token"]
        self.user_id = payload.get("user_id", self.user_id)
        try:
            profile = await self._request("GET", f"/profile/{quote(self.user_id, safe='')}/displayname")
            self.display_name = profile.get("displayname")
        except GatewayFault:
            self.display_name = None
        log.ok(f"Logged in as {self.user_id}", self.name)

    async def _sync(self, since: Optional[str], timeout_ms: int) -> dict:
        params = {"timeout": str(timeout_ms)}
        if since:
            params["since"] = since
        return await self._request("GET", "/sync", params=params)

    async def connect(self, supervisor):
        """One session: login, skip the backlog, then long-poll until the stream fails."""
        timeout = aiohttp.ClientTimeout(total=None, sock_read=self.sync_timeout_ms / 1000 + 30)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            self._session = session
            self._members.clear()
            try:
                await self._login()
                initial = await self._sync(None, 0)
                since = initial.get("next_batch")
                self._track_rooms(initial)
                self.bridge.cache.replace([])
                supervisor.notify_event()

                while True:
                    data = await self._sync(since, self.sync_timeout_ms)
                    supervisor.notify_event()
                    since = data.get("next_batch", since)
                    await self._handle_sync(data)
            finally:
                self._session = None

    # --- Sync handling ---

    def _track_rooms(self, data: dict):
        for room_id, room in data.get("rooms", {}).get("join", {}).items():
            events = room.get("state", {}).get("events", []) + room.get("timeline", {}).get("events", [])
            for event in events:
                if event.get("type") == "m.room.name" and event.get("content", {}).get("name"):
                    self._room_names[room_id] = event["content"]["name"]

    def room_label(self, room_id: str) -> str:
        return self._room_names.get(room_id, room_id)

    async def _handle_sync(self, data: dict):
        for room_id in data.get("rooms", {}).get("invite", {}):
            try:
                await self._request("POST", f"/rooms/{quote(room_id, safe='')}/join", json={})
                log.info(f"Joined {room_id} after invite", self.name)
            except GatewayFault as e:
                log.warn(f"Could not join {room_id}: {e}", self.name)

        self._track_rooms(data)
        for room_id, room in data.get("rooms", {}).get("join", {}).items():
            for raw in room.get("timeline", {}).get("events", []):
                event = self.to_event(room_id, raw)
                if event is not None:
                    await self._check_reply_to_self(event)
                    await self.bridge.on_inbound_event(event)

    def to_event(self, room_id: str, raw: dict, now: float = None) -> Optional[InboundEvent]:
        """Convert a timeline event; None for non-text events and backlog."""
        if raw.get("type") != "m.room.message":
            return None
        content = raw.get("content", {})
        if content.get("msgtype") not in ("m.text", "m.notice", "m.emote"):
            return None
        if "m.new_content" in content:
            return None  # edits

        now = time.time() if now is None else now
        origin_ts = raw.get("origin_server_ts", 0) / 1000
        age = raw.get("unsigned", {}).get("age")
        age_seconds = age / 1000 if age is not None else now - origin_ts
        if age_seconds > self.max_event_age:
            return None

        if content.get("format") == "org.matrix.custom.html" and content.get("formatted_body"):
            body = html_to_text(content["formatted_body"])
        else:
            body = strip_reply_fallback(content.get("body", ""))

        sender = raw.get("sender", "")
        mentioned_ids = content.get("m.mentions", {}).get("user_ids", [])
        mentions_self = self.user_id in mentioned_ids or self.user_id in body
        if not mentions_self and self.display_name:
            mentions_self = self.display_name.casefold() in body.casefold()

        in_reply_to = reply_target(raw)
        return InboundEvent(
            id=raw.get("event_id"),
            timestamp=datetime.fromtimestamp(origin_ts, tz=timezone.utc),
            channel_id=room_id,
            channel_label=self.room_label(room_id),
            sender_id=sender,
            sender_label=self._member_name(room_id, sender),
            body=body,
            is_from_self=sender == self.user_id,
            mentions_self=mentions_self and sender != self.user_id,
            reply_to_self=in_reply_to in self._sent_event_ids if in_reply_to else False,
            raw=raw,
        )

    def _remember_sent(self, event_id: str):
        self._sent_event_ids[event_id] = None
        self._sent_event_ids.move_to_end(event_id)
        while len(self._sent_event_ids) > self.sent_event_cache:
            self._sent_event_ids.popitem(last=False)

    async def _check_reply_to_self(self, event: InboundEvent):
        """Replies to own messages older than the in-memory ids are found in history."""
        in_reply_to = reply_target(event.raw or {})
        if event.reply_to_self or not in_reply_to or self.bridge is None:
            return
        try:
            stored = await self.bridge.store.get_message(self.name, in_reply_to)
        except Exception as e:
            log.warn(f"Could not look up replied-to event {in_reply_to}: {e}", self.name)
            return
        event.reply_to_self = stored is not None and stored.is_from_self

    def _member_name(self, room_id: str, user_id: str) -> str:
        members = self._members.get(room_id)
        if members is not None and members.is_set:
            name = dict(members.value).get(user_id)
            if name:
                return name
        # Localpart of @name:server
        return user_id[1:].split(':', 1)[0] if user_id.startswith('@') else user_id

    # --- Platform capabilities ---

    def current_self_id(self) -> str:
        return self.user_id

    def parse_id(self, raw: str) -> str:
        return raw

    def format_mention(self, user: ChannelUser) -> str:
        return f'<a href="https://matrix.to/#/{user.platform_id}">{html.escape(user.display_name)}</a>'

    async def send_message(self, room_id: str, text: str, has_mentions: bool) -> Optional[SentMessage]:
        content = {"msgtype": "m.text", "body": pills_to_mxids(text) if has_mentions else text}
        if has_mentions:
            content["format"] = "org.matrix.custom.html"
            content["formatted_body"] = render_formatted(text)
            content["m.mentions"] = {"user_ids": [m.group('id') for m in RE_PILL.finditer(text)]}
        txn_id = uuid.uuid4().hex
        try:
            payload = await self._request(
                "PUT", f"/rooms/{quote(room_id, safe='')}/send/m.room.message/{txn_id}", json=content,
            )
        except GatewayFault as e:
            log.error(f"Send failed in {room_id}: {e}", self.name)
            return None
        event_id = payload.get("event_id")
        if not event_id:
            return None
        self._remember_sent(event_id)
        return SentMessage(id=event_id, timestamp=datetime.now(timezone.utc))

    async def send_typing(self, room_id: str):
        await self._request("PUT", f"/rooms/{quote(room_id, safe='')}/typing/{quote(self.user_id, safe='')}",
                            json={"typing": True, "timeout": 10000})

    async def _joined_members(self, room_id: str) -> List[Tuple[str, str]]:
        once = self._members.get(room_id)
        if once is None:
            async def load():
                payload = await self._request("GET", f"/rooms/{quote(room_id, safe='')}/joined_members")
                return [
                    (user_id, info.get("display_name") or user_id)
                    for user_id, info in payload.get("joined", {}).items()
                ]
            once = self._members.setdefault(room_id, AsyncOnce(load))
        return await once.get()

    async def resolve_mention(self, room_id: str, user_id: str) -> Optional[str]:
        for member_id, display_name in await self._joined_members(room_id):
            if member_id == user_id:
                return display_name
        return None

    async def load_roster(self, room_id: str) -> Iterable[Tuple[str, str]]:
        return await self._joined_members(room_id)

    async def available_reactions(self, event: InboundEvent) -> List[str]:
        return list(FALLBACK_REACTIONS)

    async def add_reaction(self, event: InboundEvent, emoji: str):
        await self._request(
            "PUT", f"/rooms/{quote(event.channel_id, safe='')}/send/m.reaction/{uuid.uuid4().hex}",
            json={"m.relates_to": {"rel_type": "m.annotation", "event_id": event.id, "key": emoji}},
        )
