"""
Home Bridge - Channel/User Cache
In-memory directory of joined channels and the users seen in them.

Entries are append-only: a user's canonical name is computed once, when the
user is first seen, and never changes afterwards. The cache is owned by one
bridge and rebuilt wholesale when the gateway does a full resync.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import logger as log
from constants import FALLBACK_USER_NAME, MAX_NAME_LENGTH, NAME_DELIMITER
from names import sanitize_name


@dataclass(frozen=True)
class ChannelUser:
    platform_id: Any
    display_name: str
    canonical_name: str


@dataclass
class JoinedChannel:
    id: Any
    label: str
    users: List[ChannelUser] = field(default_factory=list)

    def get_user(self, user_id) -> Optional[ChannelUser]:
        for user in self.users:
            if user.platform_id == user_id:
                return user
        return None

    def find_user(self, canonical_name: str) -> Optional[ChannelUser]:
        """Look up a user by canonical name, ignoring case."""
        if not canonical_name:
            return None
        wanted = canonical_name.casefold()
        for user in self.users:
            if user.canonical_name.casefold() == wanted:
                return user
        return None

    def add_user(self, user_id, display_name: str) -> ChannelUser:
        """Return the cached user for `user_id`, adding it on first sight.

        Canonical name collisions with a different user get a numeric suffix
        (`Alice_2`, `Alice_3`, ...) so decoding stays unambiguous.
        """
        existing = self.get_user(user_id)
        if existing is not None:
            return existing

        base = sanitize_name(display_name or "") or FALLBACK_USER_NAME
        canonical = base
        suffix = 2
        while self.find_user(canonical) is not None:
            tail = f"{NAME_DELIMITER}{suffix}"
            canonical = base[:MAX_NAME_LENGTH - len(tail)] + tail
            suffix += 1

        user = ChannelUser(platform_id=user_id, display_name=display_name or canonical, canonical_name=canonical)
        self.users.append(user)
        if canonical != base:
            log.debug(f"Name collision in {self.label}: {display_name!r} -> {canonical}")
        return user

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "label": self.label,
            "users": [
                {"id": str(u.platform_id), "display_name": u.display_name, "canonical_name": u.canonical_name}
                for u in self.users
            ],
        }


class ChannelUserCache:
    """Channels joined on one platform, each with its users."""

    def __init__(self, channels: Iterable[JoinedChannel] = ()):
        self._channels: List[JoinedChannel] = list(channels)
        self._rosters: Dict[Any, "AsyncOnce"] = {}

    def get_channel(self, channel_id) -> Optional[JoinedChannel]:
        for channel in self._channels:
            if channel.id == channel_id:
                return channel
        return None

    def get_or_create_channel(self, channel_id, label: str) -> JoinedChannel:
        channel = self.get_channel(channel_id)
        if channel is None:
            channel = JoinedChannel(id=channel_id, label=label)
            self._channels.append(channel)
        elif label and channel.label != label:
            channel.label = label
        return channel

    def replace(self, channels: Iterable[JoinedChannel]):
        """Full resync: drop everything known and start over."""
        self._channels = list(channels)
        self._rosters.clear()

    def snapshot(self) -> Tuple[JoinedChannel, ...]:
        return tuple(self._channels)

    @property
    def user_count(self) -> int:
        return sum(len(c.users) for c in self._channels)

    async def ensure_roster(self, channel: JoinedChannel,
                            loader: Callable[[Any], Awaitable[Iterable[Tuple[Any, str]]]]) -> JoinedChannel:
        """Populate a channel's users from the platform roster exactly once."""
        once = self._rosters.get(channel.id)
        if once is None:
            async def load():
                members = await loader(channel.id)
                for user_id, display_name in members:
                    channel.add_user(user_id, display_name)
                return len(channel.users)

            once = self._rosters.setdefault(channel.id, AsyncOnce(load))
        await once.get()
        return channel


class AsyncOnce:
    """Lazily computed value, computed at most once per reset, guarded by an asyncio.Lock."""

    def __init__(self, factory: Callable[[], Awaitable[Any]]):
        self._factory = factory
        self._lock = asyncio.Lock()
        self._done = False
        self._value = None

    @property
    def is_set(self) -> bool:
        return self._done

    @property
    def value(self):
        """The computed value, or None before the first get()."""
        return self._value

    async def get(self):
        if self._done:
            return self._value
        async with self._lock:
            if not self._done:
                self._value = await self._factory()
                self._done = True
        return self._value

    def reset(self):
        self._done = False
        self._value = None
