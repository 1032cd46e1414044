"""
Home Bridge - Mention Translation
Rewrites platform-native mentions into the canonical [[Name]] form the model
sees, and back into native markup on the way out.
"""

import re
from typing import Callable, Optional, Tuple

import logger as log
from channel_cache import ChannelUser, JoinedChannel
from constants import MAX_BODY_LENGTH
from errors import Unresolvable

# Canonical mention, optionally wrapped in backticks by the model
RE_CANONICAL_MENTION = re.compile(r'`?\[\[([^\[\]\r\n]+?)\]\]`?')
RE_MULTI_SPACE = re.compile(r'[ \t]{2,}')


def truncate_body(text: str, limit: int = MAX_BODY_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit]


async def _resolve_user(channel: JoinedChannel, platform, user_id) -> ChannelUser:
    user = channel.get_user(user_id)
    if user is not None:
        return user
    display_name = await platform.resolve_mention(channel.id, user_id)
    if not display_name:
        raise Unresolvable(f"cannot resolve {user_id!r} in {channel.label}")
    return channel.add_user(user_id, display_name)


async def encode_mentions(text: str, channel: JoinedChannel, platform) -> str:
    """Replace native mentions with [[canonical]] tokens and truncate.

    `platform.mention_pattern` must expose a named group `id`. Mentions that
    cannot be resolved are dropped.
    """
    if not text:
        return ""

    replacements = {}
    for match in platform.mention_pattern.finditer(text):
        raw_id = match.group('id')
        if raw_id in replacements:
            continue
        try:
            user = await _resolve_user(channel, platform, platform.parse_id(raw_id))
            replacements[raw_id] = f"[[{user.canonical_name}]]"
        except Unresolvable as e:
            log.warn(f"Dropping mention: {e}", platform.name)
            replacements[raw_id] = ""

    if replacements:
        text = platform.mention_pattern.sub(lambda m: replacements.get(m.group('id'), ""), text)
        text = RE_MULTI_SPACE.sub(' ', text).strip()

    return truncate_body(text)


def decode_mentions(text: Optional[str], channel: Optional[JoinedChannel],
                    format_mention: Callable[[ChannelUser], str]) -> Tuple[str, bool]:
    """Replace [[Name]] tokens with native mentions.

    Never fails: unknown names are emitted as bare text.

    Returns:
        tuple: (rewritten text, whether any native mention was produced)
    """
    if not text:
        return "", False

    has_mentions = False

    def replace(match: re.Match) -> str:
        nonlocal has_mentions
        name = match.group(1).strip()
        user = channel.find_user(name) if channel is not None else None
        if user is None:
            log.warn(f"Unknown mention [[{name}]], emitting bare name")
            return name
        has_mentions = True
        return format_mention(user)

    return RE_CANONICAL_MENTION.sub(replace, text), has_mentions
