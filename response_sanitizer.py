"""
Home Bridge - Response Sanitizer
Cleans model replies before mentions are decoded: reasoning blocks, echoed
speaker prefixes and wrapper tags.
"""

import re
import functools

# =============================================================================
# PRE-COMPILED REGEX PATTERNS
# =============================================================================

# Reasoning blocks emitted by some providers
RE_REASONING_BLOCKS = [
    re.compile(r'<think(?:ing)?>.*?</think(?:ing)?>', re.DOTALL | re.IGNORECASE),
    re.compile(r'<reasoning>.*?</reasoning>', re.DOTALL | re.IGNORECASE),
    re.compile(r'<\|think\|>.*?<\|/think\|>', re.DOTALL),
    re.compile(r'\[think(?:ing)?\].*?\[/think(?:ing)?\]', re.DOTALL | re.IGNORECASE),
]

# Truncated replies can leave a block open or closed only
RE_PARTIAL_START = re.compile(r'^.*?</think(?:ing)?>', re.DOTALL | re.IGNORECASE)
RE_ORPHAN_END = re.compile(r'<think(?:ing)?>.*$', re.DOTALL | re.IGNORECASE)

RE_OUTPUT_WRAPPER = re.compile(r'^\s*<(output|response)>(.*?)</\1>\s*$', re.DOTALL | re.IGNORECASE)

RE_MULTIPLE_NEWLINES = re.compile(r'\n{3,}')


# =============================================================================
# RESPONSE SANITIZATION FUNCTIONS
# =============================================================================

def remove_thinking_tags(text: str) -> str:
    """Remove reasoning blocks, including ones cut off at either end."""
    if not text:
        return text

    for pattern in RE_REASONING_BLOCKS:
        text = pattern.sub('', text)

    if RE_PARTIAL_START.search(text):
        text = RE_PARTIAL_START.sub('', text)
    text = RE_ORPHAN_END.sub('', text)

    wrapped = RE_OUTPUT_WRAPPER.match(text)
    if wrapped:
        text = wrapped.group(2)

    return text.strip()


@functools.lru_cache(maxsize=32)
def _self_prefix_pattern(bot_name: str) -> re.Pattern:
    escaped = re.escape(bot_name)
    return re.compile(rf"^\s*(?:`?\[\[{escaped}\]\]`?|(?:\*\*)?{escaped}(?:\*\*)?)\s*:\s*", re.IGNORECASE)


def clean_name_prefix(text: str, bot_name: str = None) -> str:
    """Strip the bot's own speaker prefix ("[[BotName]]:" or "BotName:")."""
    if not text:
        return text

    if bot_name:
        text = _self_prefix_pattern(bot_name).sub('', text)
    return text.strip()


def sanitize_response(text: str, bot_name: str = None) -> str:
    """Apply all cleanup steps to a model reply."""
    if not text:
        return ""
    text = remove_thinking_tags(text)
    text = clean_name_prefix(text, bot_name)
    text = RE_MULTIPLE_NEWLINES.sub('\n\n', text)
    return text.strip()
