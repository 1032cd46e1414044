"""
Home Bridge - Name Canonicalization
Maps arbitrary display names onto tokens the language-model API accepts.
"""

import re
import unicodedata

from constants import MAX_NAME_LENGTH, NAME_DELIMITER
from errors import InvalidArgument

RE_VALID_NAME = re.compile(r'^[A-Za-z0-9_-]+$')
RE_WHITESPACE = re.compile(r'\s+')
RE_INVALID_CHARS = re.compile(r'[^A-Za-z0-9_-]')


def is_valid_name(name: str) -> bool:
    """True if `name` is a non-empty token of allowed characters within the length limit."""
    if not name:
        return False
    return len(name) <= MAX_NAME_LENGTH and RE_VALID_NAME.match(name) is not None


def sanitize_name(name: str) -> str:
    """Canonicalize a display name.

    Whitespace runs become the delimiter, accents are decomposed and dropped
    along with every other character outside [A-Za-z0-9_-], the result is cut
    to MAX_NAME_LENGTH and stripped of leading/trailing delimiters. Valid
    tokens are returned unchanged, so the function is idempotent. May return
    an empty string.
    """
    if name is None:
        raise InvalidArgument("name must not be None")

    if is_valid_name(name):
        return name

    result = RE_WHITESPACE.sub(NAME_DELIMITER, name)
    result = unicodedata.normalize('NFD', result)
    result = RE_INVALID_CHARS.sub('', result)
    result = result[:MAX_NAME_LENGTH]
    return result.strip(NAME_DELIMITER)
