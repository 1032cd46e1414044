"""
Home Bridge - Response Policy
Decides whether an inbound message gets a reply, and tracks proactive
dialogue mode (answer the next N messages unconditionally).
"""

import threading
from dataclasses import dataclass
from typing import Any, Optional

from errors import AlreadyActive, InvalidArgument

MENTION = "mention"
REPLY = "reply"
DIALOGUE = "dialogue"


class DialogueState:
    """Countdown of messages still covered by dialogue mode.

    Idle when `remaining` is 0. The counter is shared by every channel of
    one platform worker.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._remaining = 0
        self.channel_id: Optional[Any] = None
        self.user_id: Optional[Any] = None

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def is_active(self) -> bool:
        return self.remaining > 0

    def start(self, count: int, channel_id=None, user_id=None):
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise InvalidArgument("message count must be a positive integer")
        with self._lock:
            if self._remaining > 0:
                raise AlreadyActive(f"dialogue already running with {self._remaining} messages left")
            self._remaining = count
            self.channel_id = channel_id
            self.user_id = user_id

    def consume(self) -> bool:
        """Use up one message; True if the message was covered by dialogue mode."""
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            if self._remaining == 0:
                self.channel_id = None
                self.user_id = None
            return True

    def cancel(self):
        with self._lock:
            self._remaining = 0
            self.channel_id = None
            self.user_id = None


@dataclass
class Decision:
    respond: bool
    reason: Optional[str] = None


class ResponsePolicy:
    """Mentions, replies to the bot, and dialogue mode trigger a reply."""

    def __init__(self, dialogue: DialogueState):
        self.dialogue = dialogue

    def decide(self, event) -> Decision:
        if event.is_from_self:
            return Decision(False)

        # Every non-self message counts against the dialogue, answered or not
        in_dialogue = self.dialogue.consume()

        if event.mentions_self:
            return Decision(True, MENTION)
        if event.reply_to_self:
            return Decision(True, REPLY)
        if in_dialogue:
            return Decision(True, DIALOGUE)
        return Decision(False)
