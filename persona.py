"""
Home Bridge - Persona Prompts
Loads the system prompt templates and fills in the per-turn placeholders.
"""

import os
from datetime import datetime, timezone
from typing import Iterable, Optional

from config import PROMPTS_DIR

DEFAULT_SYSTEM_TEMPLATE = """You are {{BOT_NAME}}, a witty member of a small group chat on {{PLATFORM}}.
You are talking in {{CHANNEL_NAME}}. It is {{NOW}}.
People in this channel: {{PARTICIPANTS}}.
Mention someone by writing their name in double brackets, for example [[{{EXAMPLE_NAME}}]].
Keep replies short and conversational. Use your tools when asked about weather, news, the car or facts you are unsure of."""

DEFAULT_DIALOGUE_TEMPLATE = """Start a conversation with [[{{USER_NAME}}]]. Address them directly with a short,
friendly opener about something from the recent chat or the day. Write only the message."""

DEFAULT_STATUS_TEMPLATE = """Write {{COUNT}} short, funny status lines (max 60 characters each) that {{BOT_NAME}} could show
as a chat presence today, {{NOW}}. One per line, no numbering, no quotes."""


class PromptManager:
    """Manages prompt templates."""

    def __init__(self, bot_name: str, prompts_dir: str = None):
        self.bot_name = bot_name
        self.prompts_dir = prompts_dir or os.path.join(os.path.dirname(os.path.abspath(__file__)), PROMPTS_DIR)
        self.system_template = DEFAULT_SYSTEM_TEMPLATE
        self.dialogue_template = DEFAULT_DIALOGUE_TEMPLATE
        self.status_template = DEFAULT_STATUS_TEMPLATE
        self.reload()

    def _read(self, filename: str, default: str) -> str:
        path = os.path.join(self.prompts_dir, filename)
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read().strip()
            if content:
                return content
        return default

    def reload(self):
        """Reload templates from disk, keeping built-in defaults for missing files."""
        self.system_template = self._read("system.md", DEFAULT_SYSTEM_TEMPLATE)
        self.dialogue_template = self._read("dialogue.md", DEFAULT_DIALOGUE_TEMPLATE)
        self.status_template = self._read("status.md", DEFAULT_STATUS_TEMPLATE)

    @staticmethod
    def _fill(template: str, values: dict) -> str:
        for placeholder, value in values.items():
            template = template.replace(placeholder, value)
        return template

    def _now(self, now: Optional[datetime]) -> str:
        return (now or datetime.now(timezone.utc)).strftime("%A, %d %B %Y, %H:%M UTC")

    def build_system_prompt(self, platform: str, channel_name: str, participants: Iterable[str],
                            now: datetime = None) -> str:
        names = [p for p in participants if p]
        return self._fill(self.system_template, {
            "{{BOT_NAME}}": self.bot_name,
            "{{PLATFORM}}": platform,
            "{{CHANNEL_NAME}}": channel_name or "a private room",
            "{{NOW}}": self._now(now),
            "{{PARTICIPANTS}}": ", ".join(f"[[{n}]]" for n in names) if names else "nobody yet",
            "{{EXAMPLE_NAME}}": names[0] if names else "Name",
        })

    def build_dialogue_prompt(self, user_name: str) -> str:
        return self._fill(self.dialogue_template, {"{{USER_NAME}}": user_name, "{{BOT_NAME}}": self.bot_name})

    def build_status_prompt(self, count: int, now: datetime = None) -> str:
        return self._fill(self.status_template, {
            "{{COUNT}}": str(count),
            "{{BOT_NAME}}": self.bot_name,
            "{{NOW}}": self._now(now),
        })
