"""
Home Bridge - Ambient Behavior
Occasional emoji reactions and rotating presence status lines.
"""

import json
import math
import random
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import logger as log
from constants import (
    REACTION_CHANCE_CEILING, REACTION_COOLDOWN_SECONDS, REACTION_MAX_MINUTES,
    REACTION_MIDPOINT_MINUTES, REACTION_MIN_MINUTES, REACTION_STEEPNESS,
    STATUS_MESSAGE_COUNT, STATUS_OUTPUT_TOKENS,
)
from errors import RateLimited

STATUS_SETTINGS_KEY = "status_messages"
MAX_STATUS_LENGTH = 128


def calculate_chance_to_react(minutes_since_last: float) -> float:
    """Reaction probability for the time since the last reaction.

    0 below REACTION_MIN_MINUTES, logistic growth in between, exactly the
    ceiling from REACTION_MAX_MINUTES on.
    """
    if minutes_since_last < REACTION_MIN_MINUTES:
        return 0.0
    if minutes_since_last >= REACTION_MAX_MINUTES:
        return REACTION_CHANCE_CEILING
    x = REACTION_STEEPNESS * (minutes_since_last - REACTION_MIDPOINT_MINUTES)
    return REACTION_CHANCE_CEILING / (1.0 + math.exp(-x))


class ReactionPolicy:
    """Rolls the dice for ambient reactions, gated by its own cooldown."""

    def __init__(self, cooldown_seconds: float = REACTION_COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.monotonic, rng: random.Random = None):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_reaction = clock()

    def minutes_since_last(self) -> float:
        return (self._clock() - self._last_reaction) / 60.0

    def should_react(self) -> bool:
        if self._clock() - self._last_reaction < self.cooldown_seconds:
            return False
        return self._rng.random() < calculate_chance_to_react(self.minutes_since_last())

    def record_reaction(self):
        self._last_reaction = self._clock()

    def choose(self, options: List[str]) -> Optional[str]:
        return self._rng.choice(options) if options else None


class StatusRotator:
    """Daily batch of generated status lines, cached in the settings store."""

    def __init__(self, orchestrator, store, prompts, count: int = STATUS_MESSAGE_COUNT,
                 settings_key: str = STATUS_SETTINGS_KEY):
        self.orchestrator = orchestrator
        self.store = store
        self.prompts = prompts
        self.count = count
        self.settings_key = settings_key
        self._day = None
        self._lines: List[str] = []
        self._index = 0

    @staticmethod
    def _parse(text: str) -> List[str]:
        lines = []
        for line in text.splitlines():
            line = line.strip().strip('"').lstrip('-*• ').strip()
            if line:
                lines.append(line[:MAX_STATUS_LENGTH])
        return lines

    async def _load(self, today: str):
        cached = await self.store.get_setting(self.settings_key)
        if cached:
            try:
                data = json.loads(cached)
                if data.get("date") == today and data.get("lines"):
                    return data["lines"]
            except (json.JSONDecodeError, AttributeError):
                log.warn("Ignoring unreadable cached status lines")

        try:
            text = await self.orchestrator.generate_plain(
                self.prompts.build_status_prompt(self.count),
                "Go.",
                STATUS_OUTPUT_TOKENS,
            )
        except RateLimited:
            log.debug("Status generation skipped, rate limited")
            return []

        lines = self._parse(text or "")
        if lines:
            await self.store.set_setting(self.settings_key, json.dumps({"date": today, "lines": lines}))
        return lines

    async def next_status(self, now: datetime = None) -> Optional[str]:
        """Next line in rotation, regenerating once per UTC day."""
        today = (now or datetime.now(timezone.utc)).date().isoformat()
        if self._day != today or not self._lines:
            self._lines = await self._load(today)
            self._day = today if self._lines else None
            self._index = 0
        if not self._lines:
            return None
        line = self._lines[self._index % len(self._lines)]
        self._index += 1
        return line
