"""
Home Bridge - AI Providers
Tiered fallback over OpenAI-compatible chat completion APIs, with tool calling.
"""

from openai import AsyncOpenAI
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import asyncio
import logging
import time

from prometheus_metrics import metrics_manager

logger = logging.getLogger("providers")

TEXT = "text"
TOOL_CALLS = "tool_calls"
ERROR = "error"
FILTERED = "filtered"
TRUNCATED = "truncated"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class BackendResponse:
    kind: str
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    total_tokens: int = 0
    tier: Optional[str] = None


def classify_completion(completion, tier: str = None) -> BackendResponse:
    """Map a chat completion onto a BackendResponse kind."""
    if not completion.choices:
        return BackendResponse(kind=ERROR, tier=tier)

    choice = completion.choices[0]
    message = choice.message
    usage = getattr(completion, "usage", None)
    tokens = getattr(usage, "total_tokens", 0) or 0
    reason = choice.finish_reason

    if message is not None and message.tool_calls:
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in message.tool_calls
        ]
        return BackendResponse(kind=TOOL_CALLS, tool_calls=calls, total_tokens=tokens, tier=tier)
    if reason == "content_filter":
        return BackendResponse(kind=FILTERED, total_tokens=tokens, tier=tier)
    if reason == "length":
        return BackendResponse(kind=TRUNCATED, text=(message.content or "") if message else "",
                               total_tokens=tokens, tier=tier)
    if reason in ("stop", None) and message is not None and message.content:
        return BackendResponse(kind=TEXT, text=message.content, total_tokens=tokens, tier=tier)
    return BackendResponse(kind=ERROR, total_tokens=tokens, tier=tier)


class AIProviderManager:
    """Manages tiered AI provider fallback."""

    def __init__(self, providers: Dict[str, dict] = None, timeout: float = None,
                 client_factory: Callable[..., AsyncOpenAI] = AsyncOpenAI):
        if providers is None or timeout is None:
            from config import PROVIDERS, PROVIDER_TIMEOUT
            providers = PROVIDERS if providers is None else providers
            timeout = PROVIDER_TIMEOUT if timeout is None else timeout

        self.config = providers
        self.timeout = timeout
        self.clients = {}
        self.status = {tier: "unknown" for tier in providers}

        logger.info(f"Configured providers: {list(providers.keys())}, timeout {timeout}s")
        for tier, cfg in providers.items():
            key = cfg.get("key")
            if key:
                self.clients[tier] = client_factory(base_url=cfg["url"], api_key=key, timeout=timeout)
            else:
                self.status[tier] = "no key"
                logger.warning(f"[{tier}] No API key set - provider will be skipped")

    async def submit(self, messages: List[dict], tools: Optional[List[dict]] = None,
                     max_tokens: int = 300) -> BackendResponse:
        """Send one completion request, falling through the tiers on failure."""
        for tier, client in self.clients.items():
            cfg = self.config[tier]
            kwargs = {"model": cfg["model"], "messages": messages, "max_tokens": max_tokens}
            if tools:
                kwargs["tools"] = tools

            logger.debug(f"[{tier}] {cfg.get('name', tier)} | {len(messages)} messages | tools={bool(tools)}")
            start = time.monotonic()
            try:
                completion = await asyncio.wait_for(client.chat.completions.create(**kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                self.status[tier] = "timeout"
                metrics_manager.record_api_request(tier, "timeout", time.monotonic() - start)
                logger.error(f"[{tier}] Timeout after {self.timeout}s")
                continue
            except Exception as e:
                self.status[tier] = f"error: {str(e)[:50]}"
                metrics_manager.record_api_request(tier, "error", time.monotonic() - start)
                logger.error(f"[{tier}] Request failed: {e}")
                continue

            self.status[tier] = "ok"
            metrics_manager.record_api_request(tier, "success", time.monotonic() - start)
            result = classify_completion(completion, tier)
            logger.debug(f"[{tier}] {result.kind}, {result.total_tokens} tokens")
            return result

        logger.error(f"All providers failed: {self.status}")
        return BackendResponse(kind=ERROR)

    def get_status(self) -> Dict[str, str]:
        return dict(self.status)
