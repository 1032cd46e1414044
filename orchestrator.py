"""
Home Bridge - Tool Orchestration
Drives one conversational turn: submit, run requested tools, resubmit,
until the model answers with text or the depth ceiling is hit.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import logger as log
from constants import LLM_FALLBACKS, MAX_OUTPUT_TOKENS, MAX_TOOL_DEPTH, RECURSION_LIMIT_MESSAGE
from errors import BackendUnavailable, InvalidArgument, RateLimited, RecursionLimitExceeded
from names import sanitize_name
from prometheus_metrics import metrics_manager
from providers import ERROR, FILTERED, TEXT, TOOL_CALLS, TRUNCATED, BackendResponse
from rate_limiter import LeakyBucketRateLimiter
from tools import TOOL_CATALOG


@dataclass
class AIMessage:
    is_self: bool
    message: str
    participant_name: Optional[str] = None


def build_instructions(system_prompt: str, inputs: Iterable[AIMessage]) -> List[dict]:
    """System message followed by one user/assistant turn per input."""
    instructions = [{"role": "system", "content": system_prompt}]
    for item in inputs:
        entry = {"role": "assistant" if item.is_self else "user", "content": item.message}
        if item.participant_name:
            name = sanitize_name(item.participant_name)
            if name:
                entry["name"] = name
        instructions.append(entry)
    return instructions


def annotate(text: str, tool_count: int) -> str:
    if tool_count <= 0:
        return text
    noun = "tool call" if tool_count == 1 else "tool calls"
    return f"{text} [{tool_count} {noun}]"


class ToolOrchestrator:
    """Tool-calling loop over one backend and one tool service.

    The rate limiter is checked once per turn; tool rounds within the turn
    are not charged again.
    """

    def __init__(self, backend, tools, rate_limiter: LeakyBucketRateLimiter,
                 max_depth: int = MAX_TOOL_DEPTH, max_output_tokens: int = MAX_OUTPUT_TOKENS,
                 annotate_tool_calls: bool = True, catalog: List[dict] = None):
        self.backend = backend
        self.tools = tools
        self.rate_limiter = rate_limiter
        self.max_depth = max_depth
        self.max_output_tokens = max_output_tokens
        self.annotate_tool_calls = annotate_tool_calls
        self.catalog = TOOL_CATALOG if catalog is None else catalog

    def _acquire(self):
        if not self.rate_limiter.try_acquire():
            metrics_manager.record_rate_limit_hit()
            raise RateLimited("language-model rate limit reached")

    async def generate_response(self, system_prompt: str, inputs: Iterable[AIMessage]) -> str:
        """Run one turn and return the reply text (or a user-safe fallback).

        Raises:
            RateLimited: the limiter denied the turn; nothing was submitted
        """
        self._acquire()
        instructions = build_instructions(system_prompt, inputs)
        try:
            return await self._run(instructions)
        except RecursionLimitExceeded as e:
            metrics_manager.record_tool_depth_abort()
            log.warn(f"Aborting turn: {e}")
            return RECURSION_LIMIT_MESSAGE

    async def generate_plain(self, system_prompt: str, prompt: str, max_output_tokens: int = None) -> Optional[str]:
        """Single tool-less completion; None unless the model answered with text."""
        self._acquire()
        messages = [{"role": "system", "content": system_prompt}, {"role": "user", "content": prompt}]
        response = await self.backend.submit(messages, None, max_output_tokens or self.max_output_tokens)
        if response.kind != TEXT:
            log.warn(f"Plain completion ended with {response.kind}")
            return None
        return response.text

    async def _run(self, instructions: List[dict]) -> str:
        transcript = list(instructions)
        depth = 0
        tool_count = 0

        while True:
            response: BackendResponse = await self.backend.submit(transcript, self.catalog, self.max_output_tokens)

            if response.kind == TEXT:
                log.debug(f"Turn finished at depth {depth}, {response.total_tokens} tokens")
                if self.annotate_tool_calls:
                    return annotate(response.text, tool_count)
                return response.text

            if response.kind == TOOL_CALLS:
                if depth >= self.max_depth:
                    raise RecursionLimitExceeded(depth + 1)
                transcript.append({
                    "role": "assistant",
                    "content": response.text or None,
                    "tool_calls": [
                        {"id": call.id, "type": "function",
                         "function": {"name": call.name, "arguments": call.arguments}}
                        for call in response.tool_calls
                    ],
                })
                for call in response.tool_calls:
                    result = await self._run_tool(call.name, call.arguments)
                    transcript.append({"role": "tool", "tool_call_id": call.id, "content": result})
                    tool_count += 1
                depth += 1
                continue

            if response.kind in (ERROR, FILTERED, TRUNCATED):
                log.warn(f"Model turn ended with {response.kind}")
                return LLM_FALLBACKS[response.kind]

            log.error(f"Unexpected backend response kind {response.kind!r}")
            return LLM_FALLBACKS[ERROR]

    async def _run_tool(self, name: str, arguments: str) -> str:
        if not self.tools.has_tool(name):
            metrics_manager.record_tool_call(name, "unknown")
            log.warn(f"Model requested unknown tool {name!r}")
            return f"Unknown tool: {name}"

        log.info(f"Tool call {name}({arguments})")
        try:
            result = await self.tools.dispatch(name, arguments)
        except InvalidArgument as e:
            metrics_manager.record_tool_call(name, "failed")
            return f"Tool {name} rejected the arguments: {e}"
        except BackendUnavailable as e:
            metrics_manager.record_tool_call(name, "failed")
            log.warn(f"Tool {name} unavailable: {e}")
            return f"Tool {name} is unavailable: {e}"
        except Exception as e:
            metrics_manager.record_tool_call(name, "failed")
            log.exception(f"Tool {name} failed", e)
            return f"Tool {name} failed: {e}"

        metrics_manager.record_tool_call(name, "ok")
        return result if result else "(no data)"
