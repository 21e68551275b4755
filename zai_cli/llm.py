"""Streaming model channel over LiteLLM, plus tiktoken-based token counting."""

import functools
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import AsyncIterator

import tiktoken

from .context import ToolCallRequest
from .errors import ConfigError, ContextOverflowError, ModelChannelError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "glm-4.6"
DEFAULT_PROVIDER = "zai"
ZAI_BASE_URL = "https://api.z.ai/api/paas/v4"
PROVIDERS = ("zai", "openrouter", "generic")

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


@dataclass
class ModelDelta:
    """A piece of assistant text, forwarded as soon as it arrives."""

    text: str


@dataclass
class ModelTurn:
    """The completed turn: full text plus the assembled tool calls."""

    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across chat messages (and tool schemas) using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content, disallowed_special=()))
    if tools:
        total += len(enc.encode(json.dumps(tools), disallowed_special=()))
    # Per-message overhead (role, separators), ~4 tokens each
    return total + 4 * len(messages)


def resolve_provider(
    provider: str,
    model: str,
    base_url: str | None = None,
    api_key: str | None = None,
) -> tuple[str, dict]:
    """Return (litellm model string, extra completion kwargs)."""
    if provider == "zai":
        key = api_key or os.environ.get("ZAI_API_KEY")
        if not key:
            raise ConfigError("ZAI_API_KEY is not set (or pass --api-key)")
        return f"openai/{model}", {"api_base": base_url or ZAI_BASE_URL, "api_key": key}
    if provider == "openrouter":
        key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not key:
            raise ConfigError("OPENROUTER_API_KEY is not set (or pass --api-key)")
        # Only strip a doubled LiteLLM prefix; org names like "openrouter/free" stay.
        bare = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        kwargs = {"api_key": key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"openrouter/{bare}", kwargs
    if provider == "generic":
        if not base_url:
            raise ConfigError("--base-url is required for the generic provider")
        key = api_key or os.environ.get("OPENAI_API_KEY") or "none"
        return f"openai/{model}", {"api_base": base_url, "api_key": key}
    raise ConfigError(f"unknown provider {provider!r}, expected one of: {', '.join(PROVIDERS)}")


class LlmClient:
    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        provider: str = DEFAULT_PROVIDER,
        base_url: str | None = None,
        api_key: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.model = model
        self.provider = provider
        self.model_str, self._kwargs = resolve_provider(provider, model, base_url, api_key)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    async def stream(
        self, messages: list[dict], tools: list[dict] | None = None
    ) -> AsyncIterator[ModelDelta | ModelTurn]:
        """Yield ModelDelta for each text fragment, then one ModelTurn.

        Raises ContextOverflowError when the provider reports the prompt is
        too large, ModelChannelError for any other failure.
        """
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs = dict(
            model=self.model_str, messages=messages, stream=True, **self._kwargs
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        if self.max_output_tokens is not None:
            completion_kwargs["max_tokens"] = self.max_output_tokens
        if self.temperature is not None:
            completion_kwargs["temperature"] = self.temperature

        logger.debug("calling %s with %d messages", self.model_str, len(messages))

        text_parts: list[str] = []
        calls: dict[int, dict] = {}
        finish_reason = None
        try:
            response = await litellm.acompletion(**completion_kwargs)
            async for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta
                if delta is None:
                    continue
                for tc in getattr(delta, "tool_calls", None) or ():
                    _accumulate_tool_call(calls, tc)
                if delta.content:
                    text_parts.append(delta.content)
                    yield ModelDelta(delta.content)
        except litellm.ContextWindowExceededError as e:
            raise ContextOverflowError(f"context window exceeded: {e}") from e
        except litellm.BadRequestError as e:
            if _CONTEXT_OVERFLOW_RE.search(str(e)):
                raise ContextOverflowError(f"context window exceeded (inferred): {e}") from e
            raise ModelChannelError(f"LLM call failed: {e}") from e
        except Exception as e:
            raise ModelChannelError(f"LLM call failed: {e}") from e

        tool_calls = [
            ToolCallRequest(
                id=slot["id"] or ToolCallRequest.new(slot["name"]).id,
                name=slot["name"],
                arguments=slot["arguments"] or "{}",
            )
            for _, slot in sorted(calls.items())
        ]
        yield ModelTurn(
            content="".join(text_parts), tool_calls=tool_calls, finish_reason=finish_reason
        )


def _accumulate_tool_call(calls: dict[int, dict], tc) -> None:
    """Merge one streamed tool-call fragment into its slot (keyed by index)."""
    index = getattr(tc, "index", None)
    if index is None:
        index = len(calls)
    slot = calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if getattr(tc, "id", None):
        slot["id"] = tc.id
    fn = getattr(tc, "function", None)
    if fn is None:
        return
    if getattr(fn, "name", None):
        slot["name"] += fn.name
    if getattr(fn, "arguments", None):
        slot["arguments"] += fn.arguments
