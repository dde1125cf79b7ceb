"""Anthropic API client abstraction."""
import json
from dataclasses import dataclass
from typing import AsyncIterator

from anthropic import AsyncAnthropic

from . import config
from .models import TokenUsage


@dataclass
class LLMResponse:
    text: str
    usage: TokenUsage


@dataclass
class LLMChunk:
    """Piece of a streamed response: a text delta, or the final usage."""
    text: str = ""
    usage: TokenUsage | None = None


def _usage_from(response_usage) -> TokenUsage:
    if response_usage is None:
        return TokenUsage()
    return TokenUsage.from_counts(
        getattr(response_usage, "input_tokens", 0) or 0,
        getattr(response_usage, "output_tokens", 0) or 0,
    )


class APIClient:
    """Wrapper around the Anthropic API.

    Retries and timeouts are delegated to the SDK client.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        max_retries: int = 3,
        timeout: float = 120.0,
    ):
        api_key = api_key or config.ANTHROPIC_API_KEY
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")
        self.client = AsyncAnthropic(api_key=api_key, max_retries=max_retries, timeout=timeout)
        self.model = model or config.MODEL

    async def call(
        self,
        prompt: str,
        system: str | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> LLMResponse:
        """Send a single-turn prompt and return the text with its token usage."""
        kwargs = {}
        if system:
            kwargs["system"] = system
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return LLMResponse(text=text.strip(), usage=_usage_from(response.usage))

    async def stream(
        self,
        prompt: str,
        system: str | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> AsyncIterator[LLMChunk]:
        """Stream text deltas, followed by one chunk carrying the usage."""
        kwargs = {}
        if system:
            kwargs["system"] = system
        async with self.client.messages.stream(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        ) as stream:
            async for text in stream.text_stream:
                yield LLMChunk(text=text)
            final = await stream.get_final_message()
        yield LLMChunk(usage=_usage_from(final.usage))


def _strip_code_fence(content: str) -> str:
    if not content.startswith("```"):
        return content
    parts = content.split("```")
    if len(parts) < 2:
        return content
    inner = parts[1]
    if inner[:4].lower() == "json":
        inner = inner[4:]
    return inner.strip()


def _first_balanced(content: str) -> str | None:
    """Shortest prefix whose braces and brackets balance, ignoring string contents."""
    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(content):
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return content[:i + 1]
    return None


def parse_json(content: str):
    """Parse JSON from an LLM response, tolerating code fences and trailing text."""
    content = _strip_code_fence(content.strip())

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    start = min((i for i in (content.find("{"), content.find("[")) if i >= 0), default=-1)
    if start > 0:
        content = content[start:]

    last_close = max(content.rfind("}"), content.rfind("]"))
    if last_close > 0:
        try:
            return json.loads(content[:last_close + 1])
        except json.JSONDecodeError:
            pass

    balanced = _first_balanced(content)
    if balanced:
        try:
            return json.loads(balanced)
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError(
        f"Could not parse JSON. Last 500 chars: {content[-500:]}",
        content,
        max(len(content) - 1, 0),
    )
