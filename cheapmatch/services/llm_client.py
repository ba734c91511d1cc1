"""
Thin async wrapper around the Anthropic Messages API.

Shared by the semantic verifier, the visual verifier and the keyword
extractor. Transport failures never propagate: `complete` returns None and
the caller substitutes its own fallback.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import anthropic

logger = logging.getLogger(__name__)

MessageContent = Union[str, List[Dict[str, Any]]]


class LLMClient:
    """
    Lazily-constructed Anthropic client with a hard per-call deadline.

    Cost Tracking:
        Token usage is accumulated from every response so callers can surface
        it via get_usage_stats().
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "claude-3-haiku-20240307",
        timeout: float = 15.0,
        client: Optional[Any] = None
    ):
        """
        Args:
            api_key: Anthropic API key; the client is disabled without one
            model: Model used for every call
            timeout: Deadline in seconds for a single call
            client: Pre-built client exposing `messages.create` (used by tests)
        """
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client
        self.enabled = client is not None or bool(api_key)
        self._total_tokens_used = 0
        self.calls = 0
        self.failures = 0

    @property
    def client(self) -> Any:
        """Lazy-load Anthropic client."""
        if self._client is None and self.enabled:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
            logger.info(f"Anthropic async client initialized for model {self.model}")
        return self._client

    async def complete(self, content: MessageContent, max_tokens: int = 256) -> Optional[str]:
        """
        Send a single user message and return the text of the reply.

        Returns:
            Reply text, or None when the client is disabled, the call fails or
            the deadline passes
        """
        if not self.enabled:
            return None

        self.calls += 1
        try:
            response = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": content}]
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"LLM call timed out after {self.timeout}s")
            return None
        except anthropic.APIError as e:
            self.failures += 1
            logger.warning(f"Anthropic API error: {e}")
            return None

        # Track token usage for cost monitoring
        usage = getattr(response, "usage", None)
        if usage is not None:
            input_tokens = getattr(usage, "input_tokens", 0) or 0
            output_tokens = getattr(usage, "output_tokens", 0) or 0
            self._total_tokens_used += input_tokens + output_tokens

        blocks = getattr(response, "content", None) or []
        texts = [getattr(block, "text", "") for block in blocks if getattr(block, "type", "text") == "text"]
        return "".join(texts).strip()

    def get_usage_stats(self) -> Dict[str, Any]:
        """Usage statistics for cost tracking."""
        return {
            "enabled": self.enabled,
            "model": self.model,
            "calls": self.calls,
            "failures": self.failures,
            "total_tokens_used": self._total_tokens_used
        }
