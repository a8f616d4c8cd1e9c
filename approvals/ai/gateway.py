"""
Bank Approval Workflow Service
LLM provider abstraction.

Used by the LLM-assisted validator.  Providers share one ``chat`` contract so
the validator never imports a vendor SDK directly and tests can hand in a
scripted provider.

Usage:
    from approvals.ai.gateway import AnthropicProvider
    provider = AnthropicProvider(api_key=app.config["ANTHROPIC_API_KEY"])
    reply = provider.chat([{"role": "user", "content": "…"}],
                          model="claude-sonnet-4-5-20250929")
    reply["content"]
"""

import logging
import time
from abc import ABC, abstractmethod

from approvals.core.exceptions import RetryableError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    name = "abstract"

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    name = "anthropic"

    def __init__(self, api_key: str):
        self.api_key = api_key
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "claude-sonnet-4-5-20250929", **kwargs) -> dict:
        client = self._get_client()

        # Separate system message
        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = m["content"]
            else:
                chat_messages.append(m)

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 4096),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if system_msg:
            params["system"] = system_msg
        if kwargs.get("timeout"):
            params["timeout"] = kwargs["timeout"]

        import anthropic

        t0 = time.perf_counter()
        try:
            response = client.messages.create(**params)
        except (anthropic.APIConnectionError, anthropic.RateLimitError,
                anthropic.InternalServerError) as exc:
            raise RetryableError(f"Anthropic call failed: {exc}") from exc
        logger.debug("Anthropic chat model=%s in=%d out=%d (%.0fms)",
                     model, response.usage.input_tokens, response.usage.output_tokens,
                     (time.perf_counter() - t0) * 1000)

        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }
