"""OpenAI chat client used for AI price extraction and verification."""

import json
import logging
import time
from collections import Counter
from typing import Any, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


class LLMService:
    """
    Thin wrapper around the chat completions API.

    The client is created on first use, so a deployment without an API key
    never builds one and AI strategies report themselves unavailable.
    Every reply is requested in JSON mode and parsed into a dict.
    """

    def __init__(self, model: Optional[str] = None):
        self.model = model or settings.llm_model
        self._client: Optional[AsyncOpenAI] = None
        self._calls: Counter = Counter()
        self._tokens: int = 0

    @property
    def available(self) -> bool:
        return bool(settings.openai_api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def complete(
        self,
        messages: list[dict],
        purpose: str = "general",
        json_mode: bool = False,
    ) -> str:
        """Run one chat completion at temperature 0 and return the reply text."""
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": settings.llm_max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        started = time.monotonic()
        try:
            response = await client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            metrics.llm_calls_total.labels(purpose=purpose, status="error").inc()
            logger.error(f"LLM call for {purpose} failed: {e}")
            raise
        finally:
            metrics.llm_call_duration_seconds.labels(purpose=purpose).observe(time.monotonic() - started)

        metrics.llm_calls_total.labels(purpose=purpose, status="ok").inc()
        self._calls[purpose] += 1
        usage = getattr(response, "usage", None)
        if usage is not None:
            self._tokens += usage.total_tokens or 0
        return response.choices[0].message.content or ""

    async def call_llm(self, prompt: str, system_prompt: str = "", purpose: str = "general") -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.complete(messages, purpose=purpose)

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        system_prompt: str = "",
        purpose: str = "general",
    ) -> Dict[str, Any]:
        """
        Ask for a JSON object shaped like `response_schema`.

        The schema is described to the model in the system message; the
        reply is not validated against it here, callers do that with their
        own pydantic models.

        Raises:
            ValueError: If the reply is not a JSON object
            OpenAIError: If the API call fails
        """
        system = (
            f"{system_prompt}\n\n" if system_prompt else ""
        ) + (
            f"Respond with valid JSON matching this schema: {json.dumps(response_schema, indent=2)}\n"
            "Return only the JSON object, no additional text."
        )
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        reply = await self.complete(messages, purpose=purpose, json_mode=True)
        return parse_json_response(reply)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "call_count": sum(self._calls.values()),
            "calls_by_purpose": dict(self._calls),
            "total_tokens": self._tokens,
            "model": self.model,
        }

    async def close(self):
        if self._client:
            await self._client.close()
            self._client = None


def parse_json_response(response_text: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences and prose."""
    text = (response_text or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    start, end = text.find("{"), text.rfind("}")
    if start > 0 and end > start:
        text = text[start:end + 1]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {text[:200]}")
        raise ValueError(f"Invalid JSON response from LLM: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("LLM response is not a JSON object")
    return data


llm_service = LLMService()
