import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from cosmos.services.errors import InferenceError
from cosmos.services.utils import parse_model_json
from cosmos.settings import Settings

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    FAST = "fast"
    DEEP = "deep"


class InferenceGateway:
    """Single-call wrapper around the Messages API with retry and backoff.

    A failed attempt is any exception raised by the call (transport, HTTP
    status, unreadable body) or a response without a text content block. Attempts are spaced by
    ``llm_retry_base_delay * 2**attempt`` seconds; the last error is raised
    as :class:`InferenceError` once ``llm_max_retries`` retries are spent.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.llm_timeout_seconds)
        self._sleep = sleep

    async def __aenter__(self) -> "InferenceGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict:
        if not self.settings.anthropic_api_key:
            raise InferenceError("ANTHROPIC_API_KEY is not set.")
        return {
            "x-api-key": self.settings.anthropic_api_key,
            "anthropic-version": self.settings.anthropic_version,
            "content-type": "application/json",
        }

    def model_for(self, tier: Tier) -> str:
        if Tier(tier) is Tier.FAST:
            return self.settings.llm_fast_model
        return self.settings.llm_deep_model

    async def _attempt(self, headers: dict, body: dict) -> str:
        resp = await self._client.post(f"{self.settings.anthropic_base_url}/messages", headers=headers, json=body)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise InferenceError("Inference response is not a JSON object.")
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                return block["text"]
        raise InferenceError("No text content in inference response.")

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int = 16000,
        tier: Tier = Tier.DEEP,
    ) -> str:
        headers = self._headers()
        body = {
            "model": self.model_for(tier),
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
        }
        attempts = self.settings.llm_max_retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                return await self._attempt(headers, body)
            except Exception as exc:
                last_error = exc
                logger.warning("Inference attempt %d/%d failed: %s", attempt + 1, attempts, exc)
                if attempt < attempts - 1:
                    delay = self.settings.llm_retry_base_delay * (2**attempt)
                    logger.info("Retrying inference call in %.1fs", delay)
                    await self._sleep(delay)
        raise InferenceError(f"Inference call failed after {attempts} attempts: {last_error}") from last_error

    async def complete_json(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int = 16000,
        tier: Tier = Tier.DEEP,
    ) -> Any:
        text = await self.complete(system_prompt, user_message, max_tokens=max_tokens, tier=tier)
        return parse_model_json(text)
