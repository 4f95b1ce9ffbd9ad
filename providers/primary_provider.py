"""
Primary analysis provider — a hosted multimodal model behind OpenRouter's
OpenAI-compatible API (https://openrouter.ai).

Request shape (chat completions):
  POST {base_url}/chat/completions
  Authorization: Bearer <OPENROUTER_API_KEY>
  {"model": ..., "messages": [{"role": "user", "content": [
      {"type": "text", "text": <prompt>},
      {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}]}]}

Every call goes through the injected RateGovernor. HTTP 429 is retried here
with exponential backoff (2s, 4s, 8s, … by default) up to max_attempts;
any other error is reported immediately so the orchestrator can decide
whether to fall back.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import openai

from image_store import ImageNotFoundError, ImageStore
from providers.base import (
    PROBE_ERRORS, ChatVisionProvider, MalformedResponseError, ProviderCallOutcome,
    ProviderUnavailableError, RateLimited, Success,
)
from rate_governor import RateGovernor

logger = logging.getLogger(__name__)

_OR_BASE_URL = "https://openrouter.ai/api/v1"


class PrimaryProvider(ChatVisionProvider):

    def __init__(
        self,
        api_key: Optional[str],
        governor: RateGovernor,
        model: str = "google/gemini-2.0-flash-exp:free",
        base_url: str = _OR_BASE_URL,
        timeout: float = 120.0,
        max_attempts: int = 5,
        initial_backoff: float = 2.0,
        image_store: Optional[ImageStore] = None,
    ) -> None:
        if not api_key:
            raise ProviderUnavailableError(
                "OPENROUTER_API_KEY is not set — the primary analysis provider cannot start."
            )
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        super().__init__(
            name="openrouter",
            model=model,
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            image_store=image_store,
            default_headers={"X-Title": "Sustainability Photo Analysis"},
        )
        self._governor = governor
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff

    async def analyze(self, image_path: str, original_name: str = "") -> ProviderCallOutcome:
        try:
            messages = await self._load_messages(image_path, original_name)
        except (ImageNotFoundError, OSError) as exc:
            return self._image_failure(exc)

        delay = self.initial_backoff
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            t0 = time.monotonic()
            try:
                async with self._governor.slot():
                    raw = await self._complete(messages)
            except openai.RateLimitError as exc:
                last_error = exc.message
                if attempt == self.max_attempts:
                    break
                logger.warning(
                    "[%s] Rate limit hit (attempt %d/%d), retrying in %.1fs",
                    self.full_name, attempt, self.max_attempts, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
                continue
            except (openai.APIError, MalformedResponseError) as exc:
                return self._failure_from(exc)

            latency_ms = int((time.monotonic() - t0) * 1000)
            logger.info(
                "[%s] OK — attempt=%d latency=%dms chars=%d",
                self.full_name, attempt, latency_ms, len(raw),
            )
            return Success(raw_payload=raw, provider=self.full_name)

        logger.error("[%s] Still rate limited after %d attempts", self.full_name, self.max_attempts)
        return RateLimited(
            error=(
                f"[{self.full_name}] Rate limited by provider: too many retries "
                f"({self.max_attempts} attempts), last error: {last_error}"
            ),
            attempts=self.max_attempts,
            provider=self.full_name,
        )

    async def check_health(self) -> dict:
        """Ask the models endpoint whether our key is accepted."""
        try:
            await self._probe(
                f"{self._base_url}/models",
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except PROBE_ERRORS as exc:
            logger.error("[%s] Health check failed: %s", self.full_name, exc)
            return {"is_healthy": False, "model": self.model_id, "error": str(exc)}
        return {
            "is_healthy": True,
            "model": self.model_id,
            "message": "OpenRouter API is accessible",
            "governor": self._governor.stats(),
        }
