"""
Fallback analysis provider — a local vision model served by Ollama.

Ollama exposes an OpenAI-compatible endpoint at <host>/v1, so the request is
the same chat-completions payload the primary sends. Volume here is low
(only uploads the primary could not finish), so there is no rate governor
and no backoff: one attempt, reported as a ProviderCallOutcome.

Setup:
  ollama pull minicpm-v
  FALLBACK_BASE_URL=http://localhost:11434   (default)
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import openai

from image_store import ImageNotFoundError, ImageStore
from providers.base import (
    PROBE_ERRORS, ChatVisionProvider, MalformedResponseError, ProviderCallOutcome,
    RateLimited, Success,
)

logger = logging.getLogger(__name__)


class FallbackProvider(ChatVisionProvider):

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "minicpm-v",
        api_key: str = "ollama",          # Ollama ignores it, the SDK requires one
        timeout: float = 120.0,
        image_store: Optional[ImageStore] = None,
    ) -> None:
        self._host = base_url.rstrip("/")
        super().__init__(
            name="ollama",
            model=model,
            api_key=api_key,
            base_url=f"{self._host}/v1",
            timeout=timeout,
            image_store=image_store,
        )

    async def analyze(self, image_path: str, original_name: str = "") -> ProviderCallOutcome:
        try:
            messages = await self._load_messages(image_path, original_name)
        except (ImageNotFoundError, OSError) as exc:
            return self._image_failure(exc)

        t0 = time.monotonic()
        try:
            raw = await self._complete(messages)
        except openai.RateLimitError as exc:
            logger.warning("[%s] Rate limited: %s", self.full_name, exc.message)
            return RateLimited(
                error=f"[{self.full_name}] Rate limited by provider: {exc.message}",
                attempts=1,
                provider=self.full_name,
            )
        except (openai.APIError, MalformedResponseError) as exc:
            return self._failure_from(exc)

        logger.info(
            "[%s] OK — latency=%dms chars=%d",
            self.full_name, int((time.monotonic() - t0) * 1000), len(raw),
        )
        return Success(raw_payload=raw, provider=self.full_name)

    async def check_health(self) -> dict:
        """Is the Ollama server up, and is our model pulled?"""
        try:
            data = await self._probe(f"{self._host}/api/tags", timeout=5)
        except PROBE_ERRORS as exc:
            logger.error("[%s] Health check failed: %s", self.full_name, exc)
            return {"is_healthy": False, "model": self.model_id, "error": str(exc)}

        models = [m.get("name", "") for m in data.get("models", [])]
        installed = any(name.split(":")[0] == self.model_id.split(":")[0] for name in models)
        result = {"is_healthy": installed, "model": self.model_id, "models": models}
        if not installed:
            result["error"] = f"model '{self.model_id}' is not pulled on {self._host}"
        return result
