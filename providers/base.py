"""
Shared types and base classes for the analysis providers.

Every provider answers the same question — "what is this item and how can it
be recycled, reused or donated?" — and reports the answer as a
ProviderCallOutcome. Providers never parse the model's text; that is
normalizer.py's job.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import aiohttp
import openai

from image_store import ImageNotFoundError, ImageStore, LocalImageStore

logger = logging.getLogger(__name__)

# ── Prompt (shared across all providers) ──────────────────────────────────────

ANALYSIS_PROMPT = """Identify the item in this image and explain how it can be managed sustainably.

Return ONLY a valid JSON object — no markdown, no prose outside the object.

JSON schema:
{
  "itemName":     "short name of the item",
  "itemCategory": "plastic | metal | paper | glass | electronic | textile | organic | other",
  "description":  "one or two sentences describing the item and its materials",
  "recommendations": {
    "recycle": {
      "possible":     true,
      "instructions": "materials, preparation steps and the recycling process, step by step",
      "locations":    [{"name": "...", "address": "...", "distance": 0}]
    },
    "reuse": {
      "possible": true,
      "ideas":    [{"title": "...", "description": "...", "difficulty": "easy | medium | hard"}]
    },
    "donate": {
      "possible":      true,
      "organizations": [{"name": "...", "description": "..."}]
    }
  },
  "environmental": {
    "carbonFootprint": 0.0,
    "carbonSaved":     0.0,
    "wasteReduction":  0.0,
    "energySaved":     0.0
  }
}

Rules:
- carbonFootprint: estimated kg CO2 if the item is thrown away
- carbonSaved: kg CO2 avoided by the best disposition
- wasteReduction: kg of waste kept out of landfill; energySaved: kWh
- give up to 5 reuse ideas, each with concrete steps
- mention if specialised recycling centres are needed
"""


def build_prompt(original_name: str) -> str:
    if not original_name:
        return ANALYSIS_PROMPT
    return f"{ANALYSIS_PROMPT}\nImage filename: {original_name}"


# ── Image payload helpers ─────────────────────────────────────────────────────

_MIME_TYPES = {
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".gif":  "image/gif",
    ".webp": "image/webp",
    ".bmp":  "image/bmp",
}


def mime_type_for(path: str) -> str:
    """MIME type from the file extension; unknown extensions are sent as JPEG."""
    return _MIME_TYPES.get(Path(path).suffix.lower(), "image/jpeg")


def build_data_uri(image_bytes: bytes, path: str) -> str:
    b64 = base64.b64encode(image_bytes).decode()
    return f"data:{mime_type_for(path)};base64,{b64}"


def build_messages(data_uri: str, original_name: str) -> list[dict]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": build_prompt(original_name)},
                {"type": "image_url", "image_url": {"url": data_uri}},
            ],
        },
    ]


# ── Call outcomes ─────────────────────────────────────────────────────────────

class FailureKind(str, Enum):
    TRANSIENT = "transient"     # timeout, connection reset
    PROVIDER  = "provider"      # any other non-429 API error, malformed HTTP response
    IMAGE     = "image"         # the stored image could not be read


@dataclass(frozen=True)
class Success:
    raw_payload: str
    provider: str = ""


@dataclass(frozen=True)
class RateLimited:
    error: str
    attempts: int
    provider: str = ""


@dataclass(frozen=True)
class Failure:
    error: str
    kind: FailureKind = FailureKind.PROVIDER
    provider: str = ""


ProviderCallOutcome = Union[Success, RateLimited, Failure]


class ProviderUnavailableError(RuntimeError):
    """A provider cannot be constructed (missing credentials, bad configuration)."""


class MalformedResponseError(RuntimeError):
    """The provider answered 2xx but the body has no usable completion."""


# Errors a health probe may raise (see ChatVisionProvider._probe)
PROBE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError, ValueError)


# ── Abstract base ─────────────────────────────────────────────────────────────

class AnalysisProvider(ABC):
    """Base class all analysis providers must implement."""

    name: str           # e.g. "primary"
    model_id: str       # e.g. "google/gemini-2.0-flash-exp:free"

    @abstractmethod
    async def analyze(self, image_path: str, original_name: str = "") -> ProviderCallOutcome:
        """Run vision inference on the stored image. Never raises for per-call errors."""
        ...

    @abstractmethod
    async def check_health(self) -> dict:
        """Return {"is_healthy": bool, "model": str, ...}."""
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"


class ChatVisionProvider(AnalysisProvider):
    """
    Common plumbing for OpenAI-compatible chat-completions providers:
    reading the image, building the multimodal request, one HTTP call,
    and mapping SDK exceptions onto outcomes.
    """

    max_tokens: int = 4000
    temperature: float = 0.1

    def __init__(
        self,
        name: str,
        model: str,
        api_key: str,
        base_url: str,
        timeout: float,
        image_store: Optional[ImageStore] = None,
        default_headers: Optional[dict] = None,
    ) -> None:
        self.name = name
        self.model_id = model
        self.timeout = timeout
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._images = image_store or LocalImageStore()
        # Retry policy belongs to the provider classes, not the SDK
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self._base_url,
            timeout=timeout,
            max_retries=0,
            default_headers=default_headers,
        )

    async def _load_messages(self, image_path: str, original_name: str) -> list[dict]:
        image_bytes = await self._images.read(image_path)
        return build_messages(build_data_uri(image_bytes, image_path), original_name)

    async def _complete(self, messages: list[dict]) -> str:
        """One chat-completions call. SDK exceptions propagate to the caller."""
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=messages,
        )
        if not getattr(response, "choices", None):
            raise MalformedResponseError(f"[{self.full_name}] response has no choices")
        return response.choices[0].message.content or ""

    def _image_failure(self, exc: ImageNotFoundError | OSError) -> Failure:
        logger.error("[%s] Could not read image: %s", self.full_name, exc)
        return Failure(f"Failed to read image file: {exc}", FailureKind.IMAGE, self.full_name)

    def _failure_from(self, exc: Exception) -> Failure:
        """Map a non-429 error onto a Failure outcome."""
        if isinstance(exc, openai.APITimeoutError):
            kind, message = FailureKind.TRANSIENT, f"request timed out after {self.timeout:.0f}s"
        elif isinstance(exc, openai.APIConnectionError):
            kind, message = FailureKind.TRANSIENT, f"connection error: {exc}"
        elif isinstance(exc, openai.APIStatusError):
            kind, message = FailureKind.PROVIDER, f"HTTP {exc.status_code}: {exc.message}"
        else:
            kind, message = FailureKind.PROVIDER, str(exc) or type(exc).__name__
        logger.error("[%s] Failed (%s): %s", self.full_name, kind.value, message)
        return Failure(f"[{self.full_name}] {message}", kind, self.full_name)

    async def _probe(self, url: str, headers: Optional[dict] = None, timeout: float = 10) -> dict:
        """GET url and return its JSON body. Raises RuntimeError on non-200."""
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                headers=headers or {},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RuntimeError(f"{url} returned {resp.status}: {text[:200]}")
                return await resp.json()
