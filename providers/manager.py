"""
Provider Manager — builds the analysis stack once at startup.

  governor     — the single RateGovernor owned by the primary provider
  primary      — OpenRouter (required; refuses to start without a key)
  fallback     — local Ollama, or None when FALLBACK_ENABLED=false
  orchestrator — wires the above to a status store

Whether a fallback exists is decided here, once. Nothing downstream probes
for it at runtime: the orchestrator receives either a provider or None.

Environment toggles (see config.py):
  FALLBACK_ENABLED=true/false
  FALLBACK_ON_PROVIDER_ERROR=true/false
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import config
from database import StatusStoreAdapter
from image_store import ImageStore, LocalImageStore
from orchestrator import AnalysisOrchestrator
from providers.base import AnalysisProvider
from providers.fallback_provider import FallbackProvider
from providers.primary_provider import PrimaryProvider
from rate_governor import RateGovernor

logger = logging.getLogger(__name__)


def build_governor() -> RateGovernor:
    return RateGovernor(
        max_concurrent=config.RATE_MAX_CONCURRENT,
        min_spacing=config.RATE_MIN_SPACING_MS / 1000,
        quota=config.RATE_QUOTA,
        window_secs=config.RATE_QUOTA_WINDOW_SECS,
    )


def build_primary(governor: RateGovernor, image_store: Optional[ImageStore] = None) -> PrimaryProvider:
    """Raises ProviderUnavailableError when OPENROUTER_API_KEY is missing."""
    provider = PrimaryProvider(
        api_key=config.OPENROUTER_API_KEY,
        governor=governor,
        model=config.PRIMARY_MODEL,
        base_url=config.PRIMARY_BASE_URL,
        timeout=config.PRIMARY_TIMEOUT_SECS,
        max_attempts=config.PRIMARY_MAX_ATTEMPTS,
        initial_backoff=config.PRIMARY_INITIAL_BACKOFF_SECS,
        image_store=image_store,
    )
    logger.info("Loaded primary provider: %s", provider.full_name)
    return provider


def build_fallback(image_store: Optional[ImageStore] = None) -> Optional[FallbackProvider]:
    if not config.FALLBACK_ENABLED:
        logger.info("Skipped fallback provider (disabled by FALLBACK_ENABLED)")
        return None
    provider = FallbackProvider(
        base_url=config.FALLBACK_BASE_URL,
        model=config.FALLBACK_MODEL,
        api_key=config.FALLBACK_API_KEY,
        timeout=config.FALLBACK_TIMEOUT_SECS,
        image_store=image_store,
    )
    logger.info("Loaded fallback provider: %s", provider.full_name)
    return provider


def build_orchestrator(
    store: StatusStoreAdapter,
    image_store: Optional[ImageStore] = None,
) -> AnalysisOrchestrator:
    """Resolve every provider once and return a ready orchestrator."""
    images = image_store or LocalImageStore(config.UPLOAD_DIR)
    primary = build_primary(build_governor(), images)
    fallback = build_fallback(images)
    return AnalysisOrchestrator(
        store,
        primary,
        fallback,
        cooldown_secs=config.RATE_LIMIT_COOLDOWN_SECS,
        fallback_on_failure=config.FALLBACK_ON_PROVIDER_ERROR,
    )


async def check_all_health(
    primary: AnalysisProvider,
    fallback: Optional[AnalysisProvider] = None,
) -> dict[str, dict]:
    """Probe every configured provider in parallel. Keyed by role."""
    targets: dict[str, AnalysisProvider] = {"primary": primary}
    if fallback is not None:
        targets["fallback"] = fallback

    async def _safe_check(provider: AnalysisProvider) -> dict:
        try:
            return await provider.check_health()
        except Exception as exc:
            logger.error("[%s] Failed: %s", provider.full_name, exc)
            return {"is_healthy": False, "model": provider.model_id, "error": str(exc)}

    results = await asyncio.gather(*[_safe_check(p) for p in targets.values()])
    report = dict(zip(targets, results))
    if fallback is None:
        report["fallback"] = {"is_healthy": False, "error": "no fallback configured"}
    return report
