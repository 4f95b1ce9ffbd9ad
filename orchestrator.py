"""
orchestrator.py — drives one upload from `pending` to a terminal status.

  processing → primary ─┬─ Success ───────────────→ normalize → completed
                        ├─ RateLimited → cooldown → primary once more
                        └─ Failure / still limited → fallback ─┬─ Success → completed
                                                               └─ else ──→ failed

The fallback is tried when the primary is still throttled after the cooldown
retry, and (when fallback_on_failure is set) when it failed for any other
reason. If the fallback also fails, the primary's error is the one recorded:
it is the root cause an operator needs to see.

Store errors are not handled here; they propagate to the worker pool, which
owns job retries.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from database import StatusStoreAdapter, UploadStatus
from normalizer import normalize
from providers.base import (
    AnalysisProvider, Failure, FailureKind, ProviderCallOutcome, RateLimited, Success,
)

logger = logging.getLogger(__name__)

NO_FALLBACK_SUFFIX = " (no fallback configured)"


class AnalysisOrchestrator:

    def __init__(
        self,
        store: StatusStoreAdapter,
        primary: AnalysisProvider,
        fallback: Optional[AnalysisProvider] = None,
        cooldown_secs: float = 5.0,
        fallback_on_failure: bool = True,
    ) -> None:
        self._store = store
        self._primary = primary
        self._fallback = fallback
        self.cooldown_secs = cooldown_secs
        self.fallback_on_failure = fallback_on_failure
        self._in_flight: set[str] = set()

    @property
    def primary(self) -> AnalysisProvider:
        return self._primary

    @property
    def fallback(self) -> Optional[AnalysisProvider]:
        return self._fallback

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def run(
        self,
        upload_id: str,
        image_path: str,
        original_name: str = "",
    ) -> Optional[UploadStatus]:
        """
        Analyse one upload and persist the outcome.
        Returns the final status, or None when the run was skipped
        (already running, already terminal, or unknown id).
        """
        if upload_id in self._in_flight:
            logger.info("Upload %s: analysis already running, skipping", upload_id)
            return None

        self._in_flight.add(upload_id)
        try:
            return await self._run(upload_id, image_path, original_name)
        finally:
            self._in_flight.discard(upload_id)

    async def _run(self, upload_id: str, image_path: str, original_name: str) -> Optional[UploadStatus]:
        upload = await self._store.get(upload_id)
        if upload is None:
            logger.warning("Upload %s: not found, skipping", upload_id)
            return None
        if upload.status.is_terminal:
            logger.info("Upload %s: already %s, skipping", upload_id, upload.status.value)
            return None

        t0 = time.monotonic()
        if not await self._store.update(upload_id, {"status": UploadStatus.PROCESSING.value}):
            logger.warning("Upload %s: could not mark processing, skipping", upload_id)
            return None

        outcome = await self._analyse(upload_id, image_path, original_name)

        if isinstance(outcome, Success):
            try:
                result = normalize(outcome.raw_payload).with_timing(
                    int((time.monotonic() - t0) * 1000), outcome.provider,
                )
            except Exception as exc:
                logger.exception("Upload %s: normalisation failed", upload_id)
                return await self._finish_failed(upload_id, f"Failed to process analysis result: {exc}")

            logger.info(
                "Upload %s: completed via %s (%s, confidence=%.2f, %dms)",
                upload_id, result.provider, result.parse_path.value,
                result.confidence, result.processing_time_ms,
            )
            return await self._finish(upload_id, {
                "status": UploadStatus.COMPLETED.value,
                "analysis_result": result.to_dict(),
                "error": None,
            })

        return await self._finish_failed(upload_id, outcome.error)

    # ── Provider sequencing ───────────────────────────────────────────────────

    async def _analyse(self, upload_id: str, image_path: str, original_name: str) -> ProviderCallOutcome:
        """Primary, one cooldown retry when throttled, then the fallback."""
        first = await self._call(self._primary, image_path, original_name)
        outcome = first

        if isinstance(outcome, RateLimited):
            logger.warning(
                "Upload %s: primary rate limited, cooling down %.1fs before one more try",
                upload_id, self.cooldown_secs,
            )
            await asyncio.sleep(self.cooldown_secs)
            outcome = await self._call(self._primary, image_path, original_name)

        if isinstance(outcome, Success):
            return outcome

        wants_fallback = isinstance(outcome, RateLimited) or self.fallback_on_failure
        if not wants_fallback:
            return outcome
        if self._fallback is None:
            return Failure(outcome.error + NO_FALLBACK_SUFFIX, provider=outcome.provider)

        logger.info("Upload %s: primary failed (%s), trying fallback %s",
                    upload_id, outcome.error, self._fallback.full_name)
        fallback_outcome = await self._call(self._fallback, image_path, original_name)
        if isinstance(fallback_outcome, Success):
            return fallback_outcome

        logger.error("Upload %s: fallback failed too: %s", upload_id, fallback_outcome.error)
        return first

    async def _call(self, provider: AnalysisProvider, image_path: str, original_name: str) -> ProviderCallOutcome:
        try:
            return await provider.analyze(image_path, original_name)
        except Exception as exc:
            logger.exception("[%s] Unexpected error during analysis", provider.full_name)
            return Failure(f"[{provider.full_name}] {exc}", FailureKind.PROVIDER, provider.full_name)

    # ── Persistence ───────────────────────────────────────────────────────────

    async def _finish_failed(self, upload_id: str, error: str) -> Optional[UploadStatus]:
        logger.error("Upload %s: failed: %s", upload_id, error)
        return await self._finish(upload_id, {
            "status": UploadStatus.FAILED.value,
            "error": error,
            "analysis_result": None,
        })

    async def abandon(self, upload_id: str, error: str) -> bool:
        """
        Best-effort `failed` write for an upload whose job was given up on.
        Returns True when the store accepted it. Store errors are logged, not raised.
        """
        try:
            accepted = await self._store.update(upload_id, {
                "status": UploadStatus.FAILED.value,
                "error": error,
                "analysis_result": None,
            })
        except Exception:
            logger.exception("Upload %s: could not record abandoned job", upload_id)
            return False
        if not accepted:
            logger.warning("Upload %s: abandoned job left in its current status", upload_id)
        return accepted

    async def _finish(self, upload_id: str, patch: dict) -> Optional[UploadStatus]:
        if await self._store.update(upload_id, patch):
            return UploadStatus(patch["status"])
        current = await self._store.get(upload_id)
        return current.status if current else None
