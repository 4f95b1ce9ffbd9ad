"""
main.py — Single entry point.

  python main.py IMAGE [IMAGE ...]    analyse photos, print the final records
  python main.py --health             probe the configured providers

Architecture:
  asyncio event loop
    ├── AnalysisWorkerPool (ANALYSIS_WORKERS tasks)
    │     └── AnalysisOrchestrator → primary (rate governed) → fallback
    └── this coroutine: enqueue uploads, poll the store until all are terminal
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
import uuid
from pathlib import Path

import config

# Log file lives in the same data/ directory as the database so that a single
# volume mount captures both.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler(str(_data_dir / "analysis.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECS = 0.5


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sustainability analysis for item photos.")
    parser.add_argument("images", nargs="*", help="image files to analyse")
    parser.add_argument("--health", action="store_true", help="check provider health and exit")
    args = parser.parse_args(argv)
    if not args.health and not args.images:
        parser.error("give at least one IMAGE, or --health")
    return args


async def _wait_terminal(store, pool, upload_ids: list[str], stop_event: asyncio.Event) -> list:
    """Poll the store until every upload is terminal or its job was given up (or we are stopped)."""
    while True:
        uploads = [await store.get(uid) for uid in upload_ids]
        given_up = {job.upload_id for job in pool.failures}
        if stop_event.is_set() or all(
            u is not None and (u.status.is_terminal or u.upload_id in given_up) for u in uploads
        ):
            return uploads
        await asyncio.sleep(POLL_INTERVAL_SECS)


def _upload_to_dict(upload) -> dict:
    return {
        "upload_id": upload.upload_id,
        "original_name": upload.original_name,
        "status": upload.status.value,
        "error": upload.error,
        "analysis_result": upload.analysis_result,
        "created_at": upload.created_at.isoformat(),
        "updated_at": upload.updated_at.isoformat(),
    }


async def run(argv: list[str]) -> int:
    args = _parse_args(argv)

    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as db
    try:
        await db.init_db()
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    # ── Provider stack, resolved once ─────────────────────────────────────────
    from providers.base import ProviderUnavailableError
    from providers.manager import build_orchestrator, check_all_health
    store = db.SqliteStatusStore()
    try:
        orchestrator = build_orchestrator(store)
    except ProviderUnavailableError as exc:
        logger.critical("%s", exc)
        return 2

    if args.health:
        report = await check_all_health(orchestrator.primary, orchestrator.fallback)
        print(json.dumps(report, indent=2))
        return 0 if report["primary"].get("is_healthy") else 1

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    from worker_pool import AnalysisWorkerPool, enqueue_upload
    pool = AnalysisWorkerPool(
        orchestrator,
        workers=config.ANALYSIS_WORKERS,
        max_attempts=config.ANALYSIS_JOB_MAX_ATTEMPTS,
        retry_delay=config.ANALYSIS_JOB_RETRY_DELAY_SECS,
    )
    pool.start()

    upload_ids = []
    for image in args.images:
        path = Path(image).resolve()
        upload = await enqueue_upload(pool, uuid.uuid4().hex, str(path), path.name)
        upload_ids.append(upload.upload_id)
        logger.info("Queued %s as upload %s", path.name, upload.upload_id)

    try:
        uploads = await _wait_terminal(store, pool, upload_ids, stop_event)
    finally:
        await pool.stop()

    logger.info("Pool stats: %s", pool.stats())
    print(json.dumps([_upload_to_dict(u) for u in uploads if u is not None], indent=2))
    return 0 if all(u is not None and u.status is db.UploadStatus.COMPLETED for u in uploads) else 1


def main() -> None:
    try:
        sys.exit(asyncio.run(run(sys.argv[1:])))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
