"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  uploads — one row per submitted photo and its analysis lifecycle

The analysis pipeline only ever talks to this module through the thin
StatusStoreAdapter at the bottom (get / update by upload id).

Status transitions are forward-only:
  pending → processing → completed | failed
update_upload() enforces that in the UPDATE's WHERE clause, so a late or
duplicate write can never move an upload backwards or replace one terminal
state with another.

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so a single volume mount
# captures both the DB and the log file.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "analysis.db")
_lock = asyncio.Lock()          # serialise schema creation


# ── Data models ───────────────────────────────────────────────────────────────

class UploadStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


# status being written → statuses it may replace
_ALLOWED_PREDECESSORS: dict[UploadStatus, tuple[UploadStatus, ...]] = {
    UploadStatus.PENDING:    (),
    UploadStatus.PROCESSING: (UploadStatus.PENDING, UploadStatus.PROCESSING),
    UploadStatus.COMPLETED:  (UploadStatus.PROCESSING, UploadStatus.COMPLETED),
    UploadStatus.FAILED:     (UploadStatus.PROCESSING, UploadStatus.FAILED),
}

_PATCHABLE = ("status", "error", "analysis_result")


@dataclass
class Upload:
    upload_id: str
    image_handle: str           # opaque path/reference understood by the image store
    original_name: str
    status: UploadStatus
    analysis_result: Optional[dict]
    error: Optional[str]
    created_at: datetime
    updated_at: datetime


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS uploads (
    upload_id       TEXT PRIMARY KEY,
    image_handle    TEXT NOT NULL,
    original_name   TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL DEFAULT 'pending',
    analysis_result TEXT,                 -- JSON, set only with status=completed
    error           TEXT,                 -- set only with status=failed
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_uploads_status ON uploads (status);
"""


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


def _row_to_upload(r: aiosqlite.Row) -> Upload:
    return Upload(
        upload_id=r["upload_id"],
        image_handle=r["image_handle"],
        original_name=r["original_name"],
        status=UploadStatus(r["status"]),
        analysis_result=json.loads(r["analysis_result"]) if r["analysis_result"] else None,
        error=r["error"],
        created_at=datetime.fromisoformat(r["created_at"]),
        updated_at=datetime.fromisoformat(r["updated_at"]),
    )


# ── Upload operations ─────────────────────────────────────────────────────────

async def create_upload(upload_id: str, image_handle: str, original_name: str = "") -> Upload:
    """
    Insert a new upload in the pending state.
    Raises ValueError if the id already exists.
    """
    created = datetime.now(timezone.utc)
    now = created.isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT 1 FROM uploads WHERE upload_id = ?", (upload_id,)) as cur:
            if await cur.fetchone():
                raise ValueError(f"Upload '{upload_id}' already exists.")
        await db.execute(
            """INSERT INTO uploads
               (upload_id, image_handle, original_name, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (upload_id, image_handle, original_name, UploadStatus.PENDING.value, now, now),
        )
        await db.commit()

    return Upload(
        upload_id=upload_id,
        image_handle=image_handle,
        original_name=original_name,
        status=UploadStatus.PENDING,
        analysis_result=None,
        error=None,
        created_at=created,
        updated_at=created,
    )


async def get_upload(upload_id: str) -> Optional[Upload]:
    """Return the upload with this id, or None."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM uploads WHERE upload_id = ?", (upload_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_upload(row) if row else None


async def update_upload(upload_id: str, patch: dict) -> bool:
    """
    Merge the patched fields (status, error, analysis_result) into one upload
    with a single UPDATE statement.

    When the patch carries a status, the write only lands if the current
    status is a legal predecessor. Returns False for unknown ids and
    rejected transitions.
    """
    unknown = set(patch) - set(_PATCHABLE)
    if unknown:
        raise ValueError(f"Cannot patch upload field(s): {', '.join(sorted(unknown))}")

    assignments: list[str] = []
    params: list = []
    for column in _PATCHABLE:
        if column not in patch:
            continue
        value = patch[column]
        if column == "status":
            value = UploadStatus(value).value
        elif column == "analysis_result" and value is not None:
            value = json.dumps(value)
        assignments.append(f"{column} = ?")
        params.append(value)

    assignments.append("updated_at = ?")
    params.append(datetime.now(timezone.utc).isoformat())

    sql = f"UPDATE uploads SET {', '.join(assignments)} WHERE upload_id = ?"
    params.append(upload_id)

    if "status" in patch:
        allowed = _ALLOWED_PREDECESSORS[UploadStatus(patch["status"])]
        if not allowed:
            return False
        sql += f" AND status IN ({', '.join('?' for _ in allowed)})"
        params.extend(s.value for s in allowed)

    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(sql, params)
        await db.commit()
        updated = cursor.rowcount > 0

    if not updated:
        logger.warning("Upload %s: update rejected (patch keys=%s)", upload_id, sorted(patch))
    return updated


async def list_uploads(status: Optional[UploadStatus] = None, limit: int = 100) -> list[Upload]:
    """Return uploads newest-first, optionally filtered by status."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        if status is None:
            query, params = "SELECT * FROM uploads ORDER BY created_at DESC LIMIT ?", (limit,)
        else:
            query = "SELECT * FROM uploads WHERE status = ? ORDER BY created_at DESC LIMIT ?"
            params = (UploadStatus(status).value, limit)
        async with db.execute(query, params) as cur:
            rows = await cur.fetchall()
    return [_row_to_upload(r) for r in rows]


async def count_by_status() -> dict[str, int]:
    """Return {status: count} for every status, zero-filled."""
    counts = {s.value: 0 for s in UploadStatus}
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT status, COUNT(*) FROM uploads GROUP BY status") as cur:
            for status, n in await cur.fetchall():
                counts[status] = n
    return counts


# ── Status store adapter ──────────────────────────────────────────────────────

class StatusStoreAdapter(ABC):
    """The only view of the record store the analysis pipeline depends on."""

    @abstractmethod
    async def get(self, upload_id: str) -> Optional[Upload]:
        ...

    @abstractmethod
    async def update(self, upload_id: str, patch: dict) -> bool:
        """Atomically merge partial fields. Returns False if the write was rejected."""
        ...


class SqliteStatusStore(StatusStoreAdapter):
    """StatusStoreAdapter over the module-level aiosqlite functions above."""

    async def get(self, upload_id: str) -> Optional[Upload]:
        return await get_upload(upload_id)

    async def update(self, upload_id: str, patch: dict) -> bool:
        return await update_upload(upload_id, patch)
