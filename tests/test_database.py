"""
Tests for database.py.

Covers:
  - DB path defaults to data/ subdirectory
  - Schema creation (init_db is idempotent)
  - Upload CRUD: create, get, duplicate ids
  - Forward-only status transitions enforced by update_upload
  - Patch merging and JSON round-trip of analysis_result
  - list_uploads / count_by_status
  - SqliteStatusStore adapter
"""
from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

import database as db
from database import UploadStatus


@pytest_asyncio.fixture(autouse=True)
async def init(tmp_data_dir):
    """Initialise the DB schema before every test."""
    await db.init_db()


# ── DB path ────────────────────────────────────────────────────────────────────

class TestDbPath:
    def test_db_path_inside_data_dir(self, tmp_data_dir):
        assert Path(db.DB_PATH).parent == tmp_data_dir


# ── init_db ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestInitDb:
    async def test_idempotent(self):
        """Calling init_db twice must not raise."""
        await db.init_db()
        await db.init_db()

    async def test_db_file_created(self):
        assert Path(db.DB_PATH).exists()


# ── Upload CRUD ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestUploads:
    async def test_create_starts_pending(self):
        upload = await db.create_upload("u1", "/tmp/u1.jpg", "u1.jpg")
        assert upload.status is UploadStatus.PENDING
        assert upload.image_handle == "/tmp/u1.jpg"
        assert upload.original_name == "u1.jpg"
        assert upload.analysis_result is None
        assert upload.error is None

    async def test_create_returns_the_stored_row(self):
        created = await db.create_upload("u0", "/tmp/u0.jpg", "u0.jpg")
        assert await db.get_upload("u0") == created

    async def test_create_duplicate_raises(self):
        await db.create_upload("dup", "a.jpg")
        with pytest.raises(ValueError, match="already exists"):
            await db.create_upload("dup", "b.jpg")

    async def test_get_unknown_returns_none(self):
        assert await db.get_upload("nope") is None

    async def test_update_unknown_returns_false(self):
        assert await db.update_upload("nope", {"status": "processing"}) is False

    async def test_unknown_patch_key_raises(self):
        await db.create_upload("u2", "a.jpg")
        with pytest.raises(ValueError, match="image_handle"):
            await db.update_upload("u2", {"image_handle": "b.jpg"})

    async def test_analysis_result_round_trips_as_json(self):
        await db.create_upload("u3", "a.jpg")
        await db.update_upload("u3", {"status": "processing"})
        result = {"item_name": "Jar", "confidence": 0.9, "recommendations": {"reuse": {"ideas": []}}}
        assert await db.update_upload("u3", {"status": "completed", "analysis_result": result})
        upload = await db.get_upload("u3")
        assert upload.status is UploadStatus.COMPLETED
        assert upload.analysis_result == result

    async def test_patch_without_status_keeps_status(self):
        await db.create_upload("u4", "a.jpg")
        assert await db.update_upload("u4", {"error": "note"})
        upload = await db.get_upload("u4")
        assert upload.status is UploadStatus.PENDING
        assert upload.error == "note"

    async def test_updated_at_moves_forward(self):
        created = await db.create_upload("u5", "a.jpg")
        await db.update_upload("u5", {"status": "processing"})
        upload = await db.get_upload("u5")
        assert upload.updated_at >= created.updated_at


# ── Transitions ────────────────────────────────────────────────────────────────

class TestStatusEnum:
    def test_terminal_flags(self):
        assert UploadStatus.COMPLETED.is_terminal
        assert UploadStatus.FAILED.is_terminal
        assert not UploadStatus.PENDING.is_terminal
        assert not UploadStatus.PROCESSING.is_terminal


@pytest.mark.asyncio
class TestTransitions:
    async def _processing(self, upload_id: str) -> None:
        await db.create_upload(upload_id, "a.jpg")
        assert await db.update_upload(upload_id, {"status": "processing"})

    async def test_pending_cannot_jump_to_completed(self):
        await db.create_upload("t1", "a.jpg")
        assert await db.update_upload("t1", {"status": "completed"}) is False
        assert (await db.get_upload("t1")).status is UploadStatus.PENDING

    async def test_completed_cannot_become_failed(self):
        await self._processing("t2")
        assert await db.update_upload("t2", {"status": "completed", "analysis_result": {"a": 1}})
        assert await db.update_upload("t2", {"status": "failed", "error": "late"}) is False
        upload = await db.get_upload("t2")
        assert upload.status is UploadStatus.COMPLETED
        assert upload.error is None

    async def test_failed_cannot_become_completed(self):
        await self._processing("t3")
        assert await db.update_upload("t3", {"status": "failed", "error": "boom"})
        assert await db.update_upload("t3", {"status": "completed"}) is False
        assert (await db.get_upload("t3")).status is UploadStatus.FAILED

    async def test_terminal_cannot_return_to_processing(self):
        await self._processing("t4")
        await db.update_upload("t4", {"status": "failed", "error": "boom"})
        assert await db.update_upload("t4", {"status": "processing"}) is False

    async def test_nothing_moves_back_to_pending(self):
        await self._processing("t5")
        assert await db.update_upload("t5", {"status": "pending"}) is False

    async def test_processing_is_reentrant(self):
        await self._processing("t6")
        assert await db.update_upload("t6", {"status": "processing"}) is True


# ── Listing ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestListing:
    async def test_count_by_status_zero_filled(self):
        counts = await db.count_by_status()
        assert counts == {"pending": 0, "processing": 0, "completed": 0, "failed": 0}

    async def test_count_and_filter(self):
        await db.create_upload("a", "a.jpg")
        await db.create_upload("b", "b.jpg")
        await db.update_upload("b", {"status": "processing"})

        counts = await db.count_by_status()
        assert counts["pending"] == 1
        assert counts["processing"] == 1

        pending = await db.list_uploads(UploadStatus.PENDING)
        assert [u.upload_id for u in pending] == ["a"]
        assert len(await db.list_uploads()) == 2


# ── Adapter ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSqliteStatusStore:
    async def test_get_and_update_delegate(self):
        store = db.SqliteStatusStore()
        await db.create_upload("s1", "a.jpg")
        assert await store.update("s1", {"status": "processing"}) is True
        upload = await store.get("s1")
        assert upload.status is UploadStatus.PROCESSING

    async def test_rejected_transition_returns_false(self):
        store = db.SqliteStatusStore()
        await db.create_upload("s2", "a.jpg")
        assert await store.update("s2", {"status": "failed"}) is False
