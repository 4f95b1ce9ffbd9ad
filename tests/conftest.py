"""
Shared pytest fixtures.

Every test that touches the database or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests
are fully isolated from each other and from the real analysis.db.

Also provides in-memory doubles for the status store and the providers so
orchestrator / worker-pool tests never hit SQLite or the network.
"""
from __future__ import annotations

import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "analysis.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    yield data


# ── Test doubles ───────────────────────────────────────────────────────────────

class MemoryStatusStore:
    """
    In-memory StatusStoreAdapter with the same forward-only transition rule
    as the SQLite store. Records every status it accepted, in order.
    """

    def __init__(self):
        import database
        self._db = database
        self.uploads: dict = {}
        self.history: dict[str, list[str]] = {}

    def add(self, upload_id: str, image_handle: str = "item.jpg", original_name: str = "item.jpg"):
        now = datetime.now(timezone.utc)
        self.uploads[upload_id] = self._db.Upload(
            upload_id=upload_id,
            image_handle=image_handle,
            original_name=original_name,
            status=self._db.UploadStatus.PENDING,
            analysis_result=None,
            error=None,
            created_at=now,
            updated_at=now,
        )
        self.history[upload_id] = ["pending"]
        return self.uploads[upload_id]

    async def get(self, upload_id: str):
        return self.uploads.get(upload_id)

    async def update(self, upload_id: str, patch: dict) -> bool:
        upload = self.uploads.get(upload_id)
        if upload is None:
            return False
        changes = dict(patch)
        if "status" in changes:
            new = self._db.UploadStatus(changes["status"])
            if upload.status not in self._db._ALLOWED_PREDECESSORS[new]:
                return False
            changes["status"] = new
            self.history[upload_id].append(new.value)
        self.uploads[upload_id] = replace(upload, updated_at=datetime.now(timezone.utc), **changes)
        return True


class ScriptedProvider:
    """AnalysisProvider double that returns (or raises) a scripted sequence of outcomes."""

    def __init__(self, name: str, outcomes: list, model_id: str = "test-model"):
        self.name = name
        self.model_id = model_id
        self._outcomes = list(outcomes)
        self.calls: list[tuple[str, str]] = []

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    async def analyze(self, image_path: str, original_name: str = ""):
        self.calls.append((image_path, original_name))
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def check_health(self) -> dict:
        return {"is_healthy": True, "model": self.model_id}


@pytest.fixture
def memory_store() -> MemoryStatusStore:
    return MemoryStatusStore()


@pytest.fixture
def sample_image(tmp_path) -> Path:
    """A tiny file with a .png extension; providers never decode the bytes."""
    path = tmp_path / "bottle.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nfake-image-bytes")
    return path


STRUCTURED_PAYLOAD = """```json
{
  "itemName": "Plastic water bottle",
  "itemCategory": "plastic",
  "description": "A clear PET bottle with a screw cap.",
  "recommendations": {
    "recycle": {
      "possible": true,
      "instructions": "Rinse, crush and put the cap back on.",
      "locations": [{"name": "City Depot", "address": "1 Main St", "distance": 3}]
    },
    "reuse": {
      "possible": true,
      "ideas": [{"title": "Planter", "description": "Cut in half and fill with soil", "difficulty": "medium"}]
    },
    "donate": {"possible": false, "organizations": []}
  },
  "environmental": {"carbonFootprint": 0.08, "carbonSaved": 0.05, "wasteReduction": 0.02, "energySaved": 0.3}
}
```"""


@pytest.fixture
def structured_payload() -> str:
    return STRUCTURED_PAYLOAD


@pytest.fixture
def sleeps(monkeypatch):
    """Record asyncio.sleep delays (backoff, cooldown) without actually waiting."""
    import asyncio
    real_sleep = asyncio.sleep
    delays: list[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays
