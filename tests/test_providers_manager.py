"""
Tests for providers/manager.py.

Covers:
  - build_governor(): limits come from config
  - build_primary(): raises without a key
  - build_fallback(): None when disabled
  - build_orchestrator(): wires the optional fallback once
  - check_all_health(): per-role report, graceful degradation
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

import config
import providers.manager as manager_mod
from orchestrator import AnalysisOrchestrator
from providers.base import AnalysisProvider, ProviderUnavailableError
from providers.fallback_provider import FallbackProvider
from providers.manager import (
    build_fallback,
    build_governor,
    build_orchestrator,
    build_primary,
    check_all_health,
)
from providers.primary_provider import PrimaryProvider


def make_provider(name: str, model: str, health=None, error=None) -> AnalysisProvider:
    p = MagicMock(spec=AnalysisProvider)
    p.name = name
    p.model_id = model
    p.full_name = f"{name}/{model}"
    p.check_health = AsyncMock(return_value=health, side_effect=error)
    return p


@pytest.fixture
def configured(monkeypatch):
    """A complete configuration with both providers enabled."""
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", "sk-or-test")
    monkeypatch.setattr(config, "FALLBACK_ENABLED", True)
    monkeypatch.setattr(config, "FALLBACK_ON_PROVIDER_ERROR", True)
    monkeypatch.setattr(config, "RATE_LIMIT_COOLDOWN_SECS", 1.5)


class TestBuilders:
    def test_governor_from_config(self, monkeypatch):
        monkeypatch.setattr(config, "RATE_MAX_CONCURRENT", 4)
        monkeypatch.setattr(config, "RATE_MIN_SPACING_MS", 250)
        monkeypatch.setattr(config, "RATE_QUOTA", 20)
        gov = build_governor()
        assert gov.max_concurrent == 4
        assert gov.min_spacing == pytest.approx(0.25)
        assert gov.quota == 20

    def test_primary_requires_key(self, monkeypatch):
        monkeypatch.setattr(config, "OPENROUTER_API_KEY", None)
        with pytest.raises(ProviderUnavailableError):
            build_primary(build_governor())

    def test_primary_built(self, configured):
        assert isinstance(build_primary(build_governor()), PrimaryProvider)

    def test_fallback_disabled(self, monkeypatch):
        monkeypatch.setattr(config, "FALLBACK_ENABLED", False)
        assert build_fallback() is None

    def test_fallback_enabled(self, configured, monkeypatch):
        monkeypatch.setattr(config, "FALLBACK_MODEL", "llava")
        fallback = build_fallback()
        assert isinstance(fallback, FallbackProvider)
        assert fallback.model_id == "llava"

    def test_orchestrator_with_fallback(self, configured, memory_store):
        orch = build_orchestrator(memory_store)
        assert isinstance(orch, AnalysisOrchestrator)
        assert isinstance(orch.primary, PrimaryProvider)
        assert isinstance(orch.fallback, FallbackProvider)
        assert orch.cooldown_secs == 1.5
        assert orch.fallback_on_failure is True

    def test_orchestrator_without_fallback(self, configured, monkeypatch, memory_store):
        monkeypatch.setattr(config, "FALLBACK_ENABLED", False)
        monkeypatch.setattr(config, "FALLBACK_ON_PROVIDER_ERROR", False)
        orch = build_orchestrator(memory_store)
        assert orch.fallback is None
        assert orch.fallback_on_failure is False

    def test_orchestrator_requires_primary_key(self, monkeypatch, memory_store):
        monkeypatch.setattr(config, "OPENROUTER_API_KEY", "")
        with pytest.raises(ProviderUnavailableError):
            build_orchestrator(memory_store)


def test_module_has_no_provider_cache():
    assert not hasattr(manager_mod, "_providers")


class TestEnvBool:
    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("yes", True), ("anything", True),
        ("false", False), ("0", False), ("no", False), ("OFF", False),
    ])
    def test_values(self, monkeypatch, raw, expected):
        monkeypatch.setenv("FALLBACK_ENABLED", raw)
        assert config._env_bool("FALLBACK_ENABLED") is expected

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("FALLBACK_ENABLED", raising=False)
        assert config._env_bool("FALLBACK_ENABLED") is True
        assert config._env_bool("FALLBACK_ENABLED", default=False) is False


@pytest.mark.asyncio
class TestHealth:
    async def test_both_healthy(self):
        primary = make_provider("openrouter", "m", health={"is_healthy": True, "model": "m"})
        fallback = make_provider("ollama", "minicpm-v", health={"is_healthy": True, "model": "minicpm-v"})
        report = await check_all_health(primary, fallback)
        assert report["primary"]["is_healthy"] is True
        assert report["fallback"]["is_healthy"] is True

    async def test_no_fallback_configured(self):
        primary = make_provider("openrouter", "m", health={"is_healthy": True, "model": "m"})
        report = await check_all_health(primary, None)
        assert report["fallback"] == {"is_healthy": False, "error": "no fallback configured"}

    async def test_raising_check_is_reported(self):
        primary = make_provider("openrouter", "m", error=RuntimeError("boom"))
        report = await check_all_health(primary)
        assert report["primary"]["is_healthy"] is False
        assert report["primary"]["error"] == "boom"
