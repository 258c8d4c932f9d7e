"""
Unit tests for engine configuration.

Tests cover:
- Defaults and environment overrides
- Storage provider parsing
- Validation failures
- Backend factories for the in-memory backends
"""

import pytest

from dbaas.dataset_engine.config import (
    EngineConfig,
    ItemStorageConfig,
    JobBusBackend,
    KVBackend,
    SnapshotJobConfig,
    parse_providers,
)
from dbaas.dataset_engine.jobs import InMemoryJobBus, create_job_bus
from dbaas.dataset_engine.kv import InMemoryKV, create_kv_store
from dbaas.dataset_engine.storage import create_payload_store


class TestFromEnv:
    """Tests for EngineConfig.from_env."""

    def test_defaults(self, monkeypatch):
        for name in ("JOB_BUS_BACKEND", "KV_BACKEND", "ITEM_STORAGE_PROVIDERS", "SNAPSHOT_PAGE_SIZE"):
            monkeypatch.delenv(name, raising=False)
        config = EngineConfig.from_env()
        assert config.job_bus_backend == JobBusBackend.MEMORY
        assert config.kv_backend == KVBackend.MEMORY
        assert config.item_storage.providers == (("rds", 65536), ("s3", 67108864))
        assert config.snapshot.page_size == 50
        assert config.dataset_defaults.edit_schema is True

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("JOB_BUS_BACKEND", "KAFKA")
        monkeypatch.setenv("KV_BACKEND", "redis")
        monkeypatch.setenv("ITEM_STORAGE_PROVIDERS", "rds:1024, abase:4096")
        monkeypatch.setenv("SNAPSHOT_PAGE_SIZE", "7")
        monkeypatch.setenv("IMPORT_BULK_SIZE", "20")
        monkeypatch.setenv("DATASET_MULTI_MODAL", "true")
        config = EngineConfig.from_env()
        assert config.job_bus_backend == JobBusBackend.KAFKA
        assert config.kv_backend == KVBackend.REDIS
        assert config.item_storage.providers == (("rds", 1024), ("abase", 4096))
        assert config.snapshot.page_size == 7
        assert config.importer.bulk_size == 20
        assert config.dataset_defaults.multi_modal is True

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("JOB_BUS_BACKEND", "carrier-pigeon")
        with pytest.raises(ValueError, match="JOB_BUS_BACKEND"):
            EngineConfig.from_env()


class TestParseProviders:
    """Tests for parse_providers."""

    def test_parses_and_skips_empty(self):
        assert parse_providers("rds:10,,s3:20,") == (("rds", 10), ("s3", 20))

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_providers("rds")
        with pytest.raises(ValueError):
            parse_providers("rds:big")


class TestValidate:
    """Tests for EngineConfig.validate."""

    def test_default_valid(self):
        EngineConfig().validate()

    def test_unknown_provider(self):
        config = EngineConfig(item_storage=ItemStorageConfig(providers=(("tape", 10),)))
        with pytest.raises(ValueError, match="tape"):
            config.validate()

    def test_no_provider(self):
        with pytest.raises(ValueError):
            EngineConfig(item_storage=ItemStorageConfig(providers=())).validate()

    def test_page_size_positive(self):
        with pytest.raises(ValueError, match="SNAPSHOT_PAGE_SIZE"):
            EngineConfig(snapshot=SnapshotJobConfig(page_size=0)).validate()


class TestFactories:
    """Tests for the backend factories."""

    def test_memory_backends(self):
        config = EngineConfig(item_storage=ItemStorageConfig(providers=(("rds", 1024),)))
        assert isinstance(create_job_bus(config), InMemoryJobBus)
        assert isinstance(create_kv_store(config), InMemoryKV)
        store = create_payload_store(config)
        assert store.drivers == {}
