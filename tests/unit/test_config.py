"""
Unit tests for environment-driven configuration.
"""

import pytest

from dbaas.agentdb_server.config import InstanceConfig, ResolverConfig, SegmentBackendKind, TierConfig


class TestInstanceConfig:
    """Tests for InstanceConfig."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        config = InstanceConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.tiers.hot_max_rows == 10_000
        assert config.tiers.warm_backend == SegmentBackendKind.SQLITE
        assert config.tiers.cold_backend == SegmentBackendKind.S3
        assert config.kafka.enabled is False
        assert config.resolver.default_limit is None
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("INSTANCE_NAME", "agent_42")
        monkeypatch.setenv("HOT_MAX_ROWS", "3")
        monkeypatch.setenv("WARM_BACKEND", "MEMORY")
        monkeypatch.setenv("COLD_BACKEND", "sqlite")
        monkeypatch.setenv("KAFKA_ENABLED", "true")
        monkeypatch.setenv("KAFKA_TOPIC", "notes")
        monkeypatch.setenv("RESOLVER_DEFAULT_LIMIT", "25")
        monkeypatch.setenv("NOTIFIER_QUEUE_SIZE", "100")
        monkeypatch.setenv("COMPACTION_ENABLED", "false")

        config = InstanceConfig.from_env()

        assert config.storage.instance_name == "agent_42"
        assert config.tiers.hot_max_rows == 3
        assert config.tiers.warm_backend == SegmentBackendKind.MEMORY
        assert config.tiers.cold_backend == SegmentBackendKind.SQLITE
        assert config.kafka.enabled is True
        assert config.kafka.topic == "notes"
        assert config.resolver.default_limit == 25
        assert config.notifier.queue_size == 100
        assert config.maintenance.enabled is False

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("WARM_BACKEND", "tape")
        with pytest.raises(ValueError, match="Invalid tier backend"):
            InstanceConfig.from_env()

    def test_thresholds_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("HOT_MAX_ROWS", "0")
        with pytest.raises(ValueError, match="HOT_MAX_ROWS"):
            InstanceConfig.from_env()

    def test_validate(self):
        with pytest.raises(ValueError, match="RESOLVER_AMBIGUITY_MARGIN"):
            InstanceConfig(resolver=ResolverConfig(ambiguity_margin=2.0)).validate()

        InstanceConfig(tiers=TierConfig(hot_max_rows=1)).validate()

    def test_log_config_redacts_secrets(self, monkeypatch, caplog):
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "very-secret")
        monkeypatch.setenv("KAFKA_SASL_PASSWORD", "also-secret")
        with caplog.at_level("INFO"):
            InstanceConfig.from_env().log_config()
        for record in caplog.records:
            assert "very-secret" not in str(record.__dict__)
            assert "also-secret" not in str(record.__dict__)
