"""
Tests for IDs, tagging and configuration helpers.
"""

import pytest

from strata.config import ProviderConfig, Settings
from strata.ids import is_valid_plan_id, is_valid_resource_id, new_plan_id
from strata.models import ResourceKind
from strata.tags import base_tags, from_aws_tags, get_resource_id_from_tags, is_strata_resource, to_aws_tags


class TestIds:

    def test_new_plan_id_is_valid(self):
        plan_id = new_plan_id()
        assert plan_id.startswith("p-")
        assert is_valid_plan_id(plan_id)

    def test_invalid_plan_ids(self):
        assert not is_valid_plan_id("d-20250101-120000-abcd")
        assert not is_valid_plan_id("p-2025-120000-abcd")
        assert not is_valid_plan_id("p-20250101-1200-abcd")

    def test_resource_ids(self):
        assert is_valid_resource_id("net1")
        assert is_valid_resource_id("web-frontend")
        assert not is_valid_resource_id("1net")
        assert not is_valid_resource_id("Net")
        assert not is_valid_resource_id("net_1")
        assert not is_valid_resource_id("net-")
        assert not is_valid_resource_id("")


class TestTags:
    """Test tagging functionality."""

    def test_base_tags(self):
        """Test base tag generation."""
        tags = base_tags("db1")

        assert tags["project"] == "strata"
        assert tags["resource_id"] == "db1"
        assert tags["created_at"].endswith("Z")

    def test_base_tags_with_extra(self):
        """Test base tags with extra tags."""
        tags = base_tags("db1", {"owner": "platform", "stage": "dev"})

        assert tags["owner"] == "platform"
        assert tags["stage"] == "dev"
        assert tags["project"] == "strata"

    def test_aws_tag_conversion(self):
        aws = to_aws_tags({"b": "2", "a": "1"})
        assert aws == [{"Key": "a", "Value": "1"}, {"Key": "b", "Value": "2"}]
        assert from_aws_tags(aws) == {"a": "1", "b": "2"}
        assert from_aws_tags(None) == {}

    def test_ownership(self):
        tags = base_tags("net1")
        assert is_strata_resource(tags)
        assert get_resource_id_from_tags(tags) == "net1"
        assert not is_strata_resource({"project": "other"})


class TestConfig:

    def test_settings_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STRATA_HOME", str(tmp_path))
        monkeypatch.setenv("STRATA_ADAPTER_TIMEOUT", "12.5")
        monkeypatch.setenv("STRATA_ORPHAN_POLICY", "cascade")
        settings = Settings.from_env()

        assert settings.home == tmp_path.resolve()
        assert settings.adapter_timeout == 12.5
        assert settings.orphan_policy == "cascade"

    def test_waiter_backed_kinds_outlast_their_waiters(self):
        settings = Settings()

        assert settings.timeout_for(ResourceKind.CLUSTER) > 3600
        assert settings.timeout_for(ResourceKind.DATABASE) > 1800
        assert settings.timeout_for(ResourceKind.WORKLOAD) == settings.adapter_timeout
        assert settings.timeout_for("Network") == 300.0

    def test_kind_timeout_from_env(self, monkeypatch):
        monkeypatch.setenv("STRATA_ADAPTER_TIMEOUT", "30")
        monkeypatch.setenv("STRATA_TIMEOUT_SERVICE_EXPOSURE", "90")
        monkeypatch.delenv("STRATA_TIMEOUT_CLUSTER", raising=False)
        settings = Settings.from_env()

        assert settings.timeout_for(ResourceKind.SERVICE_EXPOSURE) == 90.0
        assert settings.timeout_for(ResourceKind.NETWORK) == 30.0
        assert settings.timeout_for(ResourceKind.CLUSTER) == 4200.0

    def test_invalid_kind_timeout(self):
        with pytest.raises(ValueError, match="positive"):
            Settings(kind_timeouts={"Database": 0})
        with pytest.raises(ValueError):
            Settings(kind_timeouts={"Queue": 10})

    def test_invalid_orphan_policy(self):
        with pytest.raises(ValueError, match="orphan policy"):
            Settings(orphan_policy="ignore")

    def test_provider_config_from_env(self, monkeypatch):
        monkeypatch.delenv("STRATA_REGION", raising=False)
        monkeypatch.setenv("AWS_REGION", "eu-central-1")
        monkeypatch.setenv("STRATA_KUBE_CONTEXT", "staging")
        config = ProviderConfig.from_env()

        assert config.region == "eu-central-1"
        assert config.kube_context == "staging"
