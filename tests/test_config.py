"""Tests for configuration loading."""

import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from azure_mock import TENANT_ID, TENANT_NAME
from azurerator.config import (
    REQUEUE_MARGIN_SECONDS,
    Config,
    ConfigurationError,
    FeatureConfig,
    OpenIdConfig,
    TenantConfig,
)

VALID_ENV = {
    "AZURE_APP_TENANT_ID": TENANT_ID,
    "AZURE_APP_TENANT_NAME": TENANT_NAME,
    "CLUSTER_NAME": "dev-gcp",
}


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration with defaults."""
        config = Config(tenant=TenantConfig(id=TENANT_ID, name=TENANT_NAME), cluster_name="dev-gcp")

        assert config.cluster_name == "dev-gcp"
        assert config.manifests_dir == Path("/manifests")
        assert config.max_concurrent_reconciles == 1
        assert config.features.secret_rotation_cleanup is True
        assert config.features.cleanup_orphans is False

    def test_missing_tenant_id(self) -> None:
        """Test that a missing tenant ID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(tenant=TenantConfig(id="", name=TENANT_NAME), cluster_name="dev-gcp")

        assert "AZURE_APP_TENANT_ID" in str(exc_info.value)

    def test_invalid_tenant_id(self) -> None:
        """Test that a tenant ID that is not a GUID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(tenant=TenantConfig(id="not-a-guid", name=TENANT_NAME), cluster_name="dev-gcp")

        assert "valid GUID" in str(exc_info.value)

    def test_invalid_cluster_name(self) -> None:
        """Test that cluster names outside the allowed pattern raise error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(tenant=TenantConfig(id=TENANT_ID, name=TENANT_NAME), cluster_name="Dev_GCP")

        assert "CLUSTER_NAME" in str(exc_info.value)

    def test_rotation_max_age_lower_bound(self) -> None:
        """Test that the rotation max age must exceed the requeue margin."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                tenant=TenantConfig(id=TENANT_ID, name=TENANT_NAME),
                cluster_name="dev-gcp",
                secret_rotation_max_age_seconds=60,
            )

        assert "SECRET_ROTATION_MAX_AGE" in str(exc_info.value)

    def test_collects_all_errors(self) -> None:
        """Test that every validation error is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                tenant=TenantConfig(id="", name=""),
                cluster_name="",
                max_concurrent_reconciles=0,
                delay_between_modifications_seconds=-1,
            )

        message = str(exc_info.value)
        assert "AZURE_APP_TENANT_ID" in message
        assert "AZURE_APP_TENANT_NAME" in message
        assert "CLUSTER_NAME" in message
        assert "MAX_CONCURRENT_RECONCILES" in message
        assert "DELAY_BETWEEN_MODIFICATIONS" in message

    def test_requeue_after_leaves_margin(self) -> None:
        """Test that synchronized resources are requeued before secrets expire."""
        config = Config(
            tenant=TenantConfig(id=TENANT_ID, name=TENANT_NAME),
            cluster_name="dev-gcp",
            secret_rotation_max_age_seconds=3600,
        )

        assert config.requeue_after == timedelta(seconds=3600 - REQUEUE_MARGIN_SECONDS)

    def test_openid_derived_from_tenant(self) -> None:
        """Test that discovery endpoints are derived from the tenant ID."""
        openid = OpenIdConfig.for_tenant(TENANT_ID)

        assert openid.issuer == f"https://login.microsoftonline.com/{TENANT_ID}/v2.0"
        assert openid.well_known_url.endswith("/v2.0/.well-known/openid-configuration")
        assert openid.jwks_uri.endswith("/discovery/v2.0/keys")
        assert openid.token_endpoint.endswith("/oauth2/v2.0/token")


class TestConfigFromEnv:
    """Tests for loading configuration from the environment."""

    def test_from_env(self) -> None:
        """Test loading a configuration from environment variables."""
        env = {
            **VALID_ENV,
            "MANIFESTS_DIR": "/tmp/manifests",
            "RECONCILE_INTERVAL": "60",
            "DELAY_BETWEEN_MODIFICATIONS": "0.5",
            "CLEANUP_ORPHANS": "true",
            "SECRET_ROTATION_CLEANUP": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.tenant == TenantConfig(id=TENANT_ID, name=TENANT_NAME)
        assert config.manifests_dir == Path("/tmp/manifests")
        assert config.reconcile_interval_seconds == 60
        assert config.delay_between_modifications_seconds == 0.5
        assert config.features == FeatureConfig(
            cleanup_orphans=True,
            secret_rotation_cleanup=False,
            require_matching_tenant=False,
        )

    def test_from_env_missing_required(self) -> None:
        """Test that an empty environment fails validation."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError):
                Config.from_env()

    def test_from_env_invalid_integer(self) -> None:
        """Test that non-numeric integer settings are rejected."""
        with patch.dict(os.environ, {**VALID_ENV, "RECONCILE_INTERVAL": "often"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "RECONCILE_INTERVAL must be an integer" in str(exc_info.value)

    def test_from_env_interval_out_of_bounds(self) -> None:
        """Test that the reconcile interval is bounded."""
        with patch.dict(os.environ, {**VALID_ENV, "RECONCILE_INTERVAL": "5"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "RECONCILE_INTERVAL" in str(exc_info.value)
