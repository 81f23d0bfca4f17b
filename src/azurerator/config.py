"""Configuration management with validation.

Configuration is loaded once at startup from the environment and validated
eagerly, so that a misconfigured operator never reaches the directory.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SECRET_ROTATION_MAX_AGE_SECONDS = 180 * 24 * 60 * 60
MIN_SECRET_ROTATION_MAX_AGE_SECONDS = 10 * 60  # must exceed the requeue margin

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_CONTEXT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES = 32

# The directory rejects near-simultaneous writes to the same application
DEFAULT_DELAY_BETWEEN_MODIFICATIONS_SECONDS = 2.0

# Requeue a synchronized resource this long before its secrets expire
REQUEUE_MARGIN_SECONDS = 5 * 60

DEFAULT_SECRET_KEY_PREFIX = "AZURE"
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest

# Input validation patterns
VALID_TENANT_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]{0,62}$"


@dataclass(frozen=True)
class TenantConfig:
    """The Azure AD tenant this operator instance manages."""

    id: str
    name: str

    def __str__(self) -> str:
        return f"{self.name} ({self.id})"


LOGIN_BASE_URL = "https://login.microsoftonline.com"


@dataclass(frozen=True)
class OpenIdConfig:
    """Discovery endpoints of the tenant, published into every managed secret."""

    well_known_url: str
    issuer: str
    jwks_uri: str
    token_endpoint: str

    @classmethod
    def for_tenant(cls, tenant_id: str) -> OpenIdConfig:
        base = f"{LOGIN_BASE_URL}/{tenant_id}"
        return cls(
            well_known_url=f"{base}/v2.0/.well-known/openid-configuration",
            issuer=f"{base}/v2.0",
            jwks_uri=f"{base}/discovery/v2.0/keys",
            token_endpoint=f"{base}/oauth2/v2.0/token",
        )


@dataclass(frozen=True)
class FeatureConfig:
    """Optional behaviours that are off or on per installation."""

    # Delete directory applications whose resource targets another tenant
    cleanup_orphans: bool = False

    # Revoke credentials and delete secrets no longer referenced by workloads
    secret_rotation_cleanup: bool = True

    # Ignore resources without an explicit spec.tenant
    require_matching_tenant: bool = False


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    tenant: TenantConfig
    cluster_name: str

    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    managed_identity_client_id: str | None = None

    secret_rotation_max_age_seconds: int = DEFAULT_SECRET_ROTATION_MAX_AGE_SECONDS
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    context_timeout_seconds: int = DEFAULT_CONTEXT_TIMEOUT_SECONDS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    delay_between_modifications_seconds: float = DEFAULT_DELAY_BETWEEN_MODIFICATIONS_SECONDS

    features: FeatureConfig = field(default_factory=FeatureConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.tenant.id:
            errors.append("AZURE_APP_TENANT_ID is required")
        elif not re.match(VALID_TENANT_ID_PATTERN, self.tenant.id.lower()):
            errors.append(f"AZURE_APP_TENANT_ID must be a valid GUID: {self.tenant.id}")

        if not self.tenant.name:
            errors.append("AZURE_APP_TENANT_NAME is required")

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster_name}"
            )

        if self.secret_rotation_max_age_seconds < MIN_SECRET_ROTATION_MAX_AGE_SECONDS:
            errors.append(
                f"SECRET_ROTATION_MAX_AGE must be at least {MIN_SECRET_ROTATION_MAX_AGE_SECONDS} seconds"
            )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.context_timeout_seconds < 1:
            errors.append("CONTEXT_TIMEOUT must be at least 1 second")

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.delay_between_modifications_seconds < 0:
            errors.append("DELAY_BETWEEN_MODIFICATIONS cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def secret_rotation_max_age(self) -> timedelta:
        return timedelta(seconds=self.secret_rotation_max_age_seconds)

    @property
    def openid(self) -> OpenIdConfig:
        return OpenIdConfig.for_tenant(self.tenant.id)

    @property
    def requeue_after(self) -> timedelta:
        """Delay before a synchronized resource is looked at again."""
        return self.secret_rotation_max_age - timedelta(seconds=REQUEUE_MARGIN_SECONDS)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_APP_TENANT_ID: Tenant ID of the managed Azure AD directory
            AZURE_APP_TENANT_NAME: Human-readable tenant alias (matched against spec.tenant)
            CLUSTER_NAME: Name of the cluster, part of every application display name
            MANIFESTS_DIR: Directory holding resource manifests (default: /manifests)
            MANAGED_IDENTITY_CLIENT_ID: Client ID of a user-assigned managed identity
            SECRET_ROTATION_MAX_AGE: Seconds before credentials are rotated (default: 180 days)
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            CONTEXT_TIMEOUT: Deadline for a single reconcile in seconds (default: 300)
            MAX_CONCURRENT_RECONCILES: Resources reconciled in parallel (default: 1)
            DELAY_BETWEEN_MODIFICATIONS: Seconds between credential writes (default: 2)

        Feature Variables:
            CLEANUP_ORPHANS: Delete applications of resources targeting another tenant
            SECRET_ROTATION_CLEANUP: Revoke unused credentials (default: true)
            VALIDATIONS_TENANT_REQUIRED: Ignore resources without spec.tenant
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            tenant=TenantConfig(
                id=os.environ.get("AZURE_APP_TENANT_ID", ""),
                name=os.environ.get("AZURE_APP_TENANT_NAME", ""),
            ),
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            secret_rotation_max_age_seconds=get_int(
                "SECRET_ROTATION_MAX_AGE", DEFAULT_SECRET_ROTATION_MAX_AGE_SECONDS
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            context_timeout_seconds=get_int("CONTEXT_TIMEOUT", DEFAULT_CONTEXT_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            delay_between_modifications_seconds=get_float(
                "DELAY_BETWEEN_MODIFICATIONS", DEFAULT_DELAY_BETWEEN_MODIFICATIONS_SECONDS
            ),
            features=FeatureConfig(
                cleanup_orphans=get_bool("CLEANUP_ORPHANS", False),
                secret_rotation_cleanup=get_bool("SECRET_ROTATION_CLEANUP", True),
                require_matching_tenant=get_bool("VALIDATIONS_TENANT_REQUIRED", False),
            ),
        )
