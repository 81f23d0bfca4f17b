"""Operator identity.

The operator authenticates to Microsoft Graph with a managed identity only.
Client secrets or certificates for the operator itself in the environment
are refused at startup; the applications it manages are the only place
where credentials exist. The same holds for credentials of a managed
application: a managed secret imported into the operator's own pod would
hand it a second identity, so those data keys are refused as well.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterable, Mapping

from azure.identity import ManagedIdentityCredential

from .config import DEFAULT_SECRET_KEY_PREFIX, Config
from .secrets import SecretDataKeys

logger = logging.getLogger(__name__)

# Environment variables that indicate credential-based operator authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credentials usable by the operator are found in the environment."""

    pass


class IdentityConfigurationError(Exception):
    """Raised when the configured managed identity cannot be used."""

    pass


def managed_secret_env_vars(prefix: str = DEFAULT_SECRET_KEY_PREFIX) -> tuple[str, ...]:
    """Data keys of a managed secret that carry private credential material."""
    keys = SecretDataKeys.for_prefix(prefix)
    return (
        keys.current.client_secret,
        keys.current.jwk,
        keys.next.client_secret,
        keys.next.jwk,
        keys.jwks,
    )


def forbidden_env_vars(prefix: str = DEFAULT_SECRET_KEY_PREFIX) -> tuple[str, ...]:
    return FORBIDDEN_CREDENTIAL_ENV_VARS + managed_secret_env_vars(prefix)


def enforce_secretless_architecture(
    forbidden: Iterable[str] = FORBIDDEN_CREDENTIAL_ENV_VARS,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Refuse to start when credentials are present in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    env = os.environ if environ is None else environ
    for env_var in forbidden:
        if env.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                f"{env_var} is set; the operator authenticates with a managed identity only"
            )

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def validate_managed_identity(config: Config) -> str | None:
    """Client ID of the user-assigned identity to use, or None for the system-assigned one.

    Raises:
        IdentityConfigurationError: If the client ID is not a GUID, or names
            the tenant instead of an identity.
    """
    client_id = config.managed_identity_client_id
    if not client_id:
        return None

    try:
        parsed = uuid.UUID(client_id)
    except ValueError as e:
        raise IdentityConfigurationError(
            f"MANAGED_IDENTITY_CLIENT_ID must be a GUID, got '{client_id}'"
        ) from e

    if str(parsed) == config.tenant.id.lower():
        raise IdentityConfigurationError(
            f"MANAGED_IDENTITY_CLIENT_ID is the ID of tenant {config.tenant}, not of a managed identity"
        )
    return str(parsed)


def get_managed_identity_credential(config: Config) -> ManagedIdentityCredential:
    """Managed identity credential for Graph, after the secretless check.

    Raises:
        SecretlessViolationError: If credentials are found in the environment.
        IdentityConfigurationError: If the configured identity is unusable.
    """
    enforce_secretless_architecture(forbidden_env_vars())
    client_id = validate_managed_identity(config)

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "...", "tenant": config.tenant.name},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity", extra={"tenant": config.tenant.name})
    return ManagedIdentityCredential()
