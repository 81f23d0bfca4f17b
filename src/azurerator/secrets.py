"""Managed secrets: usage classification, credential extraction and composition.

A managed secret is *used* when at least one pod mounts it as a volume or
imports it through ``envFrom``. Only used secrets protect their credentials
from revocation; everything else is eligible for cleanup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .annotations import STAKATER_RELOADER_KEY, secret_labels
from .config import OpenIdConfig
from .credentials import Certificate, Credentials, CredentialSet, KeyIdsInUse, Password, as_utc
from .crypto import Jwk, JwkError
from .models import AzureAdApplication, ObjectMeta, Pod, Secret
from .result import ApplicationResult

logger = logging.getLogger(__name__)


class SecretDataError(Exception):
    """Raised when a managed secret holds malformed credential material."""

    pass


# =============================================================================
# Data keys
# =============================================================================


@dataclass(frozen=True)
class CredentialKeys:
    """Data keys of one credential generation (current or next)."""

    certificate_key_id: str
    client_secret: str
    jwk: str
    password_key_id: str

    def all(self) -> tuple[str, ...]:
        return (self.certificate_key_id, self.client_secret, self.jwk, self.password_key_id)


@dataclass(frozen=True)
class SecretDataKeys:
    """Every data key of a managed secret, derived from one prefix."""

    current: CredentialKeys
    next: CredentialKeys
    client_id: str
    jwks: str
    pre_authorized_apps: str
    tenant_id: str
    well_known_url: str
    openid_issuer: str
    openid_jwks_uri: str
    openid_token_endpoint: str

    @classmethod
    def for_prefix(cls, prefix: str) -> SecretDataKeys:
        return cls(
            current=CredentialKeys(
                certificate_key_id=f"{prefix}_APP_CERTIFICATE_KEY_ID",
                client_secret=f"{prefix}_APP_CLIENT_SECRET",
                jwk=f"{prefix}_APP_JWK",
                password_key_id=f"{prefix}_APP_PASSWORD_KEY_ID",
            ),
            next=CredentialKeys(
                certificate_key_id=f"{prefix}_APP_NEXT_CERTIFICATE_KEY_ID",
                client_secret=f"{prefix}_APP_NEXT_CLIENT_SECRET",
                jwk=f"{prefix}_APP_NEXT_JWK",
                password_key_id=f"{prefix}_APP_NEXT_PASSWORD_KEY_ID",
            ),
            client_id=f"{prefix}_APP_CLIENT_ID",
            jwks=f"{prefix}_APP_JWKS",
            pre_authorized_apps=f"{prefix}_APP_PRE_AUTHORIZED_APPS",
            tenant_id=f"{prefix}_APP_TENANT_ID",
            well_known_url=f"{prefix}_APP_WELL_KNOWN_URL",
            openid_issuer=f"{prefix}_OPENID_CONFIG_ISSUER",
            openid_jwks_uri=f"{prefix}_OPENID_CONFIG_JWKS_URI",
            openid_token_endpoint=f"{prefix}_OPENID_CONFIG_TOKEN_ENDPOINT",
        )


# =============================================================================
# Classification
# =============================================================================


@dataclass
class ManagedSecretLists:
    used: list[Secret] = field(default_factory=list)
    unused: list[Secret] = field(default_factory=list)


def referenced_secret_names(pod: Pod) -> set[str]:
    """Names of secrets a pod mounts as a volume or imports via ``envFrom``."""
    names = {v.secret.secret_name for v in pod.spec.volumes if v.secret is not None}
    for container in [*pod.spec.containers, *pod.spec.init_containers]:
        for source in container.env_from:
            if source.secret_ref is not None:
                names.add(source.secret_ref.name)
    return names


def classify(secrets: list[Secret], pods: list[Pod]) -> ManagedSecretLists:
    referenced: set[str] = set()
    for pod in pods:
        referenced |= referenced_secret_names(pod)

    lists = ManagedSecretLists()
    for secret in secrets:
        if secret.metadata.name in referenced:
            lists.used.append(secret)
        else:
            lists.unused.append(secret)
    return lists


def key_ids_in_use(used: list[Secret], keys: SecretDataKeys) -> KeyIdsInUse:
    """Current key IDs of used secrets. Unused secrets never contribute."""
    in_use = KeyIdsInUse()
    for secret in used:
        certificate_id = secret.string_data.get(keys.current.certificate_key_id, "")
        if certificate_id:
            in_use.certificate.append(certificate_id)
        password_id = secret.string_data.get(keys.current.password_key_id, "")
        if password_id:
            in_use.password.append(password_id)
    return in_use


# =============================================================================
# Extraction
# =============================================================================


def _extract_credentials(secret: Secret, keys: CredentialKeys) -> Credentials | None:
    data = secret.string_data
    if any(k not in data for k in keys.all()):
        return None

    try:
        jwk = Jwk.from_json(data[keys.jwk])
    except JwkError as e:
        raise SecretDataError(f"extracting credentials from secret '{secret.metadata.name}': {e}") from e

    return Credentials(
        certificate=Certificate(key_id=data[keys.certificate_key_id], jwk=jwk),
        password=Password(key_id=data[keys.password_key_id], client_secret=data[keys.client_secret]),
    )


def credentials_set_from_secret(secret: Secret, keys: SecretDataKeys) -> CredentialSet | None:
    """The credential set stored in ``secret``, or None if any key is missing.

    Raises:
        SecretDataError: If a stored JWK cannot be parsed.
    """
    current = _extract_credentials(secret, keys.current)
    following = _extract_credentials(secret, keys.next)
    if current is None or following is None:
        return None
    return CredentialSet(current=current, next=following)


def _created(secret: Secret) -> datetime:
    created = secret.metadata.creation_timestamp
    return as_utc(created) if created else datetime.min.replace(tzinfo=timezone.utc)


def previous_credentials_set(
    lists: ManagedSecretLists, secret_name: str, keys: SecretDataKeys
) -> CredentialSet | None:
    """Credential set of the last synchronized secret.

    Looks for the secret named ``secret_name`` among all managed secrets and
    falls back to the most recently created used secret.
    """
    for secret in [*lists.unused, *lists.used]:
        if secret.metadata.name == secret_name:
            return credentials_set_from_secret(secret, keys)

    if not lists.used:
        return None

    latest = lists.used[0]
    for secret in lists.used[1:]:
        if _created(secret) > _created(latest):
            latest = secret
    return credentials_set_from_secret(latest, keys)


# =============================================================================
# Composition
# =============================================================================


def secret_data(
    result: ApplicationResult,
    credential_set: CredentialSet,
    openid: OpenIdConfig,
    keys: SecretDataKeys,
) -> dict[str, str]:
    current, following = credential_set.current, credential_set.next
    if current.certificate.jwk is None or following.certificate.jwk is None:
        raise SecretDataError("credential set is missing certificate key material")

    jwks = {
        "keys": [current.certificate.jwk.private, following.certificate.jwk.private],
    }
    pre_authorized_apps = [
        {"name": app.name, "clientId": app.client_id} for app in result.pre_authorized_apps.valid
    ]

    return {
        keys.client_id: result.client_id,
        keys.current.client_secret: current.password.client_secret,
        keys.current.password_key_id: current.password.key_id,
        keys.current.jwk: current.certificate.jwk.to_json(),
        keys.current.certificate_key_id: current.certificate.key_id,
        keys.next.client_secret: following.password.client_secret,
        keys.next.password_key_id: following.password.key_id,
        keys.next.jwk: following.certificate.jwk.to_json(),
        keys.next.certificate_key_id: following.certificate.key_id,
        keys.jwks: json.dumps(jwks, separators=(",", ":")),
        keys.pre_authorized_apps: json.dumps(pre_authorized_apps, separators=(",", ":")),
        keys.tenant_id: result.tenant,
        keys.well_known_url: openid.well_known_url,
        keys.openid_issuer: openid.issuer,
        keys.openid_jwks_uri: openid.jwks_uri,
        keys.openid_token_endpoint: openid.token_endpoint,
    }


def build_secret(instance: AzureAdApplication, data: dict[str, str]) -> Secret:
    """The one managed secret of ``instance``, owned by the resource."""
    return Secret(
        metadata=ObjectMeta(
            name=instance.spec.secret_name,
            namespace=instance.namespace,
            labels=secret_labels(instance),
            annotations={STAKATER_RELOADER_KEY: "true"},
            owner_references=[instance.owner_reference()],
        ),
        string_data=data,
    )
