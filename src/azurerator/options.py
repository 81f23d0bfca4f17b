"""Decide what a reconcile has to do.

``build_options`` is a pure function of the resource, the configuration and
the prepared secrets. Nothing here talks to the directory.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .annotations import (
    FINALIZER_NAME,
    LEGACY_FINALIZER_NAME,
    PRESERVE_KEY,
    RESYNC_KEY,
    ROTATE_KEY,
    has_annotation,
)
from .config import Config
from .models import AzureAdApplication
from .transaction import PreparedSecrets

HASH_LENGTH = 16


@dataclass(frozen=True)
class AzureOptions:
    synchronize: bool = False
    cleanup_orphans: bool = False


@dataclass(frozen=True)
class SecretOptions:
    rotate: bool = False
    valid: bool = False
    cleanup: bool = False


@dataclass(frozen=True)
class ProcessOptions:
    synchronize: bool = False
    azure: AzureOptions = AzureOptions()
    secret: SecretOptions = SecretOptions()


@dataclass(frozen=True)
class TenantOptions:
    ignore: bool = False


@dataclass(frozen=True)
class FinalizerOptions:
    finalize: bool = False
    register: bool = False
    delete_from_azure: bool = True


@dataclass(frozen=True)
class TransactionOptions:
    process: ProcessOptions = ProcessOptions()
    tenant: TenantOptions = TenantOptions()
    finalizer: FinalizerOptions = FinalizerOptions()


# =============================================================================
# Predicates
# =============================================================================


def spec_hash(instance: AzureAdApplication) -> str:
    """Hash of the spec and the directory identifiers recorded in status.

    Identifiers are included so that an out-of-band change in the directory
    also forces a resynchronization.
    """
    payload = {
        "spec": instance.spec.model_dump(by_alias=True, mode="json"),
        "clientId": instance.status.client_id,
        "objectId": instance.status.object_id,
        "servicePrincipalId": instance.status.service_principal_id,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def is_hash_changed(instance: AzureAdApplication) -> bool:
    return instance.status.synchronization_hash != spec_hash(instance)


def secret_name_changed(instance: AzureAdApplication) -> bool:
    return instance.status.synchronization_secret_name != instance.spec.secret_name


def has_expired_secrets(instance: AzureAdApplication, config: Config, now: datetime) -> bool:
    """A resource that was never rotated is new, not expired."""
    rotated = instance.status.synchronization_secret_rotation_time
    if rotated is None:
        return False
    if rotated.tzinfo is None:
        rotated = rotated.replace(tzinfo=timezone.utc)
    return now - rotated >= config.secret_rotation_max_age


def should_preserve(instance: AzureAdApplication) -> bool:
    return has_annotation(instance.metadata, PRESERVE_KEY)


def should_ignore_tenant(instance: AzureAdApplication, config: Config) -> bool:
    """Resources declared for another tenant belong to another operator instance."""
    if instance.spec.tenant:
        return instance.spec.tenant != config.tenant.name
    return config.features.require_matching_tenant


# =============================================================================
# Builder
# =============================================================================


def build_process_options(
    instance: AzureAdApplication,
    config: Config,
    secrets: PreparedSecrets,
    now: datetime,
) -> ProcessOptions:
    hash_changed = is_hash_changed(instance)
    name_changed = secret_name_changed(instance)
    resync = has_annotation(instance.metadata, RESYNC_KEY)
    rotate_requested = has_annotation(instance.metadata, ROTATE_KEY)
    expired = has_expired_secrets(instance, config, now)
    tenant_unchanged = instance.status.synchronization_tenant == config.tenant.id

    rotate = name_changed or rotate_requested
    valid = (
        not expired
        and tenant_unchanged
        and secrets.credentials_valid
        and secrets.credential_set is not None
    )

    return ProcessOptions(
        synchronize=hash_changed or name_changed or expired or resync or rotate_requested,
        azure=AzureOptions(
            synchronize=hash_changed or resync,
            cleanup_orphans=config.features.cleanup_orphans,
        ),
        secret=SecretOptions(
            rotate=rotate,
            valid=valid,
            cleanup=(
                not rotate
                and not instance.spec.secret_protected
                and config.features.secret_rotation_cleanup
            ),
        ),
    )


def build_finalizer_options(instance: AzureAdApplication) -> FinalizerOptions:
    """Finalize when deletion was requested and any of our finalizers is present.

    The legacy finalizer only counts towards finalization; it is never registered.
    """
    has_finalizer = instance.has_finalizer(FINALIZER_NAME)
    has_legacy_finalizer = instance.has_finalizer(LEGACY_FINALIZER_NAME)
    return FinalizerOptions(
        finalize=(has_finalizer or has_legacy_finalizer) and instance.is_being_deleted(),
        register=not has_finalizer and not instance.is_being_deleted(),
        delete_from_azure=not should_preserve(instance),
    )


def with_invalid_credentials(options: TransactionOptions) -> TransactionOptions:
    """Options after the stored credentials turned out not to match the directory."""
    secret = replace(options.process.secret, valid=False)
    process = replace(options.process, synchronize=True, secret=secret)
    return replace(options, process=process)


def build_options(
    instance: AzureAdApplication,
    config: Config,
    secrets: PreparedSecrets,
    now: datetime | None = None,
) -> TransactionOptions:
    now = now or datetime.now(timezone.utc)
    return TransactionOptions(
        process=build_process_options(instance, config, secrets, now),
        tenant=TenantOptions(ignore=should_ignore_tenant(instance, config)),
        finalizer=build_finalizer_options(instance),
    )
