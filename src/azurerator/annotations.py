"""Annotation, label and finalizer names understood by the operator."""

from __future__ import annotations

from .models import AzureAdApplication, ObjectMeta

# Keep the application in Azure AD when the resource is deleted
PRESERVE_KEY = "azure.nais.io/preserve"
# Force a full directory resynchronization on the next reconcile
RESYNC_KEY = "azure.nais.io/resync"
# Force a credential rotation on the next reconcile
ROTATE_KEY = "azure.nais.io/rotate"
# Set on resources found in a shared (non-team) namespace
NOT_IN_TEAM_NAMESPACE_KEY = "azure.nais.io/not-in-team-namespace"
# Correlation ID propagated from the deploying system
DEPLOYMENT_CORRELATION_ID_KEY = "nais.io/deploymentCorrelationID"
# Restart workloads when the managed secret changes
STAKATER_RELOADER_KEY = "reloader.stakater.com/match"

FINALIZER_NAME = "azure.nais.io/finalizer"
LEGACY_FINALIZER_NAME = "finalizer.azurerator.nais.io"

APP_LABEL_KEY = "app"
TYPE_LABEL_KEY = "type"
TYPE_LABEL_VALUE = "azurerator.nais.io"

# Namespace label marking namespaces shared by several teams
SHARED_NAMESPACE_LABEL_KEY = "shared"


def has_annotation(meta: ObjectMeta, key: str) -> bool:
    """Presence alone is the signal; the value is ignored."""
    return key in meta.annotations


def set_annotation(meta: ObjectMeta, key: str, value: str) -> None:
    meta.annotations[key] = value


def remove_annotation(meta: ObjectMeta, key: str) -> None:
    meta.annotations.pop(key, None)


def secret_labels(instance: AzureAdApplication) -> dict[str, str]:
    """Labels identifying secrets managed for ``instance``."""
    return {
        APP_LABEL_KEY: instance.name,
        TYPE_LABEL_KEY: TYPE_LABEL_VALUE,
    }


def is_shared_namespace(meta: ObjectMeta) -> bool:
    return meta.labels.get(SHARED_NAMESPACE_LABEL_KEY, "").lower() == "true"
