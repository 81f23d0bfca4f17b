"""The per-invocation context passed through one reconcile."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .credentials import CredentialSet, KeyIdsInUse
from .models import AzureAdApplication
from .secrets import ManagedSecretLists, SecretDataKeys

if TYPE_CHECKING:
    from .options import TransactionOptions


@dataclass
class PreparedSecrets:
    """Secret state gathered before any directory call is made."""

    data_keys: SecretDataKeys
    managed: ManagedSecretLists = field(default_factory=ManagedSecretLists)
    key_ids_in_use: KeyIdsInUse = field(default_factory=KeyIdsInUse)
    credential_set: CredentialSet | None = None
    credentials_valid: bool = False


@dataclass
class Transaction:
    """Everything one reconcile invocation needs; never outlives the call.

    ``instance`` is mutated in place as directory identifiers and status
    fields become known.
    """

    id: str
    cluster_name: str
    instance: AzureAdApplication
    secrets: PreparedSecrets
    options: TransactionOptions
    exists_in_azure: bool = False

    @property
    def uniform_resource_name(self) -> str:
        return self.instance.uniform_resource_name(self.cluster_name)

    @property
    def log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "correlation_id": self.id,
            "application": self.instance.name,
            "namespace": self.instance.namespace,
        }
        if self.instance.status.client_id:
            fields["client_id"] = self.instance.status.client_id
        return fields
