"""In-memory resource store for testing.

Implements the ``ResourceStore`` protocol. Objects are deep-copied on the way
in and out, so a test only sees changes the reconciler actually wrote back.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime

from azurerator.models import AzureAdApplication, Namespace, ObjectMeta, Pod, Secret
from azurerator.store import ResourceLoadError


def _matches(labels: dict[str, str], selector: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())


class FakeResourceStore:
    """In-memory ``ResourceStore`` with failure injection and call counters."""

    def __init__(self) -> None:
        self.resources: dict[str, AzureAdApplication] = {}
        self.secrets: dict[tuple[str, str], Secret] = {}
        self.pods: dict[tuple[str, str], Pod] = {}
        self.namespaces: dict[str, Namespace] = {}

        self.update_count = 0
        self.update_status_count = 0
        self.secret_writes = 0
        self.deleted_secrets: list[str] = []

        self._should_fail = False
        self._fail_message = "Mock failure"

    # =========================================================================
    # Test helpers
    # =========================================================================

    def set_should_fail(self, should_fail: bool, message: str = "Mock failure") -> None:
        """Configure whether writes should fail."""
        self._should_fail = should_fail
        self._fail_message = message

    def _check_failure(self) -> None:
        if self._should_fail:
            raise ResourceLoadError(self._fail_message)

    def add_resource(self, instance: AzureAdApplication) -> AzureAdApplication:
        self.resources[instance.key] = copy.deepcopy(instance)
        return instance

    def resource(self, key: str) -> AzureAdApplication:
        return copy.deepcopy(self.resources[key])

    def add_namespace(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.namespaces[name] = Namespace(metadata=ObjectMeta(name=name, labels=labels or {}))

    def add_secret(self, secret: Secret) -> None:
        self.secrets[(secret.metadata.namespace, secret.metadata.name)] = copy.deepcopy(secret)

    def secret(self, namespace: str, name: str) -> Secret | None:
        secret = self.secrets.get((namespace, name))
        return copy.deepcopy(secret) if secret else None

    def add_pod(
        self,
        namespace: str,
        name: str,
        app: str,
        env_from_secrets: list[str] | None = None,
        volume_secrets: list[str] | None = None,
    ) -> Pod:
        """Add a pod labelled ``app`` consuming the given secrets."""
        pod = Pod.model_validate(
            {
                "metadata": {"name": name, "namespace": namespace, "labels": {"app": app}},
                "spec": {
                    "containers": [
                        {
                            "name": "main",
                            "envFrom": [{"secretRef": {"name": s}} for s in env_from_secrets or []],
                        }
                    ],
                    "volumes": [
                        {"name": s, "secret": {"secretName": s}} for s in volume_secrets or []
                    ],
                },
            }
        )
        self.pods[(namespace, name)] = pod
        return pod

    # =========================================================================
    # AzureAdApplication
    # =========================================================================

    async def list_keys(self) -> list[str]:
        return sorted(self.resources)

    async def get(self, key: str) -> AzureAdApplication | None:
        instance = self.resources.get(key)
        return copy.deepcopy(instance) if instance else None

    async def update(self, instance: AzureAdApplication) -> AzureAdApplication:
        self._check_failure()
        self.update_count += 1

        if instance.is_being_deleted() and not instance.metadata.finalizers:
            self.resources.pop(instance.key, None)
            for namespace, name in list(self.secrets):
                owners = self.secrets[(namespace, name)].metadata.owner_references
                if namespace == instance.namespace and any(o.name == instance.name for o in owners):
                    await self.delete_secret(namespace, name)
            return instance

        self.resources[instance.key] = copy.deepcopy(instance)
        return instance

    async def update_status(self, instance: AzureAdApplication) -> AzureAdApplication:
        self._check_failure()
        self.update_status_count += 1

        stored = self.resources.get(instance.key)
        if stored is None:
            raise ResourceLoadError(f"resource '{instance.key}' does not exist")
        stored.status = copy.deepcopy(instance.status)
        return copy.deepcopy(stored)

    # =========================================================================
    # Workloads
    # =========================================================================

    async def list_secrets(self, namespace: str, labels: dict[str, str]) -> list[Secret]:
        return [
            copy.deepcopy(s)
            for (ns, _), s in sorted(self.secrets.items())
            if ns == namespace and _matches(s.metadata.labels, labels)
        ]

    async def create_or_update_secret(self, secret: Secret) -> Secret:
        self._check_failure()
        self.secret_writes += 1

        key = (secret.metadata.namespace, secret.metadata.name)
        existing = self.secrets.get(key)
        if existing is not None:
            secret.metadata.creation_timestamp = existing.metadata.creation_timestamp
        elif secret.metadata.creation_timestamp is None:
            secret.metadata.creation_timestamp = datetime.now(UTC)
        self.secrets[key] = copy.deepcopy(secret)
        return secret

    async def delete_secret(self, namespace: str, name: str) -> None:
        self._check_failure()
        if self.secrets.pop((namespace, name), None) is not None:
            self.deleted_secrets.append(name)

    async def list_pods(self, namespace: str, labels: dict[str, str]) -> list[Pod]:
        return [
            copy.deepcopy(p)
            for (ns, _), p in sorted(self.pods.items())
            if ns == namespace and _matches(p.metadata.labels, labels)
        ]

    async def get_namespace(self, name: str) -> Namespace | None:
        namespace = self.namespaces.get(name)
        return copy.deepcopy(namespace) if namespace else None
