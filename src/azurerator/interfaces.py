"""Collaborator interfaces consumed by the reconciliation core.

The core never talks HTTP or Kubernetes directly. It is handed objects that
satisfy these protocols: ``graph.GraphClient`` and ``store.FileResourceStore``
in production, the fakes in ``tests/azure_mock`` under test.
"""

from __future__ import annotations

from typing import Any, Protocol

from .models import (
    Application,
    AppRoleAssignment,
    AzureAdApplication,
    Namespace,
    PasswordCredential,
    Pod,
    Secret,
    ServicePrincipal,
)


class GraphApi(Protocol):
    """Low-level Microsoft Graph operations. Every call may raise ``HttpResponseError``."""

    async def list_applications(self, display_name: str) -> list[Application]: ...

    async def get_application_by_client_id(self, client_id: str) -> Application | None: ...

    async def create_application(self, application: dict[str, Any]) -> Application: ...

    async def patch_application(self, object_id: str, patch: dict[str, Any]) -> None: ...

    async def delete_application(self, object_id: str) -> None: ...

    async def add_password(
        self, object_id: str, credential: PasswordCredential
    ) -> PasswordCredential: ...

    async def remove_password(self, object_id: str, key_id: str) -> None: ...

    async def get_service_principal(self, client_id: str) -> ServicePrincipal | None: ...

    async def get_service_principal_by_id(self, object_id: str) -> ServicePrincipal | None: ...

    async def create_service_principal(self, client_id: str) -> ServicePrincipal: ...

    async def patch_service_principal(self, object_id: str, patch: dict[str, Any]) -> None: ...

    async def list_app_role_assignments(self, service_principal_id: str) -> list[AppRoleAssignment]: ...

    async def add_app_role_assignment(
        self, service_principal_id: str, assignment: AppRoleAssignment
    ) -> AppRoleAssignment: ...

    async def delete_app_role_assignment(
        self, service_principal_id: str, assignment_id: str
    ) -> None: ...

    async def group_exists(self, group_id: str) -> bool: ...


class ResourceStore(Protocol):
    """Access to declarative resources and the workloads around them."""

    async def list_keys(self) -> list[str]: ...

    async def get(self, key: str) -> AzureAdApplication | None: ...

    async def update(self, instance: AzureAdApplication) -> AzureAdApplication: ...

    async def update_status(self, instance: AzureAdApplication) -> AzureAdApplication: ...

    async def list_secrets(self, namespace: str, labels: dict[str, str]) -> list[Secret]: ...

    async def create_or_update_secret(self, secret: Secret) -> Secret: ...

    async def delete_secret(self, namespace: str, name: str) -> None: ...

    async def list_pods(self, namespace: str, labels: dict[str, str]) -> list[Pod]: ...

    async def get_namespace(self, name: str) -> Namespace | None: ...


class EventRecorder(Protocol):
    """Records human-readable events against a resource."""

    def event(self, instance: AzureAdApplication, event_type: str, reason: str, message: str) -> None: ...


class EventSink(Protocol):
    """Fan-out of application lifecycle events to other clusters."""

    async def publish(self, event: dict[str, Any]) -> None: ...
