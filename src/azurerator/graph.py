"""Microsoft Graph adapter.

A thin ``GraphApi`` implementation over an azure-core pipeline. It carries no
policy: every method maps to one Graph request (plus paging), and failures
surface as ``HttpResponseError``. The pipeline is synchronous, so requests
run in the default executor with a timeout.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .models import (
    Application,
    AppRoleAssignment,
    PasswordCredential,
    ServicePrincipal,
    to_wire,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
USER_AGENT = "azurerator"

# Timeout for a single Graph request including retries
MAX_GRAPH_REQUEST_TIMEOUT_SECONDS = 60
# Upper bound on pages followed for a list request
MAX_PAGES = 50


def _quote(value: str) -> str:
    """Escape a string literal for an OData filter."""
    return value.replace("'", "''")


class GraphClient:
    """``GraphApi`` over HTTPS."""

    def __init__(
        self,
        credential: TokenCredential,
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: float = MAX_GRAPH_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = PipelineClient(
            base_url=self._base_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, GRAPH_SCOPE),
            ],
        )

    def close(self) -> None:
        self._client.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _send(self, method: str, url: str, body: dict[str, Any] | None, params: dict[str, str] | None) -> Any:
        if not url.startswith("https://"):
            url = f"{self._base_url}{url}"
        request = HttpRequest(method, url, json=body, params=params)
        response = self._client.send_request(request)
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _request(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self._send(method, url, body, params)),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            logger.error(
                "Graph request timed out",
                extra={"method": method, "url": url, "timeout_seconds": self._timeout},
            )
            raise HttpResponseError(message=f"Graph request {method} {url} timed out") from e

    async def _get_optional(self, url: str, params: dict[str, str] | None = None) -> Any:
        try:
            return await self._request("GET", url, params=params)
        except HttpResponseError as e:
            if e.status_code == 404:
                return None
            raise

    async def _list(self, url: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = await self._request("GET", url, params=params)
        for _ in range(MAX_PAGES):
            if page is None:
                break
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link:
                break
            page = await self._request("GET", next_link)
        return items

    # =========================================================================
    # Applications
    # =========================================================================

    async def list_applications(self, display_name: str) -> list[Application]:
        items = await self._list(
            "/applications", params={"$filter": f"displayName eq '{_quote(display_name)}'"}
        )
        return [Application.model_validate(i) for i in items]

    async def get_application_by_client_id(self, client_id: str) -> Application | None:
        data = await self._get_optional(f"/applications(appId='{_quote(client_id)}')")
        return Application.model_validate(data) if data else None

    async def create_application(self, application: dict[str, Any]) -> Application:
        data = await self._request("POST", "/applications", body=application)
        return Application.model_validate(data)

    async def patch_application(self, object_id: str, patch: dict[str, Any]) -> None:
        await self._request("PATCH", f"/applications/{object_id}", body=patch)

    async def delete_application(self, object_id: str) -> None:
        await self._request("DELETE", f"/applications/{object_id}")

    async def add_password(self, object_id: str, credential: PasswordCredential) -> PasswordCredential:
        data = await self._request(
            "POST",
            f"/applications/{object_id}/addPassword",
            body={"passwordCredential": to_wire(credential)},
        )
        return PasswordCredential.model_validate(data)

    async def remove_password(self, object_id: str, key_id: str) -> None:
        await self._request("POST", f"/applications/{object_id}/removePassword", body={"keyId": key_id})

    # =========================================================================
    # Service principals
    # =========================================================================

    async def get_service_principal(self, client_id: str) -> ServicePrincipal | None:
        data = await self._get_optional(f"/servicePrincipals(appId='{_quote(client_id)}')")
        return ServicePrincipal.model_validate(data) if data else None

    async def get_service_principal_by_id(self, object_id: str) -> ServicePrincipal | None:
        data = await self._get_optional(f"/servicePrincipals/{object_id}")
        return ServicePrincipal.model_validate(data) if data else None

    async def create_service_principal(self, client_id: str) -> ServicePrincipal:
        data = await self._request("POST", "/servicePrincipals", body={"appId": client_id})
        return ServicePrincipal.model_validate(data)

    async def patch_service_principal(self, object_id: str, patch: dict[str, Any]) -> None:
        await self._request("PATCH", f"/servicePrincipals/{object_id}", body=patch)

    async def list_app_role_assignments(self, service_principal_id: str) -> list[AppRoleAssignment]:
        items = await self._list(f"/servicePrincipals/{service_principal_id}/appRoleAssignedTo")
        return [AppRoleAssignment.model_validate(i) for i in items]

    async def add_app_role_assignment(
        self, service_principal_id: str, assignment: AppRoleAssignment
    ) -> AppRoleAssignment:
        body = {
            "appRoleId": assignment.app_role_id,
            "principalId": assignment.principal_id,
            "resourceId": assignment.resource_id,
        }
        data = await self._request(
            "POST", f"/servicePrincipals/{service_principal_id}/appRoleAssignedTo", body=body
        )
        return AppRoleAssignment.model_validate(data)

    async def delete_app_role_assignment(self, service_principal_id: str, assignment_id: str) -> None:
        await self._request(
            "DELETE", f"/servicePrincipals/{service_principal_id}/appRoleAssignedTo/{assignment_id}"
        )

    # =========================================================================
    # Groups
    # =========================================================================

    async def group_exists(self, group_id: str) -> bool:
        data = await self._get_optional(f"/groups/{group_id}", params={"$select": "id"})
        return data is not None
