"""Directory client: the application-level view of Microsoft Graph.

``DirectoryClient`` turns a transaction into the sequence of Graph calls that
registers, updates or removes one application together with its service
principal, permissions, pre-authorized applications and role assignments.
Every call is awaited in order; nothing here runs concurrently.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.exceptions import AzureError

from .approleassignments import AppRoleAssignmentReconciler, AssignmentError
from .caches import Caches
from .config import Config
from .credentials import CredentialRotationEngine
from .interfaces import GraphApi
from .models import (
    AccessPolicyRule,
    AppRole,
    Application,
    AppRoleAssignment,
    Operation,
    PermissionScope,
    PrincipalType,
    Resource,
    ServicePrincipal,
    to_wire,
)
from .permissions import (
    APP_ROLES,
    DEFAULT_GROUP_ROLE,
    DEFAULT_PERMISSION_SCOPE_VALUE,
    PERMISSION_SCOPES,
    Permissions,
    generate_desired_permission_set,
    generate_desired_permission_set_preserve_existing,
)
from .result import ApplicationResult, PreAuthorizedApps
from .transaction import Transaction

logger = logging.getLogger(__name__)

# Application tags
MANAGED_APP_TAG = "azurerator_appreg"
LEGACY_MANAGED_APP_TAG = "iac_appreg"
INTEGRATED_APP_TAG = "WindowsAzureActiveDirectoryIntegratedApp"

SIGN_IN_AUDIENCE = "AzureADMyOrg"
ACCESS_TOKEN_VERSION = 2
GROUP_MEMBERSHIP_CLAIMS = "ApplicationGroup"


class DirectoryError(Exception):
    """Raised when a directory operation fails; the message names the operation."""

    pass


def is_managed(application: Application) -> bool:
    """Whether the application was registered by this operator."""
    return any(tag in (MANAGED_APP_TAG, LEGACY_MANAGED_APP_TAG) for tag in application.tags)


def identifier_uris(tx: Transaction, client_id: str) -> list[str]:
    instance = tx.instance
    return [
        f"api://{client_id}",
        f"api://{tx.cluster_name}.{instance.namespace}.{instance.name}",
    ]


def roles_of(app_roles: list[AppRole]) -> Permissions:
    """Role permissions as they will exist once ``app_roles`` is written."""
    roles = Permissions()
    for role in app_roles:
        roles.add(APP_ROLES.adapter.to_permission(role))
    return roles


def pre_authorized_applications_payload(
    resources: list[Resource], permissions: Permissions
) -> dict[str, Any]:
    """Patch body replacing the application's pre-authorized applications.

    The list is always sent, also when empty, so that removing the last rule
    clears it in the directory.
    """
    apps = [
        {
            "appId": resource.client_id,
            "delegatedPermissionIds": permissions.filter(
                DEFAULT_PERMISSION_SCOPE_VALUE, *resource.scopes
            ).permission_ids(),
        }
        for resource in resources
    ]
    return {"api": {"preAuthorizedApplications": apps}}


class DirectoryClient:
    """Application lifecycle operations against the directory."""

    def __init__(self, graph: GraphApi, config: Config, caches: Caches | None = None) -> None:
        self._graph = graph
        self._config = config
        self._caches = caches or Caches()

    # =========================================================================
    # Templates
    # =========================================================================

    def _template(self, tx: Transaction) -> dict[str, Any]:
        instance = tx.instance
        redirect_uris = [u.url for u in instance.spec.reply_urls]

        template: dict[str, Any] = {
            "displayName": tx.uniform_resource_name,
            "signInAudience": SIGN_IN_AUDIENCE,
            "tags": [MANAGED_APP_TAG, INTEGRATED_APP_TAG],
            "groupMembershipClaims": GROUP_MEMBERSHIP_CLAIMS,
            "api": {"requestedAccessTokenVersion": ACCESS_TOKEN_VERSION},
            "web": {
                "logoutUrl": instance.spec.logout_url or None,
                "implicitGrantSettings": {
                    "enableIdTokenIssuance": False,
                    "enableAccessTokenIssuance": False,
                },
                "redirectUris": [] if instance.spec.single_page_application else redirect_uris,
            },
            "spa": {
                "redirectUris": redirect_uris if instance.spec.single_page_application else [],
            },
        }
        return template

    @staticmethod
    def _with_permissions(
        template: dict[str, Any], roles: list[AppRole], scopes: list[PermissionScope]
    ) -> dict[str, Any]:
        template["appRoles"] = [to_wire(r) for r in roles]
        template["api"]["oauth2PermissionScopes"] = [to_wire(s) for s in scopes]
        return template

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _call(self, operation: str, coro: Any) -> Any:
        try:
            return await coro
        except AzureError as e:
            raise DirectoryError(f"{operation}: {e}") from e

    async def get_by_client_id(self, client_id: str) -> Application:
        application = await self._call(
            f"fetching application with client ID '{client_id}'",
            self._graph.get_application_by_client_id(client_id),
        )
        if application is None:
            raise DirectoryError(f"fetching application with client ID '{client_id}': not found")
        return application

    async def get_by_name(self, name: str) -> Application | None:
        applications = await self._call(
            f"fetching application with name '{name}'", self._graph.list_applications(name)
        )
        match len(applications):
            case 0:
                return None
            case 1:
                return applications[0]
            case _:
                raise DirectoryError(
                    f"fetching application with name '{name}': found more than one matching application"
                )

    async def exists(self, tx: Transaction) -> Application | None:
        """The resource's application, looked up by client ID if known, else by name."""
        client_id = tx.instance.status.client_id
        if client_id:
            return await self._call(
                f"fetching application with client ID '{client_id}'",
                self._graph.get_application_by_client_id(client_id),
            )
        return await self.get_by_name(tx.uniform_resource_name)

    async def get(self, tx: Transaction) -> Application:
        application = await self.exists(tx)
        if application is None:
            raise DirectoryError(f"application '{tx.uniform_resource_name}' does not exist")
        return application

    async def get_service_principal(self, tx: Transaction) -> ServicePrincipal:
        client_id = tx.instance.status.client_id
        sp = await self._call(
            f"fetching service principal for client ID '{client_id}'",
            self._graph.get_service_principal(client_id),
        )
        if sp is None:
            raise DirectoryError(f"service principal for client ID '{client_id}' does not exist")
        return sp

    async def is_managed_principal(self, principal_id: str) -> bool:
        """Whether a service principal belongs to an application managed here."""
        cached = self._caches.managed_principals.get(principal_id)
        if cached is not None:
            return cached

        sp = await self._call(
            f"fetching service principal '{principal_id}'",
            self._graph.get_service_principal_by_id(principal_id),
        )
        managed = False
        if sp is not None:
            application = await self._call(
                f"fetching application with client ID '{sp.app_id}'",
                self._graph.get_application_by_client_id(sp.app_id),
            )
            managed = application is not None and is_managed(application)

        self._caches.managed_principals.set(principal_id, managed)
        return managed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(self, tx: Transaction) -> ApplicationResult:
        """Register the application and its service principal, then process access."""
        desired = generate_desired_permission_set(tx.instance)

        roles = APP_ROLES.describe_create(desired)
        roles.log(tx.log_fields)
        scopes = PERMISSION_SCOPES.describe_create(desired)
        scopes.log(tx.log_fields)

        payload = self._with_permissions(self._template(tx), roles.result, scopes.result)
        application: Application = await self._call(
            "registering application", self._graph.create_application(payload)
        )
        tx.instance.status.client_id = application.app_id
        tx.instance.status.object_id = application.id

        sp: ServicePrincipal = await self._call(
            "registering service principal for application",
            self._graph.create_service_principal(application.app_id),
        )
        tx.instance.status.service_principal_id = sp.id

        await self._call(
            "setting identifier URIs for application",
            self._graph.patch_application(
                application.id, {"identifierUris": identifier_uris(tx, application.app_id)}
            ),
        )

        pre_authorized_apps = await self._process(tx, desired, roles_of(roles.result))

        return ApplicationResult(
            client_id=application.app_id,
            object_id=application.id,
            service_principal_id=sp.id,
            tenant=self._config.tenant.id,
            operation=Operation.CREATED,
            permissions=desired,
            pre_authorized_apps=pre_authorized_apps,
        )

    async def update(self, tx: Transaction) -> ApplicationResult:
        """Bring an existing application in line with the resource."""
        status = tx.instance.status
        existing = await self.get_by_client_id(status.client_id)
        desired = generate_desired_permission_set_preserve_existing(tx.instance, existing)

        roles = APP_ROLES.describe_update(desired, existing.app_roles)
        roles.log(tx.log_fields)
        scopes = PERMISSION_SCOPES.describe_update(desired, existing.api.oauth2_permission_scopes)
        scopes.log(tx.log_fields)

        uris = list(dict.fromkeys([*identifier_uris(tx, status.client_id), *existing.identifier_uris]))
        payload = self._with_permissions(self._template(tx), roles.result, scopes.result)
        payload["identifierUris"] = uris

        await self._call(
            "updating application resource",
            self._graph.patch_application(status.object_id, payload),
        )

        pre_authorized_apps = await self._process(tx, desired, roles_of(roles.result))

        if roles.to_disable or scopes.to_disable:
            await self.remove_disabled_permissions(tx, roles.result, scopes.result)

        return ApplicationResult(
            client_id=status.client_id,
            object_id=status.object_id,
            service_principal_id=status.service_principal_id,
            tenant=self._config.tenant.id,
            operation=Operation.UPDATED,
            permissions=desired,
            pre_authorized_apps=pre_authorized_apps,
        )

    async def remove_disabled_permissions(
        self, tx: Transaction, roles: list[AppRole], scopes: list[PermissionScope]
    ) -> None:
        """Delete entries disabled by a previous patch.

        The directory only deletes roles and scopes that are already disabled,
        and refuses to delete a scope still granted to a pre-authorized app.
        """
        payload = {
            "appRoles": [to_wire(r) for r in APP_ROLES.remove_disabled(roles)],
            "api": {
                "oauth2PermissionScopes": [
                    to_wire(s) for s in PERMISSION_SCOPES.remove_disabled(scopes)
                ]
            },
        }
        await self._call(
            "removing disabled permissions",
            self._graph.patch_application(tx.instance.status.object_id, payload),
        )

    async def delete(self, tx: Transaction) -> None:
        application = await self.exists(tx)
        if application is None:
            raise DirectoryError("application does not exist")
        await self._call("deleting application", self._graph.delete_application(application.id))
        logger.info("Azure application deleted", extra=tx.log_fields)

    def credentials(self, tx: Transaction) -> CredentialRotationEngine:
        return CredentialRotationEngine(
            self._graph,
            delay_seconds=self._config.delay_between_modifications_seconds,
            log_fields=tx.log_fields,
        )

    # =========================================================================
    # Access processing
    # =========================================================================

    async def _process(
        self, tx: Transaction, desired: Permissions, roles: Permissions
    ) -> PreAuthorizedApps:
        try:
            pre_authorized_apps = await self.process_pre_authorized_apps(tx, desired, roles)
        except DirectoryError as e:
            raise DirectoryError(f"processing preauthorized apps: {e}") from e

        try:
            await self.process_groups(tx)
        except DirectoryError as e:
            raise DirectoryError(f"processing groups to service principal: {e}") from e

        await self.set_app_role_assignment_required(tx)
        return pre_authorized_apps

    def _assignments(self, tx: Transaction) -> AppRoleAssignmentReconciler:
        return AppRoleAssignmentReconciler(
            self._graph,
            tx.instance.status.service_principal_id,
            is_managed=self.is_managed_principal,
            log_fields=tx.log_fields,
        )

    def _self_resource(self, tx: Transaction) -> Resource:
        instance = tx.instance
        return Resource(
            name=tx.uniform_resource_name,
            client_id=instance.status.client_id,
            object_id=instance.status.service_principal_id,
            principal_type=PrincipalType.SERVICE_PRINCIPAL,
            access_policy_rule=AccessPolicyRule(
                application=instance.name,
                namespace=instance.namespace,
                cluster=tx.cluster_name,
            ),
        )

    async def _to_resource(self, rule: AccessPolicyRule) -> Resource | None:
        application = await self.get_by_name(rule.unique_name())
        if application is None:
            return None
        sp = await self._call(
            f"fetching service principal for client ID '{application.app_id}'",
            self._graph.get_service_principal(application.app_id),
        )
        if sp is None:
            return None
        return Resource(
            name=application.display_name,
            client_id=application.app_id,
            object_id=sp.id,
            principal_type=PrincipalType.SERVICE_PRINCIPAL,
            access_policy_rule=rule,
        )

    async def map_pre_authorized_apps(self, tx: Transaction) -> PreAuthorizedApps:
        """Split declared rules into applications that exist and those that do not.

        The resource's own application is always valid.
        """
        result = PreAuthorizedApps()
        seen: set[str] = set()

        for declared in tx.instance.spec.pre_authorized_applications:
            rule = declared.with_defaults(tx.cluster_name, tx.instance.namespace)
            try:
                resource = await self._to_resource(rule)
            except DirectoryError as e:
                raise DirectoryError(
                    f"looking up existence of PreAuthorizedApp '{rule.unique_name()}': {e}"
                ) from e

            if resource is None:
                result.invalid.append(
                    Resource(name=rule.unique_name(), access_policy_rule=rule)
                )
                continue
            if resource.name not in seen:
                seen.add(resource.name)
                result.valid.append(resource)

        if tx.uniform_resource_name not in seen:
            result.valid.append(self._self_resource(tx))

        return result

    async def process_pre_authorized_apps(
        self, tx: Transaction, desired: Permissions, roles: Permissions
    ) -> PreAuthorizedApps:
        pre_authorized_apps = await self.map_pre_authorized_apps(tx)

        await self._call(
            "patching preauthorizedapps for application",
            self._graph.patch_application(
                tx.instance.status.object_id,
                pre_authorized_applications_payload(pre_authorized_apps.valid, desired),
            ),
        )

        try:
            await self._assignments(tx).process_for_service_principals(
                pre_authorized_apps.valid, roles
            )
        except AssignmentError as e:
            raise DirectoryError(f"updating approle assignments for service principals: {e}") from e

        return pre_authorized_apps

    async def get_pre_authorized_apps(self, tx: Transaction) -> PreAuthorizedApps:
        """Assignment state of the declared applications without changing anything.

        A valid application counts as assigned only when it is both
        pre-authorized on the application and holds a role assignment.
        """
        desired = await self.map_pre_authorized_apps(tx)
        application = await self.get_by_client_id(tx.instance.status.client_id)
        pre_authorized = {a.app_id for a in application.api.pre_authorized_applications}

        sp_id = tx.instance.status.service_principal_id
        assignments: list[AppRoleAssignment] = await self._call(
            f"fetching AppRole assignments for service principal '{sp_id}'",
            self._graph.list_app_role_assignments(sp_id),
        )
        assigned_principals = {
            a.principal_id
            for a in assignments
            if a.principal_type == PrincipalType.SERVICE_PRINCIPAL.value
        }

        result = PreAuthorizedApps(invalid=list(desired.invalid))
        for resource in desired.valid:
            if resource.client_id in pre_authorized and resource.object_id in assigned_principals:
                result.valid.append(resource)
            else:
                result.invalid.append(resource)
        return result

    async def process_groups(self, tx: Transaction) -> None:
        """Assign the declared groups that exist to the service principal."""
        claims = tx.instance.spec.claims
        groups: list[Resource] = []
        for group in claims.groups if claims else []:
            exists = await self._call(
                f"looking up group '{group.id}'", self._graph.group_exists(group.id)
            )
            if not exists:
                logger.warning(f"group '{group.id}' does not exist; skipping", extra=tx.log_fields)
                continue
            groups.append(
                Resource(name=group.id, object_id=group.id, principal_type=PrincipalType.GROUP)
            )

        roles = Permissions()
        roles.add(DEFAULT_GROUP_ROLE)
        try:
            await self._assignments(tx).process_for_groups(groups, roles)
        except AssignmentError as e:
            raise DirectoryError(str(e)) from e

    async def set_app_role_assignment_required(self, tx: Transaction) -> None:
        """Require an assignment to obtain tokens unless all users are allowed."""
        required = not tx.instance.spec.allow_all_users
        await self._call(
            "setting appRoleAssignmentRequired on service principal",
            self._graph.patch_service_principal(
                tx.instance.status.service_principal_id,
                {"appRoleAssignmentRequired": required},
            ),
        )
