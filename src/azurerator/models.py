"""Pydantic models for the AzureAdApplication resource and the objects around it.

Three families live here:
1. The declarative resource (spec, status, metadata) and the workload objects
   read from the resource store (secrets, pods, namespaces)
2. Directory objects as exchanged with Microsoft Graph (camelCase on the wire)
3. Value types shared by the reconcilers (principal types, operations)

All models accept both the wire alias and the Python field name.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

API_VERSION = "nais.io/v1"
KIND = "AzureAdApplication"

# Synchronization states reported in status.synchronizationState
EVENT_SYNCHRONIZED = "Synchronized"
EVENT_FAILED_SYNCHRONIZATION = "FailedSynchronization"
EVENT_FAILED_PREPARE = "FailedPrepare"
EVENT_CREATED_IN_AZURE = "CreatedInAzure"
EVENT_UPDATED_IN_AZURE = "UpdatedInAzure"
EVENT_DELETED_IN_AZURE = "DeletedInAzure"
EVENT_NOT_IN_TEAM_NAMESPACE = "NotInTeamNamespace"
EVENT_SKIPPED = "Skipped"
EVENT_ROTATED_IN_AZURE = "RotatedInAzure"
EVENT_ADDED_IN_AZURE = "AddedInAzure"

WIRE_CONFIG: dict[str, Any] = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Shared value types
# =============================================================================


class PrincipalType(str, Enum):
    """Kinds of directory principals that can hold an app role."""

    GROUP = "Group"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    USER = "User"


class Operation(str, Enum):
    """What the directory client did with the application."""

    CREATED = "created"
    UPDATED = "updated"
    NOT_MODIFIED = "notmodified"


# =============================================================================
# Resource metadata
# =============================================================================


class OwnerReference(BaseModel):
    model_config = WIRE_CONFIG

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    name: str
    uid: str = ""


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata used by the operator."""

    model_config = WIRE_CONFIG

    name: str
    namespace: str = "default"
    uid: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @field_validator("annotations", "labels", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or {}


# =============================================================================
# AzureAdApplication
# =============================================================================


class AccessPolicyPermissions(BaseModel):
    model_config = WIRE_CONFIG

    roles: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)


class AccessPolicyRule(BaseModel):
    """An application allowed to call this one (inbound access policy rule)."""

    model_config = WIRE_CONFIG

    application: str
    namespace: str = ""
    cluster: str = ""
    permissions: AccessPolicyPermissions | None = None

    def unique_name(self) -> str:
        """Display name of the rule's application in the directory."""
        return f"{self.cluster}:{self.namespace}:{self.application}"

    def with_defaults(self, cluster: str, namespace: str) -> AccessPolicyRule:
        """Fill in omitted cluster and namespace from the declaring resource."""
        return self.model_copy(
            update={
                "cluster": self.cluster or cluster,
                "namespace": self.namespace or namespace,
            }
        )


class ReplyUrl(BaseModel):
    model_config = WIRE_CONFIG

    url: str


class GroupClaim(BaseModel):
    model_config = WIRE_CONFIG

    id: str


class Claims(BaseModel):
    model_config = WIRE_CONFIG

    groups: list[GroupClaim] = Field(default_factory=list)


class AzureAdApplicationSpec(BaseModel):
    """Desired state of an Azure AD application."""

    model_config = WIRE_CONFIG

    secret_name: str = Field(alias="secretName", min_length=1)
    reply_urls: list[ReplyUrl] = Field(default_factory=list, alias="replyUrls")
    pre_authorized_applications: list[AccessPolicyRule] = Field(
        default_factory=list, alias="preAuthorizedApplications"
    )
    logout_url: str = Field("", alias="logoutUrl")
    secret_key_prefix: str = Field("", alias="secretKeyPrefix")
    secret_protected: bool = Field(False, alias="secretProtected")
    tenant: str = ""
    allow_all_users: bool = Field(False, alias="allowAllUsers")
    single_page_application: bool = Field(False, alias="singlePageApplication")
    claims: Claims | None = None

    @field_validator("secret_key_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if v and not v.replace("_", "").isalnum():
            raise ValueError("secretKeyPrefix may only contain letters, digits and underscores")
        return v


class PreAuthorizedAppStatus(BaseModel):
    """Assignment state of one declared pre-authorized application."""

    model_config = WIRE_CONFIG

    access_policy_rule: AccessPolicyRule = Field(alias="accessPolicyRule")
    client_id: str = Field("", alias="clientId")
    service_principal_object_id: str = Field("", alias="servicePrincipalObjectId")
    reason: str = ""


class PreAuthorizedAppsStatus(BaseModel):
    model_config = WIRE_CONFIG

    assigned: list[PreAuthorizedAppStatus] = Field(default_factory=list)
    unassigned: list[PreAuthorizedAppStatus] = Field(default_factory=list)


class AzureAdApplicationStatus(BaseModel):
    """Observed state, written only after a fully successful reconcile."""

    model_config = WIRE_CONFIG

    client_id: str = Field("", alias="clientId")
    object_id: str = Field("", alias="objectId")
    service_principal_id: str = Field("", alias="servicePrincipalId")
    certificate_key_ids: list[str] = Field(default_factory=list, alias="certificateKeyIds")
    password_key_ids: list[str] = Field(default_factory=list, alias="passwordKeyIds")
    correlation_id: str = Field("", alias="correlationId")
    synchronization_hash: str = Field("", alias="synchronizationHash")
    synchronization_secret_name: str = Field("", alias="synchronizationSecretName")
    synchronization_secret_rotation_time: datetime | None = Field(
        None, alias="synchronizationSecretRotationTime"
    )
    synchronization_state: str = Field("", alias="synchronizationState")
    synchronization_time: datetime | None = Field(None, alias="synchronizationTime")
    synchronization_tenant: str = Field("", alias="synchronizationTenant")
    synchronization_tenant_name: str = Field("", alias="synchronizationTenantName")
    pre_authorized_apps: PreAuthorizedAppsStatus | None = Field(None, alias="preAuthorizedApps")


class AzureAdApplication(BaseModel):
    """The declarative resource reconciled by this operator."""

    model_config = WIRE_CONFIG

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: AzureAdApplicationSpec
    status: AzureAdApplicationStatus = Field(default_factory=AzureAdApplicationStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Store key of the resource: ``namespace/name``."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def uniform_resource_name(self, cluster: str) -> str:
        """Display name of this resource's application in the directory."""
        return f"{cluster}:{self.metadata.namespace}:{self.metadata.name}"

    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]

    def secret_key_prefix(self, default: str) -> str:
        return self.spec.secret_key_prefix or default

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.metadata.uid,
        )


# =============================================================================
# Workload objects
# =============================================================================


class Secret(BaseModel):
    """A Kubernetes secret holding managed credential material."""

    model_config = WIRE_CONFIG

    api_version: str = Field("v1", alias="apiVersion")
    kind: str = "Secret"
    metadata: ObjectMeta
    type: str = "Opaque"
    string_data: dict[str, str] = Field(default_factory=dict, alias="stringData")


class SecretReference(BaseModel):
    model_config = WIRE_CONFIG

    name: str


class EnvFromSource(BaseModel):
    model_config = WIRE_CONFIG

    secret_ref: SecretReference | None = Field(None, alias="secretRef")


class Container(BaseModel):
    model_config = WIRE_CONFIG

    name: str = ""
    env_from: list[EnvFromSource] = Field(default_factory=list, alias="envFrom")


class SecretVolumeSource(BaseModel):
    model_config = WIRE_CONFIG

    secret_name: str = Field(alias="secretName")


class Volume(BaseModel):
    model_config = WIRE_CONFIG

    name: str = ""
    secret: SecretVolumeSource | None = None


class PodSpec(BaseModel):
    model_config = WIRE_CONFIG

    containers: list[Container] = Field(default_factory=list)
    init_containers: list[Container] = Field(default_factory=list, alias="initContainers")
    volumes: list[Volume] = Field(default_factory=list)


class Pod(BaseModel):
    model_config = WIRE_CONFIG

    metadata: ObjectMeta
    spec: PodSpec = Field(default_factory=PodSpec)


class Namespace(BaseModel):
    model_config = WIRE_CONFIG

    metadata: ObjectMeta


# =============================================================================
# Directory objects (Microsoft Graph)
# =============================================================================


class PasswordCredential(BaseModel):
    model_config = WIRE_CONFIG

    key_id: str | None = Field(None, alias="keyId")
    display_name: str | None = Field(None, alias="displayName")
    start_date_time: datetime | None = Field(None, alias="startDateTime")
    end_date_time: datetime | None = Field(None, alias="endDateTime")
    secret_text: str | None = Field(None, alias="secretText")
    hint: str | None = None


class KeyCredential(BaseModel):
    model_config = WIRE_CONFIG

    key_id: str | None = Field(None, alias="keyId")
    display_name: str | None = Field(None, alias="displayName")
    start_date_time: datetime | None = Field(None, alias="startDateTime")
    end_date_time: datetime | None = Field(None, alias="endDateTime")
    type: str | None = None
    usage: str | None = None
    key: str | None = None
    custom_key_identifier: str | None = Field(None, alias="customKeyIdentifier")


class AppRole(BaseModel):
    model_config = WIRE_CONFIG

    id: str
    value: str | None = None
    display_name: str | None = Field(None, alias="displayName")
    description: str | None = None
    allowed_member_types: list[str] = Field(default_factory=list, alias="allowedMemberTypes")
    is_enabled: bool | None = Field(None, alias="isEnabled")
    origin: str | None = None


class PermissionScope(BaseModel):
    model_config = WIRE_CONFIG

    id: str
    value: str | None = None
    admin_consent_description: str | None = Field(None, alias="adminConsentDescription")
    admin_consent_display_name: str | None = Field(None, alias="adminConsentDisplayName")
    user_consent_description: str | None = Field(None, alias="userConsentDescription")
    user_consent_display_name: str | None = Field(None, alias="userConsentDisplayName")
    is_enabled: bool | None = Field(None, alias="isEnabled")
    type: str | None = None
    origin: str | None = None


class PreAuthorizedApplication(BaseModel):
    model_config = WIRE_CONFIG

    app_id: str = Field(alias="appId")
    delegated_permission_ids: list[str] = Field(
        default_factory=list, alias="delegatedPermissionIds"
    )


class ApiApplication(BaseModel):
    model_config = WIRE_CONFIG

    oauth2_permission_scopes: list[PermissionScope] = Field(
        default_factory=list, alias="oauth2PermissionScopes"
    )
    pre_authorized_applications: list[PreAuthorizedApplication] = Field(
        default_factory=list, alias="preAuthorizedApplications"
    )
    requested_access_token_version: int | None = Field(None, alias="requestedAccessTokenVersion")
    accept_mapped_claims: bool | None = Field(None, alias="acceptMappedClaims")


class WebApplication(BaseModel):
    model_config = WIRE_CONFIG

    redirect_uris: list[str] = Field(default_factory=list, alias="redirectUris")
    logout_url: str | None = Field(None, alias="logoutUrl")


class Application(BaseModel):
    """An application registration in the directory."""

    model_config = WIRE_CONFIG

    id: str = ""
    app_id: str = Field("", alias="appId")
    display_name: str = Field("", alias="displayName")
    app_roles: list[AppRole] = Field(default_factory=list, alias="appRoles")
    api: ApiApplication = Field(default_factory=ApiApplication)
    web: WebApplication = Field(default_factory=WebApplication)
    spa: WebApplication | None = None
    identifier_uris: list[str] = Field(default_factory=list, alias="identifierUris")
    key_credentials: list[KeyCredential] = Field(default_factory=list, alias="keyCredentials")
    password_credentials: list[PasswordCredential] = Field(
        default_factory=list, alias="passwordCredentials"
    )
    sign_in_audience: str | None = Field(None, alias="signInAudience")
    group_membership_claims: str | None = Field(None, alias="groupMembershipClaims")
    tags: list[str] = Field(default_factory=list)

    @field_validator("api", "web", mode="before")
    @classmethod
    def none_to_default(cls, v: Any) -> Any:
        return {} if v is None else v


class ServicePrincipal(BaseModel):
    model_config = WIRE_CONFIG

    id: str = ""
    app_id: str = Field("", alias="appId")
    display_name: str = Field("", alias="displayName")
    app_role_assignment_required: bool | None = Field(None, alias="appRoleAssignmentRequired")
    tags: list[str] = Field(default_factory=list)


class AppRoleAssignment(BaseModel):
    """An edge between a principal and an app role on a target service principal."""

    model_config = WIRE_CONFIG

    id: str | None = None
    app_role_id: str = Field(alias="appRoleId")
    principal_id: str = Field(alias="principalId")
    resource_id: str = Field(alias="resourceId")
    principal_type: str | None = Field(None, alias="principalType")
    principal_display_name: str | None = Field(None, alias="principalDisplayName")

    @property
    def key(self) -> tuple[str, str, str]:
        """Identity of the edge; the directory-assigned ``id`` is irrelevant."""
        return (self.app_role_id, self.principal_id, self.resource_id)


class Resource(BaseModel):
    """A principal (application, group or user) known to exist in the directory."""

    model_config = WIRE_CONFIG

    name: str
    client_id: str = Field("", alias="clientId")
    object_id: str = Field("", alias="objectId")
    principal_type: PrincipalType = Field(PrincipalType.SERVICE_PRINCIPAL, alias="principalType")
    access_policy_rule: AccessPolicyRule | None = Field(None, alias="accessPolicyRule")

    @property
    def roles(self) -> list[str]:
        rule = self.access_policy_rule
        return list(rule.permissions.roles) if rule and rule.permissions else []

    @property
    def scopes(self) -> list[str]:
        rule = self.access_policy_rule
        return list(rule.permissions.scopes) if rule and rule.permissions else []

    def to_app_role_assignment(self, target_id: str, role_id: str) -> AppRoleAssignment:
        return AppRoleAssignment(
            app_role_id=role_id,
            principal_id=self.object_id,
            resource_id=target_id,
            principal_type=self.principal_type.value,
            principal_display_name=self.name,
        )


def to_wire(model: BaseModel) -> dict[str, Any]:
    """Serialize a model the way Graph and the resource store expect it."""
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")
