"""Declarative reconciliation of app roles and OAuth2 permission scopes.

Azure AD keeps roles (``appRoles``) and delegated scopes
(``api.oauth2PermissionScopes``) in two collections, but requires an entry of
the same name to carry the same ID in both. Both are therefore derived from
one ``Permissions`` set and diffed by one engine, ``PermissionReconciler``,
parameterised by an adapter that knows how to read and write the remote type.

The engine never touches the directory; it only describes the collection to
patch.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from .models import Application, AppRole, AzureAdApplication, PermissionScope

logger = logging.getLogger(__name__)

# OAuth2 permission scope exposed to every pre-authorized client application
DEFAULT_PERMISSION_SCOPE_VALUE = "defaultaccess"
DEFAULT_PERMISSION_SCOPE_ID = "00000000-1337-d34d-b33f-000000000000"
# Scopes must require admin consent; pre-authorization grants it
DEFAULT_SCOPE_TYPE = "Admin"

# App role assigned to every pre-authorized client application
DEFAULT_APP_ROLE_VALUE = "access_as_application"
DEFAULT_APP_ROLE_ID = "00000001-abcd-9001-0000-000000000000"

# Groups are assigned without a specific role using the all-zero role ID
DEFAULT_GROUP_ROLE_VALUE = "defaultrole"
DEFAULT_GROUP_ROLE_ID = "00000000-0000-0000-0000-000000000000"

APP_ROLE_MEMBER_TYPE = "Application"

T = TypeVar("T", AppRole, PermissionScope)


@dataclass(frozen=True)
class Permission:
    """A named role or scope with a stable identifier."""

    name: str
    id: str
    enabled: bool = True

    @classmethod
    def generate(cls, name: str, enabled: bool = True) -> Permission:
        return cls(name=name, id=str(uuid.uuid4()), enabled=enabled)


DEFAULT_APP_ROLE = Permission(DEFAULT_APP_ROLE_VALUE, DEFAULT_APP_ROLE_ID)
DEFAULT_PERMISSION_SCOPE = Permission(DEFAULT_PERMISSION_SCOPE_VALUE, DEFAULT_PERMISSION_SCOPE_ID)
DEFAULT_GROUP_ROLE = Permission(DEFAULT_GROUP_ROLE_VALUE, DEFAULT_GROUP_ROLE_ID)


class Permissions(dict[str, Permission]):
    """Permissions keyed by name. The first permission added for a name wins."""

    def add(self, permission: Permission) -> None:
        self.setdefault(permission.name, permission)

    def filter(self, *names: str) -> Permissions:
        result = Permissions()
        for name in names:
            if name in self:
                result.add(self[name])
        return result

    def permission_ids(self) -> list[str]:
        return [p.id for p in self.values()]

    def enabled(self) -> Permissions:
        return Permissions({k: v for k, v in self.items() if v.enabled})

    def disabled(self) -> Permissions:
        return Permissions({k: v for k, v in self.items() if not v.enabled})

    def has_role_id(self, role_id: str) -> bool:
        return any(p.id == role_id for p in self.values())


# =============================================================================
# Desired permission sets
# =============================================================================


def _flatten(instance: AzureAdApplication, attr: str) -> list[str]:
    names: list[str] = []
    for rule in instance.spec.pre_authorized_applications:
        if rule.permissions is not None:
            names.extend(getattr(rule.permissions, attr))
    return names


def generate_desired_permission_set(instance: AzureAdApplication) -> Permissions:
    """Build the desired permissions from the resource's inbound rules.

    Every declared role and scope gets a freshly generated ID; both defaults
    are always present with their well-known IDs.
    """
    permissions = Permissions()
    for name in [*_flatten(instance, "scopes"), *_flatten(instance, "roles")]:
        permissions.add(Permission.generate(name))

    permissions.add(DEFAULT_APP_ROLE)
    permissions.add(DEFAULT_PERMISSION_SCOPE)
    return permissions


def extract_permissions(application: Application) -> Permissions:
    """Permissions as currently registered in the directory, scopes first."""
    permissions = Permissions()
    for scope in application.api.oauth2_permission_scopes:
        permissions.add(PERMISSION_SCOPES.adapter.to_permission(scope))
    for role in application.app_roles:
        permissions.add(APP_ROLES.adapter.to_permission(role))
    return permissions


def generate_desired_permission_set_preserve_existing(
    instance: AzureAdApplication, existing: Application
) -> Permissions:
    """Like ``generate_desired_permission_set`` but keep the remote ID of every known name."""
    desired = generate_desired_permission_set(instance)
    actual = extract_permissions(existing)

    for name in desired:
        if name in actual:
            desired[name] = actual[name]

    return desired


# =============================================================================
# Adapters
# =============================================================================


class PermissionAdapter(Protocol[T]):
    """Reads and writes one remote permission collection."""

    kind: str
    default: Permission

    def name_of(self, remote: T) -> str: ...

    def to_permission(self, remote: T) -> Permission: ...

    def new(self, permission: Permission) -> T: ...

    def with_enabled(self, remote: T, enabled: bool) -> T: ...

    def finalize(self, result: list[T]) -> list[T]: ...


class AppRoleAdapter:
    kind = "role"
    default = DEFAULT_APP_ROLE

    def name_of(self, remote: AppRole) -> str:
        return remote.value or ""

    def to_permission(self, remote: AppRole) -> Permission:
        return Permission(self.name_of(remote), remote.id, bool(remote.is_enabled))

    def new(self, permission: Permission) -> AppRole:
        return AppRole(
            id=permission.id,
            value=permission.name,
            display_name=permission.name,
            description=permission.name,
            allowed_member_types=[APP_ROLE_MEMBER_TYPE],
            is_enabled=True,
        )

    def with_enabled(self, remote: AppRole, enabled: bool) -> AppRole:
        return remote.model_copy(update={"is_enabled": enabled})

    def finalize(self, result: list[AppRole]) -> list[AppRole]:
        return result


class PermissionScopeAdapter:
    kind = "scope"
    default = DEFAULT_PERMISSION_SCOPE

    def name_of(self, remote: PermissionScope) -> str:
        return remote.value or ""

    def to_permission(self, remote: PermissionScope) -> Permission:
        return Permission(self.name_of(remote), remote.id, bool(remote.is_enabled))

    def new(self, permission: Permission) -> PermissionScope:
        return PermissionScope(
            id=permission.id,
            value=permission.name,
            admin_consent_description=permission.name,
            admin_consent_display_name=permission.name,
            is_enabled=True,
            type=DEFAULT_SCOPE_TYPE,
        )

    def with_enabled(self, remote: PermissionScope, enabled: bool) -> PermissionScope:
        return remote.model_copy(update={"is_enabled": enabled})

    def finalize(self, result: list[PermissionScope]) -> list[PermissionScope]:
        return [
            s if s.type == DEFAULT_SCOPE_TYPE else s.model_copy(update={"type": DEFAULT_SCOPE_TYPE})
            for s in result
        ]


# =============================================================================
# Diff engine
# =============================================================================


@dataclass
class PermissionDiff(Generic[T]):
    """Outcome of diffing desired permissions against one remote collection."""

    kind: str
    to_create: dict[str, T] = field(default_factory=dict)
    to_disable: dict[str, T] = field(default_factory=dict)
    unmodified: dict[str, T] = field(default_factory=dict)
    result: list[T] = field(default_factory=list)

    def log(self, extra: dict[str, str] | None = None) -> None:
        for label, entries in (
            ("creating desired", self.to_create),
            ("disabling non-desired", self.to_disable),
            ("unmodified", self.unmodified),
        ):
            if entries:
                logger.debug(
                    f"{label} {self.kind}s: {sorted(entries)}",
                    extra={**(extra or {}), "permission_kind": self.kind},
                )


class PermissionReconciler(Generic[T]):
    """Computes the full remote collection to write for a desired permission set."""

    def __init__(self, adapter: PermissionAdapter[T]) -> None:
        self.adapter = adapter

    def _to_map(self, existing: Iterable[T]) -> dict[str, T]:
        seen: dict[str, T] = {}
        for remote in existing:
            seen.setdefault(self.adapter.name_of(remote), remote)
        return seen

    def _to_create(self, existing: dict[str, T], desired: Permissions) -> dict[str, T]:
        default = self.adapter.default
        to_create: dict[str, T] = {}

        if default.name not in existing:
            to_create[default.name] = self.adapter.new(default)

        for permission in desired.values():
            if permission.name == default.name:
                continue
            if permission.name not in existing:
                to_create[permission.name] = self.adapter.new(permission)

        return to_create

    def _is_retired(self, name: str, remote: T, desired: Permissions) -> bool:
        """Not desired, not the default, and already disabled by an earlier update."""
        return (
            name not in desired
            and name != self.adapter.default.name
            and not self.adapter.to_permission(remote).enabled
        )

    def _to_disable(self, existing: dict[str, T], desired: Permissions) -> dict[str, T]:
        return {
            name: self.adapter.with_enabled(remote, False)
            for name, remote in existing.items()
            if name not in desired
            and name != self.adapter.default.name
            and not self._is_retired(name, remote, desired)
        }

    def _unmodified(
        self,
        existing: dict[str, T],
        desired: Permissions,
        to_create: dict[str, T],
        to_disable: dict[str, T],
    ) -> dict[str, T]:
        unmodified: dict[str, T] = {}
        for name, remote in existing.items():
            if name in to_create or name in to_disable:
                continue
            normalized = self.adapter.new(Permission(name, self.adapter.to_permission(remote).id))
            if self._is_retired(name, remote, desired):
                normalized = self.adapter.with_enabled(normalized, False)
            unmodified[name] = normalized
        return unmodified

    def _ensure_default_enabled(self, result: list[T]) -> list[T]:
        default = self.adapter.default.name
        return [
            self.adapter.with_enabled(r, True)
            if self.adapter.name_of(r) == default and not self.adapter.to_permission(r).enabled
            else r
            for r in result
        ]

    def describe_create(self, desired: Permissions) -> PermissionDiff[T]:
        """Describe the collection for a new application. Always contains the default."""
        to_create = self._to_create({}, desired)
        return PermissionDiff(
            kind=self.adapter.kind,
            to_create=to_create,
            result=self.adapter.finalize(list(to_create.values())),
        )

    def describe_update(self, desired: Permissions, existing: Iterable[T]) -> PermissionDiff[T]:
        """Describe the full collection that replaces ``existing``.

        New names are created, enabled names no longer desired are disabled
        (never the default), everything else is re-emitted in normalized form.
        Entries disabled by an earlier update stay disabled and are not
        reported again, so describing ``result`` once more yields no change.
        """
        existing_map = self._to_map(existing)

        to_create = self._to_create(existing_map, desired)
        to_disable = self._to_disable(existing_map, desired)
        unmodified = self._unmodified(existing_map, desired, to_create, to_disable)

        result = [*unmodified.values(), *to_create.values(), *to_disable.values()]
        result = self.adapter.finalize(self._ensure_default_enabled(result))

        return PermissionDiff(
            kind=self.adapter.kind,
            to_create=to_create,
            to_disable=to_disable,
            unmodified=unmodified,
            result=result,
        )

    def remove_disabled(self, existing: Iterable[T]) -> list[T]:
        """Drop disabled entries; the directory only deletes entries disabled beforehand."""
        return [r for r in existing if self.adapter.to_permission(r).enabled]


APP_ROLES: PermissionReconciler[AppRole] = PermissionReconciler(AppRoleAdapter())
PERMISSION_SCOPES: PermissionReconciler[PermissionScope] = PermissionReconciler(
    PermissionScopeAdapter()
)
