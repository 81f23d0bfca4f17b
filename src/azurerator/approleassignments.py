"""Reconciliation of app role assignments on the application's service principal.

For every enabled role the desired assignees are compared with the existing
assignments for that role. Edges are compared on (role, principal, resource),
never on the directory-assigned assignment ID.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import AzureError

from .interfaces import GraphApi
from .models import AppRoleAssignment, PrincipalType, Resource
from .permissions import (
    DEFAULT_APP_ROLE_VALUE,
    DEFAULT_GROUP_ROLE_VALUE,
    Permission,
    Permissions,
)

logger = logging.getLogger(__name__)

UNKNOWN_ROLE = "UNKNOWN_ROLE"

OPERATION_ASSIGNED = "assigned"
OPERATION_REVOKED = "revoked"
OPERATION_SKIPPED = "skipped (already assigned)"


class AssignmentError(Exception):
    """Raised when assigning or revoking an app role fails."""

    pass


@dataclass
class AssignmentDiff:
    """Assignments to add, remove and leave alone for a single role."""

    to_assign: list[AppRoleAssignment] = field(default_factory=list)
    to_revoke: list[AppRoleAssignment] = field(default_factory=list)
    unmodified: list[AppRoleAssignment] = field(default_factory=list)


def filter_by_role_id(assignments: list[AppRoleAssignment], role_id: str) -> list[AppRoleAssignment]:
    return [a for a in assignments if a.app_role_id == role_id]


def filter_by_type(
    assignments: list[AppRoleAssignment], principal_type: PrincipalType
) -> list[AppRoleAssignment]:
    return [a for a in assignments if a.principal_type == principal_type.value]


def without_matching_role(
    assignments: list[AppRoleAssignment], roles: Permissions
) -> list[AppRoleAssignment]:
    return [a for a in assignments if not roles.has_role_id(a.app_role_id)]


def difference(
    left: list[AppRoleAssignment], right: list[AppRoleAssignment]
) -> list[AppRoleAssignment]:
    """Assignments in ``left`` whose (role, principal, resource) is absent from ``right``."""
    keys = {a.key for a in right}
    return [a for a in left if a.key not in keys]


def diff_assignments(
    existing: list[AppRoleAssignment], desired: list[AppRoleAssignment]
) -> AssignmentDiff:
    to_assign = difference(desired, existing)
    to_revoke = difference(existing, desired)
    unmodified = difference(existing, [*to_assign, *to_revoke])
    return AssignmentDiff(to_assign=to_assign, to_revoke=to_revoke, unmodified=unmodified)


def desired_assignees(
    role: Permission, assignees: list[Resource], principal_type: PrincipalType
) -> list[Resource]:
    """Assignees that should hold ``role``.

    Groups only ever receive the default group role. For service principals
    the default app role goes to everyone, other roles to those that declare
    them.
    """
    match principal_type:
        case PrincipalType.GROUP:
            return list(assignees) if role.name == DEFAULT_GROUP_ROLE_VALUE else []
        case PrincipalType.SERVICE_PRINCIPAL:
            if role.name == DEFAULT_APP_ROLE_VALUE:
                return list(assignees)
            seen: set[str] = set()
            result: list[Resource] = []
            for assignee in assignees:
                if role.name in assignee.roles and assignee.object_id not in seen:
                    seen.add(assignee.object_id)
                    result.append(assignee)
            return result
        case _:
            return []


class AppRoleAssignmentReconciler:
    """Assigns and revokes roles on one target service principal."""

    def __init__(
        self,
        graph: GraphApi,
        target_id: str,
        is_managed: Callable[[str], Awaitable[bool]] | None = None,
        log_fields: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            graph: Directory API.
            target_id: Object ID of the service principal owning the roles.
            is_managed: Predicate on a principal's object ID; existing service
                principal assignments of unmanaged principals are left alone.
            log_fields: Structured fields added to every log line.
        """
        self._graph = graph
        self._target_id = target_id
        self._is_managed = is_managed
        self._log_fields = dict(log_fields or {})

    async def process_for_groups(self, assignees: list[Resource], roles: Permissions) -> None:
        await self.process_for(PrincipalType.GROUP, assignees, roles)

    async def process_for_service_principals(
        self, assignees: list[Resource], roles: Permissions
    ) -> None:
        await self.process_for(PrincipalType.SERVICE_PRINCIPAL, assignees, roles)

    async def process_for(
        self, principal_type: PrincipalType, assignees: list[Resource], roles: Permissions
    ) -> None:
        """Bring assignments of ``principal_type`` in line with ``roles``.

        Raises:
            AssignmentError: On the first failing assign or revoke call.
        """
        existing = await self._existing(principal_type)
        candidates = [
            a for a in assignees if a.principal_type == principal_type and a.object_id
        ]

        for role in roles.enabled().values():
            existing_for_role = filter_by_role_id(existing, role.id)
            desired = [
                assignee.to_app_role_assignment(self._target_id, role.id)
                for assignee in desired_assignees(role, candidates, principal_type)
            ]
            names = {a.object_id: a.name for a in candidates}

            diff = diff_assignments(existing_for_role, desired)

            for assignment in diff.to_assign:
                await self._assign(assignment, role, principal_type)
            for assignment in diff.to_revoke:
                await self._revoke(assignment, role, principal_type)
            for assignment in diff.unmodified:
                name = names.get(assignment.principal_id, assignment.principal_display_name or "")
                self._log(OPERATION_SKIPPED, principal_type, name, role.name)

        for role in roles.disabled().values():
            for assignment in filter_by_role_id(existing, role.id):
                await self._revoke(assignment, role, principal_type)

        for assignment in without_matching_role(existing, roles):
            unknown = Permission(UNKNOWN_ROLE, assignment.app_role_id, False)
            await self._revoke(assignment, unknown, principal_type)

    async def _existing(self, principal_type: PrincipalType) -> list[AppRoleAssignment]:
        try:
            assignments = await self._graph.list_app_role_assignments(self._target_id)
        except AzureError as e:
            raise AssignmentError(
                f"fetching AppRole assignments for target service principal ID '{self._target_id}': {e}"
            ) from e

        assignments = filter_by_type(assignments, principal_type)
        if principal_type != PrincipalType.SERVICE_PRINCIPAL or self._is_managed is None:
            return assignments

        managed: list[AppRoleAssignment] = []
        for assignment in assignments:
            if await self._is_managed(assignment.principal_id):
                managed.append(assignment)
        return managed

    async def _assign(
        self, assignment: AppRoleAssignment, role: Permission, principal_type: PrincipalType
    ) -> None:
        try:
            await self._graph.add_app_role_assignment(self._target_id, assignment)
        except AzureError as e:
            raise self._wrap(e, assignment, role, principal_type) from e
        self._log(OPERATION_ASSIGNED, principal_type, assignment.principal_display_name or "", role.name)

    async def _revoke(
        self, assignment: AppRoleAssignment, role: Permission, principal_type: PrincipalType
    ) -> None:
        try:
            await self._graph.delete_app_role_assignment(self._target_id, assignment.id or "")
        except AzureError as e:
            raise self._wrap(e, assignment, role, principal_type) from e
        self._log(OPERATION_REVOKED, principal_type, assignment.principal_display_name or "", role.name)

    def _wrap(
        self,
        error: Exception,
        assignment: AppRoleAssignment,
        role: Permission,
        principal_type: PrincipalType,
    ) -> AssignmentError:
        return AssignmentError(
            f"processing AppRole assignment for {principal_type.value} "
            f"'{assignment.principal_display_name}' ({assignment.principal_id}) "
            f"with role '{role.name}' ({role.id}) and target service principal ID "
            f"'{self._target_id}': {error}"
        )

    def _log(self, operation: str, principal_type: PrincipalType, name: str, role: str) -> None:
        logger.info(
            f"{operation} AppRole assignment for {principal_type.value} '{name}' to role '{role}'.",
            extra={
                **self._log_fields,
                "target_id": self._target_id,
                "principal_type": principal_type.value,
                "role_name": role,
            },
        )
