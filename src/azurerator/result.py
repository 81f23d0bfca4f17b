"""Outcome of one directory synchronization."""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import Operation, Resource
from .permissions import Permissions


@dataclass
class PreAuthorizedApps:
    # Applications that are or can be assigned in the directory
    valid: list[Resource] = field(default_factory=list)
    # Applications that cannot be assigned, e.g. because they do not exist
    invalid: list[Resource] = field(default_factory=list)


@dataclass
class ApplicationResult:
    """Identifiers and derived state of an application after synchronization."""

    client_id: str
    object_id: str
    service_principal_id: str
    tenant: str
    operation: Operation
    permissions: Permissions = field(default_factory=Permissions)
    pre_authorized_apps: PreAuthorizedApps = field(default_factory=PreAuthorizedApps)

    def is_created(self) -> bool:
        return self.operation == Operation.CREATED

    def is_updated(self) -> bool:
        return self.operation == Operation.UPDATED

    def is_modified(self) -> bool:
        return self.is_created() or self.is_updated()

    def is_not_modified(self) -> bool:
        return self.operation == Operation.NOT_MODIFIED
