"""File-backed resource store.

Resources, secrets, pods and namespaces are YAML manifests below one root
directory::

    <root>/azureadapplications/<namespace>/<name>.yaml
    <root>/secrets/<namespace>/<name>.yaml
    <root>/pods/<namespace>/<name>.yaml
    <root>/namespaces/<name>.yaml

This lets the operator run stand-alone against a directory of manifests.
Status and secrets are written back to the same tree.

SECURITY: All reads enforce a size limit, and names are validated before they
are turned into paths.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import AzureAdApplication, Namespace, Pod, Secret, to_wire

logger = logging.getLogger(__name__)

APPLICATIONS_DIR = "azureadapplications"
SECRETS_DIR = "secrets"
PODS_DIR = "pods"
NAMESPACES_DIR = "namespaces"

# DNS-1123 subdomain, the rule Kubernetes applies to object names
VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$"

M = TypeVar("M", bound=BaseModel)


class ResourceLoadError(Exception):
    """Raised when a manifest cannot be read, parsed or validated."""

    pass


def _check_name(value: str) -> str:
    if not re.match(VALID_NAME_PATTERN, value):
        raise ResourceLoadError(f"Invalid object name: {value!r}")
    return value


def load_manifest(path: Path) -> dict[str, Any]:
    """Read one YAML mapping from ``path``.

    Raises:
        ResourceLoadError: If the file is too large, unreadable or not a mapping.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ResourceLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ResourceLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ResourceLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ResourceLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ResourceLoadError(f"Manifest must contain a YAML mapping: {path}")

    return raw_data


def parse_manifest(path: Path, model: type[M]) -> M:
    raw_data = load_manifest(path)
    try:
        return model.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ResourceLoadError(f"Validation failed for {path}:\n{error_list}") from e


def write_manifest(path: Path, model: BaseModel) -> None:
    """Atomically replace ``path`` with the YAML form of ``model``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = yaml.safe_dump(to_wire(model), sort_keys=False)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


def _matches(labels: dict[str, str], selector: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())


class FileResourceStore:
    """``ResourceStore`` over a manifest directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, kind_dir: str, namespace: str, name: str) -> Path:
        return self._root / kind_dir / _check_name(namespace) / f"{_check_name(name)}.yaml"

    def _list(self, kind_dir: str, namespace: str, model: type[M]) -> list[M]:
        directory = self._root / kind_dir / _check_name(namespace)
        if not directory.is_dir():
            return []
        return [parse_manifest(p, model) for p in sorted(directory.glob("*.yaml"))]

    # =========================================================================
    # AzureAdApplication
    # =========================================================================

    async def list_keys(self) -> list[str]:
        base = self._root / APPLICATIONS_DIR
        if not base.is_dir():
            return []
        return [f"{p.parent.name}/{p.stem}" for p in sorted(base.glob("*/*.yaml"))]

    async def get(self, key: str) -> AzureAdApplication | None:
        namespace, _, name = key.partition("/")
        path = self._path(APPLICATIONS_DIR, namespace, name)
        if not path.exists():
            return None
        instance = parse_manifest(path, AzureAdApplication)
        # The directory layout is authoritative for identity
        instance.metadata.namespace = namespace
        instance.metadata.name = name
        return instance

    async def update(self, instance: AzureAdApplication) -> AzureAdApplication:
        path = self._path(APPLICATIONS_DIR, instance.namespace, instance.name)
        if instance.is_being_deleted() and not instance.metadata.finalizers:
            # Last finalizer removed: the resource and what it owns are gone
            path.unlink(missing_ok=True)
            await self._collect_owned_secrets(instance)
            logger.info(f"removed resource '{instance.key}'", extra={"key": instance.key})
            return instance
        write_manifest(path, instance)
        return instance

    async def update_status(self, instance: AzureAdApplication) -> AzureAdApplication:
        path = self._path(APPLICATIONS_DIR, instance.namespace, instance.name)
        if not path.exists():
            raise ResourceLoadError(f"resource '{instance.key}' does not exist")
        stored = parse_manifest(path, AzureAdApplication)
        stored.status = instance.status
        write_manifest(path, stored)
        return stored

    async def _collect_owned_secrets(self, instance: AzureAdApplication) -> None:
        for secret in self._list(SECRETS_DIR, instance.namespace, Secret):
            owners = secret.metadata.owner_references
            if any(o.kind == instance.kind and o.name == instance.name for o in owners):
                await self.delete_secret(instance.namespace, secret.metadata.name)

    # =========================================================================
    # Workloads
    # =========================================================================

    async def list_secrets(self, namespace: str, labels: dict[str, str]) -> list[Secret]:
        return [
            s for s in self._list(SECRETS_DIR, namespace, Secret) if _matches(s.metadata.labels, labels)
        ]

    async def create_or_update_secret(self, secret: Secret) -> Secret:
        path = self._path(SECRETS_DIR, secret.metadata.namespace, secret.metadata.name)
        if path.exists():
            existing = parse_manifest(path, Secret)
            secret.metadata.creation_timestamp = existing.metadata.creation_timestamp
        elif secret.metadata.creation_timestamp is None:
            secret.metadata.creation_timestamp = datetime.now(timezone.utc)
        write_manifest(path, secret)
        return secret

    async def delete_secret(self, namespace: str, name: str) -> None:
        self._path(SECRETS_DIR, namespace, name).unlink(missing_ok=True)

    async def list_pods(self, namespace: str, labels: dict[str, str]) -> list[Pod]:
        return [p for p in self._list(PODS_DIR, namespace, Pod) if _matches(p.metadata.labels, labels)]

    async def get_namespace(self, name: str) -> Namespace | None:
        path = self._root / NAMESPACES_DIR / f"{_check_name(name)}.yaml"
        if not path.exists():
            return None
        return parse_manifest(path, Namespace)
