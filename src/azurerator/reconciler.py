"""Reconciliation pipeline for AzureAdApplication resources.

One reconcile brings one resource, its directory application and its managed
secret in line with the declared spec:

1. Prepare: correlation ID, managed secrets, options, existence in the directory
2. Policy: skip resources in shared namespaces and resources for other tenants
3. Finalizer: finalize deleted resources, register the finalizer on new ones
4. Credential housekeeping, then short-circuit when nothing changed
5. Create, update or inspect the directory application
6. Add or rotate credentials and write the managed secret
7. Commit status and clear one-shot annotations

Any failure records a FailedSynchronization event, writes the degraded state
and raises ``ReconcileError``; the run loop decides when to retry.

SECURITY: Every reconcile runs under a deadline so a hanging directory call
cannot stall the loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .annotations import (
    APP_LABEL_KEY,
    DEPLOYMENT_CORRELATION_ID_KEY,
    FINALIZER_NAME,
    LEGACY_FINALIZER_NAME,
    NOT_IN_TEAM_NAMESPACE_KEY,
    RESYNC_KEY,
    ROTATE_KEY,
    has_annotation,
    is_shared_namespace,
    remove_annotation,
    secret_labels,
    set_annotation,
)
from .caches import Caches
from .config import DEFAULT_SECRET_KEY_PREFIX, REQUEUE_MARGIN_SECONDS, Config
from .credentials import (
    CredentialError,
    CredentialRotationEngine,
    CredentialSet,
    KeyIdsInUse,
    dedupe,
)
from .directory import DirectoryClient, DirectoryError
from .events import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    Event,
    EventPublisher,
    LoggingEventRecorder,
    created_event,
    has_matching_pre_authorized_app,
)
from .interfaces import EventRecorder, EventSink, GraphApi, ResourceStore
from .models import (
    EVENT_ADDED_IN_AZURE,
    EVENT_CREATED_IN_AZURE,
    EVENT_DELETED_IN_AZURE,
    EVENT_FAILED_SYNCHRONIZATION,
    EVENT_NOT_IN_TEAM_NAMESPACE,
    EVENT_ROTATED_IN_AZURE,
    EVENT_SYNCHRONIZED,
    EVENT_UPDATED_IN_AZURE,
    AccessPolicyRule,
    AzureAdApplication,
    Operation,
    PreAuthorizedAppsStatus,
    PreAuthorizedAppStatus,
)
from .options import build_options, spec_hash, with_invalid_credentials
from .result import ApplicationResult, PreAuthorizedApps
from .secrets import (
    SecretDataError,
    SecretDataKeys,
    build_secret,
    classify,
    key_ids_in_use,
    previous_credentials_set,
    secret_data,
)
from .store import ResourceLoadError
from .transaction import PreparedSecrets, Transaction

logger = logging.getLogger(__name__)

# Reasons of informational events about pre-authorized applications
ACCESS_POLICY_ASSIGNED = "AccessPolicyAssigned"
ACCESS_POLICY_SKIPPED = "AccessPolicySkipped"


class ReconcileError(Exception):
    """Raised when a reconcile fails; the resource status is left degraded."""

    pass


@dataclass
class ReconcileResult:
    """Outcome of reconciling one resource."""

    key: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    operation: Operation | None = None
    requeue_after: timedelta | None = None
    skipped: bool = False
    finalized: bool = False
    fingerprint: str | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


def fingerprint(instance: AzureAdApplication) -> str:
    """Digest of everything a user can change on a resource.

    Status is excluded; a change in any other part warrants a reconcile.
    """
    payload = {
        "spec": instance.spec.model_dump(by_alias=True, mode="json"),
        "annotations": instance.metadata.annotations,
        "labels": instance.metadata.labels,
        "finalizers": instance.metadata.finalizers,
        "deletionTimestamp": (
            instance.metadata.deletion_timestamp.isoformat()
            if instance.metadata.deletion_timestamp
            else None
        ),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Reconciler:
    """Reconciles AzureAdApplication resources against the directory.

    Distinct resources are reconciled concurrently, bounded by
    ``max_concurrent_reconciles``; reconciles of one resource never overlap.
    """

    def __init__(
        self,
        config: Config,
        graph: GraphApi,
        store: ResourceStore,
        recorder: EventRecorder | None = None,
        sink: EventSink | None = None,
        caches: Caches | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._caches = caches or Caches()
        self._directory = DirectoryClient(graph, config, self._caches)
        self._recorder = recorder or LoggingEventRecorder()
        self._publisher = EventPublisher(sink)

        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._shutdown_event = asyncio.Event()

        # key -> (earliest next reconcile, fingerprint at last success)
        self._schedule: dict[str, tuple[datetime, str]] = {}

    @property
    def config(self) -> Config:
        return self._config

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self) -> None:
        """Reconcile all resources every interval until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "cluster": self._config.cluster_name,
                "tenant": str(self._config.tenant),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
            },
        )

        while not self._shutdown_event.is_set():
            await self.reconcile_all()

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        await self._publisher.drain()
        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every resource that is due, in parallel."""
        keys = [key for key in await self._store.list_keys() if await self._is_due(key)]
        results = await asyncio.gather(*(self._dispatch(key) for key in keys))
        return [r for r in results if r is not None]

    async def _is_due(self, key: str) -> bool:
        scheduled = self._schedule.get(key)
        if scheduled is None:
            return True
        try:
            instance = await self._store.get(key)
        except ResourceLoadError as e:
            logger.error(f"loading resource: {e}", extra={"key": key})
            return False
        if instance is None:
            self._schedule.pop(key, None)
            return False

        not_before, last_fingerprint = scheduled
        return fingerprint(instance) != last_fingerprint or datetime.now(UTC) >= not_before

    async def _dispatch(self, key: str) -> ReconcileResult | None:
        async with self._semaphore:
            try:
                result = await self.reconcile(key)
            except ReconcileError as e:
                self._schedule.pop(key, None)
                logger.error("Reconciliation failed", extra={"key": key, "error": str(e)})
                return None

        if result.requeue_after is not None and result.fingerprint is not None:
            self._schedule[key] = (datetime.now(UTC) + result.requeue_after, result.fingerprint)
        else:
            self._schedule.pop(key, None)
        self._log_result(result)
        return result

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def handle_event(self, event: Event) -> list[str]:
        """Request a resync of every resource that pre-authorizes a new application.

        Returns:
            Keys of the resources marked for resynchronization.
        """
        if not event.is_created():
            return []

        resynced: list[str] = []
        for key in await self._store.list_keys():
            instance = await self._store.get(key)
            if instance is None:
                continue
            if not has_matching_pre_authorized_app(instance, event, self._config.cluster_name):
                continue

            set_annotation(instance.metadata, RESYNC_KEY, "true")
            await self._store.update(instance)
            self._schedule.pop(key, None)
            resynced.append(key)
            logger.info(
                f"resynchronizing '{key}' after '{event.name}' event for pre-authorized app",
                extra={
                    "key": key,
                    "event_id": event.id,
                    "event_application": event.application.name,
                },
            )
        return resynced

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def reconcile(self, key: str) -> ReconcileResult:
        """Reconcile one resource.

        Raises:
            ReconcileError: If any step fails. The degraded state has been
                written to the resource status when this is raised.
        """
        async with self._lock_for(key):
            result = ReconcileResult(key=key)
            try:
                instance = await self._store.get(key)
            except ResourceLoadError as e:
                raise ReconcileError(f"loading resource '{key}': {e}") from e
            if instance is None:
                logger.debug("resource not found; nothing to do", extra={"key": key})
                result.end_time = datetime.now(UTC)
                return result

            deadline = asyncio.timeout(self._config.context_timeout_seconds)
            try:
                async with deadline:
                    await self._reconcile(instance, result)
            except Exception as e:
                error: Exception = e
                if isinstance(e, TimeoutError) and deadline.expired():
                    error = ReconcileError(
                        f"deadline of {self._config.context_timeout_seconds}s exceeded"
                    )
                await self._handle_error(instance, error)
                raise ReconcileError(f"reconciling '{key}': {error}") from e
            finally:
                result.end_time = datetime.now(UTC)

            result.fingerprint = fingerprint(instance)
            return result

    async def _reconcile(self, instance: AzureAdApplication, result: ReconcileResult) -> None:
        tx = await self.prepare(instance)

        if await self._in_shared_namespace(tx):
            result.skipped = True
            return

        if tx.options.tenant.ignore:
            logger.debug(
                f"resource is not addressed to tenant {self._config.tenant}, ignoring...",
                extra=tx.log_fields,
            )
            await self._process_orphaned(tx)
            result.skipped = True
            return

        if tx.options.finalizer.finalize:
            await self._finalize(tx)
            result.finalized = True
            return

        if instance.is_being_deleted():
            # Deleted without one of our finalizers: nothing left to clean up
            await self._store.update(instance)
            result.finalized = True
            return

        if tx.options.finalizer.register:
            await self._register_finalizer(tx)

        await self._housekeeping(tx)

        if not tx.options.process.synchronize and (
            instance.status.synchronization_state == EVENT_SYNCHRONIZED
        ):
            logger.debug("resource is up to date", extra=tx.log_fields)
            result.requeue_after = self._short_circuit_requeue()
            return

        application = await self._process_azure(tx)
        result.operation = application.operation

        await self._process_secrets(tx, application)
        await self._complete(tx)
        result.requeue_after = timedelta(seconds=REQUEUE_MARGIN_SECONDS)

    def _short_circuit_requeue(self) -> timedelta:
        requeue_after = self._config.requeue_after
        if requeue_after <= timedelta(0):
            return self._config.secret_rotation_max_age
        return requeue_after

    # -------------------------------------------------------------------------
    # Prepare
    # -------------------------------------------------------------------------

    async def prepare(self, instance: AzureAdApplication) -> Transaction:
        correlation_id = (
            instance.metadata.annotations.get(DEPLOYMENT_CORRELATION_ID_KEY) or str(uuid.uuid4())
        )
        instance.status.correlation_id = correlation_id

        secrets = await self.prepare_secrets(instance)
        tx = Transaction(
            id=correlation_id,
            cluster_name=self._config.cluster_name,
            instance=instance,
            secrets=secrets,
            options=build_options(instance, self._config, secrets),
        )

        try:
            application = await self._directory.exists(tx)
            if application is not None:
                instance.status.client_id = application.app_id
                instance.status.object_id = application.id
                sp = await self._directory.get_service_principal(tx)
                instance.status.service_principal_id = sp.id
                tx.exists_in_azure = True
        except DirectoryError as e:
            raise ReconcileError(f"looking up existence of azure application: {e}") from e

        if tx.exists_in_azure:
            logger.debug("updated status fields with values from Azure", extra=tx.log_fields)
        return tx

    async def prepare_secrets(self, instance: AzureAdApplication) -> PreparedSecrets:
        keys = SecretDataKeys.for_prefix(instance.secret_key_prefix(DEFAULT_SECRET_KEY_PREFIX))
        secrets = await self._store.list_secrets(instance.namespace, secret_labels(instance))
        pods = await self._store.list_pods(instance.namespace, {APP_LABEL_KEY: instance.name})
        managed = classify(secrets, pods)

        in_use = key_ids_in_use(managed.used, keys)
        instance.status.certificate_key_ids = list(in_use.certificate)
        instance.status.password_key_ids = list(in_use.password)

        try:
            credential_set = previous_credentials_set(
                managed, instance.status.synchronization_secret_name, keys
            )
        except SecretDataError as e:
            # Malformed material is replaced by a fresh set rather than repaired
            logger.warning(
                f"{e}; treating stored credentials as invalid",
                extra={"application": instance.name, "namespace": instance.namespace},
            )
            credential_set = None

        return PreparedSecrets(
            data_keys=keys,
            managed=managed,
            key_ids_in_use=in_use,
            credential_set=credential_set,
            credentials_valid=credential_set is not None,
        )

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    async def _in_shared_namespace(self, tx: Transaction) -> bool:
        instance = tx.instance
        if has_annotation(instance.metadata, NOT_IN_TEAM_NAMESPACE_KEY):
            logger.debug(
                f"resource is annotated with '{NOT_IN_TEAM_NAMESPACE_KEY}', skipping",
                extra=tx.log_fields,
            )
            return True

        namespace = self._caches.namespaces.get(instance.namespace)
        if namespace is None:
            namespace = await self._store.get_namespace(instance.namespace)
            if namespace is not None:
                self._caches.namespaces.set(instance.namespace, namespace)

        if namespace is None or not is_shared_namespace(namespace.metadata):
            return False

        message = (
            f"ERROR: Expected resource in team namespace, but was found in namespace "
            f"'{instance.namespace}'. Azure application and secrets will not be processed."
        )
        logger.error(message, extra=tx.log_fields)
        set_annotation(instance.metadata, NOT_IN_TEAM_NAMESPACE_KEY, "true")
        self._report(instance, EVENT_TYPE_WARNING, EVENT_NOT_IN_TEAM_NAMESPACE, message)

        await self._store.update_status(instance)
        await self._store.update(instance)
        return True

    async def _process_orphaned(self, tx: Transaction) -> None:
        if not tx.exists_in_azure:
            return

        logger.warning(
            f"orphaned resource '{tx.uniform_resource_name}' found in tenant {self._config.tenant}",
            extra=tx.log_fields,
        )
        if tx.options.process.azure.cleanup_orphans:
            await self._delete(tx)

    # -------------------------------------------------------------------------
    # Finalizer
    # -------------------------------------------------------------------------

    async def _register_finalizer(self, tx: Transaction) -> None:
        logger.debug("finalizer for object not found, registering...", extra=tx.log_fields)
        tx.instance.add_finalizer(FINALIZER_NAME)
        await self._store.update(tx.instance)

    async def _finalize(self, tx: Transaction) -> None:
        logger.debug("finalizer triggered, deleting resources...", extra=tx.log_fields)

        if not tx.options.finalizer.delete_from_azure:
            if tx.exists_in_azure:
                logger.debug("purging existing credentials for Azure application...", extra=tx.log_fields)
                try:
                    await self._directory.credentials(tx).purge(tx.instance)
                except CredentialError as e:
                    raise ReconcileError(f"purging credentials from Azure AD: {e}") from e
        else:
            await self._delete(tx)
            self._report(tx.instance, EVENT_TYPE_NORMAL, EVENT_DELETED_IN_AZURE, "Azure application is deleted")

        tx.instance.remove_finalizer(FINALIZER_NAME)
        tx.instance.remove_finalizer(LEGACY_FINALIZER_NAME)
        await self._store.update(tx.instance)

    async def _delete(self, tx: Transaction) -> None:
        logger.info("deleting application in Azure AD...", extra=tx.log_fields)
        if not tx.exists_in_azure:
            logger.info("Azure application does not exist - skipping deletion", extra=tx.log_fields)
            return
        try:
            await self._directory.delete(tx)
        except DirectoryError as e:
            raise ReconcileError(f"failed to delete Azure application: {e}") from e

    # -------------------------------------------------------------------------
    # Credential housekeeping
    # -------------------------------------------------------------------------

    async def _housekeeping(self, tx: Transaction) -> None:
        """Expire, validate and clean up before deciding whether to synchronize."""
        engine = self._directory.credentials(tx)

        try:
            if tx.exists_in_azure:
                await engine.delete_expired(tx.instance)

            if not await self._validate_credentials(tx, engine):
                tx.options = with_invalid_credentials(tx.options)

            secret_options = tx.options.process.secret
            if secret_options.cleanup:
                await self._delete_unused_secrets(tx)

            credential_set = tx.secrets.credential_set
            if secret_options.cleanup and secret_options.valid and credential_set is not None:
                await engine.delete_unused(tx.instance, credential_set, tx.secrets.key_ids_in_use)
        except CredentialError as e:
            raise ReconcileError(f"maintaining credentials for Azure application: {e}") from e

    async def _validate_credentials(self, tx: Transaction, engine: CredentialRotationEngine) -> bool:
        credential_set = tx.secrets.credential_set
        if not tx.exists_in_azure or not tx.options.process.secret.valid or credential_set is None:
            return False

        valid = await engine.validate(tx.instance, credential_set)
        if valid:
            logger.debug("existing credentials are valid and in sync with Azure", extra=tx.log_fields)
        else:
            logger.warning("existing credentials are not in sync with Azure", extra=tx.log_fields)
        return valid

    async def _delete_unused_secrets(self, tx: Transaction) -> None:
        for secret in tx.secrets.managed.unused:
            if secret.metadata.name == tx.instance.spec.secret_name:
                continue
            logger.info(f"deleting unused secret '{secret.metadata.name}'...", extra=tx.log_fields)
            await self._store.delete_secret(secret.metadata.namespace, secret.metadata.name)

    # -------------------------------------------------------------------------
    # Directory application
    # -------------------------------------------------------------------------

    async def _process_azure(self, tx: Transaction) -> ApplicationResult:
        try:
            if not tx.exists_in_azure:
                application = await self._create(tx)
            elif tx.options.process.azure.synchronize:
                application = await self._update(tx)
            else:
                application = await self._not_modified(tx)
        except DirectoryError as e:
            raise ReconcileError(str(e)) from e

        if application.is_modified():
            self._report_pre_authorized_apps(tx, application.pre_authorized_apps)

        if application.is_created():
            self._publisher.publish(
                created_event(tx.instance, self._config.cluster_name), tx.log_fields
            )

        return application

    async def _create(self, tx: Transaction) -> ApplicationResult:
        logger.info("Azure application not found, registering...", extra=tx.log_fields)
        try:
            application = await self._directory.create(tx)
        except DirectoryError as e:
            raise DirectoryError(f"creating azure application: {e}") from e

        self._report(tx.instance, EVENT_TYPE_NORMAL, EVENT_CREATED_IN_AZURE, "Azure application is created")

        status = tx.instance.status
        status.client_id = application.client_id
        status.object_id = application.object_id
        status.service_principal_id = application.service_principal_id
        return application

    async def _update(self, tx: Transaction) -> ApplicationResult:
        logger.info("Azure application already exists, updating...", extra=tx.log_fields)
        try:
            application = await self._directory.update(tx)
        except DirectoryError as e:
            raise DirectoryError(f"updating azure application: {e}") from e

        self._report(tx.instance, EVENT_TYPE_NORMAL, EVENT_UPDATED_IN_AZURE, "Azure application is updated")
        return application

    async def _not_modified(self, tx: Transaction) -> ApplicationResult:
        """Pre-authorized apps can change out of band, so they are always fetched."""
        try:
            pre_authorized_apps = await self._directory.get_pre_authorized_apps(tx)
        except DirectoryError as e:
            raise DirectoryError(f"fetching pre-authorized apps: {e}") from e

        status = tx.instance.status
        return ApplicationResult(
            client_id=status.client_id,
            object_id=status.object_id,
            service_principal_id=status.service_principal_id,
            tenant=self._config.tenant.id,
            operation=Operation.NOT_MODIFIED,
            pre_authorized_apps=pre_authorized_apps,
        )

    def _report_pre_authorized_apps(self, tx: Transaction, apps: PreAuthorizedApps) -> None:
        report = PreAuthorizedAppsStatus()

        for app in apps.valid:
            message = f"assigned '{app.name}'"
            logger.debug(message, extra={**tx.log_fields, "event_type": "access_policy_assigned"})
            self._recorder.event(tx.instance, EVENT_TYPE_NORMAL, ACCESS_POLICY_ASSIGNED, message)
            report.assigned.append(
                PreAuthorizedAppStatus(
                    access_policy_rule=app.access_policy_rule or AccessPolicyRule(application=app.name),
                    client_id=app.client_id,
                    service_principal_object_id=app.object_id,
                )
            )

        for app in apps.invalid:
            message = f"skipped '{app.name}'; not found in tenant ({self._config.tenant})"
            logger.warning(message, extra={**tx.log_fields, "event_type": "access_policy_skipped"})
            self._recorder.event(tx.instance, EVENT_TYPE_NORMAL, ACCESS_POLICY_SKIPPED, message)
            report.unassigned.append(
                PreAuthorizedAppStatus(
                    access_policy_rule=app.access_policy_rule or AccessPolicyRule(application=app.name),
                    client_id=app.client_id,
                    service_principal_object_id=app.object_id,
                    reason=message,
                )
            )

        tx.instance.status.pre_authorized_apps = report

    # -------------------------------------------------------------------------
    # Secrets
    # -------------------------------------------------------------------------

    async def _process_secrets(self, tx: Transaction, application: ApplicationResult) -> None:
        options = tx.options.process.secret
        if options.valid and not options.rotate and application.is_not_modified():
            return

        engine = self._directory.credentials(tx)
        credential_set: CredentialSet | None = tx.secrets.credential_set
        in_use = tx.secrets.key_ids_in_use

        try:
            if not options.valid:
                logger.info("adding credentials for Azure application...", extra=tx.log_fields)
                credential_set = await engine.add(tx.instance)
                self._report(tx.instance, EVENT_TYPE_NORMAL, EVENT_ADDED_IN_AZURE, "Azure credentials are added")
            elif options.rotate and credential_set is not None:
                logger.info("rotating credentials for Azure application...", extra=tx.log_fields)
                credential_set = await engine.rotate(tx.instance, credential_set, in_use)
                self._report(tx.instance, EVENT_TYPE_NORMAL, EVENT_ROTATED_IN_AZURE, "Azure credentials are rotated")
        except CredentialError as e:
            raise ReconcileError(f"processing secrets: {e}") from e

        if credential_set is None:
            raise ReconcileError("processing secrets: no credentials available")

        in_use = KeyIdsInUse(
            certificate=dedupe([*in_use.certificate, credential_set.current.certificate.key_id]),
            password=dedupe([*in_use.password, credential_set.current.password.key_id]),
        )

        try:
            data = secret_data(application, credential_set, self._config.openid, tx.secrets.data_keys)
        except SecretDataError as e:
            raise ReconcileError(
                f"while creating secret data for secret '{tx.instance.spec.secret_name}': {e}"
            ) from e

        secret = await self._store.create_or_update_secret(build_secret(tx.instance, data))
        logger.info(f"secret '{secret.metadata.name}' written", extra=tx.log_fields)

        if options.cleanup:
            await self._delete_unused_secrets(tx)

        if not options.valid or options.rotate:
            status = tx.instance.status
            status.certificate_key_ids = in_use.certificate
            status.password_key_ids = in_use.password
            status.synchronization_secret_rotation_time = datetime.now(UTC)

    # -------------------------------------------------------------------------
    # Completion and errors
    # -------------------------------------------------------------------------

    async def _complete(self, tx: Transaction) -> None:
        instance = tx.instance
        self._report(instance, EVENT_TYPE_NORMAL, EVENT_SYNCHRONIZED, "Azure application is up-to-date")

        status = instance.status
        status.synchronization_secret_name = instance.spec.secret_name
        status.synchronization_time = datetime.now(UTC)
        status.synchronization_tenant = self._config.tenant.id
        status.synchronization_tenant_name = self._config.tenant.name
        status.synchronization_hash = spec_hash(instance)

        await self._store.update_status(instance)
        logger.debug(
            "status subresource successfully updated",
            extra={
                **tx.log_fields,
                "certificate_key_ids": ", ".join(status.certificate_key_ids),
                "password_key_ids": ", ".join(status.password_key_ids),
                "object_id": status.object_id,
                "service_principal_id": status.service_principal_id,
            },
        )

        # One-shot annotations are consumed by a successful reconcile
        if has_annotation(instance.metadata, RESYNC_KEY) or has_annotation(instance.metadata, ROTATE_KEY):
            remove_annotation(instance.metadata, RESYNC_KEY)
            remove_annotation(instance.metadata, ROTATE_KEY)
            await self._store.update(instance)

    async def _handle_error(self, instance: AzureAdApplication, error: Exception) -> None:
        extra = {
            "application": instance.name,
            "namespace": instance.namespace,
            "correlation_id": instance.status.correlation_id,
            "error": str(error),
        }
        logger.error(f"failed to process AzureAdApplication: {error}", extra=extra)
        self._report(
            instance, EVENT_TYPE_WARNING, EVENT_FAILED_SYNCHRONIZATION, "Failed to synchronize AzureAdApplication"
        )
        try:
            await self._store.update_status(instance)
        except (ResourceLoadError, OSError) as e:
            logger.error(f"writing degraded status: {e}", extra=extra)

    def _report(self, instance: AzureAdApplication, event_type: str, reason: str, message: str) -> None:
        instance.status.synchronization_state = reason
        self._recorder.event(instance, event_type, reason, message)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "key": result.key,
            "duration_seconds": result.duration_seconds,
            "operation": result.operation.value if result.operation else None,
            "skipped": result.skipped,
            "finalized": result.finalized,
        }
        if result.requeue_after is not None:
            extra["requeue_after_seconds"] = result.requeue_after.total_seconds()
        logger.info("Reconciliation result", extra=extra)
