"""Tests for the reconciliation pipeline against the in-memory fakes."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from azure_mock import (
    FakeEventRecorder,
    FakeEventSink,
    FakeGraphApi,
    FakeResourceStore,
    make_application,
    make_config,
)
from azurerator.annotations import (
    FINALIZER_NAME,
    NOT_IN_TEAM_NAMESPACE_KEY,
    PRESERVE_KEY,
    RESYNC_KEY,
    ROTATE_KEY,
)
from azurerator.config import REQUEUE_MARGIN_SECONDS, Config, FeatureConfig
from azurerator.events import EVENT_NAME_CREATED, Event, EventApplication
from azurerator.models import Application, Operation
from azurerator.reconciler import Reconciler, ReconcileError, fingerprint
from azurerator.secrets import SecretDataKeys

KEY = "team/app"
KEYS = SecretDataKeys.for_prefix("AZURE")


@pytest.fixture
def reconciler(
    config: Config, graph: FakeGraphApi, store: FakeResourceStore, recorder: FakeEventRecorder
) -> Reconciler:
    return Reconciler(config, graph, store, recorder)


def _only_application(graph: FakeGraphApi) -> Application:
    assert len(graph.applications) == 1
    return graph.application(next(iter(graph.applications)))


async def _synchronized(reconciler: Reconciler, store: FakeResourceStore, **spec: object) -> None:
    store.add_resource(make_application(**spec))
    await reconciler.reconcile(KEY)


class TestFingerprint:
    """Tests for change detection between reconciles."""

    def test_ignores_status(self) -> None:
        """Test that status changes do not change the fingerprint."""
        instance = make_application()
        before = fingerprint(instance)
        instance.status.synchronization_state = "Synchronized"

        assert fingerprint(instance) == before

    def test_covers_annotations_and_spec(self) -> None:
        """Test that annotations and spec changes change the fingerprint."""
        base = fingerprint(make_application())

        assert fingerprint(make_application(annotations={ROTATE_KEY: "true"})) != base
        assert fingerprint(make_application(logoutUrl="https://x.example.com")) != base


class TestCreate:
    """Tests for first-time reconciliation."""

    @pytest.mark.asyncio
    async def test_first_reconcile(
        self,
        reconciler: Reconciler,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
    ) -> None:
        """Test that a new resource gets an application, credentials and a secret."""
        store.add_resource(make_application())

        result = await reconciler.reconcile(KEY)

        assert result.operation == Operation.CREATED
        assert result.requeue_after == timedelta(seconds=REQUEUE_MARGIN_SECONDS)
        assert result.fingerprint is not None

        application = _only_application(graph)
        assert application.display_name == "test-cluster:team:app"
        assert len(application.password_credentials) == 2
        assert len(application.key_credentials) == 2

        stored = store.resource(KEY)
        assert FINALIZER_NAME in stored.metadata.finalizers
        assert stored.status.synchronization_state == "Synchronized"
        assert stored.status.client_id == application.app_id
        assert stored.status.synchronization_secret_name == "azure-app"
        assert stored.status.synchronization_hash

        secret = store.secret("team", "azure-app")
        assert secret is not None
        assert secret.string_data[KEYS.client_id] == application.app_id
        assert secret.metadata.labels["app"] == "app"

        assert recorder.reasons[:3] == ["CreatedInAzure", "AccessPolicyAssigned", "AddedInAzure"]
        assert recorder.reasons[-1] == "Synchronized"

    @pytest.mark.asyncio
    async def test_created_event_published(
        self, config: Config, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that creating an application publishes a created event."""
        sink = FakeEventSink()
        reconciler = Reconciler(config, graph, store, sink=sink)
        store.add_resource(make_application())

        await reconciler.reconcile(KEY)
        await reconciler.publisher.drain()

        assert len(sink.published) == 1
        assert sink.published[0]["name"] == EVENT_NAME_CREATED
        assert sink.published[0]["application"] == {
            "name": "app",
            "namespace": "team",
            "cluster": "test-cluster",
        }

    @pytest.mark.asyncio
    async def test_missing_resource(self, reconciler: Reconciler, graph: FakeGraphApi) -> None:
        """Test that a missing resource is a no-op."""
        result = await reconciler.reconcile("team/missing")

        assert result.operation is None
        assert result.fingerprint is None
        assert graph.calls == []


class TestSteadyState:
    """Tests for reconciling an already synchronized resource."""

    @pytest.mark.asyncio
    async def test_no_changes(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore, config: Config
    ) -> None:
        """Test that a synchronized resource causes no directory writes."""
        await _synchronized(reconciler, store)
        graph.reset_calls()
        writes = store.secret_writes

        result = await reconciler.reconcile(KEY)

        assert result.operation is None
        assert result.requeue_after == config.requeue_after
        assert graph.mutation_count == 0
        assert store.secret_writes == writes
        assert store.secret("team", "azure-app") is not None

    @pytest.mark.asyncio
    async def test_spec_change_updates(
        self,
        reconciler: Reconciler,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
    ) -> None:
        """Test that a spec change updates the application but keeps credentials."""
        await _synchronized(reconciler, store)
        before = _only_application(graph)
        instance = store.resource(KEY)
        instance.spec.logout_url = "https://app.example.com/logout"
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        after = _only_application(graph)
        assert result.operation == Operation.UPDATED
        assert after.web.logout_url == "https://app.example.com/logout"
        assert {c.key_id for c in after.password_credentials} == {
            c.key_id for c in before.password_credentials
        }
        assert "UpdatedInAzure" in recorder.reasons

    @pytest.mark.asyncio
    async def test_resync_annotation_is_consumed(
        self, reconciler: Reconciler, store: FakeResourceStore
    ) -> None:
        """Test that the resync annotation triggers an update and is removed."""
        await _synchronized(reconciler, store)
        instance = store.resource(KEY)
        instance.metadata.annotations[RESYNC_KEY] = "true"
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        assert result.operation == Operation.UPDATED
        assert RESYNC_KEY not in store.resource(KEY).metadata.annotations


class TestRotation:
    """Tests for credential rotation."""

    @pytest.mark.asyncio
    async def test_rotate_annotation(
        self,
        reconciler: Reconciler,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
    ) -> None:
        """Test that rotation adds one credential per family until the next cleanup."""
        await _synchronized(reconciler, store)
        previous = store.secret("team", "azure-app")
        assert previous is not None
        instance = store.resource(KEY)
        instance.metadata.annotations[ROTATE_KEY] = "true"
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        assert result.operation == Operation.NOT_MODIFIED
        assert "RotatedInAzure" in recorder.reasons
        assert ROTATE_KEY not in store.resource(KEY).metadata.annotations
        application = _only_application(graph)
        assert len(application.password_credentials) == 3
        assert len(application.key_credentials) == 3

        rotated = store.secret("team", "azure-app")
        assert rotated is not None
        assert (
            rotated.string_data[KEYS.current.password_key_id]
            == previous.string_data[KEYS.next.password_key_id]
        )

        await reconciler.reconcile(KEY)

        application = _only_application(graph)
        assert len(application.password_credentials) == 2
        assert len(application.key_credentials) == 2

    @pytest.mark.asyncio
    async def test_secret_name_change(
        self, reconciler: Reconciler, store: FakeResourceStore, recorder: FakeEventRecorder
    ) -> None:
        """Test that a new secret name rotates into the new secret and keeps the old one."""
        await _synchronized(reconciler, store)
        instance = store.resource(KEY)
        instance.spec.secret_name = "azure-app-2"
        store.add_resource(instance)

        await reconciler.reconcile(KEY)

        assert store.secret("team", "azure-app-2") is not None
        assert store.secret("team", "azure-app") is not None
        assert "RotatedInAzure" in recorder.reasons

        await reconciler.reconcile(KEY)

        assert store.secret("team", "azure-app") is None
        assert "azure-app" in store.deleted_secrets

    @pytest.mark.asyncio
    async def test_malformed_secret_is_replaced(
        self, reconciler: Reconciler, store: FakeResourceStore, recorder: FakeEventRecorder
    ) -> None:
        """Test that unreadable key material leads to fresh credentials."""
        await _synchronized(reconciler, store)
        secret = store.secret("team", "azure-app")
        assert secret is not None
        secret.string_data[KEYS.current.jwk] = "garbage"
        store.add_secret(secret)

        await reconciler.reconcile(KEY)

        assert recorder.reasons.count("AddedInAzure") == 2
        replaced = store.secret("team", "azure-app")
        assert replaced is not None and replaced.string_data[KEYS.current.jwk] != "garbage"

    @pytest.mark.asyncio
    async def test_used_credentials_are_kept(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that credentials referenced by a running pod survive cleanup."""
        await _synchronized(reconciler, store)
        first = store.secret("team", "azure-app")
        assert first is not None
        store.add_pod("team", "app-pod", app="app", env_from_secrets=["azure-app"])
        instance = store.resource(KEY)
        instance.spec.secret_name = "azure-app-2"
        store.add_resource(instance)

        await reconciler.reconcile(KEY)
        await reconciler.reconcile(KEY)

        application = _only_application(graph)
        password_ids = {c.key_id for c in application.password_credentials}
        assert first.string_data[KEYS.current.password_key_id] in password_ids
        assert store.secret("team", "azure-app") is not None


class TestDeletion:
    """Tests for finalization."""

    @pytest.mark.asyncio
    async def test_finalize_deletes_application(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that deleting the resource deletes the application and its secret."""
        await _synchronized(reconciler, store)
        instance = store.resource(KEY)
        instance.metadata.deletion_timestamp = datetime.now(UTC)
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        assert result.finalized is True
        assert graph.applications == {}
        assert KEY not in store.resources
        assert store.secret("team", "azure-app") is None

    @pytest.mark.asyncio
    async def test_preserve_purges_credentials(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that a preserved application survives deletion without credentials."""
        store.add_resource(make_application(annotations={PRESERVE_KEY: "true"}))
        await reconciler.reconcile(KEY)
        instance = store.resource(KEY)
        instance.metadata.deletion_timestamp = datetime.now(UTC)
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        assert result.finalized is True
        application = _only_application(graph)
        assert application.password_credentials == []
        assert application.key_credentials == []
        assert KEY not in store.resources

    @pytest.mark.asyncio
    async def test_deleted_without_finalizer(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that a deleted resource without our finalizer is released untouched."""
        instance = make_application()
        instance.metadata.deletion_timestamp = datetime.now(UTC)
        store.add_resource(instance)

        result = await reconciler.reconcile(KEY)

        assert result.finalized is True
        assert graph.mutation_count == 0
        assert KEY not in store.resources


class TestPolicy:
    """Tests for resources that must not be processed."""

    @pytest.mark.asyncio
    async def test_shared_namespace(
        self,
        reconciler: Reconciler,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
    ) -> None:
        """Test that resources in shared namespaces are annotated and skipped."""
        store.add_namespace("team", {"shared": "true"})
        store.add_resource(make_application())

        result = await reconciler.reconcile(KEY)

        assert result.skipped is True
        assert graph.mutation_count == 0
        assert store.resource(KEY).metadata.annotations[NOT_IN_TEAM_NAMESPACE_KEY] == "true"
        assert "NotInTeamNamespace" in recorder.reasons

    @pytest.mark.asyncio
    async def test_other_tenant_is_ignored(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that resources for another tenant are skipped."""
        store.add_resource(make_application(tenant="other.example.com"))

        result = await reconciler.reconcile(KEY)

        assert result.skipped is True
        assert graph.applications == {}

    @pytest.mark.asyncio
    async def test_orphan_cleanup(self, graph: FakeGraphApi, store: FakeResourceStore) -> None:
        """Test that an orphaned application is deleted when cleanup is enabled."""
        config = make_config(features=FeatureConfig(cleanup_orphans=True))
        reconciler = Reconciler(config, graph, store)
        graph.seed_application("test-cluster:team:app")
        store.add_resource(make_application(tenant="other.example.com"))

        result = await reconciler.reconcile(KEY)

        assert result.skipped is True
        assert graph.applications == {}

    @pytest.mark.asyncio
    async def test_orphan_kept_by_default(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that orphaned applications are only reported by default."""
        graph.seed_application("test-cluster:team:app")
        store.add_resource(make_application(tenant="other.example.com"))

        await reconciler.reconcile(KEY)

        assert len(graph.applications) == 1


class TestFailures:
    """Tests for failed reconciles."""

    @pytest.mark.asyncio
    async def test_directory_failure(
        self,
        reconciler: Reconciler,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
    ) -> None:
        """Test that a directory failure raises and leaves a degraded status."""
        store.add_resource(make_application())
        graph.set_should_fail(True, "Graph is down")

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(KEY)

        assert "Graph is down" in str(exc_info.value)
        assert store.resource(KEY).status.synchronization_state == "FailedSynchronization"
        assert recorder.reasons[-1] == "FailedSynchronization"

    @pytest.mark.asyncio
    async def test_deadline_exceeded(
        self,
        graph: FakeGraphApi,
        store: FakeResourceStore,
        recorder: FakeEventRecorder,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a reconcile running past its deadline names the deadline and commits nothing."""
        reconciler = Reconciler(make_config(context_timeout_seconds=1), graph, store, recorder)

        async def slow_create(application: dict[str, object]) -> Application:
            await asyncio.sleep(5)
            raise AssertionError("not reached")

        monkeypatch.setattr(graph, "create_application", slow_create)
        store.add_resource(make_application())

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(KEY)

        assert str(exc_info.value) == f"reconciling '{KEY}': deadline of 1s exceeded"
        status = store.resource(KEY).status
        assert status.synchronization_state == "FailedSynchronization"
        assert not status.synchronization_hash

    @pytest.mark.asyncio
    async def test_recovers_after_failure(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that the next reconcile after a failure completes."""
        store.add_resource(make_application())
        graph.set_should_fail(True, operations={"add_password"})
        with pytest.raises(ReconcileError):
            await reconciler.reconcile(KEY)

        graph.set_should_fail(False)
        result = await reconciler.reconcile(KEY)

        assert result.operation == Operation.UPDATED
        assert store.resource(KEY).status.synchronization_state == "Synchronized"
        assert store.secret("team", "azure-app") is not None


class TestRunLoop:
    """Tests for scheduling and cross-resource events."""

    @pytest.mark.asyncio
    async def test_reconcile_all_skips_unchanged(
        self, reconciler: Reconciler, store: FakeResourceStore
    ) -> None:
        """Test that resources are reconciled again only when they change or are due."""
        store.add_resource(make_application(name="app"))
        store.add_resource(make_application(name="other"))

        first = await reconciler.reconcile_all()
        second = await reconciler.reconcile_all()

        instance = store.resource("team/other")
        instance.spec.logout_url = "https://other.example.com/logout"
        store.add_resource(instance)
        third = await reconciler.reconcile_all()

        assert sorted(r.key for r in first) == ["team/app", "team/other"]
        assert second == []
        assert [r.key for r in third] == ["team/other"]

    @pytest.mark.asyncio
    async def test_reconcile_all_survives_failures(
        self, reconciler: Reconciler, graph: FakeGraphApi, store: FakeResourceStore
    ) -> None:
        """Test that a failing resource does not abort the pass."""
        store.add_resource(make_application())
        graph.set_should_fail(True)

        assert await reconciler.reconcile_all() == []

    @pytest.mark.asyncio
    async def test_handle_created_event(self, reconciler: Reconciler, store: FakeResourceStore) -> None:
        """Test that resources pre-authorizing a new application are marked for resync."""
        store.add_resource(
            make_application(name="consumer", preAuthorizedApplications=[{"application": "other"}])
        )
        store.add_resource(make_application(name="unrelated"))
        event = Event(
            name=EVENT_NAME_CREATED,
            application=EventApplication(name="other", namespace="team", cluster="test-cluster"),
        )

        resynced = await reconciler.handle_event(event)

        assert resynced == ["team/consumer"]
        assert store.resource("team/consumer").metadata.annotations[RESYNC_KEY] == "true"
        assert RESYNC_KEY not in store.resource("team/unrelated").metadata.annotations

    @pytest.mark.asyncio
    async def test_handle_other_event(self, reconciler: Reconciler, store: FakeResourceStore) -> None:
        """Test that events other than created are ignored."""
        store.add_resource(
            make_application(name="consumer", preAuthorizedApplications=[{"application": "other"}])
        )
        event = Event(
            name="deleted",
            application=EventApplication(name="other", namespace="team", cluster="test-cluster"),
        )

        assert await reconciler.handle_event(event) == []
