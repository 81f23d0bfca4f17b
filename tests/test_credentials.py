"""Tests for the credential rotation engine."""

from datetime import UTC, datetime, timedelta

import pytest

from azure_mock import FakeGraphApi, make_application
from azurerator.credentials import (
    AZURERATOR_PREFIX,
    CredentialError,
    CredentialRotationEngine,
    CredentialSet,
    KeyIdsInUse,
    dedupe,
    newest_index,
    revocation_candidates,
)
from azurerator.models import AzureAdApplication, PasswordCredential

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _password(key_id: str, minutes: int | None, name: str = AZURERATOR_PREFIX) -> PasswordCredential:
    start = NOW + timedelta(minutes=minutes) if minutes is not None else None
    return PasswordCredential(key_id=key_id, display_name=f"{name}-x", start_date_time=start)


def _instance(graph: FakeGraphApi, **spec: object) -> AzureAdApplication:
    application = graph.seed_application("test-cluster:team:app")
    instance = make_application(**spec)
    instance.status.client_id = application.app_id
    instance.status.object_id = application.id
    return instance


def _password_ids(graph: FakeGraphApi, instance: AzureAdApplication) -> list[str]:
    application = graph.application(instance.status.object_id)
    return [c.key_id for c in application.password_credentials]


def _key_ids(graph: FakeGraphApi, instance: AzureAdApplication) -> list[str]:
    application = graph.application(instance.status.object_id)
    return [c.key_id for c in application.key_credentials]


class TestRevocationCandidates:
    """Tests for choosing which credentials may be revoked."""

    def test_nothing_revoked_when_all_in_use_or_newest(self) -> None:
        """Test that in-use, current, next, new and newest credentials are kept."""
        remote = [
            _password("p1", 0),
            _password("p2", 1),
            _password("p3", 2),
            _password("p4", 3),
        ]
        in_use = dedupe(["p1", "p2", "p3", "p5"])

        assert revocation_candidates(remote, in_use) == []

    def test_unused_revoked_except_newest(self) -> None:
        """Test that unused credentials are candidates but the newest never is."""
        remote = [_password("p1", 0), _password("p2", 1), _password("p3", 2)]

        candidates = revocation_candidates(remote, ["p2"])

        assert [c.key_id for c in candidates] == ["p1"]

    def test_nothing_revoked_without_operator_marker(self) -> None:
        """Test that applications without operator-created credentials are left alone."""
        remote = [_password("p1", 0, name="manual"), _password("p2", 1, name="manual")]

        assert revocation_candidates(remote, []) == []

    def test_newest_tie_break(self) -> None:
        """Test that equal start times resolve to the later list position."""
        remote = [_password("p1", 5), _password("p2", 5), _password("p3", 1)]

        assert newest_index(remote) == 1

    def test_missing_start_sorts_first(self) -> None:
        """Test that credentials without a start time are never the newest among dated ones."""
        remote = [_password("p1", 1), _password("p2", None)]

        assert newest_index(remote) == 0
        assert newest_index([_password("p1", None), _password("p2", None)]) == 1
        assert newest_index([]) is None

    def test_dedupe(self) -> None:
        """Test that empty and repeated IDs are dropped in order."""
        assert dedupe(["a", "", "b", "a"]) == ["a", "b"]


class TestCredentialRotationEngine:
    """Tests for credential operations against the directory."""

    @pytest.mark.asyncio
    async def test_add_provisions_two_per_family(self, graph: FakeGraphApi) -> None:
        """Test that add leaves exactly two passwords and two keys, all valid."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)

        credential_set = await engine.add(instance)

        assert sorted(_password_ids(graph, instance)) == sorted(credential_set.password_key_ids())
        assert sorted(_key_ids(graph, instance)) == sorted(credential_set.certificate_key_ids())
        assert credential_set.current.password.client_secret
        assert credential_set.next.certificate.jwk is not None
        assert await engine.validate(instance, credential_set)

    @pytest.mark.asyncio
    async def test_rotate_shifts_next_to_current(self, graph: FakeGraphApi) -> None:
        """Test that rotation mints one credential per family and shifts next to current."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        existing = await engine.add(instance)

        rotated = await engine.rotate(instance, existing, KeyIdsInUse())

        assert rotated.current == existing.next
        assert rotated.next.password.key_id not in existing.password_key_ids()
        assert len(_password_ids(graph, instance)) == 3
        assert len(_key_ids(graph, instance)) == 3
        assert await engine.validate(instance, rotated)

    @pytest.mark.asyncio
    async def test_delete_unused_after_rotate(self, graph: FakeGraphApi) -> None:
        """Test that the retired credential is revoked on the next cleanup."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        existing = await engine.add(instance)
        rotated = await engine.rotate(instance, existing, KeyIdsInUse())

        await engine.delete_unused(instance, rotated, KeyIdsInUse())

        assert sorted(_password_ids(graph, instance)) == sorted(rotated.password_key_ids())
        assert sorted(_key_ids(graph, instance)) == sorted(rotated.certificate_key_ids())

    @pytest.mark.asyncio
    async def test_delete_unused_keeps_in_use(self, graph: FakeGraphApi) -> None:
        """Test that credentials referenced by used secrets survive cleanup."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        existing = await engine.add(instance)
        rotated = await engine.rotate(instance, existing, KeyIdsInUse())
        in_use = KeyIdsInUse(
            certificate=[existing.current.certificate.key_id],
            password=[existing.current.password.key_id],
        )

        await engine.delete_unused(instance, rotated, in_use)

        assert existing.current.password.key_id in _password_ids(graph, instance)
        assert existing.current.certificate.key_id in _key_ids(graph, instance)

    @pytest.mark.asyncio
    async def test_rotate_survives_revocation_failure(self, graph: FakeGraphApi) -> None:
        """Test that failing to revoke a password does not fail the rotation."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        existing = await engine.add(instance)
        rotated = await engine.rotate(instance, existing, KeyIdsInUse())
        graph.set_should_fail(True, operations={"remove_password"})

        again = await engine.rotate(instance, rotated, KeyIdsInUse())

        assert again.current == rotated.next
        assert graph.call_count("remove_password") == 1

    @pytest.mark.asyncio
    async def test_validate_detects_missing_credential(self, graph: FakeGraphApi) -> None:
        """Test that a credential removed out of band invalidates the set."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        credential_set = await engine.add(instance)

        await graph.remove_password(instance.status.object_id, credential_set.next.password.key_id)

        assert not await engine.validate(instance, credential_set)
        assert not await engine.validate(instance, CredentialSet())

    @pytest.mark.asyncio
    async def test_purge(self, graph: FakeGraphApi) -> None:
        """Test that purge removes every credential of both families."""
        instance = _instance(graph)
        engine = CredentialRotationEngine(graph)
        await engine.add(instance)

        await engine.purge(instance)

        assert _password_ids(graph, instance) == []
        assert _key_ids(graph, instance) == []

    @pytest.mark.asyncio
    async def test_delete_expired(self, graph: FakeGraphApi) -> None:
        """Test that only expired credentials are revoked."""
        expired_end = (datetime.now(UTC) - timedelta(days=1)).isoformat()
        application = graph.seed_application(
            "test-cluster:team:app",
            passwordCredentials=[
                {"keyId": "expired", "displayName": "azurerator-old", "endDateTime": expired_end}
            ],
            keyCredentials=[
                {"keyId": "expired-key", "displayName": "azurerator-old", "endDateTime": expired_end}
            ],
        )
        instance = make_application()
        instance.status.client_id = application.app_id
        instance.status.object_id = application.id
        engine = CredentialRotationEngine(graph)
        await engine.add(instance)

        await engine.delete_expired(instance)

        assert "expired" not in _password_ids(graph, instance)
        assert "expired-key" not in _key_ids(graph, instance)
        assert len(_password_ids(graph, instance)) == 2
        assert len(_key_ids(graph, instance)) == 2

    @pytest.mark.asyncio
    async def test_protected_password_validity(self, graph: FakeGraphApi) -> None:
        """Test that protected secrets get long-lived passwords."""
        engine = CredentialRotationEngine(graph)

        normal = engine.password_request(make_application())
        protected = engine.password_request(make_application(secretProtected=True))

        assert normal.end_date_time is not None and normal.start_date_time is not None
        assert protected.end_date_time is not None
        assert normal.end_date_time.year == normal.start_date_time.year + 1
        assert protected.end_date_time.year == normal.start_date_time.year + 99
        assert (normal.display_name or "").startswith(AZURERATOR_PREFIX)

    @pytest.mark.asyncio
    async def test_missing_application(self, graph: FakeGraphApi) -> None:
        """Test that operations on an unknown application raise CredentialError."""
        engine = CredentialRotationEngine(graph)

        with pytest.raises(CredentialError) as exc_info:
            await engine.add(make_application())
        assert "client ID is not set" in str(exc_info.value)

        instance = make_application()
        instance.status.client_id = "unknown"
        with pytest.raises(CredentialError) as exc_info:
            await engine.add(instance)
        assert "does not exist" in str(exc_info.value)
