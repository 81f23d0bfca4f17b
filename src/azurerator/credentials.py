"""Dual-active credential lifecycle for directory applications.

Every managed application carries two live password credentials and two live
certificate credentials, published to workloads as ``current`` and ``next``.
Rotation mints one new credential per family; the previous ``next`` becomes
``current`` so running consumers always hold a credential that stays valid
across one rotation.

Writes to one application are spaced by a fixed delay because the directory
rejects near-simultaneous modifications of the same object.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from azure.core.exceptions import AzureError

from .crypto import Jwk, generate_jwk
from .interfaces import GraphApi
from .models import Application, AzureAdApplication, KeyCredential, PasswordCredential, to_wire

logger = logging.getLogger(__name__)

# Display name prefix of every credential created by this operator
AZURERATOR_PREFIX = "azurerator"

KEY_CREDENTIAL_TYPE = "AsymmetricX509Cert"
KEY_CREDENTIAL_USAGE = "Verify"

PASSWORD_VALIDITY_YEARS = 1
PROTECTED_PASSWORD_VALIDITY_YEARS = 99

C = TypeVar("C", PasswordCredential, KeyCredential)


class CredentialError(Exception):
    """Raised when credentials cannot be read, created or replaced."""

    pass


# =============================================================================
# Value types
# =============================================================================


@dataclass
class Certificate:
    key_id: str = ""
    jwk: Jwk | None = None


@dataclass
class Password:
    key_id: str = ""
    client_secret: str = ""


@dataclass
class Credentials:
    certificate: Certificate = field(default_factory=Certificate)
    password: Password = field(default_factory=Password)


@dataclass
class CredentialSet:
    """The two credentials a workload may use; ``current`` is always the older one."""

    current: Credentials = field(default_factory=Credentials)
    next: Credentials = field(default_factory=Credentials)

    def password_key_ids(self) -> list[str]:
        return [self.current.password.key_id, self.next.password.key_id]

    def certificate_key_ids(self) -> list[str]:
        return [self.current.certificate.key_id, self.next.certificate.key_id]


@dataclass
class KeyIdsInUse:
    """Key IDs referenced by secrets that running workloads consume."""

    certificate: list[str] = field(default_factory=list)
    password: list[str] = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def display_name(now: datetime) -> str:
    return f"{AZURERATOR_PREFIX}-{now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}"


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def as_utc(moment: datetime) -> datetime:
    """Treat a naive timestamp as UTC."""
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def is_expired(credential: PasswordCredential | KeyCredential, now: datetime) -> bool:
    return credential.end_date_time is not None and as_utc(credential.end_date_time) < now


def dedupe(ids: Iterable[str]) -> list[str]:
    """Drop empty and repeated IDs, keeping first-seen order."""
    return list(dict.fromkeys(i for i in ids if i))


def newest_index(credentials: Sequence[C]) -> int | None:
    """Position of the most recently started credential.

    Credentials without a start time sort first. Equal start times resolve to
    the later list position, which is where the directory appends new entries.
    """
    newest: int | None = None
    newest_start: datetime | None = None
    for i, credential in enumerate(credentials):
        start = as_utc(credential.start_date_time) if credential.start_date_time else None
        if newest is None:
            newest, newest_start = i, start
            continue
        if start is None:
            if newest_start is None:
                newest = i
            continue
        if newest_start is None or start >= newest_start:
            newest, newest_start = i, start
    return newest


def created_by_operator(credentials: Iterable[PasswordCredential | KeyCredential]) -> bool:
    return any((c.display_name or "").startswith(AZURERATOR_PREFIX) for c in credentials)


def revocation_candidates(credentials: Sequence[C], in_use: Iterable[str]) -> list[C]:
    """Credentials that may be revoked.

    Nothing is revoked from an application that carries no credential created
    by this operator. Otherwise every credential not in ``in_use`` is a
    candidate, except the most recently created one.
    """
    if not created_by_operator(credentials):
        return []

    keep = set(in_use)
    newest = newest_index(credentials)
    return [
        credential
        for i, credential in enumerate(credentials)
        if credential.key_id not in keep and i != newest
    ]


# =============================================================================
# Engine
# =============================================================================


class CredentialRotationEngine:
    """Adds, rotates, validates and revokes credentials of one application."""

    def __init__(
        self,
        graph: GraphApi,
        delay_seconds: float = 0.0,
        log_fields: dict[str, Any] | None = None,
    ) -> None:
        self._graph = graph
        self._delay = delay_seconds
        self._log_fields = dict(log_fields or {})

    async def _pause(self) -> None:
        await asyncio.sleep(self._delay)

    async def _application(self, instance: AzureAdApplication) -> Application:
        client_id = instance.status.client_id
        if not client_id:
            raise CredentialError("client ID is not set")
        try:
            application = await self._graph.get_application_by_client_id(client_id)
        except AzureError as e:
            raise CredentialError(f"fetching application with client ID '{client_id}': {e}") from e
        if application is None:
            raise CredentialError(f"application with client ID '{client_id}' does not exist")
        return application

    # -------------------------------------------------------------------------
    # Password credentials
    # -------------------------------------------------------------------------

    def password_request(self, instance: AzureAdApplication) -> PasswordCredential:
        now = datetime.now(timezone.utc)
        years = (
            PROTECTED_PASSWORD_VALIDITY_YEARS
            if instance.spec.secret_protected
            else PASSWORD_VALIDITY_YEARS
        )
        return PasswordCredential(
            key_id=str(uuid.uuid4()),
            display_name=display_name(now),
            start_date_time=now,
            end_date_time=_add_years(now, years),
        )

    async def _add_password(self, instance: AzureAdApplication, object_id: str) -> Password:
        try:
            created = await self._graph.add_password(object_id, self.password_request(instance))
        except AzureError as e:
            raise CredentialError(f"adding password credential for application: {e}") from e
        return Password(key_id=created.key_id or "", client_secret=created.secret_text or "")

    async def _remove_password(self, object_id: str, credential: PasswordCredential) -> None:
        try:
            await self._graph.remove_password(object_id, credential.key_id)
        except AzureError as e:
            # The directory intermittently answers 5xx right after a credential was added
            logger.error(
                f"removing password credential with ID '{credential.key_id}': {e}; ignoring",
                extra=self._log_fields,
            )
            return
        logger.debug(
            f"revoked password credential '{credential.display_name}' (ID: {credential.key_id})",
            extra=self._log_fields,
        )

    # -------------------------------------------------------------------------
    # Key credentials
    # -------------------------------------------------------------------------

    def key_credential(self, jwk: Jwk) -> KeyCredential:
        return KeyCredential(
            key_id=str(uuid.uuid4()),
            display_name=display_name(datetime.now(timezone.utc)),
            type=KEY_CREDENTIAL_TYPE,
            usage=KEY_CREDENTIAL_USAGE,
            key=base64.b64encode(jwk.public_pem).decode("ascii"),
        )

    def _new_certificate(self, instance: AzureAdApplication) -> tuple[KeyCredential, Certificate]:
        jwk = generate_jwk(instance.name, instance.namespace)
        credential = self.key_credential(jwk)
        return credential, Certificate(key_id=credential.key_id or "", jwk=jwk)

    async def _set_key_credentials(self, object_id: str, keys: list[KeyCredential]) -> None:
        try:
            await self._graph.patch_application(
                object_id, {"keyCredentials": [to_wire(k) for k in keys]}
            )
        except AzureError as e:
            raise CredentialError(f"updating key credentials for application: {e}") from e

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def add(self, instance: AzureAdApplication) -> CredentialSet:
        """Provision a fresh current and next credential of both families."""
        application = await self._application(instance)

        await self._pause()
        current_password = await self._add_password(instance, application.id)
        await self._pause()
        next_password = await self._add_password(instance, application.id)
        await self._pause()

        current_key, current_certificate = self._new_certificate(instance)
        next_key, next_certificate = self._new_certificate(instance)

        application = await self._application(instance)
        await self._set_key_credentials(
            application.id, [*application.key_credentials, current_key, next_key]
        )

        logger.info("added credentials for Azure application", extra=self._log_fields)
        return CredentialSet(
            current=Credentials(certificate=current_certificate, password=current_password),
            next=Credentials(certificate=next_certificate, password=next_password),
        )

    async def rotate(
        self,
        instance: AzureAdApplication,
        existing: CredentialSet,
        key_ids_in_use: KeyIdsInUse,
    ) -> CredentialSet:
        """Mint one new credential per family and revoke what nothing uses.

        The previous ``next`` becomes ``current``; the new credential becomes
        ``next``.
        """
        # The newest credential is judged on the snapshot taken before minting
        application = await self._application(instance)

        password_in_use = dedupe([*key_ids_in_use.password, *existing.password_key_ids()])
        new_password = await self._add_password(instance, application.id)
        await self._pause()

        for candidate in revocation_candidates(
            application.password_credentials, [*password_in_use, new_password.key_id]
        ):
            await self._remove_password(application.id, candidate)
        await self._pause()

        certificate_in_use = dedupe(
            [*key_ids_in_use.certificate, *existing.certificate_key_ids()]
        )
        new_key, new_certificate = self._new_certificate(instance)

        application = await self._application(instance)
        revoked = {
            c.key_id
            for c in revocation_candidates(application.key_credentials, certificate_in_use)
        }
        for key in application.key_credentials:
            if key.key_id in revoked:
                logger.debug(
                    f"revoking unused key credential '{key.display_name}' (ID: {key.key_id})",
                    extra=self._log_fields,
                )
        kept = [k for k in application.key_credentials if k.key_id not in revoked]
        await self._set_key_credentials(application.id, [*kept, new_key])

        logger.info("rotated credentials for Azure application", extra=self._log_fields)
        return CredentialSet(
            current=existing.next,
            next=Credentials(certificate=new_certificate, password=new_password),
        )

    async def validate(self, instance: AzureAdApplication, existing: CredentialSet) -> bool:
        """True only if both ``current`` and ``next`` of both families are live."""
        application = await self._application(instance)
        now = datetime.now(timezone.utc)

        live_passwords = {
            c.key_id for c in application.password_credentials if not is_expired(c, now)
        }
        live_keys = {c.key_id for c in application.key_credentials if not is_expired(c, now)}

        return all(i in live_passwords for i in existing.password_key_ids()) and all(
            i in live_keys for i in existing.certificate_key_ids()
        )

    async def purge(self, instance: AzureAdApplication) -> None:
        """Remove every credential of both families."""
        application = await self._application(instance)

        for credential in application.password_credentials:
            await self._remove_password(application.id, credential)

        if application.key_credentials:
            await self._pause()
            await self._set_key_credentials(application.id, [])

        logger.info("purged credentials for Azure application", extra=self._log_fields)

    async def delete_expired(self, instance: AzureAdApplication) -> None:
        application = await self._application(instance)
        now = datetime.now(timezone.utc)

        for credential in application.password_credentials:
            if is_expired(credential, now):
                logger.debug(
                    f"revoking expired password credential '{credential.display_name}' "
                    f"(ID: {credential.key_id}, expired: {credential.end_date_time})",
                    extra=self._log_fields,
                )
                await self._remove_password(application.id, credential)

        valid_keys = [k for k in application.key_credentials if not is_expired(k, now)]
        if len(valid_keys) != len(application.key_credentials):
            await self._pause()
            await self._set_key_credentials(application.id, valid_keys)

    async def delete_unused(
        self,
        instance: AzureAdApplication,
        existing: CredentialSet,
        key_ids_in_use: KeyIdsInUse,
    ) -> None:
        """Revoke revocation candidates of both families without minting new ones."""
        application = await self._application(instance)

        password_in_use = dedupe([*key_ids_in_use.password, *existing.password_key_ids()])
        for candidate in revocation_candidates(application.password_credentials, password_in_use):
            await self._remove_password(application.id, candidate)

        certificate_in_use = dedupe(
            [*key_ids_in_use.certificate, *existing.certificate_key_ids()]
        )
        revoked = {
            c.key_id
            for c in revocation_candidates(application.key_credentials, certificate_in_use)
        }
        if revoked:
            await self._pause()
            await self._set_key_credentials(
                application.id,
                [k for k in application.key_credentials if k.key_id not in revoked],
            )
