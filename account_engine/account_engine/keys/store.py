"""Credential persistence: issue, regenerate, authenticate, and reveal API keys.

A principal has at most one active credential.  The store checks this before
inserting and the partial unique index ``uq_credentials_one_active`` enforces
it when two writers race.  Regeneration deactivates the current credential
and inserts its replacement in a single transaction, so a failure at any
point leaves the previous key active and usable.

The raw secret is returned exactly once, from :meth:`KeyStore.create` or
:meth:`KeyStore.regenerate`.  Afterwards it can only be recovered when the
operator configured a master key and the row carries an encrypted copy.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from account_engine.errors import (
    ActiveCredentialExistsError,
    CredentialNotFoundError,
    SecretNotRetrievableError,
)
from account_engine.keys.codec import DecryptionError, KeyCodec, display_form
from account_engine.state.database import SessionFactory, use_session
from account_engine.state.repository import CredentialRepository
from account_engine.state.tables import CredentialTable

logger = logging.getLogger(__name__)

MANUAL_ENTRY_HINT = (
    "API keys are stored as hashes for security. Please enter your full key "
    "manually in the playground, or regenerate a new key if you have lost it."
)

# A racing regeneration on PostgreSQL can observe the other writer's new
# key only after its UPDATE ran; the insert then trips the partial index.
_REGENERATE_ATTEMPTS = 3


def _new_credential_id() -> str:
    return f"cred-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# View models
# ---------------------------------------------------------------------------


class CredentialRecord(BaseModel):
    """Credential metadata safe to return to clients.  Never carries key material."""

    model_config = ConfigDict(frozen=True)

    id: str
    principal_id: str
    key_prefix: str
    key_suffix: str
    label: str
    active: bool
    has_encrypted_copy: bool = False
    created_at: datetime
    deactivated_at: datetime | None = None
    last_used_at: datetime | None = None

    @property
    def display_form(self) -> str:
        return display_form(self.key_prefix, self.key_suffix)

    @classmethod
    def from_row(cls, row: CredentialTable) -> CredentialRecord:
        return cls(
            id=row.id,
            principal_id=row.principal_id,
            key_prefix=row.key_prefix,
            key_suffix=row.key_suffix,
            label=row.label,
            active=row.active,
            has_encrypted_copy=row.encrypted_key is not None,
            created_at=row.created_at,
            deactivated_at=row.deactivated_at,
            last_used_at=row.last_used_at,
        )


class IssuedCredential(BaseModel):
    """A freshly minted credential together with its one-time raw secret."""

    model_config = ConfigDict(frozen=True)

    record: CredentialRecord
    secret: str = Field(repr=False)


class CredentialView(BaseModel):
    """What the dashboard may show for the active credential.

    ``retrievable`` distinguishes a recovered secret from the masked
    display form, which is all that is available for hash-only storage.
    """

    model_config = ConfigDict(frozen=True)

    credential_id: str
    label: str
    display_form: str
    retrievable: bool
    secret: str | None = Field(default=None, repr=False)
    hint: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None


# ---------------------------------------------------------------------------
# KeyStore
# ---------------------------------------------------------------------------


class KeyStore:
    """Credential lifecycle operations over the ``credentials`` table.

    Parameters
    ----------
    session_factory:
        Factory used to open one transaction per operation.
    codec:
        Bound key codec; decides the key family and whether an encrypted
        copy of each new secret is stored.
    default_label:
        Label used when :meth:`create` is called without one.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        codec: KeyCodec,
        default_label: str = "Default Key",
    ) -> None:
        self._session_factory = session_factory
        self._codec = codec
        self._default_label = default_label

    @property
    def codec(self) -> KeyCodec:
        return self._codec

    async def _insert_new(
        self,
        repo: CredentialRepository,
        principal_id: str,
        label: str,
    ) -> IssuedCredential:
        secret = self._codec.generate()
        prefix, suffix = self._codec.split(secret)
        row = await repo.insert(
            credential_id=_new_credential_id(),
            principal_id=principal_id,
            key_hash=self._codec.hash(secret),
            key_prefix=prefix,
            key_suffix=suffix,
            encrypted_key=self._codec.encrypt(secret),
            label=label,
        )
        return IssuedCredential(record=CredentialRecord.from_row(row), secret=secret)

    async def get_active(
        self,
        principal_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> CredentialRecord | None:
        async with use_session(self._session_factory, session) as s:
            row = await CredentialRepository(s).get_active(principal_id)
            return CredentialRecord.from_row(row) if row is not None else None

    async def create(
        self,
        principal_id: str,
        label: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> IssuedCredential:
        """Mint and persist the principal's first (or next, after deactivation) key.

        Raises
        ------
        ActiveCredentialExistsError
            If the principal already holds an active credential, including
            when a concurrent create committed first.
        """
        try:
            async with use_session(self._session_factory, session) as s:
                repo = CredentialRepository(s)
                if await repo.get_active(principal_id) is not None:
                    raise ActiveCredentialExistsError(principal_id)
                issued = await self._insert_new(repo, principal_id, label or self._default_label)
        except IntegrityError as exc:
            raise ActiveCredentialExistsError(principal_id) from exc

        logger.info(
            "Issued credential %s for principal %s (encrypted copy: %s)",
            issued.record.id,
            principal_id,
            issued.record.has_encrypted_copy,
            extra={"principal_id": principal_id, "credential_id": issued.record.id},
        )
        return issued

    async def regenerate(self, principal_id: str) -> IssuedCredential:
        """Replace the active credential with a new one in one transaction.

        The new credential keeps the old label.  Once this returns the old
        secret no longer authenticates.

        Raises
        ------
        CredentialNotFoundError
            If the principal has no active credential to replace.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with use_session(self._session_factory) as s:
                    repo = CredentialRepository(s)
                    current = await repo.get_active(principal_id)
                    if current is None:
                        raise CredentialNotFoundError(principal_id)
                    label = current.label
                    await repo.deactivate_active(principal_id)
                    issued = await self._insert_new(repo, principal_id, label)
            except IntegrityError:
                if attempt >= _REGENERATE_ATTEMPTS:
                    raise
                logger.info(
                    "Concurrent regeneration for principal %s; retrying (attempt %d)",
                    principal_id,
                    attempt,
                )
                continue

            logger.info(
                "Regenerated credential for principal %s; new credential %s",
                principal_id,
                issued.record.id,
                extra={"principal_id": principal_id, "credential_id": issued.record.id},
            )
            return issued

    async def touch_last_used(self, credential_id: str, when: datetime | None = None) -> None:
        """Best-effort ``last_used_at`` update that never moves it backwards.

        Failures are logged, never raised.
        """
        try:
            async with use_session(self._session_factory) as s:
                await CredentialRepository(s).touch_last_used(credential_id, when or datetime.now(UTC))
        except Exception:
            logger.warning(
                "Failed to update last_used_at for credential %s",
                credential_id,
                exc_info=True,
                extra={"credential_id": credential_id},
            )

    async def authenticate(self, secret: str) -> CredentialRecord | None:
        """Return the active credential matching *secret*, or ``None``.

        Deactivated credentials never authenticate.
        """
        if not secret or not secret.startswith(self._codec.prefix):
            return None
        key_hash = self._codec.hash(secret)
        async with use_session(self._session_factory) as s:
            row = await CredentialRepository(s).get_active_by_hash(key_hash)
        if row is None or not self._codec.verify(secret, row.key_hash):
            return None
        return CredentialRecord.from_row(row)

    def _resolve_secret(self, row: CredentialTable) -> tuple[str | None, str]:
        """Try to decrypt the stored copy.  Returns ``(secret, reason)``."""
        if row.encrypted_key is None:
            return None, "no reversible copy was stored"
        if not self._codec.encryption_enabled:
            return None, "credential encryption is not configured"
        try:
            return self._codec.decrypt(row.encrypted_key), ""
        except DecryptionError:
            logger.warning(
                "Stored credential %s could not be decrypted; falling back to display form",
                row.id,
                extra={"principal_id": row.principal_id, "credential_id": row.id},
            )
            return None, "stored copy could not be decrypted"

    async def reveal(self, principal_id: str) -> CredentialView:
        """Return what can be shown for the active credential.

        Raises
        ------
        CredentialNotFoundError
            If the principal has no active credential.
        """
        async with use_session(self._session_factory) as s:
            row = await CredentialRepository(s).get_active(principal_id)
        if row is None:
            raise CredentialNotFoundError(principal_id)

        secret, _ = self._resolve_secret(row)
        form = display_form(row.key_prefix, row.key_suffix)
        if secret is not None:
            return CredentialView(
                credential_id=row.id,
                label=row.label,
                display_form=form,
                retrievable=True,
                secret=secret,
                created_at=row.created_at,
                last_used_at=row.last_used_at,
            )
        return CredentialView(
            credential_id=row.id,
            label=row.label,
            display_form=form,
            retrievable=False,
            hint=MANUAL_ENTRY_HINT,
            created_at=row.created_at,
            last_used_at=row.last_used_at,
        )

    async def recover_secret(self, principal_id: str) -> str:
        """Return the raw active secret.

        Raises
        ------
        CredentialNotFoundError
            If the principal has no active credential.
        SecretNotRetrievableError
            If the secret cannot be recovered from storage.
        """
        async with use_session(self._session_factory) as s:
            row = await CredentialRepository(s).get_active(principal_id)
        if row is None:
            raise CredentialNotFoundError(principal_id)
        secret, reason = self._resolve_secret(row)
        if secret is None:
            raise SecretNotRetrievableError(principal_id, reason)
        return secret

    async def list_for_principal(self, principal_id: str) -> list[CredentialRecord]:
        """Active and retired credentials, newest first."""
        async with use_session(self._session_factory) as s:
            rows = await CredentialRepository(s).list_by_principal(principal_id)
            return [CredentialRecord.from_row(row) for row in rows]
