"""Principal provisioning on first login.

:meth:`AccountProvisioner.bootstrap` is called after every successful
external authentication and is idempotent.  For a new identity it creates
the principal, mints its first credential, and opens the current ledger
period in a single transaction, so an account never exists without a key
and a credit balance.  Concurrent first logins for the same identity race
on the unique ``external_identity_id``; the loser returns the winner's
principal with ``created=False``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from account_engine.accounts.identity import (
    DEFAULT_PLACEHOLDER_DOMAIN,
    ExternalIdentity,
    derive_display_name,
    is_placeholder_address,
    placeholder_address,
    resolve_contact_email,
)
from account_engine.errors import IdentityValidationError, PrincipalNotFoundError
from account_engine.keys.store import CredentialRecord, KeyStore
from account_engine.ledger.credit_ledger import CreditLedger
from account_engine.ledger.plans import PlanTier, normalize_plan
from account_engine.state.database import SessionFactory, use_session
from account_engine.state.repository import PrincipalRepository
from account_engine.state.tables import PrincipalTable

logger = logging.getLogger(__name__)


def _new_principal_id() -> str:
    return f"usr-{uuid.uuid4().hex}"


class PrincipalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_identity_id: str
    contact_address: str
    display_name: str
    plan: str
    wallet_address: str | None = None
    avatar_url: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: PrincipalTable) -> PrincipalRecord:
        return cls(
            id=row.id,
            external_identity_id=row.external_identity_id,
            contact_address=row.contact_address,
            display_name=row.display_name,
            plan=row.plan,
            wallet_address=row.wallet_address,
            avatar_url=row.avatar_url,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class BootstrapResult(BaseModel):
    """Outcome of :meth:`AccountProvisioner.bootstrap`.

    ``issued_secret`` is set only when this call created the principal; it
    is the one time the raw key is available without a master key.
    """

    model_config = ConfigDict(frozen=True)

    principal: PrincipalRecord
    created: bool
    credential: CredentialRecord | None = None
    issued_secret: str | None = Field(default=None, repr=False)


class AccountProvisioner:
    """Creates and maintains principals for external identities.

    Parameters
    ----------
    session_factory:
        Factory used to open one transaction per operation.
    key_store:
        Mints the first credential of a new principal.
    ledger:
        Opens the first ledger period of a new principal.
    placeholder_domain:
        Reserved domain for synthetic wallet-only contact addresses.
    default_label:
        Label of the credential minted on first login.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        key_store: KeyStore,
        ledger: CreditLedger,
        *,
        placeholder_domain: str = DEFAULT_PLACEHOLDER_DOMAIN,
        default_label: str = "Default Key",
    ) -> None:
        self._session_factory = session_factory
        self._key_store = key_store
        self._ledger = ledger
        self._placeholder_domain = placeholder_domain
        self._default_label = default_label

    def is_placeholder(self, address: str | None) -> bool:
        return is_placeholder_address(address, self._placeholder_domain)

    async def bootstrap(self, identity: ExternalIdentity) -> BootstrapResult:
        """Return the principal for *identity*, creating it on first login.

        Raises
        ------
        IdentityValidationError
            If the identity has no external id, or neither an email nor a
            wallet address.
        """
        if not identity.external_id:
            raise IdentityValidationError("External identity has no id")
        email = resolve_contact_email(identity)
        wallet = identity.wallet_address
        if not email and not wallet:
            raise IdentityValidationError("External identity has neither an email nor a wallet address")

        existing = await self._refresh_existing(identity.external_id, email)
        if existing is not None:
            return BootstrapResult(principal=existing, created=False)

        if email is None:
            logger.info("No email on identity %s; using wallet placeholder address", identity.external_id)
        contact = email or placeholder_address(wallet or "", self._placeholder_domain)
        principal_id = _new_principal_id()

        async with use_session(self._session_factory) as s:
            repo = PrincipalRepository(s)
            inserted = await repo.insert_if_absent(
                principal_id=principal_id,
                external_identity_id=identity.external_id,
                contact_address=contact,
                display_name=derive_display_name(identity, email),
                plan=PlanTier.FREE.value,
                wallet_address=wallet,
                avatar_url=identity.avatar_url,
            )
            if not inserted:
                winner = await repo.get_by_external_id(identity.external_id)
                if winner is None:
                    raise PrincipalNotFoundError(identity.external_id)
                logger.info(
                    "Concurrent bootstrap for identity %s; using principal %s",
                    identity.external_id,
                    winner.id,
                    extra={"principal_id": winner.id},
                )
                return BootstrapResult(principal=PrincipalRecord.from_row(winner), created=False)

            issued = await self._key_store.create(principal_id, self._default_label, session=s)
            await self._ledger.get_or_create(principal_id, session=s)
            row = await repo.get_by_id(principal_id)
            if row is None:
                raise PrincipalNotFoundError(principal_id)
            principal = PrincipalRecord.from_row(row)

        logger.info(
            "Provisioned principal %s for identity %s",
            principal_id,
            identity.external_id,
            extra={"principal_id": principal_id, "credential_id": issued.record.id},
        )
        return BootstrapResult(
            principal=principal,
            created=True,
            credential=issued.record,
            issued_secret=issued.secret,
        )

    async def _refresh_existing(self, external_id: str, email: str | None) -> PrincipalRecord | None:
        """Fetch an existing principal, upgrading a placeholder address to *email*."""
        async with use_session(self._session_factory) as s:
            repo = PrincipalRepository(s)
            row = await repo.get_by_external_id(external_id)
            if row is None:
                return None
            if email and not self.is_placeholder(email) and self.is_placeholder(row.contact_address):
                if await repo.upgrade_placeholder_address(row.id, email, self._placeholder_domain):
                    logger.info(
                        "Upgraded placeholder contact address for principal %s",
                        row.id,
                        extra={"principal_id": row.id},
                    )
                    row = await repo.get_by_id(row.id) or row
            return PrincipalRecord.from_row(row)

    async def get_principal(self, principal_id: str) -> PrincipalRecord:
        async with use_session(self._session_factory) as s:
            row = await PrincipalRepository(s).get_by_id(principal_id)
            if row is None:
                raise PrincipalNotFoundError(principal_id)
            return PrincipalRecord.from_row(row)

    async def _update(self, principal_id: str, values: dict[str, Any]) -> PrincipalRecord:
        async with use_session(self._session_factory) as s:
            repo = PrincipalRepository(s)
            if values and not await repo.update_profile(principal_id, values):
                raise PrincipalNotFoundError(principal_id)
            row = await repo.get_by_id(principal_id)
            if row is None:
                raise PrincipalNotFoundError(principal_id)
            return PrincipalRecord.from_row(row)

    async def update_profile(
        self,
        principal_id: str,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> PrincipalRecord:
        """Change the display name and/or avatar.  ``None`` leaves a field unchanged."""
        values: dict[str, Any] = {}
        if display_name is not None:
            if not display_name.strip():
                raise ValueError("display_name must not be blank")
            values["display_name"] = display_name.strip()
        if avatar_url is not None:
            values["avatar_url"] = avatar_url.strip() or None
        return await self._update(principal_id, values)

    async def change_plan(self, principal_id: str, plan: str | PlanTier) -> PrincipalRecord:
        """Move the principal to *plan*.

        Only ledger periods opened afterwards use the new quota; the current
        period keeps the quota it was created with.
        """
        tier = normalize_plan(plan)
        record = await self._update(principal_id, {"plan": tier.value})
        logger.info(
            "Principal %s moved to plan %s",
            principal_id,
            tier.value,
            extra={"principal_id": principal_id},
        )
        return record
