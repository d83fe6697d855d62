"""Typed view of the identity provider's user payload.

The identity provider hands over a loosely structured bag: OAuth sub-objects
(``google``, ``github``), a primary ``email`` object, a ``linkedAccounts``
array and an optional ``wallet``.  :class:`ExternalIdentity` pins down the
fields the provisioner needs, and the functions below encode the precedence
rules for picking a contact address and a display name.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_PLACEHOLDER_DOMAIN = "wallet.solixdb"

_OAUTH_ACCOUNT_TYPES = frozenset({"google", "github"})


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class LinkedAccount(BaseModel):
    """One entry of the provider's linked-accounts list."""

    model_config = ConfigDict(frozen=True)

    type: str
    email: str | None = None
    address: str | None = None

    @field_validator("email", "address", mode="before")
    @classmethod
    def blank_is_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)


class ExternalIdentity(BaseModel):
    """Identity facts asserted by the external login provider."""

    model_config = ConfigDict(frozen=True)

    external_id: str | None = None
    email: str | None = None
    google_email: str | None = None
    github_email: str | None = None
    linked_accounts: tuple[LinkedAccount, ...] = Field(default_factory=tuple)
    wallet_address: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None

    @field_validator(
        "external_id",
        "email",
        "google_email",
        "github_email",
        "wallet_address",
        "display_name",
        "avatar_url",
        mode="before",
    )
    @classmethod
    def blank_is_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ExternalIdentity:
        """Build an identity from the provider's raw user object."""

        def nested(key: str, field: str) -> Any:
            value = payload.get(key)
            return value.get(field) if isinstance(value, Mapping) else None

        linked: list[LinkedAccount] = []
        raw_linked = payload.get("linkedAccounts")
        if isinstance(raw_linked, list):
            for entry in raw_linked:
                if isinstance(entry, Mapping) and isinstance(entry.get("type"), str):
                    linked.append(
                        LinkedAccount(
                            type=entry["type"],
                            email=entry.get("email"),
                            address=entry.get("address"),
                        )
                    )

        return cls(
            external_id=payload.get("id"),
            email=nested("email", "address"),
            google_email=nested("google", "email"),
            github_email=nested("github", "email"),
            linked_accounts=tuple(linked),
            wallet_address=nested("wallet", "address"),
            display_name=payload.get("name"),
            avatar_url=payload.get("image"),
        )


def resolve_contact_email(identity: ExternalIdentity) -> str | None:
    """Pick the best email for *identity*.

    Precedence: Google email, GitHub email, primary email, then the linked
    accounts (an OAuth account with an email first, then an email-type
    account's address).
    """
    for candidate in (identity.google_email, identity.github_email, identity.email):
        if candidate:
            return candidate
    for account in identity.linked_accounts:
        if account.type in _OAUTH_ACCOUNT_TYPES and account.email:
            return account.email
    for account in identity.linked_accounts:
        if account.type == "email" and account.address:
            return account.address
    return None


def derive_display_name(identity: ExternalIdentity, email: str | None) -> str:
    """Provider name, else email local part, else ``abcd...wxyz`` wallet, else ``"User"``."""
    if identity.display_name:
        return identity.display_name
    if email:
        local = email.split("@", 1)[0]
        if local:
            return local
    wallet = identity.wallet_address
    if wallet:
        return f"{wallet[:4]}...{wallet[-4:]}"
    return "User"


def placeholder_address(wallet_address: str, domain: str = DEFAULT_PLACEHOLDER_DOMAIN) -> str:
    """Synthetic contact address for wallet-only principals."""
    return f"{wallet_address[:8]}@{domain}"


def is_placeholder_address(address: str | None, domain: str = DEFAULT_PLACEHOLDER_DOMAIN) -> bool:
    """``True`` for blank addresses and addresses under the placeholder domain."""
    if not address:
        return True
    return address.lower().endswith("@" + domain.lower())
