"""Pure functions for minting, hashing, and envelope-encrypting API keys.

Key format::

    slxdb_live_<32 alphanumeric characters>

The body is drawn uniformly from ``[A-Za-z0-9]`` using :mod:`secrets`.
Only the SHA-256 digest of the full key is needed to authenticate it; the
prefix and the last four characters are public and used for display.

Envelope format (``encrypt`` / ``decrypt``)::

    urlsafe_b64( version(1) || nonce(12) || AES-256-GCM ciphertext+tag )

The AES key is the SHA-256 digest of the operator's master key.  Nothing in
this module performs I/O or logs key material.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from account_engine.config import Settings

DEFAULT_PREFIX = "slxdb_live_"
DEFAULT_BODY_LENGTH = 32
SUFFIX_LENGTH = 4

_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
_ENVELOPE_VERSION = 1
_NONCE_BYTES = 12


class MasterKeyMissingError(Exception):
    """No master key is configured; reversible storage is disabled."""


class DecryptionError(Exception):
    """The envelope failed authentication or is malformed."""


def _derive_key(master_key: str | None) -> bytes:
    if master_key is None or not master_key.strip():
        raise MasterKeyMissingError("API key encryption master key is not configured")
    return hashlib.sha256(master_key.encode("utf-8")).digest()


def generate(prefix: str = DEFAULT_PREFIX, body_length: int = DEFAULT_BODY_LENGTH) -> str:
    """Return a new raw secret: *prefix* followed by a random alphanumeric body."""
    body = "".join(secrets.choice(_ALPHABET) for _ in range(body_length))
    return f"{prefix}{body}"


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest of *secret*."""
    if not secret:
        raise ValueError("Cannot hash an empty secret")
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify(secret: str, key_hash: str) -> bool:
    """Constant-time check that *secret* hashes to *key_hash*."""
    if not secret or not key_hash:
        return False
    return hmac.compare_digest(hash_secret(secret), key_hash)


def split_secret(secret: str, prefix: str = DEFAULT_PREFIX) -> tuple[str, str]:
    """Return the public ``(prefix, suffix)`` pair for *secret*."""
    if not secret.startswith(prefix) or len(secret) <= len(prefix) + SUFFIX_LENGTH:
        raise ValueError("Secret does not belong to the configured credential family")
    return prefix, secret[-SUFFIX_LENGTH:]


def display_form(prefix: str, suffix: str) -> str:
    """Client-visible rendering of a credential."""
    return f"{prefix}...{suffix}"


def encrypt(secret: str, master_key: str | None) -> str:
    """Envelope-encrypt *secret* under a key derived from *master_key*."""
    aesgcm = AESGCM(_derive_key(master_key))
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = aesgcm.encrypt(nonce, secret.encode("utf-8"), None)
    blob = bytes([_ENVELOPE_VERSION]) + nonce + ciphertext
    return base64.urlsafe_b64encode(blob).decode("ascii")


def decrypt(envelope: str, master_key: str | None) -> str:
    """Recover the secret from *envelope*.

    Raises
    ------
    MasterKeyMissingError
        If *master_key* is absent or blank.
    DecryptionError
        If the envelope is malformed or fails authentication (tampered
        ciphertext or the wrong master key).
    """
    key = _derive_key(master_key)
    try:
        blob = base64.urlsafe_b64decode(envelope.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise DecryptionError("Envelope is not valid base64") from exc

    if len(blob) <= 1 + _NONCE_BYTES or blob[0] != _ENVELOPE_VERSION:
        raise DecryptionError("Unsupported or truncated envelope")

    nonce = blob[1 : 1 + _NONCE_BYTES]
    ciphertext = blob[1 + _NONCE_BYTES :]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("Envelope failed authentication") from exc
    return plaintext.decode("utf-8")


def generate_master_key() -> str:
    """Random master key suitable for ``ACCOUNT_API_KEY_ENCRYPTION_KEY``."""
    return secrets.token_urlsafe(32)


class KeyCodec:
    """Binds the codec functions to one credential family.

    Parameters
    ----------
    prefix:
        Public literal identifying the credential family/environment.
    body_length:
        Number of random characters following the prefix.
    master_key:
        Optional operator master key.  When ``None`` the codec only hashes
        and :attr:`encryption_enabled` is ``False``.
    """

    def __init__(
        self,
        prefix: str = DEFAULT_PREFIX,
        body_length: int = DEFAULT_BODY_LENGTH,
        master_key: str | None = None,
    ) -> None:
        self.prefix = prefix
        self.body_length = body_length
        self._master_key = master_key if master_key and master_key.strip() else None

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyCodec:
        return cls(
            prefix=settings.api_key_prefix,
            body_length=settings.api_key_body_length,
            master_key=settings.master_key(),
        )

    @property
    def encryption_enabled(self) -> bool:
        return self._master_key is not None

    def generate(self) -> str:
        return generate(self.prefix, self.body_length)

    def hash(self, secret: str) -> str:
        return hash_secret(secret)

    def verify(self, secret: str, key_hash: str) -> bool:
        return verify(secret, key_hash)

    def split(self, secret: str) -> tuple[str, str]:
        return split_secret(secret, self.prefix)

    def encrypt(self, secret: str) -> str | None:
        """Encrypt *secret* when a master key is configured, else ``None``."""
        if self._master_key is None:
            return None
        return encrypt(secret, self._master_key)

    def decrypt(self, envelope: str) -> str:
        return decrypt(envelope, self._master_key)
