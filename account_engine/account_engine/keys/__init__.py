"""API key minting, storage, and reveal."""

from account_engine.keys.codec import DecryptionError, KeyCodec, MasterKeyMissingError
from account_engine.keys.store import CredentialRecord, CredentialView, IssuedCredential, KeyStore

__all__ = [
    "CredentialRecord",
    "CredentialView",
    "DecryptionError",
    "IssuedCredential",
    "KeyCodec",
    "KeyStore",
    "MasterKeyMissingError",
]
