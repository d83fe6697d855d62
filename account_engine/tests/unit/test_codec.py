"""Unit tests for account_engine.keys.codec."""

from __future__ import annotations

import base64
import hashlib
import re

import pytest

from account_engine.config import load_settings
from account_engine.keys.codec import (
    DEFAULT_PREFIX,
    DecryptionError,
    KeyCodec,
    MasterKeyMissingError,
    decrypt,
    display_form,
    encrypt,
    generate,
    generate_master_key,
    hash_secret,
    split_secret,
    verify,
)

_KEY_RE = re.compile(r"^slxdb_live_[A-Za-z0-9]{32}$")

# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


class TestGenerate:
    def test_default_format(self) -> None:
        secret = generate()
        assert _KEY_RE.match(secret)
        assert len(secret) == len(DEFAULT_PREFIX) + 32

    def test_keys_are_unique(self) -> None:
        secrets = {generate() for _ in range(200)}
        assert len(secrets) == 200

    def test_custom_prefix_and_length(self) -> None:
        secret = generate("slxdb_test_", 20)
        assert secret.startswith("slxdb_test_")
        assert len(secret) == len("slxdb_test_") + 20

    def test_body_uses_full_alphabet(self) -> None:
        body = "".join(generate()[len(DEFAULT_PREFIX) :] for _ in range(100))
        assert any(c.isupper() for c in body)
        assert any(c.islower() for c in body)
        assert any(c.isdigit() for c in body)


# ---------------------------------------------------------------------------
# hash / verify
# ---------------------------------------------------------------------------


class TestHashing:
    def test_hash_is_sha256_hex(self) -> None:
        secret = generate()
        assert hash_secret(secret) == hashlib.sha256(secret.encode()).hexdigest()

    def test_hash_round_trip(self) -> None:
        secret = generate()
        assert verify(secret, hash_secret(secret)) is True

    def test_verify_rejects_other_secret(self) -> None:
        assert verify(generate(), hash_secret(generate())) is False

    def test_hash_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            hash_secret("")

    def test_verify_empty_is_false(self) -> None:
        assert verify("", "abc") is False
        assert verify("slxdb_live_x", "") is False


# ---------------------------------------------------------------------------
# display form
# ---------------------------------------------------------------------------


class TestDisplay:
    def test_split_and_display(self) -> None:
        secret = "slxdb_live_" + "A" * 28 + "wXyZ"
        prefix, suffix = split_secret(secret)
        assert prefix == "slxdb_live_"
        assert suffix == "wXyZ"
        assert display_form(prefix, suffix) == "slxdb_live_...wXyZ"

    def test_display_form_of_generated_key(self) -> None:
        secret = generate()
        prefix, suffix = split_secret(secret)
        assert display_form(prefix, suffix) == f"slxdb_live_...{secret[-4:]}"

    def test_split_rejects_foreign_secret(self) -> None:
        with pytest.raises(ValueError):
            split_secret("sk_live_abcdefghijklmnop")

    def test_split_rejects_prefix_only(self) -> None:
        with pytest.raises(ValueError):
            split_secret("slxdb_live_ab")


# ---------------------------------------------------------------------------
# encrypt / decrypt
# ---------------------------------------------------------------------------


class TestEnvelope:
    def test_round_trip(self) -> None:
        secret = generate()
        envelope = encrypt(secret, "master")
        assert secret not in envelope
        assert decrypt(envelope, "master") == secret

    def test_nonce_is_random(self) -> None:
        secret = generate()
        assert encrypt(secret, "master") != encrypt(secret, "master")

    def test_wrong_master_key(self) -> None:
        envelope = encrypt(generate(), "master")
        with pytest.raises(DecryptionError):
            decrypt(envelope, "other-master")

    def test_tampered_ciphertext(self) -> None:
        envelope = encrypt(generate(), "master")
        blob = bytearray(base64.urlsafe_b64decode(envelope))
        blob[-1] ^= 0x01
        tampered = base64.urlsafe_b64encode(bytes(blob)).decode()
        with pytest.raises(DecryptionError):
            decrypt(tampered, "master")

    def test_garbage_envelope(self) -> None:
        with pytest.raises(DecryptionError):
            decrypt("not-base64!!", "master")

    def test_truncated_envelope(self) -> None:
        short = base64.urlsafe_b64encode(b"\x01" + b"\x00" * 5).decode()
        with pytest.raises(DecryptionError):
            decrypt(short, "master")

    def test_missing_master_key_is_distinct(self) -> None:
        envelope = encrypt(generate(), "master")
        with pytest.raises(MasterKeyMissingError):
            decrypt(envelope, None)
        with pytest.raises(MasterKeyMissingError):
            encrypt("slxdb_live_x", "   ")
        assert not issubclass(MasterKeyMissingError, DecryptionError)

    def test_generate_master_key(self) -> None:
        key = generate_master_key()
        assert len(key) >= 40
        assert key != generate_master_key()


# ---------------------------------------------------------------------------
# KeyCodec
# ---------------------------------------------------------------------------


class TestKeyCodec:
    def test_hash_only_codec(self) -> None:
        codec = KeyCodec()
        assert codec.encryption_enabled is False
        assert codec.encrypt(codec.generate()) is None

    def test_blank_master_key_disables_encryption(self) -> None:
        assert KeyCodec(master_key="  ").encryption_enabled is False

    def test_encrypting_codec_round_trip(self) -> None:
        codec = KeyCodec(master_key="master")
        secret = codec.generate()
        envelope = codec.encrypt(secret)
        assert envelope is not None
        assert codec.decrypt(envelope) == secret

    def test_from_settings(self) -> None:
        settings = load_settings(
            api_key_prefix="slxdb_test_",
            api_key_body_length=24,
            api_key_encryption_key="from-settings",
        )
        codec = KeyCodec.from_settings(settings)
        secret = codec.generate()
        assert secret.startswith("slxdb_test_")
        assert len(secret) == len("slxdb_test_") + 24
        assert codec.encryption_enabled is True
        assert codec.split(secret) == ("slxdb_test_", secret[-4:])
