"""Tests for stored API key encryption and decryption."""

import os

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from airelay.core.encryption import (
    CredentialDecryptError,
    decrypt_api_key,
    encrypt_api_key,
    get_encryption_key,
    is_legacy_encryption,
    is_masked_key,
    mask_api_key,
)

from conftest import TEST_API_KEY


def legacy_encrypt(plaintext: str, key: bytes) -> str:
    """Build an ``iv:ciphertext`` AES-256-CBC blob like the old settings service did."""
    iv = os.urandom(16)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return f"{iv.hex()}:{(encryptor.update(padded) + encryptor.finalize()).hex()}"


class TestCurrentFormat:

    def test_round_trip(self):
        blob = encrypt_api_key(TEST_API_KEY)
        assert blob.count(":") == 2
        assert decrypt_api_key(blob) == TEST_API_KEY

    def test_surrounding_whitespace_is_stripped(self):
        blob = encrypt_api_key(f"  {TEST_API_KEY}\n")
        assert decrypt_api_key(blob) == TEST_API_KEY

    def test_tampered_ciphertext_fails_authentication(self):
        iv, tag, ciphertext = encrypt_api_key(TEST_API_KEY).split(":")
        flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
        with pytest.raises(CredentialDecryptError):
            decrypt_api_key(f"{iv}:{tag}:{flipped}")

    def test_wrong_key_fails(self):
        blob = encrypt_api_key(TEST_API_KEY)
        with pytest.raises(CredentialDecryptError):
            decrypt_api_key(blob, key=bytes(32))


class TestLegacyFormat:

    def test_legacy_blob_is_detected_and_decrypted(self):
        blob = legacy_encrypt(TEST_API_KEY, get_encryption_key())
        assert is_legacy_encryption(blob)
        assert decrypt_api_key(blob) == TEST_API_KEY

    def test_legacy_blob_with_wrong_key_fails(self):
        blob = legacy_encrypt(TEST_API_KEY, bytes(32))
        with pytest.raises(CredentialDecryptError):
            decrypt_api_key(blob)

    def test_current_blob_is_not_legacy(self):
        assert not is_legacy_encryption(encrypt_api_key(TEST_API_KEY))
        assert not is_legacy_encryption("")


class TestUnusableCredentials:

    def test_eight_character_plaintext_is_rejected(self):
        """Decryption succeeds structurally, but the result cannot be a real key."""
        blob = encrypt_api_key("abcd1234")
        with pytest.raises(CredentialDecryptError, match="too short"):
            decrypt_api_key(blob)

    def test_masked_placeholder_is_rejected(self):
        blob = encrypt_api_key("*" * 30 + "abcd")
        with pytest.raises(CredentialDecryptError, match="masked"):
            decrypt_api_key(blob)

    @pytest.mark.parametrize("blob", ["", "not-hex", "zz:zz:zz", "aa:bb:cc:dd"])
    def test_malformed_blobs(self, blob):
        with pytest.raises(CredentialDecryptError):
            decrypt_api_key(blob)

    def test_missing_encryption_key(self, monkeypatch):
        from airelay.core.config import get_settings

        monkeypatch.setenv("AIRELAY_ENCRYPTION_KEY", "")
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
        get_settings.cache_clear()
        with pytest.warns(UserWarning):
            get_settings()
        with pytest.raises(CredentialDecryptError, match="not configured"):
            get_encryption_key()


class TestMasking:

    def test_mask_api_key(self):
        assert mask_api_key("sk-abcdefgh") == "*******efgh"
        assert mask_api_key("abc") == "***"
        assert mask_api_key("") == ""

    def test_is_masked_key(self):
        assert is_masked_key("sk-...abcd")
        assert is_masked_key("********abcd")
        assert not is_masked_key(TEST_API_KEY)
