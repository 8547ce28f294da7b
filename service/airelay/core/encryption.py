# Crucible Community Edition
# Copyright (C) 2025 Roundtable Labs Pty Ltd
#
# Licensed under AGPL-3.0. See LICENSE file for details.
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Encryption utilities for provider API keys.

Stored keys come in two formats, distinguished by the number of ``:`` separated
hex fields:

* current: ``iv:authTag:ciphertext`` (AES-256-GCM, 12 byte IV, 16 byte tag)
* legacy:  ``iv:ciphertext`` (AES-256-CBC, PKCS7 padding)

Callers should only use :func:`decrypt_api_key`, which picks the right format.
"""
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from airelay.core.config import get_settings

logger = logging.getLogger(__name__)

# Shorter plaintexts are corrupt or placeholder keys, not real vendor credentials
MIN_API_KEY_LENGTH = 20

GCM_IV_LENGTH = 12
GCM_TAG_LENGTH = 16
CBC_IV_LENGTH = 16


class CredentialDecryptError(ValueError):
    """Stored credential could not be turned into a usable API key."""


def get_encryption_key() -> bytes:
    """Get the 32-byte AES key from settings.
    
    Returns:
        Raw key bytes
        
    Raises:
        CredentialDecryptError: If the key is missing or not 64 hex characters
    """
    key_hex = get_settings().encryption_key or os.getenv("ENCRYPTION_KEY", "")
    if not key_hex:
        raise CredentialDecryptError("Encryption key is not configured")
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as e:
        raise CredentialDecryptError("Encryption key must be hex encoded") from e
    if len(key) != 32:
        raise CredentialDecryptError("Encryption key must be 32 bytes (64 hex characters)")
    return key


def _split_hex_fields(blob: str, expected: int) -> list[bytes]:
    parts = blob.strip().split(":")
    if len(parts) != expected:
        raise CredentialDecryptError(
            f"Malformed encrypted key: expected {expected} fields, got {len(parts)}"
        )
    try:
        return [bytes.fromhex(part) for part in parts]
    except ValueError as e:
        raise CredentialDecryptError("Malformed encrypted key: fields must be hex encoded") from e


def is_legacy_encryption(blob: str) -> bool:
    """Return True when the blob uses the two-field CBC format."""
    if not blob or not isinstance(blob, str):
        return False
    return len(blob.strip().split(":")) == 2


def encrypt_api_key(api_key: str, key: bytes | None = None) -> str:
    """Encrypt an API key in the current ``iv:authTag:ciphertext`` format.
    
    Args:
        api_key: The API key to encrypt
        key: Optional raw key, defaults to the configured key
        
    Returns:
        Hex encoded ``iv:authTag:ciphertext`` string
    """
    if not api_key:
        return ""

    key = key or get_encryption_key()
    iv = os.urandom(GCM_IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    ciphertext, tag = sealed[:-GCM_TAG_LENGTH], sealed[-GCM_TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_current(blob: str, key: bytes | None = None) -> str:
    """Decrypt an AES-256-GCM ``iv:authTag:ciphertext`` blob."""
    iv, tag, ciphertext = _split_hex_fields(blob, 3)
    if len(iv) != GCM_IV_LENGTH or len(tag) != GCM_TAG_LENGTH:
        raise CredentialDecryptError("Malformed encrypted key: bad IV or auth tag length")

    key = key or get_encryption_key()
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise CredentialDecryptError("Authentication failed while decrypting key") from e
    except UnicodeDecodeError as e:
        raise CredentialDecryptError("Decrypted key is not valid UTF-8") from e


def decrypt_legacy(blob: str, key: bytes | None = None) -> str:
    """Decrypt a legacy AES-256-CBC ``iv:ciphertext`` blob."""
    iv, ciphertext = _split_hex_fields(blob, 2)
    if len(iv) != CBC_IV_LENGTH or not ciphertext or len(ciphertext) % 16:
        raise CredentialDecryptError("Malformed legacy encrypted key")

    key = key or get_encryption_key()
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except ValueError as e:
        # Bad padding or undecodable bytes both mean the wrong key
        raise CredentialDecryptError("Failed to decrypt legacy key") from e


def decrypt_api_key(encrypted_key: str, key: bytes | None = None) -> str:
    """Decrypt a stored provider API key in either format.
    
    Args:
        encrypted_key: The stored ``iv:authTag:ciphertext`` or ``iv:ciphertext`` blob
        key: Optional raw key, defaults to the configured key
        
    Returns:
        Plaintext API key, stripped of surrounding whitespace
        
    Raises:
        CredentialDecryptError: If the blob is malformed, the key is wrong, or the
            result is too short or masked to be a real credential
    """
    if not encrypted_key:
        raise CredentialDecryptError("No encrypted key stored")

    if is_legacy_encryption(encrypted_key):
        logger.debug("[decrypt_api_key] Using legacy CBC format")
        plaintext = decrypt_legacy(encrypted_key, key)
    else:
        plaintext = decrypt_current(encrypted_key, key)

    plaintext = plaintext.strip()
    if len(plaintext) < MIN_API_KEY_LENGTH:
        raise CredentialDecryptError(
            f"Decrypted key is too short ({len(plaintext)} chars); it may be corrupted or was never rotated"
        )
    if is_masked_key(plaintext):
        raise CredentialDecryptError("Decrypted key is a masked placeholder, not a real key")
    return plaintext


def mask_api_key(api_key: str, visible_chars: int = 4) -> str:
    """Mask an API key showing only the last few characters.
    
    Args:
        api_key: The API key to mask
        visible_chars: Number of characters to show at the end
        
    Returns:
        Masked API key (e.g., "****abcd")
    """
    if not api_key:
        return ""
    
    if len(api_key) <= visible_chars:
        return "*" * len(api_key)
    
    return f"{'*' * (len(api_key) - visible_chars)}{api_key[-visible_chars:]}"


def is_masked_key(api_key: str) -> bool:
    """Check if an API key appears to be a masked value.
    
    Detects both old format ("...") and new format (starts with "*").
    """
    if not api_key or not isinstance(api_key, str):
        return False
    
    trimmed = api_key.strip()
    
    if "..." in trimmed:
        return True
    
    if trimmed.startswith("*") and len(trimmed) > 4:
        asterisk_count = trimmed.count("*")
        if asterisk_count > len(trimmed) * 0.5:
            return True
    
    return False
