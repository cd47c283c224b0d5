"""
Credential and field protection helpers.

- hash_password: PBKDF2-HMAC-SHA256 with a random salt, returned base64 encoded
- FieldEncryptor: AES-256-CBC with PKCS7 padding and a random IV per value
- sha256_hex: deterministic lookup hash for encrypted columns
"""

from typing import Optional, Tuple
import base64
import hashlib
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

SALT_BYTES = 16
HASH_BYTES = 32
AES_BLOCK_BITS = 128


def hash_password(plaintext: str, iterations: int, salt: Optional[bytes] = None) -> Tuple[str, str]:
    """
    Derive a password hash.

    Args:
        plaintext: Password as stored in the legacy system
        iterations: PBKDF2 cost factor
        salt: Fixed salt (tests only); a random one is generated otherwise

    Returns:
        Tuple of (hash, salt), both base64 strings
    """
    if salt is None:
        salt = os.urandom(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac('sha256', plaintext.encode('utf-8'), salt, iterations, HASH_BYTES)
    return base64.b64encode(digest).decode('ascii'), base64.b64encode(salt).decode('ascii')


def verify_password(plaintext: str, password_hash: str, salt: str, iterations: int) -> bool:
    expected, _ = hash_password(plaintext, iterations, base64.b64decode(salt))
    return expected == password_hash


def sha256_hex(value: Optional[str]) -> Optional[str]:
    """Lower-case hex SHA-256 of the normalized value, None for blanks."""
    if value is None or str(value).strip() == '':
        return None
    normalized = str(value).strip().lower()
    return hashlib.sha256(normalized.encode('utf-8')).hexdigest()


class FieldEncryptor:
    """Symmetric encryption of individual column values."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError(f"AES-256 key must be 32 bytes, got {len(key)}")
        self._key = key

    @classmethod
    def from_base64(cls, encoded_key: Optional[str]) -> 'FieldEncryptor':
        if not encoded_key:
            raise ValueError("FIELD_ENCRYPTION_KEY is not set")
        return cls(base64.b64decode(encoded_key))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a value; output is base64(iv + ciphertext)."""
        if plaintext is None:
            return None
        iv = os.urandom(AES_BLOCK_BITS // 8)
        padder = padding.PKCS7(AES_BLOCK_BITS).padder()
        padded = padder.update(str(plaintext).encode('utf-8')) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + ciphertext).decode('ascii')

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        raw = base64.b64decode(token)
        iv, ciphertext = raw[:AES_BLOCK_BITS // 8], raw[AES_BLOCK_BITS // 8:]
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode('utf-8')
