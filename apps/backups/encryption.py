"""
Encryption and compression utilities for the backup system.

This module provides:
1. Password-based encryption with scrypt-derived keys (AES-GCM or AES-CBC)
2. Gzip compression with level 9 (maximum compression)
3. SHA-256 checksum calculation

Backups are compressed first, then encrypted, following the pattern:
Payload -> Gzip Compression -> AES Encryption -> Storage

Stored blobs are laid out as ``salt (32 bytes) | iv (16 bytes) | ciphertext``.
Only the salt is persisted in the backup record; the password lives in
settings and the IV travels inside the blob.
"""

import gzip
import hashlib
import hmac
import logging
import os
from typing import Tuple

from django.conf import settings

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .exceptions import CompressionError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH
GCM_TAG_LENGTH = 16

DEFAULT_ALGORITHM = "aes-256-gcm"
DEFAULT_SCRYPT_COST = 2**14

# algorithm name -> (key length in bytes, mode)
SUPPORTED_ALGORITHMS = {
    "aes-128-gcm": (16, "gcm"),
    "aes-192-gcm": (24, "gcm"),
    "aes-256-gcm": (32, "gcm"),
    "aes-128-cbc": (16, "cbc"),
    "aes-192-cbc": (24, "cbc"),
    "aes-256-cbc": (32, "cbc"),
}


def calculate_checksum(data: bytes) -> str:
    """Return the SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, expected_checksum: str) -> bool:
    """
    Verify the checksum of a blob.

    Returns:
        True if checksum matches, False otherwise
    """
    if not expected_checksum:
        return False
    actual_checksum = calculate_checksum(data)
    matches = hmac.compare_digest(actual_checksum, expected_checksum.lower())

    if not matches:
        logger.warning(f"Checksum mismatch: expected {expected_checksum}, got {actual_checksum}")

    return matches


def compress_bytes(data: bytes, level: int = 9) -> bytes:
    """
    Compress data using gzip (maximum compression by default).

    Raises:
        CompressionError: If compression fails
    """
    try:
        compressed = gzip.compress(data, compresslevel=level)
    except Exception as e:
        logger.error(f"Failed to compress payload: {e}")
        raise CompressionError(f"Compression failed: {e}") from e

    original_size = len(data)
    ratio = (1 - len(compressed) / original_size) * 100 if original_size > 0 else 0
    logger.debug(f"Compressed {original_size} bytes -> {len(compressed)} bytes ({ratio:.1f}% reduction)")
    return compressed


def decompress_bytes(data: bytes) -> bytes:
    """
    Decompress gzip-compressed data.

    Raises:
        CompressionError: If decompression fails
    """
    try:
        return gzip.decompress(data)
    except Exception as e:
        logger.error(f"Failed to decompress payload: {e}")
        raise CompressionError(f"Decompression failed: {e}") from e


class CryptoEngine:
    """
    Symmetric encryption with password-derived keys.

    A fresh salt and IV are generated for every blob. The key is derived
    with scrypt, a slow and memory-hard KDF, so the same password never
    produces the same key twice.
    """

    def __init__(
        self,
        password: str,
        algorithm: str = DEFAULT_ALGORITHM,
        key_length: int = 32,
        scrypt_cost: int = DEFAULT_SCRYPT_COST,
        scrypt_block_size: int = 8,
        scrypt_parallelism: int = 1,
    ):
        if not password:
            raise ValueError("Backup encryption password is empty")

        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise EncryptionError(f"Unsupported cipher algorithm: {algorithm}")

        required_length, mode = SUPPORTED_ALGORITHMS[algorithm]
        if key_length != required_length:
            raise EncryptionError(
                f"{algorithm} requires a {required_length}-byte key, got {key_length}"
            )

        self.password = password.encode("utf-8") if isinstance(password, str) else password
        self.algorithm = algorithm
        self.mode = mode
        self.key_length = key_length
        self.scrypt_cost = scrypt_cost
        self.scrypt_block_size = scrypt_block_size
        self.scrypt_parallelism = scrypt_parallelism

    def derive_key(self, salt: bytes) -> bytes:
        kdf = Scrypt(
            salt=salt,
            length=self.key_length,
            n=self.scrypt_cost,
            r=self.scrypt_block_size,
            p=self.scrypt_parallelism,
        )
        return kdf.derive(self.password)

    def encrypt(self, plaintext: bytes) -> Tuple[bytes, str]:
        """
        Encrypt a payload.

        Returns:
            Tuple of (blob, salt_hex) where blob is salt + iv + ciphertext

        Raises:
            EncryptionError: If key derivation or encryption fails
        """
        try:
            salt = os.urandom(SALT_LENGTH)
            iv = os.urandom(IV_LENGTH)
            key = self.derive_key(salt)

            if self.mode == "gcm":
                # The salt is bound to the ciphertext as associated data.
                ciphertext = AESGCM(key).encrypt(iv, plaintext, salt)
            else:
                padder = padding.PKCS7(algorithms.AES.block_size).padder()
                padded = padder.update(plaintext) + padder.finalize()
                encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
                ciphertext = encryptor.update(padded) + encryptor.finalize()
        except Exception as e:
            logger.error(f"Failed to encrypt payload with {self.algorithm}: {e}")
            raise EncryptionError(f"Encryption failed: {e}") from e

        blob = salt + iv + ciphertext
        logger.debug(f"Encrypted {len(plaintext)} bytes -> {len(blob)} bytes ({self.algorithm})")
        return blob, salt.hex()

    def decrypt(self, blob: bytes, salt_hex: str) -> bytes:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            DecryptionError: If the salt is invalid, the blob is truncated,
                             or the cipher rejects the ciphertext
        """
        try:
            salt = bytes.fromhex(salt_hex)
        except (TypeError, ValueError) as e:
            raise DecryptionError(f"Invalid salt: {e}") from e

        minimum_length = HEADER_LENGTH + (GCM_TAG_LENGTH if self.mode == "gcm" else IV_LENGTH)
        if len(blob) < minimum_length:
            raise DecryptionError(
                f"Blob is too short to decrypt ({len(blob)} bytes, need {minimum_length})"
            )

        if not hmac.compare_digest(blob[:SALT_LENGTH], salt):
            raise DecryptionError("Blob salt does not match the recorded salt")

        iv = blob[SALT_LENGTH:HEADER_LENGTH]
        ciphertext = blob[HEADER_LENGTH:]

        try:
            key = self.derive_key(salt)
        except Exception as e:
            raise DecryptionError(f"Key derivation failed: {e}") from e

        try:
            if self.mode == "gcm":
                return AESGCM(key).decrypt(iv, ciphertext, salt)

            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except InvalidTag:
            raise DecryptionError("Invalid encryption password or corrupted blob")
        except ValueError as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    @staticmethod
    def checksum(blob: bytes) -> str:
        return calculate_checksum(blob)

    @staticmethod
    def verify_checksum(blob: bytes, expected_checksum: str) -> bool:
        return verify_checksum(blob, expected_checksum)


def get_crypto_engine() -> CryptoEngine:
    """
    Build the crypto engine from Django settings.

    Raises:
        ValueError: If the encryption password is not configured
    """
    password = getattr(settings, "BACKUP_ENCRYPTION_PASSWORD", None)

    if not password:
        raise ValueError(
            "BACKUP_ENCRYPTION_PASSWORD not configured in settings. "
            "Set it to a long random passphrase stored outside the backup bucket."
        )

    return CryptoEngine(
        password=password,
        algorithm=getattr(settings, "BACKUP_ENCRYPTION_ALGORITHM", DEFAULT_ALGORITHM),
        key_length=getattr(settings, "BACKUP_ENCRYPTION_KEY_LENGTH", 32),
        scrypt_cost=getattr(settings, "BACKUP_SCRYPT_COST", DEFAULT_SCRYPT_COST),
    )
