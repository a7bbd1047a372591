"""
Tests for backup encryption and compression utilities.

These tests verify:
1. Round trips for every supported cipher, including empty and large payloads
2. The salt | iv | ciphertext blob layout
3. Rejection of tampered blobs and mismatched salts
4. SHA-256 checksum stability and sensitivity
5. Gzip compression helpers
"""

import os

from django.test import TestCase, override_settings

from apps.backups.encryption import (
    HEADER_LENGTH,
    IV_LENGTH,
    SALT_LENGTH,
    CryptoEngine,
    calculate_checksum,
    compress_bytes,
    decompress_bytes,
    get_crypto_engine,
    verify_checksum,
)
from apps.backups.exceptions import CompressionError, DecryptionError, EncryptionError

FAST_COST = 2**4


class CryptoEngineConfigurationTests(TestCase):
    def test_get_crypto_engine_from_settings(self):
        with override_settings(
            BACKUP_ENCRYPTION_PASSWORD="settings-password",
            BACKUP_ENCRYPTION_ALGORITHM="aes-128-cbc",
            BACKUP_ENCRYPTION_KEY_LENGTH=16,
            BACKUP_SCRYPT_COST=FAST_COST,
        ):
            engine = get_crypto_engine()

        self.assertEqual(engine.algorithm, "aes-128-cbc")
        self.assertEqual(engine.key_length, 16)

    def test_get_crypto_engine_not_configured(self):
        with override_settings(BACKUP_ENCRYPTION_PASSWORD=""):
            with self.assertRaises(ValueError) as context:
                get_crypto_engine()
            self.assertIn("not configured", str(context.exception))

    def test_key_length_must_match_algorithm(self):
        with self.assertRaises(EncryptionError):
            CryptoEngine("password", algorithm="aes-256-gcm", key_length=16)

    def test_unsupported_algorithm(self):
        with self.assertRaises(EncryptionError):
            CryptoEngine("password", algorithm="des-ede3-cbc", key_length=24)


class RoundTripTests(TestCase):
    def setUp(self):
        self.engine = CryptoEngine("correct horse battery staple", scrypt_cost=FAST_COST)

    def test_round_trip(self):
        plaintext = b'{"customers": [{"id": 1}]}'
        blob, salt_hex = self.engine.encrypt(plaintext)
        self.assertEqual(self.engine.decrypt(blob, salt_hex), plaintext)

    def test_round_trip_empty_payload(self):
        blob, salt_hex = self.engine.encrypt(b"")
        self.assertEqual(self.engine.decrypt(blob, salt_hex), b"")

    def test_round_trip_large_payload(self):
        plaintext = os.urandom(2 * 1024 * 1024)
        blob, salt_hex = self.engine.encrypt(plaintext)
        self.assertEqual(self.engine.decrypt(blob, salt_hex), plaintext)

    def test_round_trip_every_algorithm(self):
        for algorithm, key_length in [
            ("aes-128-gcm", 16),
            ("aes-192-gcm", 24),
            ("aes-128-cbc", 16),
            ("aes-256-cbc", 32),
        ]:
            with self.subTest(algorithm=algorithm):
                engine = CryptoEngine(
                    "password", algorithm=algorithm, key_length=key_length, scrypt_cost=FAST_COST
                )
                for plaintext in (b"", b"x" * 15, b"y" * 16, b"z" * 1000):
                    blob, salt_hex = engine.encrypt(plaintext)
                    self.assertEqual(engine.decrypt(blob, salt_hex), plaintext)

    def test_blob_layout(self):
        blob, salt_hex = self.engine.encrypt(b"payload")

        self.assertEqual(len(salt_hex), SALT_LENGTH * 2)
        self.assertEqual(blob[:SALT_LENGTH], bytes.fromhex(salt_hex))
        self.assertEqual(len(blob[SALT_LENGTH:HEADER_LENGTH]), IV_LENGTH)
        self.assertGreater(len(blob), HEADER_LENGTH)

    def test_fresh_salt_and_iv_per_blob(self):
        blob_a, salt_a = self.engine.encrypt(b"same payload")
        blob_b, salt_b = self.engine.encrypt(b"same payload")

        self.assertNotEqual(salt_a, salt_b)
        self.assertNotEqual(blob_a, blob_b)


class DecryptionFailureTests(TestCase):
    def setUp(self):
        self.engine = CryptoEngine("password", scrypt_cost=FAST_COST)
        self.blob, self.salt_hex = self.engine.encrypt(b"sensitive payload")

    def test_tampered_ciphertext(self):
        tampered = bytearray(self.blob)
        tampered[-1] ^= 0x01
        with self.assertRaises(DecryptionError):
            self.engine.decrypt(bytes(tampered), self.salt_hex)

    def test_wrong_password(self):
        other = CryptoEngine("another password", scrypt_cost=FAST_COST)
        with self.assertRaises(DecryptionError):
            other.decrypt(self.blob, self.salt_hex)

    def test_salt_mismatch(self):
        with self.assertRaises(DecryptionError) as context:
            self.engine.decrypt(self.blob, "00" * SALT_LENGTH)
        self.assertIn("salt", str(context.exception))

    def test_invalid_salt_hex(self):
        with self.assertRaises(DecryptionError):
            self.engine.decrypt(self.blob, "not-hex")

    def test_truncated_blob(self):
        with self.assertRaises(DecryptionError):
            self.engine.decrypt(self.blob[: HEADER_LENGTH + 4], self.salt_hex)

    def test_decryption_error_is_an_encryption_error(self):
        self.assertTrue(issubclass(DecryptionError, EncryptionError))


class ChecksumTests(TestCase):
    def test_checksum_is_stable(self):
        data = b"backup blob"
        self.assertEqual(calculate_checksum(data), calculate_checksum(data))
        self.assertEqual(len(calculate_checksum(data)), 64)

    def test_single_byte_change_changes_checksum(self):
        data = bytearray(os.urandom(4096))
        original = calculate_checksum(bytes(data))
        for position in (0, 2048, 4095):
            mutated = bytearray(data)
            mutated[position] ^= 0xFF
            with self.subTest(position=position):
                self.assertNotEqual(calculate_checksum(bytes(mutated)), original)

    def test_verify_checksum(self):
        data = b"backup blob"
        self.assertTrue(verify_checksum(data, calculate_checksum(data)))
        self.assertTrue(verify_checksum(data, calculate_checksum(data).upper()))
        self.assertFalse(verify_checksum(data + b"!", calculate_checksum(data)))
        self.assertFalse(verify_checksum(data, ""))

    def test_engine_checksum_matches_module_function(self):
        self.assertEqual(CryptoEngine.checksum(b"abc"), calculate_checksum(b"abc"))


class CompressionTests(TestCase):
    def test_compress_round_trip(self):
        data = b"This is a test payload. " * 1000
        compressed = compress_bytes(data)
        self.assertLess(len(compressed), len(data))
        self.assertEqual(decompress_bytes(compressed), data)

    def test_decompress_invalid_data(self):
        with self.assertRaises(CompressionError):
            decompress_bytes(b"definitely not gzip")
