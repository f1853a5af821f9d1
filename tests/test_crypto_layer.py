#!/usr/bin/env python3

import unittest

from crypto_layer import ENC_PREFIX, QueueContentCipher
from mesh_config import SecurityConfig


KEY = bytes(range(32))


class QueueContentCipherTests(unittest.TestCase):
    def test_disabled_is_passthrough(self) -> None:
        cipher = QueueContentCipher(SecurityConfig())
        self.assertFalse(cipher.encryption_enabled)
        self.assertEqual(cipher.encrypt_text("hello", b"id"), "hello")
        self.assertEqual(cipher.decrypt_text("hello", b"id"), "hello")

    def test_enabled_encrypts_and_decrypts(self) -> None:
        cipher = QueueContentCipher(SecurityConfig(enable_encryption=True, key=KEY))
        stored = cipher.encrypt_text("hello mesh", b"msg-1")
        self.assertTrue(stored.startswith(ENC_PREFIX))
        self.assertNotIn("hello mesh", stored)
        self.assertEqual(cipher.decrypt_text(stored, b"msg-1"), "hello mesh")

    def test_ciphertext_bound_to_message_id(self) -> None:
        cipher = QueueContentCipher(SecurityConfig(enable_encryption=True, key=KEY))
        stored = cipher.encrypt_text("hello", b"msg-1")
        with self.assertRaises(ValueError):
            cipher.decrypt_text(stored, b"msg-2")

    def test_plain_rows_still_readable_after_enabling(self) -> None:
        cipher = QueueContentCipher(SecurityConfig(enable_encryption=True, key=KEY))
        self.assertEqual(cipher.decrypt_text("written before", b"x"), "written before")

    def test_encrypted_row_without_key_fails(self) -> None:
        writer = QueueContentCipher(SecurityConfig(enable_encryption=True, key=KEY))
        reader = QueueContentCipher(SecurityConfig())
        with self.assertRaises(ValueError):
            reader.decrypt_text(writer.encrypt_text("secret", b"m"), b"m")

    def test_malformed_ciphertext_fails(self) -> None:
        cipher = QueueContentCipher(SecurityConfig(enable_encryption=True, key=KEY))
        with self.assertRaises(ValueError):
            cipher.decrypt_text(ENC_PREFIX + "not base64!!", b"m")
        with self.assertRaises(ValueError):
            cipher.decrypt_text(ENC_PREFIX + "AAAA", b"m")


if __name__ == "__main__":
    unittest.main()
