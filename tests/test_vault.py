import os
import unittest
from unittest import mock

from calsync.errors import DecryptionError
from calsync.vault import KEY_ENV_VAR, CredentialVault


KEY = "0f" * 32


class CredentialVaultTests(unittest.TestCase):
    def test_round_trip(self) -> None:
        vault = CredentialVault(KEY)
        envelope = vault.encrypt("alice:s3cret")
        self.assertEqual(vault.decrypt(envelope), "alice:s3cret")

    def test_envelope_shape_and_fresh_nonce(self) -> None:
        vault = CredentialVault(KEY)
        first = vault.encrypt("same")
        second = vault.encrypt("same")
        self.assertNotEqual(first, second)
        nonce, tag, ciphertext = first.split(":")
        self.assertEqual(len(bytes.fromhex(nonce)), 12)
        self.assertEqual(len(bytes.fromhex(tag)), 16)
        self.assertEqual(len(bytes.fromhex(ciphertext)), len("same"))

    def test_tampered_ciphertext_is_rejected(self) -> None:
        vault = CredentialVault(KEY)
        nonce, tag, ciphertext = vault.encrypt("payload").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]
        with self.assertRaises(DecryptionError):
            vault.decrypt(f"{nonce}:{tag}:{flipped}")

    def test_wrong_key_is_rejected(self) -> None:
        envelope = CredentialVault(KEY).encrypt("payload")
        with self.assertRaises(DecryptionError):
            CredentialVault("ab" * 32).decrypt(envelope)

    def test_malformed_envelopes(self) -> None:
        vault = CredentialVault(KEY)
        for envelope in ("", "abc", "00:11", "zz:zz:zz", "00:" + "00" * 16 + ":00"):
            with self.subTest(envelope=envelope):
                with self.assertRaises(DecryptionError):
                    vault.decrypt(envelope)

    def test_key_must_be_32_bytes(self) -> None:
        with self.assertRaises(DecryptionError):
            CredentialVault("abcd").encrypt("x")
        with self.assertRaises(DecryptionError):
            CredentialVault(None).encrypt("x")
        with self.assertRaises(DecryptionError):
            CredentialVault("zz" * 32).encrypt("x")

    def test_env_key_takes_precedence(self) -> None:
        with mock.patch.dict(os.environ, {KEY_ENV_VAR: KEY}):
            vault = CredentialVault.from_env("ab" * 32)
        envelope = vault.encrypt("x")
        self.assertEqual(CredentialVault(KEY).decrypt(envelope), "x")

    def test_fallback_key_used_without_env(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            vault = CredentialVault.from_env(KEY)
        self.assertEqual(CredentialVault(KEY).decrypt(vault.encrypt("x")), "x")


if __name__ == "__main__":
    unittest.main()
