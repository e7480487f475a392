from __future__ import annotations

import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calsync.errors import DecryptionError


KEY_ENV_VAR = "CALSYNC_TOKEN_ENCRYPTION_KEY"
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_HEX_LENGTH = 64


class CredentialVault:
    """AES-256-GCM envelope encryption for provider credentials.

    Envelopes are ``"<nonce>:<tag>:<ciphertext>"`` with every part hex encoded.
    The key is a 32-byte value given as 64 hex characters.
    """

    def __init__(self, key_hex: str | None) -> None:
        self._key_hex = (key_hex or "").strip()

    @classmethod
    def from_env(cls, fallback_key_hex: str = "") -> "CredentialVault":
        return cls(os.getenv(KEY_ENV_VAR) or fallback_key_hex)

    def _key(self) -> bytes:
        if len(self._key_hex) != KEY_HEX_LENGTH:
            raise DecryptionError(
                f"{KEY_ENV_VAR} must be a 32-byte hex string ({KEY_HEX_LENGTH} characters)"
            )
        try:
            return bytes.fromhex(self._key_hex)
        except ValueError as exc:
            raise DecryptionError(f"{KEY_ENV_VAR} is not valid hex") from exc

    def encrypt(self, plaintext: str) -> str:
        key = self._key()
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext.
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        key = self._key()
        parts = str(envelope or "").split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted credential format")
        try:
            nonce = binascii.unhexlify(parts[0])
            tag = binascii.unhexlify(parts[1])
            ciphertext = binascii.unhexlify(parts[2])
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Encrypted credential is not valid hex") from exc
        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Invalid encrypted credential format")
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Encrypted credential failed authentication") from exc
        return plaintext.decode("utf-8")
