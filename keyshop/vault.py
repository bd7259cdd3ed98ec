# keyshop/vault.py
"""
Key Vault: authenticated encryption of license keys at rest.

Stored form is ``base64(nonce || ciphertext || tag)`` produced by AES-256-GCM
with a fresh 96-bit nonce per call, so encrypting the same key twice never
yields the same token. Duplicate detection therefore cannot compare
ciphertexts; it uses ``fingerprint()``, an HMAC of the normalized plaintext
under a subkey derived from the master key.
"""
import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class VaultError(Exception):
    """Raised when a token cannot be decrypted or authenticated."""


def generate_key() -> str:
    """New random master key as 64 hex chars (for ENCRYPTION_KEY)."""
    return os.urandom(KEY_LENGTH).hex()


def normalize(plaintext: str) -> str:
    return plaintext.strip()


class KeyVault:
    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ValueError("vault key must be 32 bytes")
        self._aead = AESGCM(key)
        self._fingerprint_key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"keyshop/license-key-fingerprint",
        ).derive(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "KeyVault":
        return cls(bytes.fromhex(hex_key))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError):
            raise VaultError("malformed token")
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise VaultError("token too short")
        try:
            plain = self._aead.decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None)
        except InvalidTag:
            raise VaultError("token failed authentication")
        return plain.decode("utf-8")

    def fingerprint(self, plaintext: str) -> str:
        return hmac.new(
            self._fingerprint_key, normalize(plaintext).encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def __repr__(self) -> str:
        return "KeyVault(<redacted>)"
