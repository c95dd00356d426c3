"""
Symmetric encryption for OMI API keys at rest.

AES-256-GCM with a per-value random salt and nonce. The 32-byte key is
HMAC-SHA256(salt, ENCRYPTION_KEY), so only the secret itself needs to be
configured. Ciphertexts are stored as:

    v1:<salt b64>:<nonce b64>:<ciphertext b64>:<tag b64>

A previous secret can be supplied to keep decrypting values written before
a key rotation.
"""

from __future__ import annotations

import base64
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

log = logging.getLogger(__name__)

_VERSION = "v1"
_TAG_LEN = 16

_API_KEY_PATTERNS = [
    re.compile(r"^sk_[A-Za-z0-9]{32,64}$"),
    re.compile(r"^omi_mcp_[A-Za-z0-9]{16,64}$"),
    re.compile(r"^omi_[A-Za-z0-9]{24,64}$"),
]


def _derive_key(secret: str, salt: bytes) -> bytes:
    """Derive a 32-byte AES key from the configured secret and a salt."""
    h = hmac.HMAC(salt, hashes.SHA256())
    h.update(secret.encode("utf-8"))
    return h.finalize()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class SecretBox:
    """Encrypts and decrypts short secrets with the configured key(s)."""

    def __init__(self, secret: str, previous_secret: str = ""):
        self._secret = secret or ""
        self._previous = previous_secret or ""
        if not self._secret:
            log.warning("ENCRYPTION_KEY not set, OMI API keys cannot be stored")

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def encrypt(self, plaintext: str) -> str | None:
        """Encrypt a value. Returns None when there is nothing to encrypt or no key."""
        if not plaintext or not self._secret:
            return None
        salt = os.urandom(16)
        nonce = os.urandom(12)
        sealed = AESGCM(_derive_key(self._secret, salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
        return ":".join([_VERSION, _b64(salt), _b64(nonce), _b64(ciphertext), _b64(tag)])

    def decrypt(self, payload: str) -> str | None:
        """Decrypt a value produced by encrypt(). Returns None if no key opens it."""
        if not payload or not isinstance(payload, str):
            return None
        parts = payload.split(":")
        if len(parts) != 5 or parts[0] != _VERSION:
            return None
        try:
            salt, nonce, ciphertext, tag = (base64.b64decode(p) for p in parts[1:])
        except ValueError:
            return None

        for secret in (self._secret, self._previous):
            if not secret:
                continue
            try:
                plain = AESGCM(_derive_key(secret, salt)).decrypt(nonce, ciphertext + tag, None)
                return plain.decode("utf-8")
            except InvalidTag:
                continue
        log.debug("Decryption failed with current and previous keys")
        return None


def validate_omi_api_key(api_key) -> bool:
    """Check an API key against the accepted OMI / provider key formats.

    Accepts sk_ keys (32-64 alphanumerics), omi_mcp_ keys (16-64) and other
    omi_ keys (24-64).
    """
    if not api_key or not isinstance(api_key, str):
        return False
    key = api_key.strip()
    return any(p.match(key) for p in _API_KEY_PATTERNS)
