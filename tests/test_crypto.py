"""Tests for crypto.py: SecretBox and API key format checks."""

import pytest

from jarvis.crypto import SecretBox, validate_omi_api_key

SECRET = "test-encryption-key-0123456789abcdef"


class TestSecretBox:
    def test_ciphertext_format(self):
        payload = SecretBox(SECRET).encrypt("omi_" + "a" * 30)
        parts = payload.split(":")
        assert parts[0] == "v1"
        assert len(parts) == 5

    def test_decrypts_own_output(self):
        box = SecretBox(SECRET)
        assert box.decrypt(box.encrypt("hello")) == "hello"

    def test_random_salt_and_nonce(self):
        box = SecretBox(SECRET)
        assert box.encrypt("same") != box.encrypt("same")

    def test_rotation_uses_previous_key(self):
        old = SecretBox("old-secret").encrypt("omi_key")
        rotated = SecretBox("new-secret", previous_secret="old-secret")
        assert rotated.decrypt(old) == "omi_key"
        assert SecretBox("new-secret").decrypt(old) is None

    def test_tampered_payload(self):
        box = SecretBox(SECRET)
        parts = box.encrypt("hello").split(":")
        parts[4] = box.encrypt("other").split(":")[4]
        assert box.decrypt(":".join(parts)) is None

    @pytest.mark.parametrize("payload", [None, "", "plain", "v2:a:b:c:d", "v1:!!:b:c:d"])
    def test_garbage_payloads(self, payload):
        assert SecretBox(SECRET).decrypt(payload) is None

    def test_disabled_without_secret(self):
        box = SecretBox("")
        assert box.enabled is False
        assert box.encrypt("hello") is None

    def test_empty_plaintext(self):
        assert SecretBox(SECRET).encrypt("") is None


class TestValidateOmiApiKey:
    @pytest.mark.parametrize("key", [
        "omi_" + "a" * 24,
        "omi_" + "Z9" * 32,
        "omi_mcp_" + "b" * 16,
        "sk_" + "A" * 40,
        "  omi_" + "c" * 30 + "\n",
    ])
    def test_accepts(self, key):
        assert validate_omi_api_key(key)

    @pytest.mark.parametrize("key", [
        None,
        "",
        "omi_short",
        "sk_" + "A" * 31,
        "sk_" + "A" * 65,
        "omi_" + "a" * 20 + "-" + "a" * 10,
        "pk_" + "a" * 40,
        42,
    ])
    def test_rejects(self, key):
        assert not validate_omi_api_key(key)
