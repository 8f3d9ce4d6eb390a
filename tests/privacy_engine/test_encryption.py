"""
Cache-Accelerated Cipher Tests.

============================================================
PURPOSE
============================================================
Tests for envelope encryption.

TEST CATEGORIES:
- Round trips (text, bytes, empty)
- Tamper detection and malformed envelopes
- Key cache and salt rotation
- Latency contract

============================================================
"""

import dataclasses
import time

import pytest

from core.exceptions import MissingConfigError
from privacy_engine.config import EncryptionConfig
from privacy_engine.encryption import CacheAcceleratedCipher
from privacy_engine.exceptions import DecryptionError
from privacy_engine.models import PrivacyEnvelope


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config():
    # Low scrypt cost keeps the suite fast
    return EncryptionConfig(secret="test-secret", scrypt_n=2 ** 10)


@pytest.fixture
def cipher(config):
    return CacheAcceleratedCipher(config)


def flip_bit(data: bytes, index: int = 0) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


# ============================================================
# ROUND TRIP TESTS
# ============================================================

class TestRoundTrip:
    """Tests for encrypt/decrypt round trips."""

    def test_hello_world(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")

        assert cipher.decrypt(envelope, "pw") == "hello-world"

    def test_envelope_fields(self, cipher, config):
        envelope = cipher.encrypt("hello-world", "pw")

        assert len(envelope.iv) == config.iv_length
        assert len(envelope.tag) == 16
        assert len(envelope.salt) == config.salt_length
        assert envelope.ciphertext != b"hello-world"
        assert envelope.metadata["algorithm"] == "aes-256-gcm"
        assert envelope.metadata["size"] == len("hello-world")

    def test_default_secret(self, cipher):
        envelope = cipher.encrypt("payload")

        assert cipher.decrypt(envelope) == "payload"

    def test_unicode(self, cipher):
        text = "Ünïcødé 学生 ✓"

        assert cipher.decrypt(cipher.encrypt(text, "pw"), "pw") == text

    def test_empty_plaintext(self, cipher):
        envelope = cipher.encrypt("", "pw")
        restored = PrivacyEnvelope.from_dict(envelope.to_dict())

        assert cipher.decrypt(restored, "pw") == ""

    def test_bytes(self, cipher):
        payload = b"\xff\xfe\x00binary"
        envelope = cipher.encrypt(payload, "pw")

        assert envelope.metadata["binary"] is True
        assert cipher.decrypt_bytes(envelope, "pw") == payload

    def test_binary_payload_is_not_text(self, cipher):
        envelope = cipher.encrypt(b"\xff\xfe\x00", "pw")

        with pytest.raises(DecryptionError):
            cipher.decrypt(envelope, "pw")

    def test_serialized_envelope(self, cipher):
        serialized = cipher.encrypt("hello-world", "pw").to_dict()

        assert set(serialized) == {"encrypted", "iv", "tag", "salt", "metadata"}
        assert cipher.decrypt(serialized, "pw") == "hello-world"

    def test_batch_shares_salt(self, cipher):
        envelopes = cipher.encrypt_batch(["a", "b", "c"], "pw")

        assert len({e.salt for e in envelopes}) == 1
        assert [cipher.decrypt(e, "pw") for e in envelopes] == ["a", "b", "c"]

    def test_iv_never_reused(self, cipher):
        envelopes = [cipher.encrypt("same", "pw") for _ in range(50)]

        assert len({e.iv for e in envelopes}) == 50


# ============================================================
# FAILURE TESTS
# ============================================================

class TestDecryptionFailures:
    """Tests for tamper detection."""

    def test_flipped_tag_bit(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        tampered = dataclasses.replace(envelope, tag=flip_bit(envelope.tag))

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered, "pw")

    def test_flipped_ciphertext_bit(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        tampered = dataclasses.replace(
            envelope, ciphertext=flip_bit(envelope.ciphertext, 3)
        )

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered, "pw")

    def test_swapped_salt(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        tampered = dataclasses.replace(envelope, salt=flip_bit(envelope.salt))

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered, "pw")

    def test_wrong_password(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")

        with pytest.raises(DecryptionError):
            cipher.decrypt(envelope, "other")

    def test_truncated_iv(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        tampered = dataclasses.replace(envelope, iv=envelope.iv[:-1])

        with pytest.raises(DecryptionError) as exc_info:
            cipher.decrypt(tampered, "pw")
        assert exc_info.value.context["reason"] == "invalid_iv_length"

    def test_missing_field(self, cipher):
        serialized = cipher.encrypt("hello-world", "pw").to_dict()
        del serialized["iv"]

        with pytest.raises(DecryptionError):
            cipher.decrypt(serialized, "pw")

    def test_invalid_base64(self, cipher):
        serialized = cipher.encrypt("hello-world", "pw").to_dict()
        serialized["tag"] = "not base64!!"

        with pytest.raises(DecryptionError):
            cipher.decrypt(serialized, "pw")

    def test_unsupported_envelope_type(self, cipher):
        with pytest.raises(DecryptionError):
            cipher.decrypt("ciphertext", "pw")

    def test_failures_counted(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        with pytest.raises(DecryptionError):
            cipher.decrypt(envelope, "other")

        assert cipher.get_stats()["failures"] == 1


class TestPasswords:
    """Tests for password resolution."""

    def test_missing_secret(self):
        cipher = CacheAcceleratedCipher(EncryptionConfig(scrypt_n=2 ** 10))

        with pytest.raises(MissingConfigError):
            cipher.encrypt("payload")

    def test_empty_password(self, cipher):
        with pytest.raises(MissingConfigError):
            cipher.encrypt("payload", "")


# ============================================================
# KEY CACHE TESTS
# ============================================================

class TestKeyCache:
    """Tests for derived-key caching and salt rotation."""

    def test_second_encryption_is_accelerated(self, cipher):
        first = cipher.encrypt("a", "pw")
        second = cipher.encrypt("b", "pw")

        assert first.metadata["accelerated"] is False
        assert second.metadata["accelerated"] is True
        assert cipher.get_stats()["derivations"] == 1

    def test_cached_and_derived_keys_agree(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        cipher.clear_key_cache()

        assert cipher.decrypt(envelope, "pw") == "hello-world"
        assert cipher.get_stats()["derivations"] == 2

    def test_salt_rotation(self):
        cipher = CacheAcceleratedCipher(
            EncryptionConfig(secret="s", scrypt_n=2 ** 10, salt_rotation=2)
        )

        salts = [cipher.encrypt("x").salt for _ in range(3)]

        assert salts[0] == salts[1]
        assert salts[2] != salts[1]

    def test_passwords_get_distinct_salts(self, cipher):
        assert cipher.encrypt("x", "pw1").salt != cipher.encrypt("x", "pw2").salt

    def test_stats(self, cipher):
        envelope = cipher.encrypt("hello-world", "pw")
        cipher.decrypt(envelope, "pw")

        stats = cipher.get_stats()
        assert stats["encryptions"] == 1
        assert stats["decryptions"] == 1
        assert stats["cached_keys"] == 1
        assert stats["key_cache_hits"] >= 1


# ============================================================
# PERFORMANCE TESTS
# ============================================================

class TestPerformance:
    """Latency contract for cached keys."""

    def test_round_trip_under_10ms(self, cipher):
        cipher.decrypt(cipher.encrypt("warm-up", "pw"), "pw")
        payload = "x" * 1024

        iterations = 50
        start = time.perf_counter()
        for _ in range(iterations):
            cipher.decrypt(cipher.encrypt(payload, "pw"), "pw")
        average_ms = (time.perf_counter() - start) * 1000 / iterations

        assert average_ms < 10.0

    def test_cached_encryption_faster_than_first(self):
        cipher = CacheAcceleratedCipher(EncryptionConfig(secret="s"))

        start = time.perf_counter()
        cipher.encrypt("payload")
        cold = time.perf_counter() - start

        start = time.perf_counter()
        cipher.encrypt("payload")
        warm = time.perf_counter() - start

        assert warm < cold
