"""
Privacy Engine - Cache-Accelerated Cipher.

============================================================
PURPOSE
============================================================
Symmetric envelope encryption for sensitive payloads.

- AES-256-GCM (authenticated encryption)
- Keys derived from a password with scrypt
- Derived keys cached per (password, salt)
- Fresh 12-byte IV per encryption, salt bound as AAD

The cache only skips re-derivation. Encrypt/decrypt results
are identical whether a key was derived or served from cache.

============================================================
KEY REUSE
============================================================
A password keeps one salt for ``salt_rotation`` encryptions,
then rotates to a fresh one. Repeat encryptions with the same
password therefore hit the key cache. IVs are never reused.

============================================================
FAILURES
============================================================
Tag mismatch, wrong password, truncated or malformed fields
all raise DecryptionError. No partial plaintext is returned.

============================================================
"""

import hashlib
import logging
import os
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import MissingConfigError

from .cache import TTLCache
from .config import EncryptionConfig
from .exceptions import DecryptionError
from .metrics import MetricsCollector
from .models import PrivacyEnvelope


logger = logging.getLogger(__name__)

TAG_LENGTH = 16


class CacheAcceleratedCipher:
    """
    Envelope cipher with derived-key caching.

    Usage:
        cipher = CacheAcceleratedCipher()
        envelope = cipher.encrypt("hello-world", "pw")
        assert cipher.decrypt(envelope, "pw") == "hello-world"
    """

    def __init__(
        self,
        config: Optional[EncryptionConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._config = config or EncryptionConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._metrics = metrics or MetricsCollector(clock=self._clock)

        self._key_cache: TTLCache[bytes] = TTLCache(
            max_size=self._config.key_cache_size,
            clock=self._clock,
            name="derived_keys",
        )

        # password fingerprint -> [salt, uses]
        self._salts: "OrderedDict[bytes, List[Any]]" = OrderedDict()
        self._salt_lock = threading.Lock()

        self._derivations = 0
        self._encryptions = 0
        self._decryptions = 0
        self._failures = 0

    # =========================================================
    # KEY MANAGEMENT
    # =========================================================

    def _resolve_password(self, password: Optional[str]) -> bytes:
        if password is None:
            password = self._config.require_secret()
        if not password:
            raise MissingConfigError("password", source="caller")
        return password.encode("utf-8")

    def _derive_key(self, password: bytes, salt: bytes) -> bytes:
        kdf = Scrypt(
            salt=salt,
            length=self._config.key_length,
            n=self._config.scrypt_n,
            r=self._config.scrypt_r,
            p=self._config.scrypt_p,
        )
        self._derivations += 1
        return kdf.derive(password)

    def _get_key(self, password: bytes, salt: bytes) -> Tuple[bytes, bool]:
        """Return (key, served_from_cache)."""
        cache_key = hashlib.sha256(password + b"\x00" + salt).hexdigest()
        cached = cache_key in self._key_cache
        key = self._key_cache.get_or_compute(
            cache_key, lambda: self._derive_key(password, salt)
        )
        return key, cached

    def _current_salt(self, password: bytes) -> bytes:
        fingerprint = hashlib.sha256(password).digest()
        with self._salt_lock:
            state = self._salts.get(fingerprint)
            if state is None or state[1] >= self._config.salt_rotation:
                state = [os.urandom(self._config.salt_length), 0]
                self._salts[fingerprint] = state
                while len(self._salts) > self._config.key_cache_size:
                    self._salts.popitem(last=False)
            else:
                self._salts.move_to_end(fingerprint)
            state[1] += 1
            return state[0]

    # =========================================================
    # ENCRYPTION
    # =========================================================

    def encrypt(
        self,
        plaintext: Union[str, bytes],
        password: Optional[str] = None,
    ) -> PrivacyEnvelope:
        """
        Encrypt ``plaintext`` into a self-describing envelope.

        Args:
            plaintext: text or raw bytes
            password: secret to derive the key from; defaults to
                PRIVACY_ENCRYPTION_KEY

        Returns:
            PrivacyEnvelope with ciphertext, iv, tag, salt, metadata
        """
        secret = self._resolve_password(password)
        with self._metrics.timed("encrypt"):
            salt = self._current_salt(secret)
            return self._encrypt_with_salt(plaintext, secret, salt)

    def encrypt_batch(
        self,
        plaintexts: Iterable[Union[str, bytes]],
        password: Optional[str] = None,
    ) -> List[PrivacyEnvelope]:
        """Encrypt many payloads under one salt and one derived key."""
        secret = self._resolve_password(password)
        with self._metrics.timed("encrypt_batch"):
            salt = self._current_salt(secret)
            return [self._encrypt_with_salt(p, secret, salt) for p in plaintexts]

    def _encrypt_with_salt(
        self,
        plaintext: Union[str, bytes],
        secret: bytes,
        salt: bytes,
    ) -> PrivacyEnvelope:
        start = self._clock.monotonic()

        binary = isinstance(plaintext, (bytes, bytearray))
        data = bytes(plaintext) if binary else str(plaintext).encode("utf-8")

        key, cached = self._get_key(secret, salt)
        iv = os.urandom(self._config.iv_length)
        sealed = AESGCM(key).encrypt(iv, data, salt)
        self._encryptions += 1

        return PrivacyEnvelope(
            ciphertext=sealed[:-TAG_LENGTH],
            iv=iv,
            tag=sealed[-TAG_LENGTH:],
            salt=salt,
            metadata={
                "algorithm": "aes-256-gcm",
                "accelerated": cached,
                "size": len(data),
                "binary": binary,
                "duration_ms": round(self._clock.elapsed_ms(start), 3),
            },
        )

    # =========================================================
    # DECRYPTION
    # =========================================================

    def decrypt(
        self,
        envelope: Union[PrivacyEnvelope, Dict[str, Any]],
        password: Optional[str] = None,
    ) -> str:
        """
        Decrypt an envelope to text.

        Raises:
            DecryptionError: tag mismatch, wrong password, malformed
                envelope, or a payload that is not UTF-8 text
        """
        data = self.decrypt_bytes(envelope, password)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(
                "Decrypted payload is not text", reason="not_text", cause=e
            ) from e

    def decrypt_bytes(
        self,
        envelope: Union[PrivacyEnvelope, Dict[str, Any]],
        password: Optional[str] = None,
    ) -> bytes:
        """Decrypt an envelope to raw bytes."""
        if isinstance(envelope, dict):
            envelope = PrivacyEnvelope.from_dict(envelope)
        if not isinstance(envelope, PrivacyEnvelope):
            raise DecryptionError("Malformed envelope", reason="unsupported_type")

        secret = self._resolve_password(password)
        with self._metrics.timed("decrypt"):
            self._validate_envelope(envelope)
            key, _ = self._get_key(secret, envelope.salt)
            try:
                data = AESGCM(key).decrypt(
                    envelope.iv, envelope.ciphertext + envelope.tag, envelope.salt
                )
            except InvalidTag as e:
                self._failures += 1
                logger.warning("Envelope authentication failed")
                raise DecryptionError(
                    "Authentication tag mismatch", reason="invalid_tag", cause=e
                ) from e

        self._decryptions += 1
        return data

    def _validate_envelope(self, envelope: PrivacyEnvelope) -> None:
        problem = None
        if len(envelope.iv) != self._config.iv_length:
            problem = "invalid_iv_length"
        elif len(envelope.tag) != TAG_LENGTH:
            problem = "invalid_tag_length"
        elif not envelope.salt:
            problem = "missing_salt"

        if problem:
            self._failures += 1
            raise DecryptionError("Malformed envelope", reason=problem)

    # =========================================================
    # CACHE / STATS
    # =========================================================

    def clear_key_cache(self) -> None:
        """Drop every cached key and per-password salt."""
        self._key_cache.clear()
        with self._salt_lock:
            self._salts.clear()
        logger.info("Derived key cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        key_stats = self._key_cache.get_stats()
        with self._salt_lock:
            active_salts = len(self._salts)
        return {
            "algorithm": "aes-256-gcm",
            "kdf": "scrypt",
            "acceleration": "key_cache",
            "cached_keys": key_stats["size"],
            "key_cache_hits": key_stats["hits"],
            "key_cache_misses": key_stats["misses"],
            "key_cache_hit_rate": key_stats["hit_rate"],
            "derivations": self._derivations,
            "active_salts": active_salts,
            "encryptions": self._encryptions,
            "decryptions": self._decryptions,
            "failures": self._failures,
        }
