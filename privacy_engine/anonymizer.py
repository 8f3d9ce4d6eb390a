"""
Privacy Engine - Deterministic Field Anonymizer.

============================================================
PURPOSE
============================================================
Keyed one-way tokenization of identifiers.

- HMAC-SHA256 keyed by a secret salt
- Namespace (usually the column name) as domain separator
- Same (value, namespace) always yields the same token
- Different namespaces yield unrelated tokens

Tokens populate ``<field>_hash`` columns so equality search
works without decrypting anything.

============================================================
"""

import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from core.clock import ClockProtocol

from .cache import TTLCache
from .config import AnonymizationConfig
from .exceptions import AnonymizationError
from .metrics import MetricsCollector


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE FIELD PATTERNS
# ============================================================

# Direct identifiers that are dropped outright (no hashed counterpart)
REMOVED_FIELDS = {
    "name", "first_name", "last_name", "full_name", "username",
    "phone", "phone_number", "address", "ip_address", "ip",
    "password", "date_of_birth",
}

SENSITIVE_PATTERNS = [
    (r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", "email"),
    (r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b", "ip_address"),
]

PSEUDONYM_PREFIXES = {
    "student": "Student",
    "teacher": "Teacher",
    "course": "Course",
}

_SEPARATOR = b"\x1f"


# ============================================================
# ANONYMIZER
# ============================================================

class FieldAnonymizer:
    """
    Deterministic keyed anonymizer with a token cache.

    The cache is a performance layer only: a hit returns the
    identical token a cold computation would.
    """

    def __init__(
        self,
        config: Optional[AnonymizationConfig] = None,
        clock: Optional[ClockProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
        additional_removed: Optional[Set[str]] = None,
    ) -> None:
        self._config = config or AnonymizationConfig()
        self._metrics = metrics or MetricsCollector(clock=clock)
        self._key = self._config.salt.encode("utf-8") if self._config.salt else None

        self._cache: TTLCache[str] = TTLCache(
            max_size=self._config.cache_size,
            clock=clock,
            name="anonymization_tokens",
        )

        self._removed_fields = REMOVED_FIELDS.copy()
        if additional_removed:
            self._removed_fields.update(additional_removed)
        self._compiled_patterns = [
            (re.compile(pattern), name) for pattern, name in SENSITIVE_PATTERNS
        ]
        self._computed = 0

    @property
    def identifier_columns(self) -> Dict[str, str]:
        return dict(self._config.identifier_columns)

    # =========================================================
    # TOKENS
    # =========================================================

    def anonymize(self, value: Any, namespace: str) -> str:
        """
        Return the token for ``value`` within ``namespace``.

        Raises:
            AnonymizationError: no salt configured, empty namespace,
                or a null value
        """
        if self._key is None:
            raise AnonymizationError(
                "Anonymization salt is not configured",
                context={"config_key": "PRIVACY_ANONYMIZATION_SALT"},
            )
        if not namespace:
            raise AnonymizationError("Anonymization namespace is required")
        if value is None:
            raise AnonymizationError(
                "Cannot anonymize a null value", context={"namespace": namespace}
            )

        text = str(value)
        with self._metrics.timed("anonymize"):
            return self._cache.get_or_compute(
                (namespace, text), lambda: self._compute(text, namespace)
            )

    def _compute(self, text: str, namespace: str) -> str:
        message = namespace.encode("utf-8") + _SEPARATOR + text.encode("utf-8")
        digest = hmac.new(self._key, message, hashlib.sha256).hexdigest()
        self._computed += 1
        return digest[: self._config.token_length]

    def anonymize_batch(self, values: Iterable[Any], namespace: str) -> List[str]:
        """Tokens for ``values`` in input order."""
        return [self.anonymize(value, namespace) for value in values]

    def pseudonymize(self, value: Any, domain: str = "entity") -> str:
        """
        Readable, stable pseudonym such as ``Student_3f9a1c0b``.

        Unknown domains use the ``Entity`` prefix.
        """
        prefix = PSEUDONYM_PREFIXES.get(domain.lower(), "Entity")
        token = self.anonymize(value, f"pseudonym:{domain.lower()}")
        return f"{prefix}_{token[:8]}"

    # =========================================================
    # RECORDS
    # =========================================================

    def anonymize_record(
        self,
        record: Dict[str, Any],
        keep_identifiers: bool = False,
    ) -> Dict[str, Any]:
        """
        Replace direct identifiers with their hashed counterparts.

        ``email`` becomes ``email_hash`` (namespace ``email``), and
        so on for every configured identifier column. Other direct
        identifiers (names, phone numbers) are removed. Returns a
        new dictionary; the input is not modified.
        """
        result = {}
        identifier_columns = self._config.identifier_columns

        for key, value in record.items():
            if key in identifier_columns:
                if value is not None:
                    result[identifier_columns[key]] = self.anonymize(value, key)
                if keep_identifiers:
                    result[key] = value
                continue

            if self.is_removed_field(key):
                logger.debug(f"Removed direct identifier field: {key}")
                continue

            if isinstance(value, dict):
                result[key] = self.anonymize_record(value, keep_identifiers)
            else:
                result[key] = value

        return result

    def is_removed_field(self, field_name: str) -> bool:
        normalized = field_name.lower().replace("-", "_")
        return normalized in self._removed_fields

    def validate_anonymized(self, record: Dict[str, Any]) -> List[str]:
        """
        Check that a record carries no direct identifiers.

        Returns list of issues found (empty when clean).
        """
        issues = []
        identifier_columns = self._config.identifier_columns

        def check_dict(d: Dict[str, Any], path: str = "") -> None:
            for key, value in d.items():
                full_path = f"{path}.{key}" if path else key

                if key in identifier_columns or self.is_removed_field(key):
                    issues.append(f"Direct identifier found: {full_path}")

                if isinstance(value, dict):
                    check_dict(value, full_path)
                elif isinstance(value, str):
                    for pattern, pattern_name in self._compiled_patterns:
                        if pattern.search(value):
                            issues.append(
                                f"Sensitive pattern ({pattern_name}) in {full_path}"
                            )

        check_dict(record)
        return issues

    # =========================================================
    # CACHE / STATS
    # =========================================================

    def clear_caches(self) -> None:
        self._cache.clear()
        logger.info("Anonymization cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        cache_stats = self._cache.get_stats()
        return {
            "salt_configured": self._key is not None,
            "token_length": self._config.token_length,
            "cache_size": cache_stats["size"],
            "cache_hits": cache_stats["hits"],
            "cache_misses": cache_stats["misses"],
            "cache_hit_rate": cache_stats["hit_rate"],
            "tokens_computed": self._computed,
        }
