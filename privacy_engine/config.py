"""
Privacy Engine - Configuration.

============================================================
CONFIGURABLE PRIVACY PARAMETERS
============================================================

All tunables are configurable:
- Key derivation cost and cache bounds
- Anonymization salt and token length
- Default privacy budget (epsilon, delta)
- k-anonymity threshold and view cache TTLs
- Per-operation timeouts

Configuration can be loaded from:
- Default values
- Environment variables (PRIVACY_*)
- A .env file (python-dotenv)

Secrets are never included in to_dict().

============================================================
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError, MissingConfigError


logger = logging.getLogger(__name__)


# =============================================================
# ENV HELPERS
# =============================================================


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidConfigError(name, raw, "expected an integer") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise InvalidConfigError(name, raw, "expected a number") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================
# ENCRYPTION
# =============================================================


@dataclass
class EncryptionConfig:
    """
    AES-256-GCM with scrypt-derived keys.

    A salt is reused per password for ``salt_rotation`` encryptions
    so repeat encryptions hit the derived-key cache.
    """
    secret: Optional[str] = field(default=None, repr=False)
    scrypt_n: int = 2 ** 14
    scrypt_r: int = 8
    scrypt_p: int = 1
    key_length: int = 32
    iv_length: int = 12
    salt_length: int = 32
    key_cache_size: int = 1000
    salt_rotation: int = 10000

    def __post_init__(self) -> None:
        if self.key_length not in (16, 24, 32):
            raise InvalidConfigError("key_length", self.key_length, "must be 16, 24 or 32")
        if self.scrypt_n < 2 or self.scrypt_n & (self.scrypt_n - 1):
            raise InvalidConfigError("scrypt_n", self.scrypt_n, "must be a power of two > 1")
        if self.iv_length < 8:
            raise InvalidConfigError("iv_length", self.iv_length, "must be at least 8")
        if self.salt_length < 16:
            raise InvalidConfigError("salt_length", self.salt_length, "must be at least 16")
        if self.key_cache_size <= 0:
            raise InvalidConfigError("key_cache_size", self.key_cache_size, "must be positive")
        if self.salt_rotation <= 0:
            raise InvalidConfigError("salt_rotation", self.salt_rotation, "must be positive")

    def require_secret(self) -> str:
        """Return the configured secret or raise MissingConfigError."""
        if not self.secret:
            raise MissingConfigError("PRIVACY_ENCRYPTION_KEY", source="environment")
        return self.secret

    def to_dict(self) -> Dict[str, Any]:
        return {
            "secret_configured": bool(self.secret),
            "scrypt_n": self.scrypt_n,
            "scrypt_r": self.scrypt_r,
            "scrypt_p": self.scrypt_p,
            "key_length": self.key_length,
            "iv_length": self.iv_length,
            "salt_length": self.salt_length,
            "key_cache_size": self.key_cache_size,
            "salt_rotation": self.salt_rotation,
        }


# =============================================================
# ANONYMIZATION
# =============================================================


def _default_identifier_columns() -> Dict[str, str]:
    return {
        "user_id": "user_id_hash",
        "student_id": "student_id_hash",
        "email": "email_hash",
    }


@dataclass
class AnonymizationConfig:
    """Keyed tokenization settings."""
    salt: Optional[str] = field(default=None, repr=False)
    token_length: int = 32
    cache_size: int = 10000
    # direct identifier column -> hashed counterpart
    identifier_columns: Dict[str, str] = field(default_factory=_default_identifier_columns)

    def __post_init__(self) -> None:
        if not 16 <= self.token_length <= 64:
            raise InvalidConfigError("token_length", self.token_length, "must be 16-64")
        if self.cache_size <= 0:
            raise InvalidConfigError("cache_size", self.cache_size, "must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "salt_configured": bool(self.salt),
            "token_length": self.token_length,
            "cache_size": self.cache_size,
            "identifier_columns": dict(self.identifier_columns),
        }


# =============================================================
# DIFFERENTIAL PRIVACY
# =============================================================


@dataclass
class DifferentialPrivacyConfig:
    """
    Default privacy budget and optional ledger settings.

    The ledger is opt-in; without it every call carries a
    single-query guarantee only.
    """
    default_epsilon: float = 1.0
    default_delta: float = 1e-5
    max_contribution: float = 100.0
    seed: Optional[int] = None

    ledger_enabled: bool = False
    epsilon_limit: float = 1.0
    delta_limit: float = 1e-3
    warning_ratio: float = 0.8
    window_seconds: float = 86400.0

    def __post_init__(self) -> None:
        if self.default_epsilon <= 0:
            raise InvalidConfigError("default_epsilon", self.default_epsilon, "must be > 0")
        if not 0 <= self.default_delta < 1:
            raise InvalidConfigError("default_delta", self.default_delta, "must be in [0, 1)")
        if self.max_contribution <= 0:
            raise InvalidConfigError("max_contribution", self.max_contribution, "must be > 0")
        if self.epsilon_limit <= 0:
            raise InvalidConfigError("epsilon_limit", self.epsilon_limit, "must be > 0")
        if not 0 < self.warning_ratio <= 1:
            raise InvalidConfigError("warning_ratio", self.warning_ratio, "must be in (0, 1]")
        if self.window_seconds <= 0:
            raise InvalidConfigError("window_seconds", self.window_seconds, "must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_epsilon": self.default_epsilon,
            "default_delta": self.default_delta,
            "max_contribution": self.max_contribution,
            "seeded": self.seed is not None,
            "ledger_enabled": self.ledger_enabled,
            "epsilon_limit": self.epsilon_limit,
            "delta_limit": self.delta_limit,
            "warning_ratio": self.warning_ratio,
            "window_seconds": self.window_seconds,
        }


# =============================================================
# CONSENT
# =============================================================


@dataclass
class ConsentConfig:
    """Consent matrix settings."""
    necessary_always_granted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"necessary_always_granted": self.necessary_always_granted}


# =============================================================
# QUERIES AND VIEWS
# =============================================================


@dataclass
class QueryConfig:
    """
    Search, aggregation and schema maintenance settings.

    TTLs:
    - anonymous views: longest (slow-moving aggregates)
    - counts: medium
    - everything else: shortest
    """
    default_limit: int = 100
    max_limit: int = 1000
    min_group_size: int = 10
    recency_column: str = "created_at"

    anonymous_view_ttl: float = 3600.0
    count_ttl: float = 1800.0
    default_ttl: float = 900.0
    view_cache_size: int = 1000

    search_timeout: float = 5.0
    aggregation_timeout: float = 10.0
    query_timeout: float = 10.0
    ddl_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.default_limit <= 0 or self.default_limit > self.max_limit:
            raise InvalidConfigError(
                "default_limit", self.default_limit, "must be in (0, max_limit]"
            )
        if self.min_group_size < 1:
            raise InvalidConfigError("min_group_size", self.min_group_size, "must be >= 1")
        for name in ("anonymous_view_ttl", "count_ttl", "default_ttl"):
            if getattr(self, name) <= 0:
                raise InvalidConfigError(name, getattr(self, name), "must be > 0")
        for name in ("search_timeout", "aggregation_timeout", "query_timeout", "ddl_timeout"):
            if getattr(self, name) <= 0:
                raise InvalidConfigError(name, getattr(self, name), "must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_limit": self.default_limit,
            "max_limit": self.max_limit,
            "min_group_size": self.min_group_size,
            "recency_column": self.recency_column,
            "anonymous_view_ttl": self.anonymous_view_ttl,
            "count_ttl": self.count_ttl,
            "default_ttl": self.default_ttl,
            "view_cache_size": self.view_cache_size,
            "search_timeout": self.search_timeout,
            "aggregation_timeout": self.aggregation_timeout,
            "query_timeout": self.query_timeout,
            "ddl_timeout": self.ddl_timeout,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class PrivacyEngineConfig:
    """
    Complete privacy engine configuration.

    Aggregates all component settings.
    """
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    anonymization: AnonymizationConfig = field(default_factory=AnonymizationConfig)
    differential_privacy: DifferentialPrivacyConfig = field(
        default_factory=DifferentialPrivacyConfig
    )
    consent: ConsentConfig = field(default_factory=ConsentConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    database_url: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "PrivacyEngineConfig":
        """
        Load configuration from environment variables.

        Reads a .env file first (existing variables win).
        """
        load_dotenv(dotenv_path)

        config = cls(
            encryption=EncryptionConfig(
                secret=os.getenv("PRIVACY_ENCRYPTION_KEY"),
                scrypt_n=_env_int("PRIVACY_SCRYPT_N", 2 ** 14),
                key_cache_size=_env_int("PRIVACY_KEY_CACHE_SIZE", 1000),
                salt_rotation=_env_int("PRIVACY_SALT_ROTATION", 10000),
            ),
            anonymization=AnonymizationConfig(
                salt=os.getenv("PRIVACY_ANONYMIZATION_SALT"),
                token_length=_env_int("PRIVACY_TOKEN_LENGTH", 32),
                cache_size=_env_int("PRIVACY_ANONYMIZATION_CACHE_SIZE", 10000),
            ),
            differential_privacy=DifferentialPrivacyConfig(
                default_epsilon=_env_float("PRIVACY_DEFAULT_EPSILON", 1.0),
                default_delta=_env_float("PRIVACY_DEFAULT_DELTA", 1e-5),
                max_contribution=_env_float("PRIVACY_MAX_CONTRIBUTION", 100.0),
                ledger_enabled=_env_bool("PRIVACY_BUDGET_LEDGER", False),
                epsilon_limit=_env_float("PRIVACY_EPSILON_LIMIT", 1.0),
                window_seconds=_env_float("PRIVACY_BUDGET_WINDOW", 86400.0),
            ),
            consent=ConsentConfig(
                necessary_always_granted=_env_bool("PRIVACY_NECESSARY_ALWAYS_GRANTED", True),
            ),
            query=QueryConfig(
                default_limit=_env_int("PRIVACY_DEFAULT_LIMIT", 100),
                min_group_size=_env_int("PRIVACY_MIN_GROUP_SIZE", 10),
                search_timeout=_env_float("PRIVACY_SEARCH_TIMEOUT", 5.0),
                aggregation_timeout=_env_float("PRIVACY_AGGREGATION_TIMEOUT", 10.0),
                query_timeout=_env_float("PRIVACY_QUERY_TIMEOUT", 10.0),
                ddl_timeout=_env_float("PRIVACY_DDL_TIMEOUT", 30.0),
            ),
            database_url=os.getenv("PRIVACY_DATABASE_URL") or os.getenv("DATABASE_URL"),
        )

        if not config.encryption.secret:
            logger.warning("PRIVACY_ENCRYPTION_KEY not set; callers must pass passwords")
        if not config.anonymization.salt:
            logger.warning("PRIVACY_ANONYMIZATION_SALT not set; anonymization will fail")

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (secrets omitted)."""
        return {
            "encryption": self.encryption.to_dict(),
            "anonymization": self.anonymization.to_dict(),
            "differential_privacy": self.differential_privacy.to_dict(),
            "consent": self.consent.to_dict(),
            "query": self.query.to_dict(),
            "database_configured": bool(self.database_url),
        }


# =============================================================
# GLOBAL CONFIG INSTANCE
# =============================================================


_config: Optional[PrivacyEngineConfig] = None


def get_config() -> PrivacyEngineConfig:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = PrivacyEngineConfig.from_env()
    return _config


def set_config(config: Optional[PrivacyEngineConfig]) -> None:
    """Set (or with None, reset) the global configuration instance."""
    global _config
    _config = config
