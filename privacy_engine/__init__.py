"""
Privacy Engine Package.

============================================================
PURPOSE
============================================================
Privacy-preserving data engine for learning analytics.

CRITICAL PRINCIPLE:
    "Deny by default. Never release what cannot be protected."

GUARANTEES:
    - Decryption fails loudly; no partial plaintext
    - Unknown users and purposes are denied consent
    - Groups below k are absent from aggregates
    - Identifiers are searched by keyed hash only

============================================================
MODULES
============================================================
- models: Envelopes, privacy levels, results
- config: Component configuration (PRIVACY_* environment)
- exceptions: Error taxonomy
- cache: TTL caches and async single-flight
- encryption: AES-256-GCM envelopes with key caching
- anonymizer: Keyed deterministic tokens
- noise: Laplace / Gaussian differential privacy
- budget: Opt-in per-entity privacy budget ledger
- consent: Precomputed consent matrix
- schema: Identifier validation, k-anonymity views, DDL
- store: SQLAlchemy store adapter
- orchestrator: Async privacy-aware queries
- metrics: Latency bookkeeping against targets
- engine: Facade and pipelines

============================================================
"""

# ============================================================
# MODELS
# ============================================================
from .models import (
    # Enums
    PrivacyLevel,
    QueryPrivacyLevel,
    AnonymizationLevel,
    DataType,
    QueryType,
    ConsentPurpose,
    CONSENT_PATTERNS,
    # Dataclasses
    PrivacyEnvelope,
    ConsentRecord,
    ConsentRequest,
    PrivacyBudget,
    DifferentialPrivacyResult,
    AggregationParams,
    AggregationResult,
    RefreshReport,
    SearchOptions,
    QueryRequest,
    PrivacyContext,
    PrivacyOperationResult,
    BatchResult,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    EncryptionConfig,
    AnonymizationConfig,
    DifferentialPrivacyConfig,
    ConsentConfig,
    QueryConfig,
    PrivacyEngineConfig,
    get_config,
    set_config,
)

# ============================================================
# ERRORS
# ============================================================
from .exceptions import (
    PrivacyEngineError,
    DecryptionError,
    AnonymizationError,
    ConsentLookupError,
    InvalidIdentifierError,
    InvalidPrivacyParameterError,
    PrivacyBudgetExceededError,
    QueryExecutionError,
    OperationTimeoutError,
    ViewRefreshError,
)

# ============================================================
# COMPONENTS
# ============================================================
from .cache import TTLCache, AsyncSingleFlight, EntryState
from .encryption import CacheAcceleratedCipher
from .anonymizer import FieldAnonymizer
from .noise import NoiseInjector
from .budget import PrivacyBudgetLedger
from .consent import ConsentMatrix
from .schema import (
    ViewDefinition,
    DEFAULT_VIEWS,
    DEFAULT_SECURE_INDEXES,
    validate_identifier,
)
from .store import PrivacyStore
from .orchestrator import PrivacyQueryOrchestrator
from .metrics import MetricsCollector, LATENCY_TARGETS_MS

# ============================================================
# FACADE
# ============================================================
from .engine import PrivacyEngine, create_privacy_engine, CONSENT_DENIED


__all__ = [
    # Models
    "PrivacyLevel",
    "QueryPrivacyLevel",
    "AnonymizationLevel",
    "DataType",
    "QueryType",
    "ConsentPurpose",
    "CONSENT_PATTERNS",
    "PrivacyEnvelope",
    "ConsentRecord",
    "ConsentRequest",
    "PrivacyBudget",
    "DifferentialPrivacyResult",
    "AggregationParams",
    "AggregationResult",
    "RefreshReport",
    "SearchOptions",
    "QueryRequest",
    "PrivacyContext",
    "PrivacyOperationResult",
    "BatchResult",
    # Config
    "EncryptionConfig",
    "AnonymizationConfig",
    "DifferentialPrivacyConfig",
    "ConsentConfig",
    "QueryConfig",
    "PrivacyEngineConfig",
    "get_config",
    "set_config",
    # Errors
    "PrivacyEngineError",
    "DecryptionError",
    "AnonymizationError",
    "ConsentLookupError",
    "InvalidIdentifierError",
    "InvalidPrivacyParameterError",
    "PrivacyBudgetExceededError",
    "QueryExecutionError",
    "OperationTimeoutError",
    "ViewRefreshError",
    # Components
    "TTLCache",
    "AsyncSingleFlight",
    "EntryState",
    "CacheAcceleratedCipher",
    "FieldAnonymizer",
    "NoiseInjector",
    "PrivacyBudgetLedger",
    "ConsentMatrix",
    "ViewDefinition",
    "DEFAULT_VIEWS",
    "DEFAULT_SECURE_INDEXES",
    "validate_identifier",
    "PrivacyStore",
    "PrivacyQueryOrchestrator",
    "MetricsCollector",
    "LATENCY_TARGETS_MS",
    # Facade
    "PrivacyEngine",
    "create_privacy_engine",
    "CONSENT_DENIED",
]
