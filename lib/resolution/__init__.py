"""Resolution engine core.

Backend-agnostic building blocks used by the enrichment service:
  - models:     CompanyRecord, Candidate, FieldOutcome, EnrichmentResult
  - governor:   per-target adaptive pacing + circuit breaker
  - classifier: HTTP/exception -> block kind taxonomy, hot-target tracking
  - entity:     duplicate detection + trust-ranked merge
  - waterfall:  confidence-gated ordered strategies for one field
"""

from lib.resolution.models import (
    CompanyRecord,
    Candidate,
    DefinitiveNegative,
    FieldOutcome,
    FieldStatus,
    EnrichmentResult,
    ReasonCode,
    Source,
    TARGET_FIELDS,
)
from lib.resolution.errors import (
    EnrichmentError,
    NetworkError,
    BlockedError,
    ValidationError,
    BudgetExceeded,
    LogicError,
    ConfigurationError,
)
from lib.resolution.cache import BoundedCache
from lib.resolution.governor import RateGovernor, DomainState
from lib.resolution.classifier import FailureClassifier, BlockKind, Signature
from lib.resolution.entity import EntityResolver, MergedRecord, merge, TRUST_RANK
from lib.resolution.waterfall import Waterfall, FieldPlan, StrategySpec, ResolutionContext

__all__ = [
    # Models
    "CompanyRecord",
    "Candidate",
    "DefinitiveNegative",
    "FieldOutcome",
    "FieldStatus",
    "EnrichmentResult",
    "ReasonCode",
    "Source",
    "TARGET_FIELDS",
    # Errors
    "EnrichmentError",
    "NetworkError",
    "BlockedError",
    "ValidationError",
    "BudgetExceeded",
    "LogicError",
    "ConfigurationError",
    # Components
    "BoundedCache",
    "RateGovernor",
    "DomainState",
    "FailureClassifier",
    "BlockKind",
    "Signature",
    "EntityResolver",
    "MergedRecord",
    "merge",
    "TRUST_RANK",
    "Waterfall",
    "FieldPlan",
    "StrategySpec",
    "ResolutionContext",
]
