"""Data models shared by the resolution engine.

CompanyRecord is the immutable input, Candidate is what a single strategy
proposes, FieldOutcome is the per-field verdict and EnrichmentResult is the
record-level output that gets persisted.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from lib.resolution.errors import LogicError
from lib.resolution.normalize import normalize_text


class Source(str, Enum):
    """Where a value came from. Ordering of trust lives in lib.resolution.entity."""

    REGISTRY = "registry"
    VIES = "vies"
    WEBSITE = "website"
    DIRECTORY = "directory"
    MAPS = "maps"
    SEARCH = "search"
    AI_INFERENCE = "ai_inference"
    INPUT = "input"
    CACHE = "cache"
    UNKNOWN = "unknown"


class FieldStatus(str, Enum):
    """Terminal status of one field after its waterfall ran."""

    ACCEPTED = "accepted"
    LOW_CONFIDENCE = "low_confidence"
    ESTIMATED = "estimated"
    NOT_FOUND = "not_found"
    BUDGET_EXCEEDED = "budget_exceeded"
    SKIPPED = "skipped"
    ERROR = "error"


# Statuses that carry a value
VALUE_STATUSES = {FieldStatus.ACCEPTED, FieldStatus.LOW_CONFIDENCE, FieldStatus.ESTIMATED}


class ReasonCode(str, Enum):
    """Closed set of reason codes attached to absent fields and failed jobs."""

    ACCEPTED = "accepted"
    LOW_CONFIDENCE = "low_confidence"
    ESTIMATED = "estimated"
    NOT_FOUND = "not_found"
    STRATEGIES_EXHAUSTED = "strategies_exhausted"
    DEFINITIVE_NEGATIVE = "definitive_negative"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEPENDENCY_MISSING = "dependency_missing"
    CACHED = "cached"
    DUPLICATE = "duplicate"
    NETWORK_ERROR = "network_error"
    BLOCKED = "blocked"
    VALIDATION_ERROR = "validation_error"
    LOGIC_ERROR = "logic_error"
    UNEXPECTED_ERROR = "unexpected_error"

    @classmethod
    def for_error(cls, code: str) -> "ReasonCode":
        """Field-level code for an error reason code ("blocked_captcha" -> blocked)."""
        if code.startswith("blocked"):
            return cls.BLOCKED
        try:
            return cls(code)
        except ValueError:
            return cls.UNEXPECTED_ERROR


# Fields every EnrichmentResult must account for
TARGET_FIELDS = ("website", "tax_id", "revenue", "employees", "pec")


def derive_record_id(name: str, city: Optional[str], address: Optional[str]) -> str:
    """Deterministic id from normalized name + city + address.

    The same physical company always maps to the same id, which is what
    makes enqueueing idempotent.
    """
    key = "|".join([
        normalize_text(name or ""),
        normalize_text(city or ""),
        normalize_text(address or ""),
    ])
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class CompanyRecord(BaseModel):
    """Input business record. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    website: Optional[str] = None
    category: Optional[str] = None

    @property
    def record_id(self) -> str:
        return derive_record_id(self.name, self.city, self.address)

    def missing_required(self) -> list[str]:
        """Names of required fields that are blank."""
        missing = []
        if not (self.name or "").strip():
            missing.append("name")
        if not (self.city or "").strip() and not (self.phone or "").strip():
            # Need at least one locality or contact anchor to resolve anything
            missing.append("city")
        return missing

    def tag(self) -> str:
        """Short label used as a log prefix."""
        return f"[{self.record_id[:8]} {self.name[:30]}]"


class Candidate(BaseModel):
    """One strategy's proposal for one field. Never persisted directly."""

    value: Any
    confidence: float = Field(ge=0.0, le=1.0)
    source: Source
    strategy: str = ""
    raw_signal: Optional[str] = None
    estimated: bool = False
    # Side facts a strategy discovered while resolving (e.g. a tax id scraped
    # from the website being verified). The orchestrator decides what to use.
    extras: Dict[str, Any] = Field(default_factory=dict)


class DefinitiveNegative(BaseModel):
    """A strategy's proof that continuing the waterfall is pointless."""

    reason: str
    strategy: str = ""


class FieldOutcome(BaseModel):
    """Final verdict for one field: a value with provenance, or a reason."""

    field: str
    status: FieldStatus
    value: Optional[Any] = None
    source: Optional[Source] = None
    confidence: float = 0.0
    strategy: Optional[str] = None
    reason_code: ReasonCode
    detail: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_value(self) -> bool:
        return self.status in VALUE_STATUSES and self.value is not None

    @classmethod
    def from_candidate(cls, field: str, candidate: Candidate, accepted: bool) -> "FieldOutcome":
        if candidate.estimated:
            status, reason = FieldStatus.ESTIMATED, ReasonCode.ESTIMATED
        elif accepted:
            status, reason = FieldStatus.ACCEPTED, ReasonCode.ACCEPTED
        else:
            status, reason = FieldStatus.LOW_CONFIDENCE, ReasonCode.LOW_CONFIDENCE
        return cls(
            field=field,
            status=status,
            value=candidate.value,
            source=candidate.source,
            confidence=candidate.confidence,
            strategy=candidate.strategy,
            reason_code=reason,
            detail=candidate.raw_signal,
            extras=dict(candidate.extras),
        )

    @classmethod
    def absent(
        cls,
        field: str,
        status: FieldStatus,
        reason_code: ReasonCode,
        detail: Optional[str] = None,
    ) -> "FieldOutcome":
        return cls(field=field, status=status, reason_code=reason_code, detail=detail)


class EnrichmentResult(BaseModel):
    """Per-record output. Every target field is present, valued or reasoned."""

    record_id: str
    job_id: Optional[str] = None
    correlation_id: Optional[str] = None
    fields: Dict[str, FieldOutcome]
    duplicate_of: Optional[str] = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def value(self, field: str) -> Optional[Any]:
        outcome = self.fields.get(field)
        return outcome.value if outcome and outcome.has_value else None

    @property
    def found_any(self) -> bool:
        return any(o.has_value for o in self.fields.values())

    def missing_fields(self) -> list[str]:
        return [f for f in TARGET_FIELDS if f not in self.fields]

    @classmethod
    def for_fields(
        cls,
        record_id: str,
        outcomes: Dict[str, FieldOutcome],
        **kwargs: Any,
    ) -> "EnrichmentResult":
        """Build a result, refusing to drop any target field."""
        missing = [f for f in TARGET_FIELDS if f not in outcomes]
        if missing:
            raise LogicError(
                f"result for {record_id} is missing fields: {', '.join(missing)}",
                context={"record_id": record_id},
            )
        return cls(record_id=record_id, fields=dict(outcomes), **kwargs)

    @classmethod
    def failed(
        cls,
        record_id: str,
        reason_code: ReasonCode,
        detail: Optional[str] = None,
        job_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> "EnrichmentResult":
        """Result for a job that never produced field values (dead letters)."""
        return cls(
            record_id=record_id,
            job_id=job_id,
            correlation_id=correlation_id,
            fields={
                f: FieldOutcome.absent(f, FieldStatus.ERROR, reason_code, detail)
                for f in TARGET_FIELDS
            },
        )
