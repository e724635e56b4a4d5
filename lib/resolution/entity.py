"""Entity resolver and trust-ranked merge.

Three exact indices map a normalized key to the canonical record id:

    tax id  ->  phone digits  ->  name+city fingerprint

Lookup goes in that order and the first hit wins. Fuzzy name matching is
available as an advisory signal only; it never registers or merges.

Indices are append-only for the lifetime of a resolver (one batch run). An
existing key is never repointed at a different record.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field
from rapidfuzz.distance import Levenshtein

from lib.resolution.models import CompanyRecord, Source
from lib.resolution.normalize import (
    name_fingerprint,
    normalize_tax_id,
    normalize_text,
    phone_digits,
    strip_legal_suffixes,
)


TRUST_RANK: Dict[Source, int] = {
    Source.REGISTRY: 100,
    Source.VIES: 95,
    Source.WEBSITE: 80,
    Source.DIRECTORY: 70,
    Source.MAPS: 60,
    Source.SEARCH: 50,
    Source.AI_INFERENCE: 40,
    Source.INPUT: 20,
    Source.CACHE: 10,
    Source.UNKNOWN: 10,
}

# Shorter phone strings are switchboard fragments, not identities
MIN_PHONE_DIGITS = 6

RECORD_FIELDS = ("name", "address", "city", "province", "phone", "tax_id", "website", "category")


def trust_of(source: Optional[Source]) -> int:
    if source is None:
        return 0
    return TRUST_RANK.get(Source(source), TRUST_RANK[Source.UNKNOWN])


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class MergedRecord(BaseModel):
    """Canonical view of one entity: values plus the source each value came from."""

    record_id: str
    values: Dict[str, Any] = Field(default_factory=dict)
    provenance: Dict[str, Source] = Field(default_factory=dict)
    aliases: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: CompanyRecord, source: Source = Source.INPUT) -> "MergedRecord":
        values = {f: getattr(record, f) for f in RECORD_FIELDS if not _is_empty(getattr(record, f))}
        return cls(
            record_id=record.record_id,
            values=values,
            provenance={f: source for f in values},
        )

    def get(self, field: str) -> Any:
        return self.values.get(field)


def merge(existing: MergedRecord, incoming: Mapping[str, Any], source: Source) -> MergedRecord:
    """Field-by-field merge of ``incoming`` (all from ``source``) into ``existing``.

    A field is overwritten only when ``source`` ranks at least as high as the
    field's current provenance. Empty incoming values never clear a field.
    Returns a new MergedRecord; ``existing`` is left untouched.
    """
    values = dict(existing.values)
    provenance = dict(existing.provenance)
    rank = trust_of(source)

    for field, value in incoming.items():
        if _is_empty(value):
            continue
        current = provenance.get(field)
        if field not in values or rank >= trust_of(current):
            values[field] = value
            provenance[field] = Source(source)

    return MergedRecord(
        record_id=existing.record_id,
        values=values,
        provenance=provenance,
        aliases=list(existing.aliases),
    )


class EntityResolver:
    """Owns the entity indices for one batch run. Safe to share across workers."""

    def __init__(self, fuzzy_threshold: float = 0.9):
        self.fuzzy_threshold = fuzzy_threshold
        self._entries: Dict[str, MergedRecord] = {}
        self._by_tax_id: Dict[str, str] = {}
        self._by_phone: Dict[str, str] = {}
        self._by_fingerprint: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _keys(values: Mapping[str, Any]) -> Tuple[str, str, str]:
        tax_id = normalize_tax_id(values.get("tax_id"))
        phone = phone_digits(values.get("phone"))
        if len(phone) < MIN_PHONE_DIGITS:
            phone = ""
        name = values.get("name") or ""
        fingerprint = name_fingerprint(name, values.get("city")) if name.strip() else ""
        return tax_id, phone, fingerprint

    def _lookup(self, values: Mapping[str, Any]) -> Tuple[Optional[MergedRecord], Optional[str]]:
        tax_id, phone, fingerprint = self._keys(values)
        for kind, key, index in (
            ("tax_id", tax_id, self._by_tax_id),
            ("phone", phone, self._by_phone),
            ("fingerprint", fingerprint, self._by_fingerprint),
        ):
            if key and key in index:
                return self._entries[index[key]], kind
        return None, None

    def _index(self, entry: MergedRecord) -> None:
        tax_id, phone, fingerprint = self._keys(entry.values)
        if tax_id:
            self._by_tax_id.setdefault(tax_id, entry.record_id)
        if phone:
            self._by_phone.setdefault(phone, entry.record_id)
        if fingerprint:
            self._by_fingerprint.setdefault(fingerprint, entry.record_id)

    async def find_duplicate(self, record: CompanyRecord) -> Optional[MergedRecord]:
        """Canonical entry this record duplicates, or None."""
        async with self._lock:
            entry, matched_on = self._lookup(record.model_dump())
        if entry is not None:
            logger.debug(f"[entity] {record.tag()} matches {entry.record_id[:8]} on {matched_on}")
        return entry

    async def register(
        self,
        record: CompanyRecord,
        updates: Optional[Mapping[str, Tuple[Any, Source]]] = None,
    ) -> MergedRecord:
        """Add a record (plus any resolved field values) to the indices.

        If the record already matches an entry, its values are merged into
        that entry instead and any new keys are pointed at it.
        """
        async with self._lock:
            entry, _ = self._lookup(record.model_dump())
            if entry is None:
                entry = MergedRecord.from_record(record)
            else:
                entry = merge(entry, MergedRecord.from_record(record).values, Source.INPUT)
                if record.record_id != entry.record_id and record.record_id not in entry.aliases:
                    entry.aliases.append(record.record_id)

            by_source: Dict[Source, Dict[str, Any]] = {}
            for field, (value, source) in (updates or {}).items():
                by_source.setdefault(Source(source), {})[field] = value
            # Apply lowest trust first so equal-rank ties resolve to the later call
            for source in sorted(by_source, key=trust_of):
                entry = merge(entry, by_source[source], source)

            self._entries[entry.record_id] = entry
            self._index(entry)
            return entry

    async def get(self, record_id: str) -> Optional[MergedRecord]:
        async with self._lock:
            return self._entries.get(record_id)

    async def fuzzy_match(self, record: CompanyRecord) -> Optional[Tuple[MergedRecord, float]]:
        """Best same-city entry whose stripped name is within the similarity threshold.

        Advisory: callers log it, they do not treat it as a duplicate.
        """
        name = strip_legal_suffixes(record.name)
        city = normalize_text(record.city or "")
        if not name:
            return None
        best: Optional[Tuple[MergedRecord, float]] = None
        async with self._lock:
            for entry in self._entries.values():
                if entry.record_id == record.record_id:
                    continue
                if normalize_text(entry.values.get("city") or "") != city:
                    continue
                score = Levenshtein.normalized_similarity(
                    name, strip_legal_suffixes(entry.values.get("name") or "")
                )
                if score >= self.fuzzy_threshold and (best is None or score > best[1]):
                    best = (entry, score)
        return best

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {
            "entities": len(self._entries),
            "tax_ids": len(self._by_tax_id),
            "phones": len(self._by_phone),
            "fingerprints": len(self._by_fingerprint),
        }
