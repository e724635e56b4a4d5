"""Tests for the entity resolver and merge policy."""

import asyncio

import pytest

from lib.resolution.entity import EntityResolver, MergedRecord, merge, trust_of
from lib.resolution.models import CompanyRecord, Source


@pytest.mark.no_db
class TestMerge:
    def make(self) -> MergedRecord:
        return MergedRecord(
            record_id="r1",
            values={"name": "Rossi Snc", "website": "https://rossi.it", "phone": "0212345"},
            provenance={"name": Source.INPUT, "website": Source.SEARCH, "phone": Source.MAPS},
        )

    def test_higher_trust_overwrites(self):
        merged = merge(self.make(), {"website": "https://rossisnc.it"}, Source.REGISTRY)
        assert merged.values["website"] == "https://rossisnc.it"
        assert merged.provenance["website"] == Source.REGISTRY

    def test_equal_trust_overwrites(self):
        merged = merge(self.make(), {"website": "https://rossi-snc.it"}, Source.SEARCH)
        assert merged.values["website"] == "https://rossi-snc.it"

    def test_lower_trust_does_not_overwrite(self):
        merged = merge(self.make(), {"phone": "0299999"}, Source.AI_INFERENCE)
        assert merged.values["phone"] == "0212345"
        assert merged.provenance["phone"] == Source.MAPS

    def test_lower_trust_fills_missing_field(self):
        merged = merge(self.make(), {"employees": 12}, Source.AI_INFERENCE)
        assert merged.values["employees"] == 12
        assert merged.provenance["employees"] == Source.AI_INFERENCE

    def test_empty_incoming_never_clears(self):
        merged = merge(self.make(), {"website": None, "phone": "  "}, Source.REGISTRY)
        assert merged.values["website"] == "https://rossi.it"
        assert merged.values["phone"] == "0212345"

    def test_existing_untouched(self):
        existing = self.make()
        merge(existing, {"website": "https://other.it"}, Source.REGISTRY)
        assert existing.values["website"] == "https://rossi.it"

    def test_trust_order(self):
        ordered = [
            Source.REGISTRY, Source.VIES, Source.WEBSITE, Source.DIRECTORY, Source.MAPS,
            Source.SEARCH, Source.AI_INFERENCE, Source.INPUT, Source.UNKNOWN,
        ]
        ranks = [trust_of(s) for s in ordered]
        assert ranks == sorted(ranks, reverse=True)


@pytest.mark.no_db
class TestEntityResolver:
    @pytest.mark.asyncio
    async def test_same_tax_id_different_names_is_duplicate(self):
        resolver = EntityResolver()
        first = CompanyRecord(name="Rossi Snc", city="Milano", tax_id="06363391001")
        second = CompanyRecord(name="Officine Rossi di Mario", city="Monza", tax_id="IT06363391001")
        await resolver.register(first)

        dup = await resolver.find_duplicate(second)
        assert dup is not None
        assert dup.record_id == first.record_id

    @pytest.mark.asyncio
    async def test_duplicate_merge_prefers_higher_trust_per_field(self):
        resolver = EntityResolver()
        first = CompanyRecord(name="Rossi Snc", city="Milano", tax_id="06363391001")
        await resolver.register(first, {"website": ("https://rossi.it", Source.SEARCH)})

        second = CompanyRecord(name="Rossi Mario", city="Milano", tax_id="06363391001")
        entry = await resolver.register(second, {
            "website": ("https://rossisnc.it", Source.REGISTRY),
            "revenue": (150000, Source.AI_INFERENCE),
        })

        assert entry.record_id == first.record_id
        assert entry.values["website"] == "https://rossisnc.it"
        assert entry.provenance["website"] == Source.REGISTRY
        # Input name has equal trust, so the later record's name wins
        assert entry.values["name"] == "Rossi Mario"
        assert entry.values["revenue"] == 150000
        assert second.record_id in entry.aliases
        assert len(resolver) == 1

    @pytest.mark.asyncio
    async def test_phone_match(self):
        resolver = EntityResolver()
        await resolver.register(CompanyRecord(name="Bar Centrale", city="Como", phone="+39 031 123456"))
        dup = await resolver.find_duplicate(CompanyRecord(name="Centrale Caffe", city="Como", phone="031-123456"))
        assert dup is not None

    @pytest.mark.asyncio
    async def test_short_phone_ignored(self):
        resolver = EntityResolver()
        await resolver.register(CompanyRecord(name="Bar Centrale", city="Como", phone="12345"))
        assert await resolver.find_duplicate(CompanyRecord(name="Altro", city="Como", phone="12345")) is None

    @pytest.mark.asyncio
    async def test_fingerprint_strips_legal_form(self):
        resolver = EntityResolver()
        await resolver.register(CompanyRecord(name="Rossi Snc", city="Milano"))
        assert await resolver.find_duplicate(CompanyRecord(name="ROSSI S.R.L.", city="milano")) is not None
        assert await resolver.find_duplicate(CompanyRecord(name="Rossi Snc", city="Roma")) is None

    @pytest.mark.asyncio
    async def test_tax_id_checked_before_fingerprint(self):
        resolver = EntityResolver()
        a = CompanyRecord(name="Rossi Snc", city="Milano")
        b = CompanyRecord(name="Verdi Spa", city="Torino", tax_id="06363391001")
        await resolver.register(a)
        await resolver.register(b)
        incoming = CompanyRecord(name="Rossi Snc", city="Milano", tax_id="06363391001")
        dup = await resolver.find_duplicate(incoming)
        assert dup.record_id == b.record_id

    @pytest.mark.asyncio
    async def test_discovered_tax_id_is_indexed(self):
        resolver = EntityResolver()
        rec = CompanyRecord(name="Rossi Snc", city="Milano")
        await resolver.register(rec, {"tax_id": ("06363391001", Source.WEBSITE)})
        dup = await resolver.find_duplicate(CompanyRecord(name="Other", city="Roma", tax_id="06363391001"))
        assert dup.record_id == rec.record_id

    @pytest.mark.asyncio
    async def test_fuzzy_match_is_advisory(self):
        resolver = EntityResolver()
        await resolver.register(CompanyRecord(name="Rossi Giovanni Srl", city="Milano"))
        incoming = CompanyRecord(name="Rosi Giovanni", city="Milano")

        assert await resolver.find_duplicate(incoming) is None
        match = await resolver.fuzzy_match(incoming)
        assert match is not None
        assert match[1] >= 0.9

    @pytest.mark.asyncio
    async def test_fuzzy_match_requires_same_city(self):
        resolver = EntityResolver()
        await resolver.register(CompanyRecord(name="Rossi Giovanni", city="Milano"))
        assert await resolver.fuzzy_match(CompanyRecord(name="Rosi Giovanni", city="Roma")) is None

    @pytest.mark.asyncio
    async def test_concurrent_registers_collapse(self):
        resolver = EntityResolver()
        records = [
            CompanyRecord(name=f"Rossi {i}", city="Milano", tax_id="06363391001") for i in range(10)
        ]
        await asyncio.gather(*(resolver.register(r) for r in records))
        assert len(resolver) == 1
        assert resolver.stats()["tax_ids"] == 1
