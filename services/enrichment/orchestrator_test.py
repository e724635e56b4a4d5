"""Tests for the resolution orchestrator."""

import pytest

from lib.discovery.registry import RegistryProfile, ViesResult
from lib.resolution.cache import BoundedCache
from lib.resolution.entity import EntityResolver
from lib.resolution.errors import NetworkError, ValidationError
from lib.resolution.models import TARGET_FIELDS, CompanyRecord, FieldStatus, ReasonCode, Source
from services.enrichment.job_queue import ResolutionJob, job_id_for
from services.enrichment.orchestrator import ResolutionOrchestrator
from services.enrichment.repo import MemoryRecordStore
from services.enrichment.strategies import StrategyCatalog
from services.enrichment.strategies_test import (
    VALID_VAT,
    FakeGuesser,
    FakeRegistry,
    FakeSearch,
    FakeVerifier,
    FakeVies,
)

ROSSI = CompanyRecord(name="Rossi Snc", city="Milano", phone="0212345")


def job_for(record: CompanyRecord, correlation_id: str = "batch-1") -> ResolutionJob:
    return ResolutionJob(job_id=job_id_for(record), record=record, correlation_id=correlation_id)


def make_orchestrator(catalog: StrategyCatalog, store=None, entity=None, **kwargs) -> ResolutionOrchestrator:
    return ResolutionOrchestrator(
        catalog.plans(),
        entity or EntityResolver(),
        store or MemoryRecordStore(),
        **kwargs,
    )


@pytest.mark.no_db
class TestRossiScenario:
    @pytest.mark.asyncio
    async def test_guess_fails_search_accepts_then_name_branch(self):
        verifier = FakeVerifier()
        verifier.add("https://rossi.it", 0.3, reason="name only")
        verifier.add("https://rossisnc.it", 0.85, reason="phone match")
        guesser = FakeGuesser(["rossi.it"])
        search = FakeSearch(["https://www.rossisnc.it/"])
        registry = FakeRegistry(
            by_name=RegistryProfile(revenue="€ 850.000", employees="6", origin="directory"),
        )
        catalog = StrategyCatalog(
            verifier=verifier, guesser=guesser, search=search, registry=registry, vies=FakeVies(),
        )
        orchestrator = make_orchestrator(catalog)

        result = await orchestrator.resolve(job_for(ROSSI))

        website = result.fields["website"]
        assert website.status == FieldStatus.ACCEPTED
        assert website.value == "https://rossisnc.it"
        assert website.confidence == 0.85
        assert website.strategy == "search"
        assert verifier.calls[:2] == ["https://rossi.it", "https://rossisnc.it"]

        assert result.fields["tax_id"].status == FieldStatus.NOT_FOUND
        assert not any(c.startswith("lookup_by_id") for c in registry.calls)
        assert "financials_by_name" in registry.calls

        assert result.value("revenue") == "€ 850.000"
        assert result.fields["revenue"].source == Source.DIRECTORY
        assert result.value("employees") == "6"
        assert set(result.fields) == set(TARGET_FIELDS)
        assert result.job_id == job_id_for(ROSSI)
        assert result.correlation_id == "batch-1"


@pytest.mark.no_db
class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_tax_id_from_website_drives_registry_branch(self):
        verifier = FakeVerifier()
        verifier.add("https://rossisnc.it", 0.95, tax_id=VALID_VAT)
        registry = FakeRegistry(by_id={VALID_VAT: RegistryProfile(
            tax_id=VALID_VAT, revenue="€ 2.000.000", employees="12", pec="rossisnc@legalmail.it",
            origin="registry",
        )})
        vies = FakeVies({VALID_VAT: ViesResult(vat=VALID_VAT, valid=True, name="ROSSI S.N.C.")})
        catalog = StrategyCatalog(
            verifier=verifier, search=FakeSearch(["https://rossisnc.it"]), registry=registry, vies=vies,
        )
        orchestrator = make_orchestrator(catalog)

        result = await orchestrator.resolve(job_for(ROSSI))

        tax_id = result.fields["tax_id"]
        assert tax_id.value == VALID_VAT
        assert tax_id.strategy == "website_tax_id"
        assert tax_id.source == Source.VIES
        assert result.value("revenue") == "€ 2.000.000"
        assert result.value("pec") == "rossisnc@legalmail.it"
        assert "financials_by_name" not in registry.calls

    @pytest.mark.asyncio
    async def test_unconfirmed_hint_does_not_steer_financials(self):
        verifier = FakeVerifier()
        verifier.add("https://rossisnc.it", 0.95, tax_id=VALID_VAT)
        registry = FakeRegistry()
        # VIES rejects the number printed on the site
        catalog = StrategyCatalog(
            verifier=verifier, search=FakeSearch(["https://rossisnc.it"]), registry=registry, vies=FakeVies(),
        )
        result = await make_orchestrator(catalog).resolve(job_for(ROSSI))

        assert result.fields["tax_id"].status == FieldStatus.NOT_FOUND
        assert not any(c.startswith("lookup_by_id") for c in registry.calls)
        assert "financials_by_name" in registry.calls

    @pytest.mark.asyncio
    async def test_invalid_record_raises_validation_error(self):
        catalog = StrategyCatalog(verifier=FakeVerifier())
        with pytest.raises(ValidationError):
            await make_orchestrator(catalog).resolve(job_for(CompanyRecord(name="  ", city="Milano")))

    @pytest.mark.asyncio
    async def test_missing_plan_still_accounts_for_field(self):
        catalog = StrategyCatalog(verifier=FakeVerifier())
        plans = catalog.plans()
        del plans["pec"]
        orchestrator = ResolutionOrchestrator(plans, EntityResolver(), MemoryRecordStore())

        result = await orchestrator.resolve(job_for(ROSSI))
        assert set(result.fields) == set(TARGET_FIELDS)
        assert result.fields["pec"].status == FieldStatus.SKIPPED
        assert result.fields["pec"].reason_code == ReasonCode.DEPENDENCY_MISSING

    @pytest.mark.asyncio
    async def test_transient_error_in_last_strategy_propagates(self):
        catalog = StrategyCatalog(verifier=FakeVerifier(), search=FakeSearch(error=NetworkError("serper down")))
        with pytest.raises(NetworkError):
            await make_orchestrator(catalog).resolve(job_for(ROSSI))

    @pytest.mark.asyncio
    async def test_duplicate_by_tax_id_reuses_stored_result(self):
        verifier = FakeVerifier()
        verifier.add("https://rossisnc.it", 0.95)
        vies = FakeVies({VALID_VAT: ViesResult(vat=VALID_VAT, valid=True, name="Rossi Snc")})
        search = FakeSearch(["https://rossisnc.it"])
        catalog = StrategyCatalog(verifier=verifier, search=search, vies=vies)
        store = MemoryRecordStore()
        orchestrator = make_orchestrator(catalog, store=store)

        first = ROSSI.model_copy(update={"tax_id": VALID_VAT})
        original = await orchestrator.resolve(job_for(first))
        await store.save_result(original)

        renamed = CompanyRecord(name="Rossi Mario & C. Snc", city="Milano", tax_id=f"IT{VALID_VAT}")
        reused = await orchestrator.resolve(job_for(renamed, correlation_id="batch-2"))

        assert reused.duplicate_of == first.record_id
        assert reused.record_id == renamed.record_id
        assert reused.correlation_id == "batch-2"
        assert reused.value("website") == "https://rossisnc.it"
        assert reused.fields["website"].source == original.fields["website"].source
        # No second search for the duplicate
        assert len(search.queries) == 1

    @pytest.mark.asyncio
    async def test_outcomes_cached_across_jobs(self):
        verifier = FakeVerifier()
        verifier.add("https://rossisnc.it", 0.9)
        search = FakeSearch(["https://rossisnc.it"])
        catalog = StrategyCatalog(verifier=verifier, search=search)
        orchestrator = make_orchestrator(catalog, cache=BoundedCache(max_entries=100, ttl_seconds=60))

        await orchestrator.resolve(job_for(ROSSI))
        again = await orchestrator.resolve(job_for(ROSSI))

        assert again.fields["website"].strategy == "cache"
        assert again.value("website") == "https://rossisnc.it"
        assert len(search.queries) == 1
