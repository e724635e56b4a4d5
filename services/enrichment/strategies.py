"""Strategy catalogue: the website and financial waterfalls as data.

Each strategy is a coroutine (record, context) -> Candidate | None. The
catalogue holds the discovery collaborators and builds one FieldPlan per
target field; strategies whose collaborator is not configured are left out
of the plan.

Website:    existing website -> domain guess -> search -> registry identity -> oracle
Tax id:     input (VIES) -> printed on verified website (VIES) -> registry identity (VIES)
Revenue:    registry by id | name search -> secondary registry
Employees:  registry by id | name search -> secondary registry -> AI estimate
PEC:        registry by id -> search
"""

from typing import Dict, List, Optional

from loguru import logger

from lib.discovery.domain_guesser import DomainGuesser
from lib.discovery.fetcher import PageFetcher
from lib.discovery.matcher import CompanyMatcher, Verification, WebsiteVerifier
from lib.discovery.oracle import ORACLE_CONFIDENCE_CAP, LLMOracle, estimate_employees, suggest_websites
from lib.discovery.registry import RegistryClient, RegistryProfile, ViesClient
from lib.discovery.search import SearchChain
from lib.resolution.errors import BlockedError, NetworkError
from lib.resolution.models import Candidate, CompanyRecord, FieldStatus, Source
from lib.resolution.normalize import (
    canonicalize_url,
    domain_of,
    is_skip_domain,
    is_valid_partita_iva,
    normalize_tax_id,
    normalize_text,
)
from lib.resolution.waterfall import FieldPlan, ResolutionContext, StrategySpec

# Verifications per multi-candidate strategy
MAX_DOMAIN_GUESSES = 3
MAX_SEARCH_VERIFICATIONS = 4

# Tax id confidence by how the number was found (before VIES)
TAX_ID_CONFIDENCE = {
    "input": 0.99,
    "website": 0.95,
    "registry": 0.9,
    "directory": 0.85,
    "search": 0.8,
}
# VIES down, checksum only
PROVISIONAL_TAX_ID_CAP = 0.7
# VIES name shares too little with the record name
VIES_NAME_MISMATCH_CAP = 0.6
VIES_NAME_MIN_COVERAGE = 0.4

# Financial values by origin of the registry profile
FINANCIAL_CONFIDENCE = {
    "registry": 0.9,
    "directory": 0.75,
    "search": 0.65,
}
AI_EMPLOYEES_CAP = 0.5

PROFILE_SOURCE = {
    "registry": Source.REGISTRY,
    "directory": Source.DIRECTORY,
    "search": Source.SEARCH,
}


def dedupe_by_domain(urls: List[str]) -> List[str]:
    """Canonical URLs, first per domain, directories/social dropped."""
    seen = set()
    kept = []
    for url in urls:
        canonical = canonicalize_url(url)
        if canonical is None or is_skip_domain(canonical):
            continue
        domain = domain_of(canonical)
        if domain in seen:
            continue
        seen.add(domain)
        kept.append(canonical)
    return kept


def known_tax_id(record: CompanyRecord, context: ResolutionContext) -> Optional[str]:
    """Tax id safe to look companies up by.

    A resolved tax id counts only when accepted or provisional (capped on purpose,
    VIES unreachable); a low-confidence one, e.g. a VIES name mismatch, does not.
    Before the tax id waterfall ran, a number printed on the website counts.
    """
    outcome = context.outcomes.get("tax_id")
    if outcome is None:
        return context.hints.get("tax_id")
    if not outcome.has_value:
        return None
    if outcome.status == FieldStatus.ACCEPTED or outcome.extras.get("provisional"):
        return outcome.value
    return None


def has_tax_id(record: CompanyRecord, context: ResolutionContext) -> bool:
    return known_tax_id(record, context) is not None


def lacks_tax_id(record: CompanyRecord, context: ResolutionContext) -> bool:
    return known_tax_id(record, context) is None


class StrategyCatalog:
    """Discovery collaborators plus the plans built on them."""

    def __init__(
        self,
        verifier: WebsiteVerifier,
        guesser: Optional[DomainGuesser] = None,
        search: Optional[SearchChain] = None,
        registry: Optional[RegistryClient] = None,
        vies: Optional[ViesClient] = None,
        oracle: Optional[LLMOracle] = None,
        fetcher: Optional[PageFetcher] = None,
        matcher: Optional[CompanyMatcher] = None,
        website_threshold: float = 0.8,
        financial_threshold: float = 0.7,
        budget_seconds: float = 90.0,
    ):
        self.verifier = verifier
        self.guesser = guesser
        self.search = search
        self.registry = registry
        self.vies = vies
        self.oracle = oracle
        self.fetcher = fetcher
        self.matcher = matcher or CompanyMatcher()
        self.website_threshold = website_threshold
        self.financial_threshold = financial_threshold
        self.budget_seconds = budget_seconds

    # ── Website ──────────────────────────────────────────────────────────

    def _website_candidate(self, verification: Verification, source: Source, cap: float = 1.0) -> Candidate:
        extras = {"tax_id": verification.tax_id} if verification.tax_id else {}
        return Candidate(
            value=verification.url,
            confidence=min(verification.confidence, cap),
            source=source,
            raw_signal=verification.reason,
            extras=extras,
        )

    async def _best_verified(
        self,
        record: CompanyRecord,
        urls: List[str],
        source: Source,
        cap: float = 1.0,
    ) -> Optional[Candidate]:
        """Verify urls in order, stop at the first that clears the threshold."""
        best: Optional[Candidate] = None
        for url in urls:
            verification = await self.verifier.verify(record, url)
            if verification is None or verification.confidence <= 0.0:
                continue
            candidate = self._website_candidate(verification, source, cap)
            if best is None or candidate.confidence > best.confidence:
                best = candidate
            if candidate.confidence >= self.website_threshold:
                break
        return best

    async def existing_website(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        verification = await self.verifier.verify(record, record.website)
        if verification is None or verification.confidence <= 0.0:
            return None
        return self._website_candidate(verification, Source.WEBSITE)

    async def domain_guess(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        domains = await self.guesser.live_guesses(record.name, limit=MAX_DOMAIN_GUESSES)
        if not domains:
            return None
        return await self._best_verified(record, [f"https://{d}" for d in domains], Source.WEBSITE)

    async def search_website(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        query = f'"{record.name}" {record.city or ""}'.strip()
        hits = await self.search.search(query)
        urls = dedupe_by_domain([h.url for h in hits])[:MAX_SEARCH_VERIFICATIONS]
        if not urls:
            return None
        return await self._best_verified(record, urls, Source.SEARCH)

    async def registry_website(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        profile = await self.registry.identity_by_name(record)
        if profile is None or not profile.website:
            return None
        verification = await self.verifier.verify(record, profile.website)
        if verification is None or verification.confidence <= 0.0:
            return None

        candidate = self._website_candidate(verification, PROFILE_SOURCE.get(profile.origin, Source.REGISTRY))
        if profile.tax_id and verification.tax_id == profile.tax_id:
            # Registry and site print the same number
            candidate = candidate.model_copy(update={
                "confidence": max(candidate.confidence, 0.95),
                "raw_signal": f"{verification.reason}, registry tax id on site",
            })
        if profile.tax_id and "tax_id" not in candidate.extras:
            candidate.extras["tax_id"] = profile.tax_id
        return candidate

    async def oracle_website(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        guesses = await suggest_websites(self.oracle, record)
        if not guesses:
            return None
        return await self._best_verified(
            record, dedupe_by_domain([g.url for g in guesses]), Source.AI_INFERENCE, cap=ORACLE_CONFIDENCE_CAP,
        )

    def website_plan(self) -> FieldPlan:
        strategies = [
            StrategySpec(
                "existing_website", self.existing_website, source=Source.WEBSITE,
                enabled_when=lambda r, c: bool(r.website),
            ),
        ]
        if self.guesser is not None:
            strategies.append(StrategySpec("domain_guess", self.domain_guess, source=Source.WEBSITE))
        if self.search is not None:
            strategies.append(StrategySpec("search", self.search_website, cost=1.0, source=Source.SEARCH))
        if self.registry is not None:
            strategies.append(StrategySpec("registry_identity", self.registry_website, cost=1.0, source=Source.REGISTRY))
        if self.oracle is not None:
            strategies.append(StrategySpec("oracle", self.oracle_website, cost=5.0, source=Source.AI_INFERENCE))
        return FieldPlan(
            field="website",
            threshold=self.website_threshold,
            strategies=strategies,
            budget_seconds=self.budget_seconds,
            canonicalize=canonicalize_url,
        )

    # ── Tax id ───────────────────────────────────────────────────────────

    async def _validated_tax_id(
        self,
        record: CompanyRecord,
        vat: Optional[str],
        found_via: str,
    ) -> Optional[Candidate]:
        vat = normalize_tax_id(vat)
        if not is_valid_partita_iva(vat):
            return None
        confidence = TAX_ID_CONFIDENCE[found_via]

        if self.vies is None:
            return Candidate(
                value=vat,
                confidence=min(confidence, PROVISIONAL_TAX_ID_CAP),
                source=Source.INPUT if found_via == "input" else PROFILE_SOURCE.get(found_via, Source.WEBSITE),
                raw_signal=f"{found_via}, checksum only",
                extras={"provisional": True},
            )

        result = await self.vies.validate(vat)
        if not result.valid:
            logger.info(f"[strategy:tax_id] {record.tag()} {vat} ({found_via}) rejected by VIES")
            return None
        if result.provisional:
            return Candidate(
                value=vat,
                confidence=min(confidence, PROVISIONAL_TAX_ID_CAP),
                source=Source.INPUT if found_via == "input" else Source.VIES,
                raw_signal=f"{found_via}, VIES unavailable, checksum only",
                extras={"provisional": True},
            )

        signal = f"{found_via}, VIES valid"
        if result.name:
            coverage = self.matcher.name_coverage(record.name, normalize_text(result.name))
            if coverage < VIES_NAME_MIN_COVERAGE:
                confidence = min(confidence, VIES_NAME_MISMATCH_CAP)
                signal = f"{found_via}, VIES name mismatch: {result.name}"
        return Candidate(
            value=vat,
            confidence=confidence,
            source=Source.VIES,
            raw_signal=signal,
            extras={"vies_name": result.name} if result.name else {},
        )

    async def input_tax_id(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        return await self._validated_tax_id(record, record.tax_id, "input")

    async def website_tax_id(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        return await self._validated_tax_id(record, context.hints.get("tax_id"), "website")

    async def registry_tax_id(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        profile = await self.registry.identity_by_name(record)
        if profile is None or not profile.tax_id:
            return None
        return await self._validated_tax_id(record, profile.tax_id, profile.origin)

    def tax_id_plan(self) -> FieldPlan:
        strategies = [
            StrategySpec(
                "input_tax_id", self.input_tax_id, source=Source.VIES,
                enabled_when=lambda r, c: bool(r.tax_id),
            ),
            StrategySpec(
                "website_tax_id", self.website_tax_id, source=Source.VIES,
                enabled_when=lambda r, c: bool(c.hints.get("tax_id")),
            ),
        ]
        if self.registry is not None:
            strategies.append(StrategySpec("registry_identity", self.registry_tax_id, cost=1.0, source=Source.REGISTRY))
        return FieldPlan(
            field="tax_id",
            threshold=self.financial_threshold,
            strategies=strategies,
            budget_seconds=self.budget_seconds,
            canonicalize=lambda v: normalize_tax_id(v) or None,
            key_facts=("tax_id",),
        )

    # ── Financials ───────────────────────────────────────────────────────

    def _profile_candidate(
        self,
        profile: Optional[RegistryProfile],
        field: str,
        cap: float = 1.0,
    ) -> Optional[Candidate]:
        if profile is None:
            return None
        value = getattr(profile, field)
        if not value:
            return None
        signal = profile.source_url or profile.origin
        if field == "revenue" and profile.revenue_year:
            signal = f"{signal} ({profile.revenue_year})"
        return Candidate(
            value=value,
            confidence=min(FINANCIAL_CONFIDENCE.get(profile.origin, 0.6), cap),
            source=PROFILE_SOURCE.get(profile.origin, Source.DIRECTORY),
            raw_signal=signal,
            extras={"revenue_year": profile.revenue_year} if field == "revenue" and profile.revenue_year else {},
        )

    def _is_provisional(self, context: ResolutionContext) -> bool:
        outcome = context.outcomes.get("tax_id")
        return bool(outcome and outcome.extras.get("provisional"))

    def _by_id(self, field: str):
        async def run(record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
            profile = await self.registry.lookup_by_id(known_tax_id(record, context))
            # Registry page found through an unverified number
            cap = PROVISIONAL_TAX_ID_CAP if self._is_provisional(context) else 1.0
            return self._profile_candidate(profile, field, cap)
        return run

    def _by_name(self, field: str):
        async def run(record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
            return self._profile_candidate(await self.registry.financials_by_name(record), field)
        return run

    def _secondary(self, field: str):
        async def run(record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
            return self._profile_candidate(await self.registry.secondary_lookup(record), field)
        return run

    async def _website_evidence(self, record: CompanyRecord, context: ResolutionContext) -> str:
        website = context.known("website")
        if not website or self.fetcher is None:
            return ""
        try:
            page = await self.fetcher.fetch(website)
        except (NetworkError, BlockedError) as e:
            logger.info(f"[strategy:employees] {record.tag()} no site evidence: {e.reason_code}")
            return ""
        return page.text

    async def ai_employees(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        evidence = await self._website_evidence(record, context)
        estimate = await estimate_employees(self.oracle, record, evidence=evidence)
        if estimate is None:
            return None
        return Candidate(
            value=str(estimate.employees),
            confidence=min(estimate.confidence, AI_EMPLOYEES_CAP),
            source=Source.AI_INFERENCE,
            raw_signal=estimate.reasoning or "model estimate",
            estimated=True,
        )

    def _financial_plan(self, field: str) -> FieldPlan:
        strategies: List[StrategySpec] = []
        if self.registry is not None:
            strategies += [
                StrategySpec(
                    "registry_by_id", self._by_id(field), cost=1.0, source=Source.REGISTRY,
                    enabled_when=has_tax_id,
                ),
                StrategySpec(
                    "name_search", self._by_name(field), cost=1.0, source=Source.SEARCH,
                    enabled_when=lacks_tax_id,
                ),
                StrategySpec("secondary_registry", self._secondary(field), cost=1.0, source=Source.DIRECTORY),
            ]
        if field == "employees" and self.oracle is not None:
            strategies.append(StrategySpec("ai_estimate", self.ai_employees, cost=5.0, source=Source.AI_INFERENCE))
        return FieldPlan(
            field=field,
            threshold=self.financial_threshold,
            strategies=strategies,
            budget_seconds=self.budget_seconds,
            key_facts=("tax_id",),
        )

    def revenue_plan(self) -> FieldPlan:
        return self._financial_plan("revenue")

    def employees_plan(self) -> FieldPlan:
        return self._financial_plan("employees")

    async def search_pec(self, record: CompanyRecord, context: ResolutionContext) -> Optional[Candidate]:
        profile = await self.registry.find_pec(record)
        if profile is None or not profile.pec:
            return None
        return Candidate(
            value=profile.pec,
            confidence=FINANCIAL_CONFIDENCE["search"],
            source=Source.SEARCH,
            raw_signal=profile.source_url or "search snippet",
        )

    def pec_plan(self) -> FieldPlan:
        strategies: List[StrategySpec] = []
        if self.registry is not None:
            strategies += [
                StrategySpec(
                    "registry_by_id", self._by_id("pec"), cost=1.0, source=Source.REGISTRY,
                    enabled_when=has_tax_id,
                ),
                StrategySpec("search", self.search_pec, cost=1.0, source=Source.SEARCH),
            ]
        return FieldPlan(
            field="pec",
            threshold=self.financial_threshold,
            strategies=strategies,
            budget_seconds=self.budget_seconds,
            canonicalize=lambda v: v.strip().lower() if v else None,
            key_facts=("tax_id",),
        )

    def plans(self) -> Dict[str, FieldPlan]:
        """All plans in resolution order."""
        return {
            "website": self.website_plan(),
            "tax_id": self.tax_id_plan(),
            "revenue": self.revenue_plan(),
            "employees": self.employees_plan(),
            "pec": self.pec_plan(),
        }
