"""Italian company registries.

ViesClient validates a P.IVA against the EU VIES REST API. RegistryClient
finds the registry page for a company (by P.IVA, or by name + city through
search) and pulls revenue, headcount, PEC and website out of its text.

Registry pages:
  - ufficiocamerale.it / registroimprese.it / informazione-aziende.it (primary)
  - reportaziende.it / aziende.cc / finanze-aziende.it (secondary)

Pages behind a CAPTCHA surface as BlockedError from GuardedHttp; nothing
here tries to solve them.
"""

import asyncio
import re
from typing import Awaitable, Callable, List, Optional

from loguru import logger
from pydantic import BaseModel, ValidationError as PydanticValidationError

from lib.browser import html_to_text
from lib.discovery.fetcher import GuardedHttp
from lib.discovery.matcher import CompanyMatcher
from lib.discovery.search import SearchChain, SearchHit
from lib.resolution.cache import BoundedCache
from lib.resolution.errors import BlockedError, NetworkError
from lib.resolution.models import CompanyRecord
from lib.resolution.normalize import (
    canonicalize_url,
    domain_of,
    extract_partita_iva,
    is_skip_domain,
    is_valid_partita_iva,
    normalize_tax_id,
    normalize_text,
)

VIES_URL = "https://ec.europa.eu/taxation_customs/vies/rest-api/ms/{country}/vat/{vat}"

PRIMARY_REGISTRY_SITES = ("ufficiocamerale.it", "registroimprese.it", "informazione-aziende.it")
SECONDARY_REGISTRY_SITES = ("reportaziende.it", "aziende.cc", "finanze-aziende.it")

# VIES userError values meaning "member state service is down", not "invalid"
VIES_UNAVAILABLE_ERRORS = {
    "MS_UNAVAILABLE",
    "SERVICE_UNAVAILABLE",
    "TIMEOUT",
    "MS_MAX_CONCURRENT_REQ",
    "GLOBAL_MAX_CONCURRENT_REQ",
}

# Page must cover this much of the company name to count as its registry entry
NAME_MATCH_THRESHOLD = 0.65

_AMOUNT = r"(\d[\d.,]*(?:\s*(?:mln|milioni|mila|euro|k|m)\b)?)"
_YEAR = r"(?:\(?((?:19|20)\d{2})\)?\b)?"

REVENUE_PATTERNS = (
    re.compile(rf"fatturato\s*{_YEAR}\s*(?:di\s*)?(?:circa\s*)?[:.]?\s*(?:€|eur)?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"ricavi\s*{_YEAR}\s*[:.]?\s*(?:€|eur)?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"volume\s*d['’]affari\s*{_YEAR}\s*[:.]?\s*(?:€|eur)?\s*{_AMOUNT}", re.IGNORECASE),
)

_HEADCOUNT = r"(\d+(?:\s*-\s*\d+)?)"
EMPLOYEE_PATTERNS = (
    re.compile(rf"(?:numero\s*(?:di\s*)?)?dipendenti\s*(?:\(?(?:19|20)\d{{2}}\)?)?\s*[:.]?\s*{_HEADCOUNT}", re.IGNORECASE),
    re.compile(rf"organico\s*[:.]?\s*{_HEADCOUNT}", re.IGNORECASE),
    re.compile(rf"addetti\s*[:.]?\s*{_HEADCOUNT}", re.IGNORECASE),
    re.compile(r"(\d+)\s*dipendenti", re.IGNORECASE),
)

PEC_RE = re.compile(
    r"[a-z0-9._%+-]+@(?:pec|legalmail|mypec|arubapec|postecert|pecimprese|cert)\.[a-z0-9.-]+[a-z]",
    re.IGNORECASE,
)

WEBSITE_RE = re.compile(
    r"(?:sito\s*(?:web|internet)?|website|web)\s*[:]\s*((?:https?://)?(?:www\.)?[a-z0-9-]+(?:\.[a-z0-9-]+)+)",
    re.IGNORECASE,
)


# ── Text parsing ─────────────────────────────────────────────────────────


def parse_revenue(text: str) -> Optional[tuple]:
    """(formatted revenue, year or None) from registry/snippet text."""
    for pattern in REVENUE_PATTERNS:
        m = pattern.search(text)
        if m:
            amount = m.group(2).strip().rstrip(".,")
            if not any(c.isdigit() for c in amount) or amount in ("0", "0,00"):
                continue
            return f"€ {amount}", m.group(1)
    return None


def parse_employees(text: str) -> Optional[str]:
    for pattern in EMPLOYEE_PATTERNS:
        m = pattern.search(text)
        if m:
            value = re.sub(r"\s+", "", m.group(1))
            if value.lstrip("0"):
                return value
    return None


def parse_pec(text: str) -> Optional[str]:
    m = PEC_RE.search(text)
    return m.group(0).lower() if m else None


def parse_website(text: str) -> Optional[str]:
    for m in WEBSITE_RE.finditer(text):
        url = canonicalize_url(m.group(1))
        if url and not is_skip_domain(url):
            return url
    return None


class RegistryProfile(BaseModel):
    """What a registry page (or set of snippets) says about a company."""

    tax_id: Optional[str] = None
    revenue: Optional[str] = None
    revenue_year: Optional[str] = None
    employees: Optional[str] = None
    pec: Optional[str] = None
    website: Optional[str] = None
    source_url: Optional[str] = None
    # "registry" (primary page), "directory" (secondary page) or "search" (snippets)
    origin: str = "registry"

    @property
    def is_empty(self) -> bool:
        return not any((self.tax_id, self.revenue, self.employees, self.pec, self.website))


def parse_registry_text(text: str, source_url: Optional[str] = None, origin: str = "registry") -> RegistryProfile:
    revenue = parse_revenue(text)
    return RegistryProfile(
        tax_id=extract_partita_iva(text),
        revenue=revenue[0] if revenue else None,
        revenue_year=revenue[1] if revenue else None,
        employees=parse_employees(text),
        pec=parse_pec(text),
        website=parse_website(text),
        source_url=source_url,
        origin=origin,
    )


def _on_sites(url: str, sites) -> bool:
    host = domain_of(url) or ""
    return any(host == s or host.endswith(f".{s}") for s in sites)


# ── VIES ─────────────────────────────────────────────────────────────────


class ViesResult(BaseModel):
    vat: str
    valid: bool
    name: Optional[str] = None
    address: Optional[str] = None
    # Accepted on checksum alone because VIES was unreachable
    provisional: bool = False


class _ViesResponse(BaseModel):
    isValid: Optional[bool] = None
    name: Optional[str] = None
    address: Optional[str] = None
    userError: Optional[str] = None


class ViesClient:
    """EU VIES VAT validation with retry and provisional acceptance."""

    target = "vies"

    def __init__(
        self,
        http: GuardedHttp,
        country: str = "IT",
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        cache: Optional[BoundedCache] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.http = http
        self.country = country
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.cache = cache if cache is not None else BoundedCache(max_entries=5000, ttl_seconds=24 * 3600)
        self._sleep = sleep

    async def validate(self, vat: str) -> ViesResult:
        vat = normalize_tax_id(vat)
        if not is_valid_partita_iva(vat):
            logger.warning(f"[vies] {vat!r} failed checksum validation")
            return ViesResult(vat=vat, valid=False)

        cached = self.cache.get(vat)
        if cached is not None:
            return cached

        url = VIES_URL.format(country=self.country, vat=vat)
        unavailable = False
        last_error = ""
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self.http.get(url, target=self.target, source="vies", inspect_body=False, timeout=10.0)
            except (NetworkError, BlockedError) as e:
                unavailable = True
                last_error = e.reason_code
            else:
                if resp.status_code != 200:
                    logger.warning(f"[vies] {vat} HTTP {resp.status_code}")
                    break
                try:
                    data = _ViesResponse.model_validate(resp.json())
                except (ValueError, PydanticValidationError) as e:
                    logger.warning(f"[vies] {vat} malformed response: {str(e)[:120]}")
                    break
                if data.isValid:
                    result = ViesResult(
                        vat=vat,
                        valid=True,
                        name=_clean_vies_field(data.name),
                        address=_clean_vies_field(data.address),
                    )
                    self.cache.set(vat, result)
                    return result
                if data.userError not in VIES_UNAVAILABLE_ERRORS:
                    result = ViesResult(vat=vat, valid=False)
                    self.cache.set(vat, result)
                    return result
                unavailable = True
                last_error = data.userError

            if attempt < self.max_retries:
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(f"[vies] attempt {attempt + 1} failed for {vat} ({last_error}), retrying in {delay:.1f}s")
                await self._sleep(delay)

        if unavailable:
            logger.warning(
                f"[vies] unavailable for {vat} after {self.max_retries + 1} attempts ({last_error}), "
                f"accepting provisionally on checksum"
            )
            return ViesResult(vat=vat, valid=True, provisional=True)
        return ViesResult(vat=vat, valid=False)


def _clean_vies_field(value: Optional[str]) -> Optional[str]:
    if not value or value.strip() in ("---", "-"):
        return None
    return " ".join(value.split())


# ── Registry pages ───────────────────────────────────────────────────────


class RegistryClient:
    """Registry lookups by P.IVA or by name, backed by search + page fetches."""

    def __init__(
        self,
        http: GuardedHttp,
        search: SearchChain,
        matcher: Optional[CompanyMatcher] = None,
        cache: Optional[BoundedCache] = None,
    ):
        self.http = http
        self.search = search
        self.matcher = matcher or CompanyMatcher()
        self.cache = cache if cache is not None else BoundedCache(max_entries=5000, ttl_seconds=6 * 3600)

    async def _fetch_text(self, url: str) -> str:
        resp = await self.http.get(url, source="registry", follow_redirects=True)
        if resp.status_code >= 400:
            raise NetworkError(f"GET {url} returned {resp.status_code}", context={"target": domain_of(url)})
        return html_to_text(resp.text)

    async def _cached(self, key, load: Callable[[], Awaitable[Optional[RegistryProfile]]]) -> Optional[RegistryProfile]:
        cached = self.cache.get(key)
        if cached is not None:
            return None if cached.is_empty else cached
        profile = await load()
        # Misses are cached too, as empty profiles
        self.cache.set(key, profile or RegistryProfile())
        return profile

    def _first_on(self, hits: List[SearchHit], sites) -> Optional[SearchHit]:
        for hit in hits:
            if _on_sites(hit.url, sites):
                return hit
        return None

    def _covers_name(self, record: CompanyRecord, text: str) -> bool:
        return self.matcher.name_coverage(record.name, normalize_text(text)) >= NAME_MATCH_THRESHOLD

    async def lookup_by_id(self, vat: str) -> Optional[RegistryProfile]:
        """Primary registry page for a P.IVA."""
        vat = normalize_tax_id(vat)
        if not is_valid_partita_iva(vat):
            return None

        async def load() -> Optional[RegistryProfile]:
            sites = " OR ".join(f"site:{s}" for s in PRIMARY_REGISTRY_SITES)
            hits = await self.search.search(f"piva {vat} {sites}")
            hit = self._first_on(hits, PRIMARY_REGISTRY_SITES)
            if hit is None:
                logger.info(f"[registry] no registry result for {vat}")
                return None
            text = await self._fetch_text(hit.url)
            if vat not in re.sub(r"\s", "", text):
                logger.info(f"[registry] {hit.url} does not mention {vat}, ignoring")
                return None
            profile = parse_registry_text(text, source_url=hit.url)
            profile.tax_id = vat
            logger.debug(f"[registry] {vat} -> {profile.model_dump(exclude_none=True)}")
            return profile

        return await self._cached(("id", vat), load)

    async def identity_by_name(self, record: CompanyRecord) -> Optional[RegistryProfile]:
        """Registry identity from name + city: P.IVA and sometimes the website."""

        async def load() -> Optional[RegistryProfile]:
            query = f'"{record.name}" {record.city or ""} partita iva'.strip()
            hits = await self.search.search(query)

            hit = self._first_on(hits, PRIMARY_REGISTRY_SITES + SECONDARY_REGISTRY_SITES)
            if hit is not None and self._covers_name(record, f"{hit.title} {hit.snippet}"):
                try:
                    text = await self._fetch_text(hit.url)
                except (NetworkError, BlockedError) as e:
                    logger.info(f"[registry] {record.tag()} {hit.url} unreachable: {e.reason_code}")
                else:
                    if self._covers_name(record, text):
                        origin = "registry" if _on_sites(hit.url, PRIMARY_REGISTRY_SITES) else "directory"
                        profile = parse_registry_text(text, source_url=hit.url, origin=origin)
                        if profile.tax_id or profile.website:
                            return profile

            # Snippets that name the company and print a P.IVA
            for h in hits:
                blob = f"{h.title} {h.snippet}"
                vat = extract_partita_iva(blob)
                if vat and self._covers_name(record, blob):
                    return RegistryProfile(tax_id=vat, source_url=h.url, origin="search")
            return None

        return await self._cached(("identity", record.record_id), load)

    async def financials_by_name(self, record: CompanyRecord) -> Optional[RegistryProfile]:
        """Revenue/headcount from search snippets, then the first secondary registry hit."""

        async def load() -> Optional[RegistryProfile]:
            query = f'"{record.name}" {record.city or ""} fatturato dipendenti'
            hits = await self.search.search(query)

            relevant = [h for h in hits if self._covers_name(record, f"{h.title} {h.snippet}")]
            snippets = " \n ".join(f"{h.title} {h.snippet}" for h in relevant)
            profile = parse_registry_text(snippets, origin="search")
            profile.website = None
            if profile.revenue or profile.employees:
                profile.source_url = relevant[0].url if relevant else None
                return profile

            hit = self._first_on(hits, SECONDARY_REGISTRY_SITES)
            if hit is None:
                return None
            text = await self._fetch_text(hit.url)
            if not self._covers_name(record, text):
                return None
            return parse_registry_text(text, source_url=hit.url, origin="directory")

        return await self._cached(("financials", record.record_id), load)

    async def secondary_lookup(self, record: CompanyRecord) -> Optional[RegistryProfile]:
        """Name search restricted to the secondary registries."""

        async def load() -> Optional[RegistryProfile]:
            sites = " OR ".join(f"site:{s}" for s in SECONDARY_REGISTRY_SITES)
            hits = await self.search.search(f'"{record.name}" {record.city or ""} {sites}')
            hit = self._first_on(hits, SECONDARY_REGISTRY_SITES)
            if hit is None:
                return None
            text = await self._fetch_text(hit.url)
            if not self._covers_name(record, text):
                logger.info(f"[registry] {record.tag()} {hit.url} is a different company")
                return None
            return parse_registry_text(text, source_url=hit.url, origin="directory")

        return await self._cached(("secondary", record.record_id), load)

    async def find_pec(self, record: CompanyRecord) -> Optional[RegistryProfile]:
        """PEC address from search snippets mentioning the company."""

        async def load() -> Optional[RegistryProfile]:
            hits = await self.search.search(f'"{record.name}" PEC {record.city or ""}'.strip())
            for h in hits:
                blob = f"{h.title} {h.snippet}"
                pec = parse_pec(blob)
                if pec and self._covers_name(record, blob):
                    return RegistryProfile(pec=pec, source_url=h.url, origin="search")
            return None

        return await self._cached(("pec", record.record_id), load)
