"""Website verification scoring.

CompanyMatcher scores how well a page's text identifies a given company.
A matching tax id printed on the page is decisive; otherwise the score is
built from phone, name, city, address and domain evidence with hard caps
so weak single signals can't look like a match.

WebsiteVerifier fetches a candidate and scores it. The URL it fetches, the
URL it returns and the key it caches under are all the same
canonicalize_url() form.
"""

import re
from typing import List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from lib.discovery.fetcher import PageFetcher
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

# Ignored when tokenizing company names
NAME_STOPWORDS = {
    "srl", "srls", "spa", "snc", "sas", "sapa", "societa", "ditta", "impresa",
    "soc", "co", "ltd", "llc", "inc", "group", "holding", "the", "and",
    "di", "dei", "della", "delle", "del", "de", "e",
}

ADDRESS_NOISE = {
    "via", "viale", "piazza", "pzza", "corso", "strada", "s", "snc",
    "n", "nr", "numero", "interno", "int",
}

CONTACT_KEYWORDS = (
    "contatti", "contattaci", "contattami",
    "chi siamo", "dove siamo", "about us",
    "privacy", "cookie policy", "note legali",
    "impressum", "mappa del sito", "sitemap",
)

_PHONE_RE = re.compile(r"\+?\d[\d\s()./-]{5,}\d")
_STANDALONE_VAT_RE = re.compile(r"\b\d{11}\b")


class MatchSignals(BaseModel):
    tax_id_match: bool = False
    phone_match: bool = False
    name_coverage: float = 0.0
    city_match: bool = False
    address_coverage: float = 0.0
    domain_coverage: float = 0.0
    has_contact_keywords: bool = False


class MatchEvaluation(BaseModel):
    confidence: float
    reason: str
    signals: MatchSignals
    matched_phone: Optional[str] = None
    # Any checksum-valid P.IVA printed on the page, matched or not
    page_tax_id: Optional[str] = None


def _tokens(value: str) -> List[str]:
    return [t for t in normalize_text(value).split(" ") if t]


def _has_word(text: str, token: str) -> bool:
    return (
        text == token
        or f" {token} " in text
        or text.startswith(f"{token} ")
        or text.endswith(f" {token}")
    )


def _phone_digits(phone: Optional[str]) -> str:
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("00"):
        digits = digits[2:]
    return digits


class CompanyMatcher:
    """Rule-based page/company match scoring."""

    def name_tokens(self, name: str) -> List[str]:
        return [t for t in _tokens(name) if len(t) >= 2 and t not in NAME_STOPWORDS]

    def name_coverage(self, name: str, normalized_text: str) -> float:
        tokens = self.name_tokens(name)
        if not tokens:
            return 0.0
        matched = 0
        for token in tokens:
            if _has_word(normalized_text, token):
                matched += 1
            elif len(token) >= 4 and token in normalized_text:
                # Compound words like "rossiimpianti"
                matched += 1
        return matched / len(tokens)

    def domain_coverage(self, name: str, url: str) -> float:
        host = domain_of(url)
        if not host:
            return 0.0
        compact_host = re.sub(r"[^a-z0-9]", "", host)
        tokens = self.name_tokens(name)
        if not tokens:
            return 0.0
        compact_name = "".join(tokens)
        if len(compact_name) >= 3 and compact_name in compact_host:
            return 1.0
        return sum(1 for t in tokens if t in compact_host) / len(tokens)

    def city_match(self, city: Optional[str], normalized_text: str) -> bool:
        if not city:
            return False
        tokens = [t for t in _tokens(city) if len(t) >= 3]
        return bool(tokens) and all(_has_word(normalized_text, t) for t in tokens)

    def address_coverage(self, address: Optional[str], normalized_text: str) -> float:
        if not address:
            return 0.0
        tokens = [
            t for t in _tokens(address)
            if (t.isdigit() and len(t) >= 2) or (not t.isdigit() and len(t) >= 3 and t not in ADDRESS_NOISE)
        ]
        if not tokens:
            return 0.0
        considered = tokens[:6]
        matched = sum(1 for t in considered if _has_word(normalized_text, t))
        return matched / len(considered)

    def has_contact_keywords(self, normalized_text: str, normalized_title: str) -> bool:
        bucket = f"{normalized_title} {normalized_text}"
        return any(k in bucket for k in CONTACT_KEYWORDS)

    def extract_tax_ids(self, text: str) -> List[str]:
        found = []
        labeled = extract_partita_iva(text)
        if labeled:
            found.append(labeled)
        for m in _STANDALONE_VAT_RE.findall(text):
            if m not in found and is_valid_partita_iva(m):
                found.append(m)
        return found

    def extract_phones(self, text: str) -> List[str]:
        phones = []
        for raw in _PHONE_RE.findall(text):
            digits = _phone_digits(raw)
            if not 9 <= len(digits) <= 15:
                continue
            if re.match(r"^(19|20)\d{2}", digits) and len(digits) <= 10:
                continue
            if digits.startswith("000"):
                continue
            if digits.startswith(("39", "0", "3")) and digits not in phones:
                phones.append(digits)
        return phones

    def find_matching_phone(self, target: str, candidates: List[str]) -> Optional[str]:
        if not target or not candidates:
            return None
        variants = {target}
        if target.startswith("39") and len(target) > 10:
            bare = target[2:]
            variants.add(bare)
            if not bare.startswith("0"):
                variants.add(f"0{bare}")
        if target.startswith("0") and len(target) >= 9:
            variants.add(f"39{target}")

        for candidate in candidates:
            if candidate in variants:
                return candidate
            for variant in variants:
                if len(variant) >= 8 and candidate.endswith(variant):
                    return candidate
                if len(candidate) >= 8 and variant.endswith(candidate):
                    return candidate
        return None

    def evaluate(self, record: CompanyRecord, url: str, text: str, title: str = "") -> MatchEvaluation:
        norm_text = normalize_text(text)
        norm_title = normalize_text(title)
        tax_ids = self.extract_tax_ids(text)
        page_tax_id = tax_ids[0] if tax_ids else None

        target_tax_id = normalize_tax_id(record.tax_id)
        if target_tax_id and target_tax_id in tax_ids:
            return MatchEvaluation(
                confidence=0.95,
                reason="tax id match",
                page_tax_id=target_tax_id,
                signals=MatchSignals(
                    tax_id_match=True,
                    name_coverage=1.0,
                    domain_coverage=self.domain_coverage(record.name, url),
                    has_contact_keywords=self.has_contact_keywords(norm_text, norm_title),
                ),
            )

        matched_phone = self.find_matching_phone(_phone_digits(record.phone), self.extract_phones(text))
        signals = MatchSignals(
            phone_match=matched_phone is not None,
            name_coverage=self.name_coverage(record.name, norm_text),
            city_match=self.city_match(record.city, norm_text),
            address_coverage=self.address_coverage(record.address, norm_text),
            domain_coverage=self.domain_coverage(record.name, url),
            has_contact_keywords=self.has_contact_keywords(norm_text, norm_title),
        )

        confidence = 0.05
        if signals.phone_match:
            confidence += 0.65

        if signals.name_coverage >= 0.85:
            confidence += 0.26
        elif signals.name_coverage >= 0.65:
            confidence += 0.2
        elif signals.name_coverage >= 0.4:
            confidence += 0.12

        if signals.city_match:
            confidence += 0.08

        if signals.address_coverage >= 0.8:
            confidence += 0.18
        elif signals.address_coverage >= 0.65:
            confidence += 0.14
        elif signals.address_coverage >= 0.45:
            confidence += 0.08

        if signals.domain_coverage >= 0.8:
            confidence += 0.2
        elif signals.domain_coverage >= 0.5:
            confidence += 0.1
        elif signals.domain_coverage >= 0.3:
            confidence += 0.05

        if signals.has_contact_keywords:
            confidence += 0.08

        # Neither name nor domain supports the page
        if not signals.phone_match and signals.name_coverage < 0.4 and signals.domain_coverage < 0.5:
            confidence = min(confidence, 0.35)

        if signals.domain_coverage >= 0.8 and signals.name_coverage >= 0.4:
            confidence += 0.06

        # A shared switchboard number alone is not identity
        if signals.phone_match and signals.name_coverage < 0.25 and signals.domain_coverage < 0.25:
            confidence = min(confidence, 0.68)

        reasons = []
        if signals.phone_match:
            reasons.append("phone match")
        if signals.name_coverage >= 0.65:
            reasons.append("strong name match")
        elif signals.name_coverage >= 0.4:
            reasons.append("partial name match")
        if signals.city_match:
            reasons.append("city match")
        if signals.address_coverage >= 0.45:
            reasons.append("address match")
        if signals.domain_coverage >= 0.5:
            reasons.append("domain match")

        return MatchEvaluation(
            confidence=round(min(max(confidence, 0.0), 0.99), 4),
            reason=", ".join(reasons) or "weak evidence",
            signals=signals,
            matched_phone=matched_phone,
            page_tax_id=page_tax_id,
        )


class Verification(BaseModel):
    url: str
    confidence: float
    reason: str
    tax_id: Optional[str] = None
    matched_phone: Optional[str] = None


class WebsiteVerifier:
    """Fetch + score a candidate website, with a bounded result cache."""

    def __init__(
        self,
        fetcher: PageFetcher,
        matcher: Optional[CompanyMatcher] = None,
        cache: Optional[BoundedCache] = None,
    ):
        self.fetcher = fetcher
        self.matcher = matcher or CompanyMatcher()
        self.cache = cache if cache is not None else BoundedCache(max_entries=2000, ttl_seconds=15 * 60)

    def cache_key(self, record: CompanyRecord, url: str) -> Optional[Tuple[str, str]]:
        canonical = canonicalize_url(url)
        if canonical is None:
            return None
        return (canonical, record.record_id)

    async def verify(self, record: CompanyRecord, url: str) -> Optional[Verification]:
        """Score ``url`` as the website of ``record``. None when it can't be checked."""
        key = self.cache_key(record, url)
        if key is None:
            return None
        canonical = key[0]
        if is_skip_domain(canonical):
            return Verification(url=canonical, confidence=0.0, reason="directory or social host")

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            page = await self.fetcher.fetch(canonical)
        except (NetworkError, BlockedError) as e:
            logger.info(f"[verify] {record.tag()} {canonical} unreachable: {e.reason_code}")
            return None

        if page.url != canonical and is_skip_domain(page.url):
            result = Verification(url=canonical, confidence=0.0, reason="redirected to directory")
            self.cache.set(key, result)
            return result

        evaluation = self.matcher.evaluate(record, canonical, page.text, page.title)
        confidence = evaluation.confidence
        reason = evaluation.reason

        title_coverage = self.matcher.name_coverage(record.name, normalize_text(page.title))
        if title_coverage >= 0.6 and confidence < 0.85:
            confidence = min(0.99, confidence + 0.10)
            reason = f"{reason}, title match"

        result = Verification(
            url=canonical,
            confidence=round(confidence, 4),
            reason=reason,
            tax_id=evaluation.page_tax_id,
            matched_phone=evaluation.matched_phone,
        )
        logger.debug(f"[verify] {record.tag()} {canonical} -> {result.confidence:.2f} ({reason})")
        self.cache.set(key, result)
        return result
