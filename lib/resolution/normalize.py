"""Canonicalization helpers.

canonicalize_url is the single URL normal form used for cache keys,
candidate dedupe and page verification. Anything that compares or stores a
website goes through it.
"""

import re
import unicodedata
from typing import Optional
from urllib.parse import urlsplit


# Directories, OTAs, social and search hosts that are never a company's own site
SKIP_DOMAINS = {
    # Search engines
    "google.com", "google.it", "bing.com", "duckduckgo.com", "yahoo.com",
    # Social media
    "facebook.com", "instagram.com", "twitter.com", "x.com",
    "linkedin.com", "youtube.com", "pinterest.com", "tiktok.com",
    # Directories
    "paginegialle.it", "paginebianche.it", "virgilio.it", "tuttocitta.it",
    "yelp.it", "yelp.com", "tripadvisor.it", "tripadvisor.com",
    "kompass.com", "europages.it", "infobel.com", "cylex-italia.it",
    "wikipedia.org", "amazon.it", "subito.it",
    # Registries and business-info aggregators
    "ufficiocamerale.it", "reportaziende.it", "registroimprese.it",
    "informazione-aziende.it", "fatturatoitalia.it", "atoka.io",
    "companyreports.it", "aziende.it", "ilfattoalimentare.it",
    # OTAs
    "booking.com", "expedia.com", "airbnb.com", "trivago.it",
}

# Legal-form tokens dropped before fingerprinting a company name
LEGAL_SUFFIXES = {
    "srl", "srls", "spa", "snc", "sas", "sapa", "scarl", "scrl", "sc",
    "ditta", "societa", "soc", "coop", "cooperativa", "di", "e", "c",
    "ltd", "llc", "inc", "gmbh", "ag", "bv", "nv", "co",
}

# Only used for domain guessing, on top of LEGAL_SUFFIXES
GENERIC_NAME_WORDS = {"azienda", "impresa", "group", "gruppo", "holding", "the"}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_DEFAULT_PORTS = {"http": "80", "https": "443"}
_WWW_RE = re.compile(r"^(www\.)+")
_INDEX_PAGE_RE = re.compile(r"/(index|default|home)\.(html?|php|aspx?)$", re.IGNORECASE)

_PIVA_PATTERNS = [
    re.compile(r"P\.?\s*IVA[:\s]*(?:IT)?\s*(\d{11})", re.IGNORECASE),
    re.compile(r"Partita\s+IVA[:\s]*(?:IT)?\s*(\d{11})", re.IGNORECASE),
    re.compile(r"C\.?F\.?\s*(?:e|/)\s*P\.?\s*IVA[:\s]*(?:IT)?\s*(\d{11})", re.IGNORECASE),
    re.compile(r"VAT(?:\s+(?:number|n\.?|no\.?))?[:\s]*(?:IT)?\s*(\d{11})", re.IGNORECASE),
    re.compile(r"\bIT\s?(\d{11})\b"),
]


def normalize_text(value: str) -> str:
    """Lowercase, strip accents, collapse everything non-alphanumeric to single spaces."""
    if not value:
        return ""
    value = unicodedata.normalize("NFKD", value)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", value.lower()).strip()


def strip_legal_suffixes(name: str) -> str:
    """Drop legal-form tokens ("Rossi & C. S.n.c." -> "rossi").

    Dotted abbreviations are collapsed first so "S.r.l." matches "srl".
    """
    if not name:
        return ""
    collapsed = re.sub(r"\b((?:[a-z]\.){2,}[a-z]?\.?)", lambda m: m.group(1).replace(".", ""),
                       name.lower())
    tokens = normalize_text(collapsed).split()
    kept = [t for t in tokens if t not in LEGAL_SUFFIXES]
    # A name made only of legal words ("Societa Cooperativa") keeps its tokens
    return " ".join(kept or tokens)


def name_fingerprint(name: str, city: Optional[str]) -> str:
    """Key for the name+locality entity index."""
    return f"{strip_legal_suffixes(name)}|{normalize_text(city or '')}"


def phone_digits(phone: Optional[str]) -> str:
    """Digits only, with an Italian +39/0039 prefix removed."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0039"):
        digits = digits[4:]
    elif digits.startswith("39") and len(digits) > 10:
        digits = digits[2:]
    return digits


def normalize_tax_id(tax_id: Optional[str]) -> str:
    """Digits of an Italian P.IVA with any IT prefix and separators removed."""
    if not tax_id:
        return ""
    cleaned = re.sub(r"[\s.\-]", "", tax_id.upper())
    if cleaned.startswith("IT"):
        cleaned = cleaned[2:]
    return cleaned


def is_valid_partita_iva(tax_id: Optional[str]) -> bool:
    """Checksum check for an 11-digit Italian VAT number."""
    piva = normalize_tax_id(tax_id)
    if not re.fullmatch(r"\d{11}", piva):
        return False
    if piva == "0" * 11:
        return False
    total = 0
    for i, ch in enumerate(piva):
        digit = int(ch)
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def extract_partita_iva(text: str) -> Optional[str]:
    """First checksum-valid P.IVA found in free text, or None."""
    if not text:
        return None
    for pattern in _PIVA_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if is_valid_partita_iva(candidate):
                return candidate
    return None


def canonicalize_url(url: Optional[str]) -> Optional[str]:
    """Canonical website form: ``https://host`` plus a normalized path.

    - scheme forced to https, host lowercased, ``www.`` and default ports removed
    - query string and fragment dropped
    - trailing slashes and index pages stripped from the path

    Idempotent: canonicalize_url(canonicalize_url(u)) == canonicalize_url(u).
    Returns None for values that cannot be a company website.
    """
    if not url:
        return None
    url = url.strip()
    if not url:
        return None
    if "://" not in url:
        url = "https://" + url.lstrip("/")
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower().rstrip(".")
        port = parts.port
    except ValueError:
        return None
    host = _WWW_RE.sub("", host)
    if not host or "." not in host or " " in host:
        return None
    if port and str(port) not in _DEFAULT_PORTS.values():
        host = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "").rstrip("/")
    stripped = _INDEX_PAGE_RE.sub("", path)
    while stripped != path:
        path = stripped.rstrip("/")
        stripped = _INDEX_PAGE_RE.sub("", path)
    path = path.lower()
    if path.endswith(".pdf"):
        return None
    return f"https://{host}{path}"


def domain_of(url: Optional[str]) -> Optional[str]:
    """Bare host (no www, no port) of a URL or None."""
    canonical = canonicalize_url(url)
    if not canonical:
        return None
    return canonical[len("https://"):].split("/", 1)[0].split(":", 1)[0]


def is_skip_domain(url: Optional[str]) -> bool:
    """True for search engines, directories, registries and social hosts."""
    domain = domain_of(url)
    if not domain:
        return True
    for skip in SKIP_DOMAINS:
        if domain == skip or domain.endswith("." + skip):
            return True
    return False
