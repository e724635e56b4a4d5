"""Search providers.

Every provider returns validated SearchHit models; raw API/HTML shapes never
leave this module. SearchChain tries providers in order, skipping any whose
target the classifier currently reports as hot.
"""

import re
from typing import List, Optional, Protocol, runtime_checkable
from urllib.parse import parse_qs, unquote, urlsplit

from loguru import logger
from pydantic import BaseModel, ValidationError as PydanticValidationError

from lib.browser import html_to_text
from lib.discovery.fetcher import GuardedHttp
from lib.resolution.classifier import BlockKind, FailureClassifier, Signature
from lib.resolution.errors import BlockedError, ConfigurationError, NetworkError


SERPER_SEARCH_URL = "https://google.serper.dev/search"
DDG_HTML_URL = "https://html.duckduckgo.com/html/"


class SearchHit(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""
    provider: str = ""


class _SerperOrganic(BaseModel):
    link: str
    title: str = ""
    snippet: str = ""


class _SerperResponse(BaseModel):
    organic: List[_SerperOrganic] = []


@runtime_checkable
class SearchProvider(Protocol):
    """Protocol for web search backends."""

    name: str
    target: str

    async def search(self, query: str) -> List[SearchHit]:
        ...


class SerperSearchProvider:
    """Google results via the serper.dev API."""

    name = "serper"
    target = "serper"

    def __init__(self, http: GuardedHttp, api_key: str, gl: str = "it", hl: str = "it", num: int = 10):
        if not api_key:
            raise ConfigurationError("SERPER_API_KEY is not set")
        self.http = http
        self.api_key = api_key
        self.gl = gl
        self.hl = hl
        self.num = num

    async def search(self, query: str) -> List[SearchHit]:
        resp = await self.http.post(
            SERPER_SEARCH_URL,
            target=self.target,
            source="search",
            inspect_body=False,
            headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
            json={"q": query, "gl": self.gl, "hl": self.hl, "num": self.num},
        )
        if resp.status_code != 200:
            logger.warning(f"[search:serper] HTTP {resp.status_code} for {query!r}")
            return []
        try:
            data = _SerperResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"[search:serper] malformed response for {query!r}: {str(e)[:120]}")
            return []
        return [
            SearchHit(url=o.link, title=o.title, snippet=o.snippet, provider=self.name)
            for o in data.organic
        ]


_DDG_RESULT_RE = re.compile(
    r'<a[^>]+class="result__a"[^>]+href="([^"]+)"[^>]*>(.*?)</a>'
    r'(?:.*?<a[^>]+class="result__snippet"[^>]*>(.*?)</a>)?',
    re.DOTALL,
)
_DDG_BLOCK_MARKERS = ("bots use duckduckgo too", "anomaly-modal")


def _ddg_target_url(href: str) -> Optional[str]:
    """Unwrap DuckDuckGo's /l/?uddg= redirect links."""
    if href.startswith("//"):
        href = "https:" + href
    parts = urlsplit(href)
    if parts.path.startswith("/l/"):
        uddg = parse_qs(parts.query).get("uddg")
        return unquote(uddg[0]) if uddg else None
    if parts.scheme in ("http", "https"):
        return href
    return None


def parse_ddg_html(html: str) -> List[SearchHit]:
    hits = []
    for href, title, snippet in _DDG_RESULT_RE.findall(html):
        url = _ddg_target_url(href)
        if not url or "duckduckgo.com/y.js" in url:
            continue
        hits.append(SearchHit(
            url=url,
            title=html_to_text(title),
            snippet=html_to_text(snippet or ""),
            provider="duckduckgo",
        ))
    return hits


class DuckDuckGoSearchProvider:
    """Scrapes DuckDuckGo's HTML endpoint. No API key needed."""

    name = "duckduckgo"
    target = "duckduckgo.com"

    def __init__(self, http: GuardedHttp, region: str = "it-it"):
        self.http = http
        self.region = region

    async def search(self, query: str) -> List[SearchHit]:
        resp = await self.http.post(
            DDG_HTML_URL,
            target=self.target,
            source="search",
            data={"q": query, "kl": self.region},
        )
        lowered = resp.text.lower()
        if any(m in lowered for m in _DDG_BLOCK_MARKERS):
            sig = self.http.classifier.record(Signature(
                kind=BlockKind.CAPTCHA, target=self.target, source="search", raw_signal="ddg anomaly page",
            ))
            self.http.governor.report_failure(self.target)
            raise BlockedError(sig)
        return parse_ddg_html(resp.text)


class SearchChain:
    """Ordered provider fallback. Hot providers are skipped while others remain."""

    def __init__(self, providers: List[SearchProvider], classifier: FailureClassifier):
        if not providers:
            raise ConfigurationError("at least one search provider is required")
        self.providers = providers
        self.classifier = classifier

    async def search(self, query: str) -> List[SearchHit]:
        available = [p for p in self.providers if not self.classifier.is_hot(p.target)]
        if not available:
            # Everything is hot: still try in order, the governor paces us
            available = list(self.providers)

        last_error: Optional[Exception] = None
        for provider in available:
            try:
                hits = await provider.search(query)
                logger.debug(f"[search:{provider.name}] {len(hits)} hits for {query!r}")
                return hits
            except (BlockedError, NetworkError) as e:
                logger.warning(f"[search:{provider.name}] {e.reason_code} for {query!r}, trying next provider")
                last_error = e
        raise last_error
