"""Discovery collaborators used by enrichment strategies.

  - fetcher:        governed HTTP + page loading (HTTP first, browser fallback)
  - matcher:        page/company match scoring, website verification
  - search:         Serper / DuckDuckGo providers and fallback chain
  - domain_guesser: name -> candidate domains, DNS liveness
  - oracle:         Azure OpenAI structured answers with cost ledger
  - registry:       VIES validation and Italian registry lookups
"""

from lib.discovery.fetcher import GuardedHttp, Page, PageFetcher
from lib.discovery.matcher import CompanyMatcher, Verification, WebsiteVerifier
from lib.discovery.search import (
    DuckDuckGoSearchProvider,
    SearchChain,
    SearchHit,
    SearchProvider,
    SerperSearchProvider,
)
from lib.discovery.domain_guesser import DomainGuesser
from lib.discovery.oracle import CostLedger, LLMOracle
from lib.discovery.registry import RegistryClient, RegistryProfile, ViesClient, ViesResult

__all__ = [
    # Fetching
    "GuardedHttp",
    "Page",
    "PageFetcher",
    # Verification
    "CompanyMatcher",
    "Verification",
    "WebsiteVerifier",
    # Search
    "SearchHit",
    "SearchProvider",
    "SerperSearchProvider",
    "DuckDuckGoSearchProvider",
    "SearchChain",
    # Domains
    "DomainGuesser",
    # Oracle
    "CostLedger",
    "LLMOracle",
    # Registries
    "ViesClient",
    "ViesResult",
    "RegistryClient",
    "RegistryProfile",
]
