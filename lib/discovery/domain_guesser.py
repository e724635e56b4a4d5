"""Deterministic domain guessing from a company name.

"Officine Rossi Snc" -> officinerossi.it, officinerossi.com, ..., officine-rossi.it

Guesses are filtered by DNS liveness (A record, MX as fallback) before
anything is fetched, so dead guesses cost one lookup instead of an HTTP
round-trip.
"""

from typing import List, Optional

import dns.asyncresolver
import dns.exception
from loguru import logger

from lib.resolution.normalize import GENERIC_NAME_WORDS, LEGAL_SUFFIXES, normalize_text

TLDS = ("it", "com", "eu", "net")

# Shared hosting / mail / social hosts; a guess landing here is never the company
GENERIC_DOMAINS = {
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "live.com", "msn.com",
    "icloud.com", "me.com", "aol.com", "mail.com", "protonmail.com",
    "libero.it", "virgilio.it", "alice.it", "tin.it", "email.it",
    "tiscali.it", "fastwebnet.it", "aruba.it", "pec.it", "legalmail.it",
    "wordpress.com", "blogspot.com", "wix.com", "weebly.com", "godaddy.com",
    "linkedin.com", "facebook.com", "twitter.com", "instagram.com", "youtube.com",
}


class DomainGuesser:
    def __init__(self, resolver: Optional[dns.asyncresolver.Resolver] = None, timeout: float = 3.0):
        self._resolver = resolver
        self.timeout = timeout

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        # Built on first use; reads the system resolver config
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.timeout = self.timeout
            self._resolver.lifetime = self.timeout * 2
        return self._resolver

    def guess(self, name: str) -> List[str]:
        """Candidate domains, most likely first. Empty for unusable names."""
        words = [w for w in normalize_text(name).split() if len(w) > 1]
        core = [w for w in words if w not in LEGAL_SUFFIXES and w not in GENERIC_NAME_WORDS]
        if not core:
            return []

        compact = "".join(core)
        if len(compact) < 2:
            return []

        guesses = [f"{compact}.{tld}" for tld in TLDS]
        if len(core) >= 2:
            hyphenated = "-".join(core)
            guesses += [f"{hyphenated}.it", f"{hyphenated}.com"]
            # First distinctive word alone ("Rossi Impianti Elettrici" -> rossi.it)
            if len(core[0]) >= 4:
                guesses += [f"{core[0]}.it", f"{core[0]}.com"]

        seen = set()
        ordered = []
        for domain in guesses:
            if domain not in seen and domain not in GENERIC_DOMAINS:
                seen.add(domain)
                ordered.append(domain)
        return ordered

    async def is_live(self, domain: str) -> bool:
        """True if the domain resolves (A, then MX)."""
        for rdtype in ("A", "MX"):
            try:
                answer = await self.resolver.resolve(domain, rdtype)
                if len(answer) > 0:
                    return True
            except dns.exception.DNSException:
                continue
        return False

    async def live_guesses(self, name: str, limit: int = 3) -> List[str]:
        """Up to ``limit`` guesses that resolve, in guess order."""
        live = []
        for domain in self.guess(name):
            if await self.is_live(domain):
                live.append(domain)
                if len(live) >= limit:
                    break
        logger.debug(f"[guess] {name!r} -> {live or 'no live domains'}")
        return live
