"""Governed HTTP access and page fetching.

GuardedHttp is the one place outbound HTTP goes through: it waits on the
rate governor, classifies the response (or exception), reports the outcome
back to the governor and turns blocks into BlockedError / transport failures
into NetworkError.

PageFetcher loads a candidate website, over plain HTTP first and through
the browser pool when the page needs JavaScript or the HTTP path fails.
"""

import re
from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import BaseModel

from lib.browser import BrowserPool, html_to_text
from lib.resolution.classifier import BlockKind, FailureClassifier
from lib.resolution.errors import BlockedError, NetworkError
from lib.resolution.governor import RateGovernor, target_key
from lib.resolution.normalize import canonicalize_url, domain_of

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "it-IT,it;q=0.9,en;q=0.5",
}

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


class GuardedHttp:
    """httpx client wrapped with governor pacing and failure classification."""

    def __init__(
        self,
        governor: RateGovernor,
        classifier: FailureClassifier,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ):
        self.governor = governor
        self.classifier = classifier
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=DEFAULT_HEADERS)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        target: Optional[str] = None,
        source: str = "",
        inspect_body: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one governed request.

        ``target`` defaults to the URL's host; named APIs pass their own key
        (e.g. "serper") so they are paced independently of page hosts.
        ``inspect_body=False`` skips body heuristics for JSON APIs, whose
        short 2xx bodies are normal.
        """
        target = target or url
        key = target_key(target)
        if self.classifier.is_hot(key):
            logger.warning(f"[http] {key} is hot {self.classifier.profile(key)}, proceeding on governor pacing")

        await self.governor.wait_for_slot(key)
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            sig = self.classifier.classify_error(e, key, source)
            self.governor.report_failure(key)
            raise NetworkError(
                f"{method} {url} failed: {type(e).__name__}",
                context={"target": key, "kind": sig.kind.value},
            ) from e

        ok = 200 <= resp.status_code < 300
        if inspect_body or not ok:
            body = resp.text if inspect_body else ""
            # Markers only count in what a visitor sees, not in scripts or attributes
            visible = html_to_text(body) if inspect_body and ok else None
            sig = self.classifier.classify(resp.status_code, body, key, source, visible_text=visible)
            if sig.is_block:
                self.governor.report_failure(key)
                raise BlockedError(sig, context={"url": url, "status": resp.status_code})

        if resp.status_code >= 500:
            self.governor.report_failure(key)
            raise NetworkError(
                f"{method} {url} returned {resp.status_code}",
                context={"target": key, "status": resp.status_code},
            )

        self.governor.report_success(key)
        return resp

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


class Page(BaseModel):
    """A fetched page. ``url`` is the canonical form of where we landed."""

    url: str
    requested_url: str
    status: int
    title: str = ""
    text: str
    html: str = ""
    via_browser: bool = False


def navigation_targets(canonical: str) -> list[str]:
    """https/http x bare/www variants of a canonical URL, https first."""
    rest = canonical.split("://", 1)[1]
    host, _, path = rest.partition("/")
    path = f"/{path}" if path else ""
    targets = []
    for scheme in ("https", "http"):
        for h in (host, f"www.{host}"):
            targets.append(f"{scheme}://{h}{path}")
    return targets


class PageFetcher:
    def __init__(self, http: GuardedHttp, browser: Optional[BrowserPool] = None):
        self.http = http
        self.browser = browser

    async def fetch(self, url: str) -> Page:
        """Fetch the canonical form of ``url``.

        Raises ValueError for URLs that cannot be canonicalized, BlockedError
        or NetworkError when every path failed.
        """
        canonical = canonicalize_url(url)
        if canonical is None:
            raise ValueError(f"not a fetchable website: {url!r}")

        last_error: Optional[Exception] = None
        needs_browser = False
        for target in navigation_targets(canonical):
            try:
                resp = await self.http.get(target, source="fetch", follow_redirects=True)
            except BlockedError as e:
                last_error = e
                # Challenge/empty pages usually render fine in a real browser
                needs_browser = e.signature.kind in (BlockKind.CHALLENGE_PAGE, BlockKind.EMPTY_RESPONSE)
                break
            except NetworkError as e:
                last_error = e
                continue

            if resp.status_code >= 400:
                last_error = NetworkError(
                    f"GET {target} returned {resp.status_code}",
                    context={"target": domain_of(target), "status": resp.status_code},
                )
                continue

            html = resp.text
            title_match = _TITLE_RE.search(html)
            final_url = canonicalize_url(str(resp.url)) or canonical
            return Page(
                url=final_url,
                requested_url=canonical,
                status=resp.status_code,
                title=html_to_text(title_match.group(1)) if title_match else "",
                text=html_to_text(html),
                html=html,
            )

        if self.browser is not None and (needs_browser or isinstance(last_error, NetworkError)):
            return await self._fetch_with_browser(canonical)

        if last_error is not None:
            raise last_error
        raise NetworkError(f"no response from {canonical}", context={"target": domain_of(canonical)})

    async def _fetch_with_browser(self, canonical: str) -> Page:
        key = target_key(canonical)
        await self.http.governor.wait_for_slot(key)
        try:
            page = await self.browser.navigate(canonical)
        except Exception as e:
            sig = self.http.classifier.classify_error(e, key, "browser")
            self.http.governor.report_failure(key)
            raise NetworkError(
                f"browser navigation to {canonical} failed: {type(e).__name__}",
                context={"target": key, "kind": sig.kind.value},
            ) from e

        try:
            text = await self.browser.extract_text(page)
            final_url = canonicalize_url(page.url) or canonical
        finally:
            await self.browser.close(page)

        sig = self.http.classifier.classify(200, text, key, "browser")
        if sig.is_block:
            self.http.governor.report_failure(key)
            raise BlockedError(sig)
        self.http.governor.report_success(key)

        title, _, body = text.partition("\n")
        logger.debug(f"[fetch] {canonical} rendered via browser ({len(text)} chars)")
        return Page(
            url=final_url,
            requested_url=canonical,
            status=200,
            title=title if body else "",
            text=body or text,
            via_browser=True,
        )
