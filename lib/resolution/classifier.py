"""Failure classifier.

Maps raw HTTP status/body and exceptions to a closed taxonomy of block
kinds, and keeps a rolling per-target count of non-``none`` signatures so
callers can tell when a target is running hot. Advisory only: backoff is the
governor's job, callers use ``signature.is_block`` to decide whether to
report a failure there.
"""

import asyncio
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from lib.resolution.governor import target_key


class BlockKind(str, Enum):
    CAPTCHA = "captcha"
    WAF_BLOCK = "waf_block"
    RATE_LIMITED = "rate_limited"
    CHALLENGE_PAGE = "challenge_page"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    EMPTY_RESPONSE = "empty_response"
    NONE = "none"


class Signature(BaseModel):
    kind: BlockKind
    target: str
    source: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    raw_signal: Optional[str] = None

    @property
    def is_block(self) -> bool:
        return self.kind != BlockKind.NONE


CAPTCHA_MARKERS = (
    "captcha",
    "recaptcha",
    "hcaptcha",
    "turnstile",
    "unusual traffic",
    "traffico insolito",
    "/sorry/",
    "verify you are human",
    "verifica di essere umano",
    "challenge-platform",
    "cf-challenge",
    "challenge-form",
)

CHALLENGE_MARKERS = (
    "access denied",
    "accesso negato",
    "forbidden",
    "please enable javascript",
    "checking your browser",
    "just a moment",
    "attention required",
    "bot detection",
    "automated access",
)

# 2xx bodies shorter than this are treated as empty
MIN_BODY_LENGTH = 200

_TIMEOUT_MARKERS = ("timeout", "timed out", "navigation timeout")
_CONNECTION_MARKERS = (
    "econnrefused", "econnreset", "enotfound",
    "connection refused", "connection reset", "name or service not known",
    "nodename nor servname", "getaddrinfo failed", "no address associated",
)


def _find_marker(body: str, markers) -> Optional[str]:
    for marker in markers:
        if marker in body:
            return marker
    return None


class FailureClassifier:
    def __init__(
        self,
        hot_threshold: int = 5,
        window_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hot_threshold = hot_threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Dict[str, Deque[tuple]] = defaultdict(deque)

    def classify(
        self,
        status_code: int,
        body: Optional[str],
        target: str,
        source: str = "",
        visible_text: Optional[str] = None,
    ) -> Signature:
        """Classify a response. Status codes take precedence over body heuristics.

        When ``visible_text`` is given, 2xx marker checks run on it instead of the raw
        body: a reCAPTCHA script behind a contact form is not an interstitial. The
        empty-body check always measures the raw body.
        """
        text = (body or "").lower()
        scanned = text if visible_text is None else visible_text.lower()
        kind = BlockKind.NONE
        raw = None

        if status_code == 429:
            kind, raw = BlockKind.RATE_LIMITED, "status 429"
        elif status_code == 403:
            marker = _find_marker(text, CAPTCHA_MARKERS)
            if marker:
                kind, raw = BlockKind.CAPTCHA, f"status 403 + '{marker}'"
            else:
                kind, raw = BlockKind.WAF_BLOCK, "status 403"
        elif status_code == 0:
            kind, raw = BlockKind.CONNECTION_REFUSED, "status 0"
        else:
            captcha = _find_marker(scanned, CAPTCHA_MARKERS)
            challenge = None if captcha else _find_marker(scanned, CHALLENGE_MARKERS)
            if captcha:
                kind, raw = BlockKind.CAPTCHA, f"body '{captcha}'"
            elif challenge:
                kind, raw = BlockKind.CHALLENGE_PAGE, f"body '{challenge}'"
            elif 200 <= status_code < 300 and len(text.strip()) < MIN_BODY_LENGTH:
                kind, raw = BlockKind.EMPTY_RESPONSE, f"body {len(text.strip())} chars"

        return self.record(Signature(kind=kind, target=target_key(target), source=source, raw_signal=raw))

    def classify_error(self, exc: BaseException, target: str, source: str = "") -> Signature:
        """Classify a transport/browser exception."""
        message = f"{type(exc).__name__}: {exc}".lower()

        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)) or \
                _find_marker(message, _TIMEOUT_MARKERS):
            kind = BlockKind.TIMEOUT
        elif isinstance(exc, (httpx.ConnectError, ConnectionError)) or \
                _find_marker(message, _CONNECTION_MARKERS):
            kind = BlockKind.CONNECTION_REFUSED
        else:
            kind = BlockKind.CHALLENGE_PAGE

        return self.record(Signature(
            kind=kind, target=target_key(target), source=source, raw_signal=message[:200],
        ))

    def record(self, signature: Signature) -> Signature:
        """Count a signature against its target (no-op for none)."""
        if not signature.is_block:
            return signature
        events = self._events[signature.target]
        now = self._clock()
        events.append((now, signature.kind))
        self._prune(events, now)
        logger.debug(
            f"[classifier] {signature.target} {signature.kind.value} "
            f"({signature.raw_signal}) window={len(events)}"
        )
        if len(events) == self.hot_threshold:
            logger.warning(
                f"[classifier] {signature.target} is hot: {len(events)} blocks "
                f"in {self.window_seconds:.0f}s"
            )
        return signature

    def _prune(self, events: Deque[tuple], now: float) -> None:
        cutoff = now - self.window_seconds
        while events and events[0][0] < cutoff:
            events.popleft()

    def count(self, target: str) -> int:
        events = self._events.get(target_key(target))
        if not events:
            return 0
        self._prune(events, self._clock())
        return len(events)

    def is_hot(self, target: str) -> bool:
        return self.count(target) >= self.hot_threshold

    def profile(self, target: str) -> Dict[str, int]:
        """Per-kind counts inside the window."""
        key = target_key(target)
        events = self._events.get(key)
        if not events:
            return {}
        self._prune(events, self._clock())
        counts: Dict[str, int] = {}
        for _, kind in events:
            counts[kind.value] = counts.get(kind.value, 0) + 1
        return counts

    def reset(self, target: Optional[str] = None) -> None:
        if target is None:
            self._events.clear()
            return
        self._events.pop(target_key(target), None)
