"""Tests for the failure classifier."""

import asyncio

import httpx
import pytest

from lib.resolution.classifier import BlockKind, FailureClassifier

LONG_OK_BODY = "<html><body>" + ("Rossi Snc, Via Roma 1, Milano. " * 20) + "</body></html>"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.no_db
class TestClassify:
    def setup_method(self):
        self.classifier = FailureClassifier()

    def test_429_is_rate_limited(self):
        sig = self.classifier.classify(429, "captcha", "rossi.it")
        assert sig.kind == BlockKind.RATE_LIMITED

    def test_403_with_captcha_body_is_captcha(self):
        body = "<div class='g-recaptcha'>Please verify you are human</div>"
        sig = self.classifier.classify(403, body, "https://www.rossi.it/")
        assert sig.kind == BlockKind.CAPTCHA
        assert sig.target == "rossi.it"
        assert sig.is_block

    def test_403_without_markers_is_waf(self):
        assert self.classifier.classify(403, "Forbidden", "rossi.it").kind == BlockKind.WAF_BLOCK

    def test_status_zero_is_connection_refused(self):
        assert self.classifier.classify(0, "", "rossi.it").kind == BlockKind.CONNECTION_REFUSED

    def test_body_captcha_on_200(self):
        body = LONG_OK_BODY + "Our systems have detected unusual traffic from your network /sorry/"
        assert self.classifier.classify(200, body, "google.com").kind == BlockKind.CAPTCHA

    def test_markers_in_scripts_ignored_when_visible_text_given(self):
        body = "<script src='https://www.google.com/recaptcha/api.js'></script>" + LONG_OK_BODY
        visible = "Rossi Snc, Via Roma 1, Milano. " * 20
        assert self.classifier.classify(200, body, "rossi.it", visible_text=visible).kind == BlockKind.NONE
        assert self.classifier.classify(200, body, "rossi.it").kind == BlockKind.CAPTCHA

    def test_body_challenge_on_200(self):
        body = LONG_OK_BODY + "<title>Just a moment...</title> Checking your browser"
        assert self.classifier.classify(200, body, "rossi.it").kind == BlockKind.CHALLENGE_PAGE

    def test_short_2xx_is_empty(self):
        assert self.classifier.classify(200, "<html></html>", "rossi.it").kind == BlockKind.EMPTY_RESPONSE

    def test_short_404_is_not_empty_response(self):
        assert self.classifier.classify(404, "not found", "rossi.it").kind == BlockKind.NONE

    def test_normal_page_is_none(self):
        sig = self.classifier.classify(200, LONG_OK_BODY, "rossi.it")
        assert sig.kind == BlockKind.NONE
        assert not sig.is_block
        assert self.classifier.count("rossi.it") == 0


@pytest.mark.no_db
class TestClassifyError:
    def setup_method(self):
        self.classifier = FailureClassifier()

    @pytest.mark.parametrize("exc", [
        httpx.ReadTimeout("read timed out"),
        asyncio.TimeoutError(),
        RuntimeError("Navigation timeout of 30000 ms exceeded"),
    ])
    def test_timeouts(self, exc):
        assert self.classifier.classify_error(exc, "rossi.it").kind == BlockKind.TIMEOUT

    @pytest.mark.parametrize("exc", [
        httpx.ConnectError("[Errno 111] Connection refused"),
        ConnectionResetError(),
        RuntimeError("net::ERR_NAME_NOT_RESOLVED getaddrinfo ENOTFOUND rossi.it"),
    ])
    def test_connection_errors(self, exc):
        assert self.classifier.classify_error(exc, "rossi.it").kind == BlockKind.CONNECTION_REFUSED

    def test_anything_else_is_challenge(self):
        assert self.classifier.classify_error(ValueError("weird"), "rossi.it").kind == BlockKind.CHALLENGE_PAGE


@pytest.mark.no_db
class TestRollingWindow:
    def test_hot_after_threshold(self):
        classifier = FailureClassifier(hot_threshold=5)
        for _ in range(4):
            classifier.classify(429, "", "rossi.it")
        assert not classifier.is_hot("rossi.it")
        classifier.classify(403, "", "rossi.it")
        assert classifier.is_hot("rossi.it")
        assert classifier.profile("rossi.it") == {"rate_limited": 4, "waf_block": 1}
        assert not classifier.is_hot("other.it")

    def test_window_expires(self):
        clock = FakeClock()
        classifier = FailureClassifier(hot_threshold=2, window_seconds=600, clock=clock)
        classifier.classify(429, "", "rossi.it")
        clock.now = 700
        classifier.classify(429, "", "rossi.it")
        assert classifier.count("rossi.it") == 1
        assert not classifier.is_hot("rossi.it")

    def test_reset(self):
        classifier = FailureClassifier(hot_threshold=1)
        classifier.classify(429, "", "rossi.it")
        assert classifier.is_hot("rossi.it")
        classifier.reset("rossi.it")
        assert not classifier.is_hot("rossi.it")
        assert classifier.profile("rossi.it") == {}
