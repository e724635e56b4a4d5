"""Tests for the error taxonomy."""

import pytest

from lib.resolution.classifier import BlockKind, Signature
from lib.resolution.errors import (
    BlockedError,
    BudgetExceeded,
    EnrichmentError,
    LogicError,
    NetworkError,
    ValidationError,
    is_retryable,
    reason_code_of,
)


@pytest.mark.no_db
class TestErrors:
    def test_transient_errors_are_retryable(self):
        assert is_retryable(NetworkError("reset"))
        sig = Signature(kind=BlockKind.CAPTCHA, target="example.it", source="search")
        assert is_retryable(BlockedError(sig))

    def test_permanent_errors_are_not(self):
        assert not is_retryable(ValidationError("missing name"))
        assert not is_retryable(LogicError("bad transition"))
        assert not is_retryable(BudgetExceeded("over"))
        assert not is_retryable(RuntimeError("boom"))

    def test_blocked_reason_code_carries_kind(self):
        sig = Signature(kind=BlockKind.WAF_BLOCK, target="example.it", source="fetch")
        err = BlockedError(sig)
        assert err.reason_code == "blocked_waf_block"
        assert err.context["target"] == "example.it"
        assert err.signature is sig

    def test_reason_code_of_unknown_exception(self):
        assert reason_code_of(ValueError("x")) == "unexpected_error"
        assert reason_code_of(NetworkError("x")) == "network_error"

    def test_str_includes_context(self):
        err = EnrichmentError("failed", reason_code="custom", context={"job_id": "enrich-1"})
        assert str(err) == "[custom] failed (job_id=enrich-1)"
