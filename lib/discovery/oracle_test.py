"""Tests for the language-model oracle."""

import json

import httpx
import pytest

from lib.discovery.fetcher import GuardedHttp
from lib.discovery.oracle import (
    CostLedger,
    EmployeeEstimate,
    LLMOracle,
    estimate_employees,
    suggest_websites,
)
from lib.resolution.classifier import FailureClassifier
from lib.resolution.errors import BudgetExceeded, ConfigurationError
from lib.resolution.governor import RateGovernor
from lib.resolution.models import CompanyRecord

RECORD = CompanyRecord(name="Rossi Impianti Srl", city="Bergamo")


async def no_sleep(_seconds):
    return None


def completion(content: str, prompt_tokens: int = 1000, completion_tokens: int = 100) -> httpx.Response:
    return httpx.Response(200, json={
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    })


def make_oracle(handler, ledger=None) -> LLMOracle:
    governor = RateGovernor(min_delay=0.0, jitter_max=0.0, sleep=no_sleep)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    http = GuardedHttp(governor, FailureClassifier(), client=client)
    return LLMOracle(http, endpoint="https://res.openai.azure.com/", api_key="secret", ledger=ledger)


@pytest.mark.no_db
class TestLLMOracle:
    def test_requires_endpoint_and_key(self):
        http = GuardedHttp(RateGovernor(), FailureClassifier())
        with pytest.raises(ConfigurationError):
            LLMOracle(http, endpoint="", api_key="x")

    @pytest.mark.asyncio
    async def test_structured_answer_recorded_and_cached(self):
        requests = []

        def handler(request):
            requests.append(request)
            return completion(json.dumps({"employees": 12, "confidence": 0.6, "reasoning": "small team"}))

        oracle = make_oracle(handler)
        first = await oracle.complete_structured("p", EmployeeEstimate, cache_key="rossi", purpose="employees")
        second = await oracle.complete_structured("p", EmployeeEstimate, cache_key="rossi", purpose="employees")

        assert first == second == EmployeeEstimate(employees=12, confidence=0.6, reasoning="small team")
        assert len(requests) == 1
        assert requests[0].headers["api-key"] == "secret"
        assert requests[0].url.path == "/openai/deployments/gpt-4o-mini/chat/completions"
        body = json.loads(requests[0].content)
        assert body["response_format"] == {"type": "json_object"}

        assert oracle.ledger.calls == 1
        assert oracle.ledger.usd == pytest.approx(1000 / 1000 * 0.00015 + 100 / 1000 * 0.0006)
        assert "employees" in oracle.ledger.by_purpose

    @pytest.mark.asyncio
    async def test_invalid_answer_is_none(self):
        oracle = make_oracle(lambda r: completion(json.dumps({"employees": -3, "confidence": 2})))
        assert await oracle.complete_structured("p", EmployeeEstimate) is None
        # Tokens were still spent
        assert oracle.ledger.calls == 1

    @pytest.mark.asyncio
    async def test_non_json_answer_is_none(self):
        oracle = make_oracle(lambda r: completion("about twelve people"))
        assert await oracle.complete_structured("p", EmployeeEstimate) is None

    @pytest.mark.asyncio
    async def test_http_error_is_none(self):
        oracle = make_oracle(lambda r: httpx.Response(400, json={"error": {"message": "bad request"}}))
        assert await oracle.complete_structured("p", EmployeeEstimate) is None
        assert oracle.ledger.calls == 0

    @pytest.mark.asyncio
    async def test_spend_cap(self):
        ledger = CostLedger(max_usd=0.0001)
        oracle = make_oracle(lambda r: completion(json.dumps({"employees": 5, "confidence": 0.5})), ledger)
        await oracle.complete_structured("p", EmployeeEstimate)
        with pytest.raises(BudgetExceeded):
            await oracle.complete_structured("p", EmployeeEstimate)


@pytest.mark.no_db
class TestOracleHelpers:
    @pytest.mark.asyncio
    async def test_suggest_websites_filters_and_caps(self):
        answer = {"candidates": [
            {"url": "https://rossiimpianti.it", "confidence": 0.95},
            {"url": "https://rossi.it", "confidence": 0.5},
            {"url": "https://guess.it", "confidence": 0.2},
        ]}
        oracle = make_oracle(lambda r: completion(json.dumps(answer)))
        guesses = await suggest_websites(oracle, RECORD)
        assert [g.url for g in guesses] == ["https://rossiimpianti.it", "https://rossi.it"]
        assert guesses[0].confidence == 0.85

    @pytest.mark.asyncio
    async def test_suggest_websites_empty_on_bad_answer(self):
        oracle = make_oracle(lambda r: completion("{}}"))
        assert await suggest_websites(oracle, RECORD) == []

    @pytest.mark.asyncio
    async def test_estimate_employees(self):
        oracle = make_oracle(lambda r: completion(json.dumps({"employees": 40, "confidence": 0.4})))
        estimate = await estimate_employees(oracle, RECORD, evidence="Siamo un team di circa 40 persone")
        assert estimate.employees == 40
