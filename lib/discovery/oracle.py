"""Language-model oracle (Azure OpenAI chat completions, JSON mode).

complete_structured() is the only entry point: the answer must validate
against the caller's pydantic schema or the call yields None. Every call is
recorded in a CostLedger; once the ledger's spend cap is reached further
calls raise BudgetExceeded.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from lib.discovery.fetcher import GuardedHttp
from lib.resolution.cache import BoundedCache
from lib.resolution.errors import BudgetExceeded, ConfigurationError
from lib.resolution.models import CompanyRecord

T = TypeVar("T", bound=BaseModel)

# USD per 1K tokens (gpt-4o-mini list price)
DEFAULT_INPUT_PRICE = 0.00015
DEFAULT_OUTPUT_PRICE = 0.0006

# Oracle website answers are never trusted more than this
ORACLE_CONFIDENCE_CAP = 0.85
ORACLE_MIN_CONFIDENCE = 0.3
ORACLE_MAX_CANDIDATES = 5


@dataclass
class CostLedger:
    """Token and dollar accounting for LLM calls."""

    max_usd: Optional[float] = None
    input_price_per_1k: float = DEFAULT_INPUT_PRICE
    output_price_per_1k: float = DEFAULT_OUTPUT_PRICE
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    usd: float = 0.0
    by_purpose: Dict[str, float] = field(default_factory=dict)

    def check(self) -> None:
        if self.max_usd is not None and self.usd >= self.max_usd:
            raise BudgetExceeded(
                f"LLM spend cap ${self.max_usd:.2f} reached",
                context={"spent_usd": round(self.usd, 4)},
            )

    def record(self, prompt_tokens: int, completion_tokens: int, purpose: str = "") -> float:
        cost = (
            prompt_tokens / 1000 * self.input_price_per_1k
            + completion_tokens / 1000 * self.output_price_per_1k
        )
        self.calls += 1
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.usd += cost
        if purpose:
            self.by_purpose[purpose] = self.by_purpose.get(purpose, 0.0) + cost
        return cost

    def summary(self) -> Dict[str, float]:
        return {
            "calls": self.calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "usd": round(self.usd, 6),
        }


class _Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class _Message(BaseModel):
    content: Optional[str] = None


class _Choice(BaseModel):
    message: _Message


class _ChatResponse(BaseModel):
    choices: List[_Choice]
    usage: _Usage = Field(default_factory=_Usage)


class LLMOracle:
    def __init__(
        self,
        http: GuardedHttp,
        endpoint: str,
        api_key: str,
        deployment: str = "gpt-4o-mini",
        api_version: str = "2024-12-01-preview",
        ledger: Optional[CostLedger] = None,
        cache: Optional[BoundedCache] = None,
        max_tokens: int = 800,
    ):
        if not endpoint or not api_key:
            raise ConfigurationError("AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY are required")
        self.http = http
        self.url = (
            f"{endpoint.rstrip('/')}/openai/deployments/{deployment}"
            f"/chat/completions?api-version={api_version}"
        )
        self.api_key = api_key
        self.ledger = ledger or CostLedger()
        self.cache = cache if cache is not None else BoundedCache(max_entries=2000, ttl_seconds=24 * 3600)
        self.max_tokens = max_tokens

    async def complete_structured(
        self,
        prompt: str,
        schema: Type[T],
        cache_key: Optional[str] = None,
        purpose: str = "",
    ) -> Optional[T]:
        """Ask for JSON matching ``schema``. None when the answer doesn't validate."""
        key = (schema.__name__, cache_key) if cache_key else None
        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        self.ledger.check()
        resp = await self.http.post(
            self.url,
            target="azure-openai",
            source="oracle",
            inspect_body=False,
            headers={"api-key": self.api_key, "Content-Type": "application/json"},
            json={
                "messages": [
                    {"role": "system", "content": f"Reply with a single JSON object matching this schema: "
                                                  f"{json.dumps(schema.model_json_schema())}"},
                    {"role": "user", "content": prompt},
                ],
                "max_completion_tokens": self.max_tokens,
                "response_format": {"type": "json_object"},
            },
        )
        if resp.status_code != 200:
            logger.warning(f"[oracle] Azure OpenAI error: {resp.status_code} - {resp.text[:200]}")
            return None

        try:
            chat = _ChatResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"[oracle] malformed completion envelope: {str(e)[:120]}")
            return None

        cost = self.ledger.record(chat.usage.prompt_tokens, chat.usage.completion_tokens, purpose)
        content = chat.choices[0].message.content if chat.choices else None
        if not content:
            return None

        try:
            answer = schema.model_validate_json(content)
        except PydanticValidationError as e:
            logger.info(f"[oracle] answer failed {schema.__name__} validation: {str(e)[:120]}")
            return None

        logger.debug(f"[oracle] {purpose or schema.__name__} ok (${cost:.5f})")
        if key is not None:
            self.cache.set(key, answer)
        return answer


# ── Schemas used by strategies ───────────────────────────────────────────


class WebsiteGuess(BaseModel):
    url: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class WebsiteGuesses(BaseModel):
    candidates: List[WebsiteGuess] = []


class EmployeeEstimate(BaseModel):
    employees: int = Field(ge=1, le=500000)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


async def suggest_websites(oracle: LLMOracle, record: CompanyRecord) -> List[WebsiteGuess]:
    """Oracle website candidates, filtered and capped."""
    prompt = (
        f"Company: {record.name}\nCity: {record.city or ''}\nAddress: {record.address or ''}\n"
        f"Category: {record.category or ''}\n"
        "List the most likely official website URLs of this Italian company, "
        "with a confidence between 0 and 1 for each."
    )
    key = f"{record.name}|{record.city or ''}".lower()
    answer = await oracle.complete_structured(prompt, WebsiteGuesses, cache_key=key, purpose="website")
    if answer is None:
        return []
    kept = [
        g.model_copy(update={"confidence": min(g.confidence, ORACLE_CONFIDENCE_CAP)})
        for g in answer.candidates
        if g.confidence > ORACLE_MIN_CONFIDENCE
    ]
    return sorted(kept, key=lambda g: g.confidence, reverse=True)[:ORACLE_MAX_CANDIDATES]


async def estimate_employees(
    oracle: LLMOracle, record: CompanyRecord, evidence: str = "",
) -> Optional[EmployeeEstimate]:
    prompt = (
        f"Company: {record.name}\nCity: {record.city or ''}\nCategory: {record.category or ''}\n"
        f"Evidence:\n{evidence[:4000]}\n"
        "Estimate the number of employees of this company."
    )
    key = f"{record.name}|{record.city or ''}".lower()
    return await oracle.complete_structured(prompt, EmployeeEstimate, cache_key=key, purpose="employees")
