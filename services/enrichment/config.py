"""Engine configuration from environment variables.

Everything tunable lives here so workflows only ever build one EngineConfig
and pass it down. Values come from the process env (a local .env is loaded
first).
"""

import os
import sys
from typing import Mapping, Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from lib.resolution.errors import ConfigurationError

load_dotenv()


# env var -> EngineConfig field
ENV_FIELDS = {
    "ENRICH_WORKERS": "workers",
    "ENRICH_MAX_ATTEMPTS": "max_attempts",
    "ENRICH_RETRY_BASE_SECONDS": "retry_base_seconds",
    "ENRICH_WEBSITE_THRESHOLD": "website_threshold",
    "ENRICH_FINANCIAL_THRESHOLD": "financial_threshold",
    "ENRICH_FIELD_BUDGET_SECONDS": "field_budget_seconds",
    "ENRICH_USE_BROWSER": "use_browser",
    "GOVERNOR_MIN_DELAY": "governor_min_delay",
    "GOVERNOR_MAX_DELAY": "governor_max_delay",
    "GOVERNOR_FAILURE_THRESHOLD": "governor_failure_threshold",
    "GOVERNOR_MAX_COOLDOWN": "governor_max_cooldown",
    "CLASSIFIER_HOT_THRESHOLD": "classifier_hot_threshold",
    "CACHE_MAX_ENTRIES": "cache_max_entries",
    "CACHE_TTL_SECONDS": "cache_ttl_seconds",
    "CACHE_NEGATIVE_TTL_SECONDS": "cache_negative_ttl_seconds",
    "SERPER_API_KEY": "serper_api_key",
    "AZURE_OPENAI_ENDPOINT": "azure_openai_endpoint",
    "AZURE_OPENAI_API_KEY": "azure_openai_api_key",
    "AZURE_OPENAI_DEPLOYMENT": "azure_openai_deployment",
    "AZURE_OPENAI_API_VERSION": "azure_openai_api_version",
    "LLM_MAX_USD": "llm_max_usd",
    "SQS_ENRICHMENT_QUEUE_URL": "sqs_queue_url",
    "DATABASE_URL": "database_url",
    "ENRICH_DB_HOST": "db_host",
    "SLACK_WEBHOOK_URL": "slack_webhook_url",
}


class EngineConfig(BaseModel):
    """Frozen engine settings. Build with EngineConfig.from_env()."""

    model_config = ConfigDict(frozen=True)

    # Queue / workers
    workers: int = Field(default=4, ge=1, le=64)
    max_attempts: int = Field(default=3, ge=1, le=20)
    retry_base_seconds: float = Field(default=30.0, ge=0.0)

    # Waterfalls
    website_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    financial_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    field_budget_seconds: float = Field(default=90.0, gt=0.0)
    use_browser: bool = False

    # Rate governor / classifier
    governor_min_delay: float = Field(default=1.5, ge=0.0)
    governor_max_delay: float = Field(default=30.0, gt=0.0)
    governor_failure_threshold: int = Field(default=3, ge=1)
    governor_max_cooldown: float = Field(default=120.0, gt=0.0)
    classifier_hot_threshold: int = Field(default=5, ge=1)

    # Outcome cache
    cache_max_entries: int = Field(default=10_000, ge=1)
    cache_ttl_seconds: float = Field(default=24 * 3600.0, gt=0.0)
    cache_negative_ttl_seconds: float = Field(default=3600.0, gt=0.0)

    # Collaborators (all optional; missing ones disable their strategies)
    serper_api_key: Optional[str] = None
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_key: Optional[str] = None
    azure_openai_deployment: str = "gpt-4o-mini"
    azure_openai_api_version: str = "2024-08-01-preview"
    llm_max_usd: float = Field(default=5.0, ge=0.0)

    # Infra
    sqs_queue_url: Optional[str] = None
    database_url: Optional[str] = None
    db_host: Optional[str] = None
    slack_webhook_url: Optional[str] = None

    @property
    def oracle_enabled(self) -> bool:
        return bool(self.azure_openai_endpoint and self.azure_openai_api_key)

    @property
    def database_configured(self) -> bool:
        return bool(self.database_url or self.db_host)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build from ``env`` (defaults to os.environ). Blank values mean unset."""
        env = os.environ if env is None else env
        values = {}
        for var, field in ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or not raw.strip():
                continue
            values[field] = raw.strip()

        try:
            config = cls.model_validate(values)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{_env_name(err['loc'][0])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"invalid configuration: {problems}") from e

        if config.governor_max_delay < config.governor_min_delay:
            raise ConfigurationError(
                "invalid configuration: GOVERNOR_MAX_DELAY must be >= GOVERNOR_MIN_DELAY"
            )
        return config

    def describe(self) -> str:
        """One-line summary for startup logs (no secrets)."""
        return (
            f"workers={self.workers} max_attempts={self.max_attempts} "
            f"retry_base={self.retry_base_seconds:.0f}s "
            f"website_threshold={self.website_threshold:.2f} "
            f"search={'serper+ddg' if self.serper_api_key else 'ddg'} "
            f"oracle={'on' if self.oracle_enabled else 'off'} "
            f"queue={'sqs' if self.sqs_queue_url else 'memory'} "
            f"store={'postgres' if self.database_configured else 'memory'}"
        )


def _env_name(field: str) -> str:
    for var, name in ENV_FIELDS.items():
        if name == field:
            return var
    return str(field)


LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "{message} | <dim>{extra}</dim>"
)


def configure_logging(verbose: bool = False) -> None:
    """Single stderr sink that shows bound job context."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO", format=LOG_FORMAT)
