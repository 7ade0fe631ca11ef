from typing import Dict, List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field

load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "TasteGraph API"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Cross-domain taste recommendations with explanations"
    APP_AUTHOR: str = "TasteGraph Team"

    ENVIRONMENT: str = Field(default="development", description="development | staging | production | test")

    @computed_field
    @property
    def is_production(self) -> bool:
        """True when running with production semantics (strict rate limiting for unknown users)."""
        return self.ENVIRONMENT.strip().lower() == "production"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TO_FILE: bool = True

    # Local auth (bearer tokens only identify the caller for rate limiting)
    LOCAL_AUTH_SECRET: str = "JWT_SECRET_KEY"
    LOCAL_AUTH_TOKEN_EXP_SECONDS: int = 3600
    ADMIN_EMAILS: List[str] = Field(default_factory=list, description="Emails allowed to call /v1/admin endpoints")

    # Cultural graph service
    GRAPH_API_URL: str = "https://hackathon.api.qloo.com"
    GRAPH_API_KEY: str = ""
    GRAPH_TIMEOUT_SECONDS: float = 15.0
    GRAPH_MAX_RETRIES: int = 3
    GRAPH_BACKOFF_MULTIPLIER: float = 2.0
    GRAPH_INITIAL_DELAY_SECONDS: float = 1.0
    GRAPH_MAX_DELAY_SECONDS: float = 10.0

    # Cross-domain requests
    TAG_REDUCTION_LADDER: List[int] = Field(default_factory=lambda: [8, 5, 3, 1])
    DOMAIN_RETRY_MAX_RETRIES: int = 1
    DOMAIN_BUDGET_SECONDS: float = 8.0
    DOMAIN_MAX_LIMIT: int = 10
    DOMAIN_CONCURRENCY: int = 4
    DOMAIN_REQUEST_DELAY_SECONDS: float = 0.1
    SLOW_DOMAIN_TIMEOUTS: Dict[str, float] = Field(
        default_factory=lambda: {"restaurant": 6.0, "brand": 8.0},
        description="Per-call timeout for domains known to have variable latency",
    )
    SLOW_DOMAIN_MAX_LIMIT: int = 5
    RESTRICTED_DOMAINS: List[str] = Field(default_factory=lambda: ["game"])

    # Fallback candidates
    FALLBACK_CONFIDENCE_MIN: float = 0.3
    FALLBACK_CONFIDENCE_MAX: float = 0.5
    FALLBACK_CANDIDATES_PER_DOMAIN: int = 3

    # Explanation service (OpenAI)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_MAX_TOKENS: int = 200
    OPENAI_TIMEOUT_SECONDS: float = 10.0
    EXPLANATION_BATCH_SIZE: int = 5
    EXPLANATION_BATCH_DELAY_SECONDS: float = 0.2
    EXPLANATION_MAX_RETRIES: int = 2
    EXPLANATION_CACHE_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # Cache
    CACHE_MAX_ENTRIES: int = 1000
    CACHE_SWEEP_INTERVAL_SECONDS: float = 300.0
    CACHE_REAL_TTL_SECONDS: int = 24 * 60 * 60
    CACHE_FALLBACK_TTL_SECONDS: int = 5 * 60
    CACHE_INSIGHTS_TTL_SECONDS: int = 24 * 60 * 60

    # Rate limiting
    RATE_LIMIT_TIERS: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: {
            "free": {
                "requests_per_minute": 10,
                "requests_per_hour": 100,
                "requests_per_day": 500,
                "burst_limit": 15,
            },
            "premium": {
                "requests_per_minute": 50,
                "requests_per_hour": 1000,
                "requests_per_day": 10000,
                "burst_limit": 75,
            },
            "enterprise": {
                "requests_per_minute": 200,
                "requests_per_hour": 10000,
                "requests_per_day": 100000,
                "burst_limit": 300,
            },
        }
    )
    RATE_LIMIT_BURST_WINDOW_SECONDS: int = 10

    # Orchestration
    DEFAULT_RECOMMENDATION_LIMIT: int = 5
    MAX_RECOMMENDATION_LIMIT: int = 20
    MAX_INPUT_ENTITIES: int = 5
    CONFIDENCE_THRESHOLD: float = 0.3
    MAX_CROSS_DOMAIN_RESULTS: int = 50
    MAX_PROFILE_TAGS: int = 8
    ENTITY_CONCURRENCY: int = 3
    CANDIDATE_BUDGET_SECONDS: float = 20.0

    # Degradation chain
    HISTORY_RELEVANCE_THRESHOLD: float = 0.3
    HISTORY_USER_LOOKBACK: int = 10
    POPULARITY_LOOKBACK_DAYS: int = 7
    POPULARITY_MAX_ENTRIES: int = 50

    @computed_field
    @property
    def graph_configured(self) -> bool:
        """Whether a usable cultural graph API key is present."""
        key = self.GRAPH_API_KEY.strip()
        return bool(key) and key not in {"your_qloo_api_key_here", "your_graph_api_key_here"}


settings = Settings()
