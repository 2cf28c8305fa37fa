from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Ubuntu Agent Ops"
    API_PREFIX: str = "/api"
    ENVIRONMENT: str = "development"  # "production" switches logs to JSON

    # Datastore - empty means "not configured", endpoints answer 503
    DATABASE_URL: str = ""

    # Error tracking
    SENTRY_DSN: str = ""

    # Shared secret for scheduled triggers (Authorization: Bearer <secret>)
    CRON_SECRET: str = ""

    # External services used by agents
    GOOGLE_AI_API_KEY: str = ""
    STRIPE_SECRET_KEY: str = ""

    # WhatsApp Cloud API for operator alerts
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_ALERT_RECIPIENT: str = ""
    WHATSAPP_API_BASE: str = "https://graph.facebook.com/v19.0"

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT_SECONDS: float = 60.0
    CIRCUIT_BREAKER_PERSIST: bool = False  # Mirror breaker state into the datastore

    # Retry executor (exponential: 1s, 2s, 4s ... capped at 30s)
    AGENT_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 30000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Event stream keep-alive
    STREAM_HEARTBEAT_SECONDS: float = 30.0

    # Funding agent thresholds
    FRAUD_THRESHOLD_USD: float = 10000.0
    AUTO_APPROVE_THRESHOLD_USD: float = 100.0

    # Policy agent
    POLICY_RELEVANCE_THRESHOLD: float = 0.4

    # In-process scheduler
    RUN_SCHEDULER: bool = False
    SCHEDULED_AGENTS: List[str] = ["agent_004_milestones", "agent_002_funding"]
    SCHEDULE_INTERVAL_MINUTES: int = 60

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
