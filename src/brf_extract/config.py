# [Shared: Configuration]
"""
Application configuration via environment variables.
"""
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "BRF Extraction Gateway"
    debug: bool = False

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Remote inference (OpenAI-compatible, OpenRouter by default)
    inference_base_url: str = "https://openrouter.ai/api/v1"
    inference_app_title: str = "BRF Extraction Gateway"
    inference_referer: str = ""
    worker_model: str = "google/gemini-2.5-pro"
    router_model: str = "google/gemini-2.5-flash"

    # Billing
    markup_percent: float = 20.0
    safety_buffer_percent: float = 25.0
    min_balance: float = 0.01
    default_output_tokens: int = 4096
    image_token_estimate: int = 1500  # per image block, used for reservations only
    circuit_breaker_multiplier: float = 10.0

    # Retry / timeouts
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds, doubles on each retry
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.25  # fraction of the delay added at random
    attempt_timeout_seconds: float = 120.0
    rate_limit_cooldown_ms: int = 60_000

    # Credentials
    credential_encryption_key: str = ""  # Fernet key (urlsafe base64, 32 bytes)
    secret_cache_ttl_seconds: float = 300.0
    pool_credentials: Dict[str, str] = {}  # credential id -> encrypted secret

    # Tenants seeded into the in-memory ledger
    tenant_balances: Dict[str, float] = {}

    # Workers
    worker_temperature: float = 0.1
    worker_max_tokens: int = 8000
    repaired_confidence_factor: float = 0.8
    strict_validation: bool = False
    prompts_dir: str = "./agents"
    semantic_routing: bool = False

    # Alerts
    operator_webhook_url: str = ""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
