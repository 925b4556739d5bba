"""Configuration management for the Supplier Negotiation Crew."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Supplier Negotiation Crew configuration.

    Every value can be overridden through an environment variable of the
    same name (case-insensitive) or a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Service identity
    service_name: str = "supplier-negotiation-crew"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8015
    environment: str = "development"
    log_level: str = "INFO"

    # LLM configuration
    llm_provider: str = "mock"  # mock, openai
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    fast_model: str = "gpt-4o-mini"
    reasoning_model: str = "gpt-4o"
    request_timeout_seconds: float = 60.0

    # Concurrency per model tier
    fast_tier_concurrency: int = 3
    reasoning_tier_concurrency: int = 2

    # Negotiation policy
    max_rounds: int = 3
    disruption_after_round: int = 1
    disruption_capacity_pct: float = 60.0
    default_weighting_profile: str = "balanced"

    # Offer normalizer thresholds
    blanket_price_share: float = 0.7
    blanket_baseline_match_share: float = 0.3
    blanket_price_match_tolerance: float = 0.10
    blanket_ratio_floor: float = 0.5
    blanket_ratio_ceiling: float = 2.0
    outlier_high_ratio: float = 3.0
    outlier_low_ratio: float = 0.2

    # Decision engine
    split_overhead_penalty: float = 0.05
    annual_capital_rate: float = 0.08
    decision_max_attempts: int = 3
    disruption_analysis_max_attempts: int = 3
    extraction_max_attempts: int = 2

    # Agent output shaping
    agent_max_tokens: int = 250
    pillar_output_event_chars: int = 1500
    history_keep_full_turns: int = 2
    history_truncate_chars: int = 120

    # Streaming
    event_queue_size: int = 256
    event_history_ttl_seconds: float = 300.0


def get_settings() -> Settings:
    """Return a settings instance built from the environment."""
    return Settings()
