"""Service settings for the presence admission pipeline.

All settings use the PRESENCE_ environment prefix and cover:
- Shared infrastructure (Redis counter/cache store, primary database, Kafka)
- Verdict signing
- Rate limiting, device trust, and motion guard thresholds
- Policy cache TTL and factor evaluation timeouts
- Logging
"""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the presence admission service.

    Environment variable prefix: PRESENCE_
    """

    service_name: str = "presence-admission"

    # -------------------------------------------------------------------------
    # Infrastructure
    # -------------------------------------------------------------------------

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the rate-limit counter store and the policy cache.",
    )
    redis_key_prefix: str = Field(
        default="attendance:",
        description="Prefix applied to every Redis key written by this service.",
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost/attendance",
        description="SQLAlchemy async URL of the primary database (policies, devices, attendance).",
    )
    database_pool_size: int = Field(default=10, description="Primary DB connection pool size.")
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka bootstrap servers for review/rejection alerts.",
    )
    alert_topic: str = Field(
        default="presence.alerts",
        description="Kafka topic that receives review and rejection alerts.",
    )
    use_in_memory_stores: bool = Field(
        default=False,
        description=(
            "Use process-local stores instead of Redis, the database and Kafka "
            "(single node, local runs, tests)."
        ),
    )

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    signing_secret: SecretStr = Field(
        description="Server-held HMAC-SHA-256 secret used to sign integrity verdicts.",
    )

    # -------------------------------------------------------------------------
    # Rate limiting
    # -------------------------------------------------------------------------

    rate_limit_max_requests: int = Field(
        default=12,
        ge=1,
        description="Maximum admission attempts per identity inside one window.",
    )
    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        description="Sliding window length in seconds.",
    )

    # -------------------------------------------------------------------------
    # Device trust
    # -------------------------------------------------------------------------

    require_trusted_device: bool = Field(
        default=True,
        description="Reject submissions from devices not flagged as trusted.",
    )
    min_trust_score: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Minimum device trust score when a trusted device is required.",
    )

    # -------------------------------------------------------------------------
    # Motion guard
    # -------------------------------------------------------------------------

    motion_max_speed_mps: float = Field(
        default=8.0,
        description="Maximum plausible travel speed between two fixes (m/s, ~29 km/h).",
    )
    motion_teleport_distance_meters: float = Field(
        default=1000.0,
        description="Distance between consecutive fixes above which a teleport is flagged.",
    )
    motion_min_time_delta_seconds: float = Field(
        default=1.0,
        description="Below this elapsed time the speed check is skipped.",
    )

    # -------------------------------------------------------------------------
    # Policy cache and factor evaluation
    # -------------------------------------------------------------------------

    policy_cache_ttl_seconds: int = Field(
        default=300,
        description="TTL for cached policy documents and their ETags.",
    )
    factor_evaluation_timeout_seconds: float = Field(
        default=10.0,
        description="Overall timeout for the concurrent factor fan-out of one evaluation.",
    )
    face_service_url: str = Field(
        default="",
        description="Base URL of the face recognition service. Empty disables the face factor.",
    )
    face_service_timeout_ms: int = Field(
        default=3000,
        description="Hard timeout for a face recognition call; timeouts fail closed.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Root log level.")
    json_logs: bool = Field(default=True, description="Emit JSON log lines.")

    model_config = SettingsConfigDict(env_prefix="PRESENCE_")
