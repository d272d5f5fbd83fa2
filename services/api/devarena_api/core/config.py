from __future__ import annotations

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DEVARENA_", extra="ignore")

    public_base_url: str = "http://localhost:3000"
    trust_proxy_headers: bool = False
    allowed_hosts: str = "localhost,127.0.0.1,testserver"
    cors_allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    log_json: bool = False

    db_url: str = "sqlite:///./artifacts/devarena.db"

    auth_jwt_secret: str = "dev-secret-change-me"
    auth_jwt_issuer: str = "devarena-local"
    auth_jwt_exp_minutes: int = 60 * 24 * 7

    # Repository data source (GitHub REST).
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    github_timeout_sec: float = 20.0
    github_max_connections: int = 10
    # Parallel fork-contribution lookups per profile.
    github_fork_check_concurrency: int = 4

    # Profile generator / comparative evaluator (Gemini REST).
    ai_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ai_api_key: str | None = None
    ai_model: str = "gemini-2.5-pro"
    ai_profile_model: str = "gemini-2.5-flash"
    ai_timeout_sec: float = 240.0
    ai_is_byok: bool = False

    # Result emails (Resend REST); mock mode logs instead of sending.
    email_mode: Literal["resend", "mock"] = "mock"
    resend_api_url: str = "https://api.resend.com"
    resend_api_key: str | None = None
    email_from: str = "arena@devarena.local"

    arena_k_factor: int = 32
    arena_initial_elo: int = 1200
    arena_profile_stale_hours: int = 24
    arena_profile_top_repos: int = 10
    arena_max_concurrent_battles: int = 4
    arena_battle_timeout_sec: float = 300.0
    arena_progress_queue_size: int = 64
    # Outbox drain and stale-battle sweep period.
    arena_maintenance_interval_sec: float = 30.0

    # Public alpha guardrails (in-memory rate limit; per-process).
    rate_limit_enabled: bool = True
    rate_limit_battle_execute_per_minute: int = 3
    rate_limit_battle_execute_per_hour: int = 30
    rate_limit_battle_create_per_minute: int = 6
    rate_limit_battle_create_per_hour: int = 60

    @field_validator(
        "arena_max_concurrent_battles",
        "arena_progress_queue_size",
        "github_max_connections",
        "github_fork_check_concurrency",
    )
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("must be >= 1")
        return int(v)

    @field_validator("arena_k_factor")
    @classmethod
    def _validate_k_factor(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("DEVARENA_ARENA_K_FACTOR must be positive")
        return int(v)

    @field_validator("arena_battle_timeout_sec", "arena_maintenance_interval_sec")
    @classmethod
    def _validate_seconds(cls, v: float) -> float:
        if float(v) <= 0:
            raise ValueError("must be positive")
        return float(v)
