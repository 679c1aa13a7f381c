from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GALLERYSWAP_", extra="ignore")

    service_version: str = "2026.10"
    trust_proxy_headers: bool = False
    allowed_hosts: str = "localhost,127.0.0.1,testserver"
    # Storefront scripts call the public endpoints from arbitrary shop domains.
    cors_allowed_origins: str = "*"
    log_json: bool = False

    db_url: str = "sqlite:///./artifacts/galleryswap.db"

    # Salt for hashed client identifiers (ip / user agent) in rate limiting.
    hash_secret: str = "dev-secret-change-me"

    # Rotation trigger (cron) shared secret. When unset the trigger is disabled
    # unless trust_cron_header is on and the platform cron header is present.
    cron_secret: str | None = None
    trust_cron_header: bool = False

    admin_token: str | None = None

    # HMAC-SHA256 key for platform order webhooks; unset disables them.
    webhook_secret: str | None = None

    # Catalog collaborator.
    # - mock: in-memory catalog (local runs, tests)
    # - http: JSON API at catalog_base_url
    catalog_mode: str = "mock"
    catalog_base_url: str | None = None
    catalog_api_token: str | None = None
    catalog_timeout_sec: float = 10.0
    catalog_max_attempts: int = 3
    catalog_backoff_sec: float = 0.5

    # Rotation scheduler.
    scheduler_enabled: bool = False
    scheduler_interval_minutes: int = 10
    scheduler_batch_limit: int = 200
    # Daily statistics rollup runs on the first tick after this UTC hour.
    stats_rollup_hour_utc: int = 2

    # Storefront adapter / active-case query.
    active_case_cache_sec: int = 120
    storefront_api_base: str = "/api/storefront"
    storefront_events_path: str = "/api/events/track"
    storefront_timeout_sec: float = 3.0
    storefront_max_attempts: int = 3
    storefront_backoff_sec: float = 0.1
    storefront_session_ttl_hours: int = 12

    # Public ingestion guardrails (in-memory rate limit; per-process).
    rate_limit_enabled: bool = True
    rate_limit_events_track_per_minute: int = 120
    rate_limit_events_track_per_hour: int = 2000
    rate_limit_events_track_per_minute_ip: int = 600
    rate_limit_events_track_per_hour_ip: int = 10000
    rate_limit_active_case_per_minute_ip: int = 600
    rate_limit_active_case_per_hour_ip: int = 10000

    @field_validator("stats_rollup_hour_utc")
    @classmethod
    def _validate_rollup_hour(cls, v: int) -> int:
        if int(v) < 0 or int(v) > 23:
            raise ValueError(
                "GALLERYSWAP_STATS_ROLLUP_HOUR_UTC must be within 0..23 "
                f"(got {v!r})"
            )
        return int(v)

    @field_validator("catalog_mode")
    @classmethod
    def _validate_catalog_mode(cls, v: str) -> str:
        mode = str(v or "").strip().lower() or "mock"
        if mode not in {"mock", "http"}:
            raise ValueError(
                f"GALLERYSWAP_CATALOG_MODE must be 'mock' or 'http' (got {v!r})"
            )
        return mode
