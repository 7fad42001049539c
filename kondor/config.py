"""KONDOR — Central Configuration via Pydantic Settings."""

import os
from typing import List

from pydantic_settings import BaseSettings


def _split_list(raw: str) -> List[str]:
    """Split a comma / semicolon / newline separated env value."""
    for sep in (";", "\n"):
        raw = raw.replace(sep, ",")
    return [v.strip() for v in raw.split(",") if v.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    default_currency: str = "BRL"

    # ── Query engine ──
    query_cache_ttl_seconds: float = 30.0
    query_cache_max_entries: int = 500
    brand_query_concurrency: int = 4
    default_page_size: int = 25
    max_page_size: int = 500

    # ── Materialization ──
    materialize_timeout_seconds: float = 8.0
    fact_cache_ttl_seconds: float = 30.0
    fact_insert_chunk: int = 500
    ga4_lead_event_names: str = "generate_lead"  # comma separated
    ga4_conversion_event_names: str = ""

    # ── GA4 Data API ──
    ga4_api_base_url: str = "https://analyticsdata.googleapis.com/v1beta"
    ga4_access_token: str = ""
    ga4_request_timeout_seconds: float = 30.0

    # ── Property scope / background sync ──
    scope_apply_concurrency: int = 8
    sync_days: int = 30
    scheduler_enabled: bool = True
    daily_sync_hour: int = 3  # Daily re-sync at 3 AM UTC

    @property
    def effective_database_url(self) -> str:
        """Return the async database URL, falling back to a local SQLite file."""
        url = self.database_url
        if not url:
            # Vercel has a read-only filesystem; use /tmp for SQLite
            if os.environ.get("VERCEL"):
                return "sqlite+aiosqlite:////tmp/kondor.db"
            return "sqlite+aiosqlite:///./kondor.db"
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        if url.startswith("postgresql://"):
            return "postgresql+asyncpg://" + url[len("postgresql://"):]
        if url.startswith("sqlite:///"):
            return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
        return url

    @property
    def default_lead_events(self) -> List[str]:
        return _split_list(self.ga4_lead_event_names)

    @property
    def default_conversion_events(self) -> List[str]:
        return _split_list(self.ga4_conversion_event_names)

    @property
    def effective_insert_chunk(self) -> int:
        return max(100, self.fact_insert_chunk)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
