from pathlib import Path
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


ENV_PATH = Path(__file__).resolve().parents[2] / ".env"

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        env_prefix="BOXSYNC_",
        extra="ignore",
    )

    # App
    env: str = "dev"
    service_name: str = "boxsync"

    # Collections
    listings_collection: str = "listings"
    users_collection: str = "users"

    # Local cache
    cache_ttl_seconds: float = 300.0
    cache_dir: str | None = None  # None => in-memory only

    # Retry policy (single remote call)
    retry_base_delays_ms: list[int] = [1000, 2000, 5000]
    retry_jitter_ms: int = 1000
    retry_max_attempts: int = 3

    # Live subscription reconnect policy
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30_000
    reconnect_max_attempts: int = 5
    subscription_limit: int = 50

    # Connection monitor
    connection_poll_interval_seconds: float = 2.0

    # Listing rules
    listing_lifetime_hours: int = 48
    comment_max_chars: int = 500

    # Remote document store
    store_kind: str = "memory"  # "memory" | "firestore"
    firestore_base_url: str = "https://firestore.googleapis.com/v1"
    firestore_project_id: str = ""
    firestore_database: str = "(default)"
    firestore_token: SecretStr | None = None
    firestore_poll_interval_seconds: float = 5.0
    http_timeout_seconds: float = 20.0

    # Telemetry
    otlp_endpoint: str | None = None  # e.g. http://localhost:4318 (Jaeger OTLP HTTP)


settings = Settings()
