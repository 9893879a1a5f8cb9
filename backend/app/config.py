from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    LOG_LEVEL: str = "INFO"
    # Detector thresholds, restricted zones and default alert rules
    PIPELINE_CONFIG: str = "config/pipeline.yaml"
    # Worker shards; a vessel always maps to the same shard
    WORKER_COUNT: int = 4
    # Per-vessel bounded history
    HISTORY_POINTS: int = 50
    HISTORY_PATTERNS: int = 100
    # Vessels silent this long (telemetry time) are dropped from history; never
    # shorter than the AIS gap window
    HISTORY_IDLE_HOURS: float = 48.0
    # Alert store capacity (oldest evicted past this bound)
    ALERT_HISTORY_SIZE: int = 1000
    # Timers (seconds)
    METRICS_INTERVAL_SECONDS: float = 5.0
    CLUSTER_INTERVAL_SECONDS: float = 120.0
    CORRELATION_PRUNE_SECONDS: float = 300.0
    # Cluster analyzer telemetry buffer (points)
    CLUSTER_BUFFER_SIZE: int = 5000
    # Correlations are evicted once their oldest member is older than this
    CORRELATION_RETENTION_HOURS: float = 24.0
    # API authentication (if unset, all requests pass, for local dev)
    TIDEWATCH_API_KEY: str | None = None
    # CORS origins (comma-separated string for env var support)
    CORS_ORIGINS: str = "http://localhost:5173"
    MAX_QUERY_LIMIT: int = 500


settings = Settings()
