# config.py – Centralized configuration with validation
from __future__ import annotations
import os
from dataclasses import dataclass, field


def _getenv_bool(key: str, default: bool = False) -> bool:
    """Helper to parse boolean environment variables consistently."""
    value = os.getenv(key, str(default)).lower()
    return value in ("1", "true", "yes", "y", "on")


def _getenv_int(key: str, default: int) -> int:
    """Helper to parse integer environment variables with validation."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: {os.getenv(key)}")


def _getenv_float(key: str, default: float) -> float:
    """Helper to parse float environment variables with validation."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: {os.getenv(key)}")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    url: str = os.getenv("DATABASE_URL", "")
    pool_min_size: int = _getenv_int("DB_POOL_MIN_SIZE", 1)
    pool_max_size: int = _getenv_int("DB_POOL_MAX_SIZE", 10)

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class RedisConfig:
    """Redis configuration (notification ledger)."""
    url: str = os.getenv("REDIS_URL", "")
    socket_timeout: float = _getenv_float("REDIS_SOCKET_TIMEOUT", 5)
    ledger_key_prefix: str = os.getenv("LEDGER_KEY_PREFIX", "notifications:ledger:")

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class AnalyzerConfig:
    """NLP / translation / image analyzer configuration."""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    vision_model: str = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
    openai_timeout: float = _getenv_float("OPENAI_TIMEOUT", 20)
    temperature: float = _getenv_float("OPENAI_TEMPERATURE", 0.1)

    # Throttling
    max_retries: int = _getenv_int("ANALYZER_MAX_RETRIES", 3)
    backoff_seconds: float = _getenv_float("ANALYZER_BACKOFF_SECONDS", 2.0)
    requests_per_minute: int = _getenv_int("ANALYZER_REQUESTS_PER_MINUTE", 400)

    # Entity handling
    location_min_score: float = _getenv_float("ANALYZER_LOCATION_MIN_SCORE", 0.7)
    fallback_confidence: float = _getenv_float("ANALYZER_FALLBACK_CONFIDENCE", 0.5)

    # Image location
    image_location_enabled: bool = _getenv_bool("IMAGE_LOCATION_ENABLED", True)
    nominatim_url: str = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")
    nominatim_user_agent: str = os.getenv("NOMINATIM_USER_AGENT", "disaster-pipeline/1.0")
    geocode_timeout: float = _getenv_float("GEOCODE_TIMEOUT", 10)

    @property
    def is_configured(self) -> bool:
        return bool(self.openai_api_key)


@dataclass(frozen=True)
class SignalConfig:
    """Weather / seismic signal provider configuration."""
    openweather_api_key: str = os.getenv("OPENWEATHER_API_KEY", "")
    openweather_url: str = os.getenv("OPENWEATHER_URL", "https://api.openweathermap.org/data/3.0/onecall")
    usgs_feed_url: str = os.getenv(
        "USGS_FEED_URL",
        "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary/all_day.geojson",
    )
    timeout: float = _getenv_float("SIGNAL_TIMEOUT", 10)
    quake_radius_km: float = _getenv_float("QUAKE_RADIUS_KM", 300)
    quake_min_magnitude: float = _getenv_float("QUAKE_MIN_MAGNITUDE", 4.0)
    quake_lookback_hours: int = _getenv_int("QUAKE_LOOKBACK_HOURS", 24)


@dataclass(frozen=True)
class PipelineConfig:
    """Enrichment, spike detection and orchestration settings."""
    max_text_bytes: int = _getenv_int("MAX_TEXT_BYTES", 5000)
    dedup_window_hours: int = _getenv_int("DEDUP_WINDOW_HOURS", 24)
    inter_post_delay_seconds: float = _getenv_float("INTER_POST_DELAY_SECONDS", 1.0)
    cycle_interval_seconds: float = _getenv_float("CYCLE_INTERVAL_SECONDS", 60)
    queue_max_size: int = _getenv_int("QUEUE_MAX_SIZE", 1000)
    system_status_enabled: bool = _getenv_bool("SYSTEM_STATUS_ENABLED", True)

    # Spike detection
    spike_window_minutes: int = _getenv_int("SPIKE_WINDOW_MINUTES", 10)
    spike_min_events: int = _getenv_int("SPIKE_MIN_EVENTS", 3)
    spike_min_group_size: int = _getenv_int("SPIKE_MIN_GROUP_SIZE", 2)
    spike_count_weight: float = _getenv_float("SPIKE_COUNT_WEIGHT", 0.1)
    emergency_severity: float = _getenv_float("EMERGENCY_SEVERITY", 0.8)


@dataclass(frozen=True)
class VerificationConfig:
    """Confirmation feed polling configuration."""
    poll_seconds: float = _getenv_float("VERIFICATION_POLL_SECONDS", 300)
    window_hours: float = _getenv_float("VERIFICATION_WINDOW_HOURS", 2)
    http_timeout: float = _getenv_float("VERIFICATION_HTTP_TIMEOUT", 10)
    sources_enabled: bool = _getenv_bool("VERIFICATION_SOURCES_ENABLED", True)
    user_agent: str = os.getenv(
        "VERIFICATION_USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    )


@dataclass(frozen=True)
class NotificationConfig:
    """Notification channels and idempotency ledger configuration."""
    ledger_ttl_days: int = _getenv_int("LEDGER_TTL_DAYS", 30)

    # SMTP settings
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = _getenv_int("SMTP_PORT", 587)
    smtp_user: str = os.getenv("SMTP_USER", "")
    smtp_pass: str = os.getenv("SMTP_PASS", "")
    smtp_tls: bool = _getenv_bool("SMTP_TLS", True)
    smtp_timeout: float = _getenv_float("SMTP_TIMEOUT", 20)
    email_from: str = os.getenv("EMAIL_FROM", "")

    # Brevo transactional SMS
    brevo_api_key: str = os.getenv("BREVO_API_KEY", "")
    brevo_sms_sender: str = os.getenv("BREVO_SMS_SENDER", "DISASTER")
    brevo_sms_url: str = os.getenv("BREVO_SMS_URL", "https://api.brevo.com/v3/transactionalSMS/sms")
    sms_timeout: float = _getenv_float("SMS_TIMEOUT", 10)


@dataclass(frozen=True)
class ApplicationConfig:
    """Main application configuration."""
    env: str = os.getenv("ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    structured_logging: bool = _getenv_bool("STRUCTURED_LOGGING")
    metrics_enabled: bool = _getenv_bool("METRICS_ENABLED", True)


@dataclass(frozen=True)
class Config:
    """Root configuration object."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    app: ApplicationConfig = field(default_factory=ApplicationConfig)

    def validate(self) -> list:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        if self.pipeline.max_text_bytes <= 0:
            problems.append("MAX_TEXT_BYTES must be positive")
        if self.pipeline.spike_min_group_size < 1:
            problems.append("SPIKE_MIN_GROUP_SIZE must be at least 1")
        if self.pipeline.spike_min_events < self.pipeline.spike_min_group_size:
            problems.append("SPIKE_MIN_EVENTS must be >= SPIKE_MIN_GROUP_SIZE")
        if not 0.0 <= self.pipeline.emergency_severity <= 1.0:
            problems.append("EMERGENCY_SEVERITY must be within [0, 1]")
        if self.verification.window_hours <= 0:
            problems.append("VERIFICATION_WINDOW_HOURS must be positive")
        if self.notifications.ledger_ttl_days <= 0:
            problems.append("LEDGER_TTL_DAYS must be positive")
        if self.analyzer.max_retries < 0:
            problems.append("ANALYZER_MAX_RETRIES cannot be negative")
        return problems


CONFIG = Config()
