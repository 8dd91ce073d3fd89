"""
Configuration module for the task monitor (configs).
"""

import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    def __init__(self) -> None:
        # Backend API
        self.api_base_url = os.getenv("TASKS_API_BASE_URL", "http://localhost:8000")
        self.api_timeout = float(os.getenv("API_TIMEOUT", "30"))
        self.api_session_cookie = os.getenv("API_SESSION_COOKIE") or None

        # Polling
        self.active_poll_interval_ms = int(os.getenv("ACTIVE_POLL_INTERVAL_MS", "3000"))
        self.poll_stale_time_ms = int(os.getenv("POLL_STALE_TIME_MS", "2000"))
        self.default_stale_time_ms = int(os.getenv("DEFAULT_STALE_TIME_MS", "30000"))
        self.completed_stale_time_ms = int(
            os.getenv("COMPLETED_STALE_TIME_MS", str(10 * 60 * 1000))
        )
        self.completed_list_stale_time_ms = int(
            os.getenv("COMPLETED_LIST_STALE_TIME_MS", str(5 * 60 * 1000))
        )

        # Read retries (never applied to 4xx responses)
        self.query_retry_attempts = int(os.getenv("QUERY_RETRY_ATTEMPTS", "2"))
        self.query_retry_backoff = float(os.getenv("QUERY_RETRY_BACKOFF", "0.5"))

        # Eviction horizons
        self.task_detail_max_age_minutes = int(
            os.getenv("TASK_DETAIL_MAX_AGE_MINUTES", "60")
        )
        self.task_list_max_age_minutes = int(
            os.getenv("TASK_LIST_MAX_AGE_MINUTES", "30")
        )
        self.eviction_sweep_interval_seconds = float(
            os.getenv("EVICTION_SWEEP_INTERVAL_SECONDS", "300")
        )

        # Step inference
        self.baseline_language = os.getenv("BASELINE_LANGUAGE", "english").lower()

        # Logging / runtime
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_file = os.getenv("LOG_FILE")
        self.log_dir = os.getenv("LOG_DIR", "logs")
        self.port = int(os.getenv("PORT", "8100"))

        # Redis (preference persistence)
        self.redis_host = os.getenv("REDIS_HOST", "localhost")
        self.redis_port = int(os.getenv("REDIS_PORT", 6379))
        self.redis_db = int(os.getenv("REDIS_DB", 0))
        self.redis_password = os.getenv("REDIS_PASSWORD") or None
        self.preferences_key_prefix = os.getenv("PREFERENCES_KEY_PREFIX", "tm:prefs")

        # CORS settings
        self.cors_origins = self._parse_cors_origins(
            os.getenv("CORS_ORIGINS", "http://localhost:3000")
        )

    def _parse_cors_origins(self, origins_str: str) -> list[str]:
        """Parse CORS origins from a comma-separated string."""
        if not origins_str:
            return ["http://localhost:3000"]
        return [origin.strip() for origin in origins_str.split(",") if origin.strip()]


config = Config()
