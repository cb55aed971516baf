"""Configuration loader for the console with validation."""
import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Console configuration from environment variables.

    All settings are validated on load to fail fast if misconfigured.
    """

    # Database
    database_url: str

    # Bearer tokens
    cron_secret: str = ""
    admin_api_token: str = ""

    # Step scheduling
    send_timezone: str = "Asia/Tokyo"

    # Sweep paging
    multicast_batch_size: int = 500
    scheduled_messages_page_size: int = 10
    step_executions_page_size: int = 50

    # LINE Messaging API
    line_api_base_url: str = "https://api.line.me"
    line_data_api_base_url: str = "https://api-data.line.me"
    line_api_timeout: float = 30.0
    webhook_forward_timeout: float = 10.0

    # Runtime
    run_sweeps_in_process: bool = False
    sweep_interval_seconds: int = 60
    auto_create_tables: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not 1 <= self.multicast_batch_size <= 500:
            raise ValueError("MULTICAST_BATCH_SIZE must be between 1 and 500")

        if self.scheduled_messages_page_size < 1 or self.step_executions_page_size < 1:
            raise ValueError("Sweep page sizes must be positive")

        if self.sweep_interval_seconds < 10:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be at least 10 seconds")

        if self.line_api_timeout <= 0 or self.webhook_forward_timeout <= 0:
            raise ValueError("HTTP timeouts must be positive")

        try:
            ZoneInfo(self.send_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown SEND_TIMEZONE: {self.send_timezone}") from e

        self.log_level = (self.log_level or "INFO").upper()

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: If required environment variables are missing
            ValueError: If configuration values are invalid
        """
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL environment variable is required")

        return cls(
            database_url=database_url,
            cron_secret=os.getenv("CRON_SECRET", ""),
            admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
            send_timezone=os.getenv("SEND_TIMEZONE", "Asia/Tokyo"),
            multicast_batch_size=int(os.getenv("MULTICAST_BATCH_SIZE", "500")),
            scheduled_messages_page_size=int(os.getenv("SCHEDULED_MESSAGES_PAGE_SIZE", "10")),
            step_executions_page_size=int(os.getenv("STEP_EXECUTIONS_PAGE_SIZE", "50")),
            line_api_base_url=os.getenv("LINE_API_BASE_URL", "https://api.line.me"),
            line_data_api_base_url=os.getenv("LINE_DATA_API_BASE_URL", "https://api-data.line.me"),
            line_api_timeout=float(os.getenv("LINE_API_TIMEOUT", "30")),
            webhook_forward_timeout=float(os.getenv("WEBHOOK_FORWARD_TIMEOUT", "10")),
            run_sweeps_in_process=_env_bool("RUN_SWEEPS_IN_PROCESS", "false"),
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "60")),
            auto_create_tables=_env_bool("AUTO_CREATE_TABLES", "false"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def tz(self) -> ZoneInfo:
        """Timezone used for step send_hour/send_minute."""
        return ZoneInfo(self.send_timezone)
