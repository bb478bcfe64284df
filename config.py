import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "circulation.db")

    # Circulation defaults (used when a library or user record leaves them unset)
    default_loan_period_days: int = int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "14"))
    default_fine_rate: float = float(os.getenv("DEFAULT_FINE_RATE", "0.25"))
    default_borrow_limit: int = int(os.getenv("DEFAULT_BORROW_LIMIT", "5"))

    # Reservation queue
    priority_boost_days: int = int(os.getenv("PRIORITY_BOOST_DAYS", "14"))
    premium_priority_base: int = int(os.getenv("PREMIUM_PRIORITY_BASE", "100"))
    standard_priority_base: int = int(os.getenv("STANDARD_PRIORITY_BASE", "50"))

    # Rebalancing
    overload_threshold: float = float(os.getenv("OVERLOAD_THRESHOLD", "0.60"))

    # Damage fees
    depreciation_rate: float = float(os.getenv("DEPRECIATION_RATE", "0.10"))
    depreciation_floor: float = float(os.getenv("DEPRECIATION_FLOOR", "0.10"))
    damage_flag_limit: int = int(os.getenv("DAMAGE_FLAG_LIMIT", "3"))

    # Notifications
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL")
    notification_timeout: float = float(os.getenv("NOTIFICATION_TIMEOUT", "5"))

    # Background events
    event_workers: int = int(os.getenv("EVENT_WORKERS", "2"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Consortium Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
