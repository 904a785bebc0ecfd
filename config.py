import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    # None means "pick a per-process temp file" (see circulation.database)
    data_file: Optional[str] = os.getenv("LIBRARY_DB_FILE") or os.getenv("LIBRARY_DATA_FILE")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "7"))

    # External directory (borrower identity source)
    directory_base_url: str = os.getenv("DIRECTORY_BASE_URL", "https://ldapweb.iitd.ac.in/LDAP/maths")
    directory_categories: List[str] = field(
        default_factory=lambda: _env_list("DIRECTORY_CATEGORIES", "btech,mtech,phd,msc,dual")
    )
    directory_email_domain: str = os.getenv("DIRECTORY_EMAIL_DOMAIN", "iitd.ac.in")
    directory_timeout: float = float(os.getenv("DIRECTORY_TIMEOUT", "10"))
    # The upstream directory serves a certificate chain that does not verify
    directory_verify_tls: bool = _env_flag("DIRECTORY_VERIFY_TLS", "False")
    directory_max_concurrency: int = int(os.getenv("DIRECTORY_MAX_CONCURRENCY", "4"))
    directory_retries: int = int(os.getenv("DIRECTORY_RETRIES", "3"))

    # Scheduled sync
    enable_directory_sync: bool = _env_flag("ENABLE_DIRECTORY_SYNC", "False")
    sync_interval_hours: float = float(os.getenv("SYNC_INTERVAL_HOURS", "168"))  # weekly

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
