import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        currency: str,
        csv_description_max_length: int,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        smtp_use_tls: bool,
        mail_from: str,
        frontend_url: str,
        alert_check_hour: int,
        alert_emails_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.currency = currency
        self.csv_description_max_length = csv_description_max_length
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.mail_from = mail_from
        self.frontend_url = frontend_url
        self.alert_check_hour = alert_check_hour
        self.alert_emails_enabled = alert_emails_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYWISE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "moneywise.db"
    database_url = os.getenv("MONEYWISE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEYWISE_TIMEZONE", "Africa/Abidjan")
    token_secret = os.getenv(
        "MONEYWISE_TOKEN_SECRET",
        "5b0c1e4b8f0d4c6a9a51f1b27e0f7d3c2a9e8b7d6c5f4e3a2b1c0d9e8f7a6b5c",
    )
    token_max_age_hours = int(os.getenv("MONEYWISE_TOKEN_MAX_AGE_HOURS", "24"))
    currency = os.getenv("MONEYWISE_CURRENCY", "FCFA")
    csv_description_max_length = int(
        os.getenv("MONEYWISE_CSV_DESCRIPTION_MAX_LENGTH", "100")
    )
    smtp_host = os.getenv("MONEYWISE_SMTP_HOST", "")
    smtp_port = int(os.getenv("MONEYWISE_SMTP_PORT", "587"))
    smtp_user = os.getenv("MONEYWISE_SMTP_USER", "")
    smtp_password = os.getenv("MONEYWISE_SMTP_PASSWORD", "")
    smtp_use_tls = _env_flag("MONEYWISE_SMTP_USE_TLS", "true")
    mail_from = os.getenv("MONEYWISE_MAIL_FROM", smtp_user or "no-reply@moneywise.local")
    frontend_url = os.getenv("MONEYWISE_FRONTEND_URL", "http://localhost:5173")
    alert_check_hour = int(os.getenv("MONEYWISE_ALERT_CHECK_HOUR", "8"))
    alert_emails_enabled = _env_flag("MONEYWISE_ALERT_EMAILS_ENABLED", "false")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        currency=currency,
        csv_description_max_length=csv_description_max_length,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_password=smtp_password,
        smtp_use_tls=smtp_use_tls,
        mail_from=mail_from,
        frontend_url=frontend_url,
        alert_check_hour=alert_check_hour,
        alert_emails_enabled=alert_emails_enabled,
    )
