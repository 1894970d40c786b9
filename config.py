import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_days: int,
        reset_code_ttl_mins: int,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        mail_from: str,
        support_email: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_days = refresh_token_ttl_days
        self.reset_code_ttl_mins = reset_code_ttl_mins
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.support_email = support_email
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINCONTROL_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fincontrol.db"
    database_url = os.getenv("FINCONTROL_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINCONTROL_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "FINCONTROL_SECRET_KEY",
        "5c1f0d3a9e7b44a2b8c6e0f1d2a3b4c5d6e7f8091a2b3c4d5e6f708192a3b4c5",
    )
    mail_from = os.getenv("FINCONTROL_MAIL_FROM", "noreply@fincontrol.app")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        access_token_ttl_secs=int(os.getenv("FINCONTROL_ACCESS_TOKEN_TTL_SECS", "900")),
        refresh_token_ttl_days=int(os.getenv("FINCONTROL_REFRESH_TOKEN_TTL_DAYS", "7")),
        reset_code_ttl_mins=int(os.getenv("FINCONTROL_RESET_CODE_TTL_MINS", "10")),
        smtp_host=os.getenv("FINCONTROL_SMTP_HOST") or None,
        smtp_port=int(os.getenv("FINCONTROL_SMTP_PORT", "587")),
        smtp_user=os.getenv("FINCONTROL_SMTP_USER") or None,
        smtp_password=os.getenv("FINCONTROL_SMTP_PASSWORD") or None,
        mail_from=mail_from,
        support_email=os.getenv("FINCONTROL_SUPPORT_EMAIL", mail_from),
        scheduler_enabled=_env_flag("FINCONTROL_SCHEDULER_ENABLED", "true"),
    )
