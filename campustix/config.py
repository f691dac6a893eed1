import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[1]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")


def _split_csv(raw: str) -> List[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./campustix.db"
    log_level: str = "INFO"

    # payment provider
    payment_provider: str = "mock"  # 'flutterwave' | 'mock'
    flutterwave_client_id: str = ""
    flutterwave_client_secret: str = ""
    flutterwave_secret_hash: str = ""
    flutterwave_base_url: str = (
        "https://api.flutterwave.cloud/developersandbox"
    )
    flutterwave_token_url: str = (
        "https://idp.flutterwave.com/realms/flutterwave/protocol/"
        "openid-connect/token"
    )
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"
    currency: str = "NGN"
    virtual_account_expiry_minutes: int = 60
    http_timeout_seconds: float = 10.0

    # settlement
    platform_fee_percentage: float = 2.0

    # mail
    mail_api_url: str = "https://api.brevo.com/v3/smtp/email"
    mail_api_key: str = ""
    mail_from: str = "tickets@campustix.local"
    mail_from_name: str = "CampusTix"
    admin_emails: List[str] = field(default_factory=list)
    frontend_url: str = "http://localhost:3000"

    # pending-order sweep
    sweep_interval_seconds: int = 300
    sweep_grace_minutes: int = 10
    sweep_retention_hours: int = 24

    @property
    def platform_fee_fraction(self) -> float:
        return self.platform_fee_percentage / 100.0

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "Settings":
        load_dotenv(dotenv_path or ROOT_DIR / ".env", override=False)
        d = cls()
        return cls(
            database_url=env("DATABASE_URL", default=d.database_url),
            log_level=env("LOG_LEVEL", default=d.log_level).upper(),
            payment_provider=env(
                "PAYMENT_PROVIDER", default=d.payment_provider
            ).lower(),
            flutterwave_client_id=env("FLUTTERWAVE_CLIENT_ID", default=""),
            flutterwave_client_secret=env(
                "FLUTTERWAVE_CLIENT_SECRET", default=""
            ),
            flutterwave_secret_hash=env(
                "FLUTTERWAVE_SECRET_HASH", default=""
            ),
            flutterwave_base_url=env(
                "FLUTTERWAVE_BASE_URL", default=d.flutterwave_base_url
            ).rstrip("/"),
            flutterwave_token_url=env(
                "FLUTTERWAVE_TOKEN_URL", default=d.flutterwave_token_url
            ),
            mock_secret=env("MOCK_SECRET", default=d.mock_secret),
            mock_webhook_url=env(
                "MOCK_WEBHOOK_URL", default=d.mock_webhook_url
            ),
            currency=env("CURRENCY", default=d.currency).upper(),
            virtual_account_expiry_minutes=int(env(
                "VIRTUAL_ACCOUNT_EXPIRY_MINUTES",
                default=str(d.virtual_account_expiry_minutes),
            )),
            http_timeout_seconds=float(env(
                "HTTP_TIMEOUT_SECONDS", default=str(d.http_timeout_seconds)
            )),
            platform_fee_percentage=float(env(
                "PLATFORM_FEE_PERCENTAGE",
                default=str(d.platform_fee_percentage),
            )),
            mail_api_url=env("MAIL_API_URL", default=d.mail_api_url),
            mail_api_key=env("MAIL_API_KEY", default=""),
            mail_from=env("MAIL_FROM", default=d.mail_from),
            mail_from_name=env("MAIL_FROM_NAME", default=d.mail_from_name),
            admin_emails=_split_csv(env("ADMIN_EMAILS", default="")),
            frontend_url=env(
                "FRONTEND_URL", default=d.frontend_url
            ).rstrip("/"),
            sweep_interval_seconds=int(env(
                "SWEEP_INTERVAL_SECONDS",
                default=str(d.sweep_interval_seconds),
            )),
            sweep_grace_minutes=int(env(
                "SWEEP_GRACE_MINUTES", default=str(d.sweep_grace_minutes)
            )),
            sweep_retention_hours=int(env(
                "SWEEP_RETENTION_HOURS",
                default=str(d.sweep_retention_hours),
            )),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)
