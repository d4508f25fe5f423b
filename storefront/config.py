import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

from storefront.errors import ConfigurationError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

REQUIRED = (
    "DATABASE_URL",
    "STRIPE_WEBHOOK_SECRET",
    "ADMIN_NOTIFICATION_EMAIL",
    "JWT_SECRET",
)


@dataclass(frozen=True)
class Settings:
    database_url: str
    webhook_secret: str
    admin_email: str
    jwt_secret: str
    stripe_secret_key: str = ""
    webhook_tolerance: int = 300
    email_api_url: str = ""
    email_api_key: str = ""
    email_from: str = "boutique@localhost"
    notification_timeout: float = 5.0
    webhook_budget_ms: int = 300
    log_level: str = "INFO"
    log_format: str = "json"


def load_settings() -> Settings:
    """Read settings from the environment.

    Raises ConfigurationError listing every missing required variable.
    Values are never included in the message.
    """
    missing = [name for name in REQUIRED if not os.getenv(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}"
        )

    return Settings(
        database_url=os.environ["DATABASE_URL"],
        webhook_secret=os.environ["STRIPE_WEBHOOK_SECRET"],
        admin_email=os.environ["ADMIN_NOTIFICATION_EMAIL"],
        jwt_secret=os.environ["JWT_SECRET"],
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
        email_api_url=os.getenv("EMAIL_API_URL", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_from=os.getenv("EMAIL_FROM", "boutique@localhost"),
        notification_timeout=float(os.getenv("NOTIFICATION_TIMEOUT", "5")),
        webhook_budget_ms=int(os.getenv("WEBHOOK_BUDGET_MS", "300")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "json"),
    )


settings = load_settings()
