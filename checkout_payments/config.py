import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str | None
    mercado_pago_api_url: str
    public_api_url: str | None
    gateway_timeout_seconds: float
    notification_url: str | None
    notification_api_key: str | None
    log_level: str
    app_env: str
    app_name: str

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return Settings(
        database_url=database_url,
        jwt_secret=os.getenv("JWT_SECRET"),
        mercado_pago_api_url=os.getenv("MERCADO_PAGO_API_URL", "https://api.mercadopago.com"),
        public_api_url=os.getenv("PUBLIC_API_URL"),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15")),
        notification_url=os.getenv("NOTIFICATION_URL"),
        notification_api_key=os.getenv("NOTIFICATION_API_KEY"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        app_env=os.getenv("APP_ENV", "development"),
        app_name=os.getenv("APP_NAME", "checkout-payments"),
    )
