import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        openai_api_key: Optional[str],
        openai_model: str,
        openai_vision_model: str,
        openai_timeout_secs: float,
        transport: str,
        whatsapp_api_version: str,
        whatsapp_access_token: Optional[str],
        whatsapp_phone_number_id: Optional[str],
        whatsapp_verify_token: Optional[str],
        bridge_url: str,
        bridge_token: Optional[str],
        allowed_sender: Optional[str],
        http_timeout_secs: float,
        alert_sweep_hour: int,
        monthly_report_hour: int,
        allowed_origins: Optional[list[str]] = None,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.openai_vision_model = openai_vision_model
        self.openai_timeout_secs = openai_timeout_secs
        self.transport = transport
        self.whatsapp_api_version = whatsapp_api_version
        self.whatsapp_access_token = whatsapp_access_token
        self.whatsapp_phone_number_id = whatsapp_phone_number_id
        self.whatsapp_verify_token = whatsapp_verify_token
        self.bridge_url = bridge_url
        self.bridge_token = bridge_token
        self.allowed_sender = allowed_sender
        self.http_timeout_secs = http_timeout_secs
        self.alert_sweep_hour = alert_sweep_hour
        self.monthly_report_hour = monthly_report_hour
        self.allowed_origins = allowed_origins or ["*"]


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BOUGHT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "bought.db"
    database_url = os.getenv("BOUGHT_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BOUGHT_TIMEZONE", "Asia/Jerusalem")

    access_token = _optional("BOUGHT_WHATSAPP_ACCESS_TOKEN")
    # Without Cloud API credentials the bot talks through the local web bridge.
    transport = os.getenv("BOUGHT_TRANSPORT", "cloud" if access_token else "web")
    transport = transport.strip().lower()
    if transport not in {"cloud", "web"}:
        raise ValueError(f"Unsupported transport: {transport}")

    return Settings(
        database_url=database_url,
        timezone=timezone,
        openai_api_key=_optional("BOUGHT_OPENAI_API_KEY"),
        openai_model=os.getenv("BOUGHT_OPENAI_MODEL", "gpt-4o-mini"),
        openai_vision_model=os.getenv("BOUGHT_OPENAI_VISION_MODEL", "gpt-4o"),
        openai_timeout_secs=float(os.getenv("BOUGHT_OPENAI_TIMEOUT_SECS", "30")),
        transport=transport,
        whatsapp_api_version=os.getenv("BOUGHT_WHATSAPP_API_VERSION", "v21.0"),
        whatsapp_access_token=access_token,
        whatsapp_phone_number_id=_optional("BOUGHT_WHATSAPP_PHONE_NUMBER_ID"),
        whatsapp_verify_token=_optional("BOUGHT_WHATSAPP_VERIFY_TOKEN"),
        bridge_url=os.getenv("BOUGHT_BRIDGE_URL", "http://localhost:3002").rstrip("/"),
        bridge_token=_optional("BOUGHT_BRIDGE_TOKEN"),
        allowed_sender=_optional("BOUGHT_ALLOWED_SENDER"),
        http_timeout_secs=float(os.getenv("BOUGHT_HTTP_TIMEOUT_SECS", "10")),
        alert_sweep_hour=int(os.getenv("BOUGHT_ALERT_SWEEP_HOUR", "18")),
        monthly_report_hour=int(os.getenv("BOUGHT_MONTHLY_REPORT_HOUR", "20")),
        allowed_origins=_origins(os.getenv("BOUGHT_ALLOWED_ORIGINS", "*")),
    )
