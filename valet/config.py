import json
import os

from pydantic import BaseModel


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


class Settings(BaseModel):
    log_level: str = "INFO"
    app_url: str = ""

    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_claims_email: str = "mailto:ops@accessvaletparking.com"

    # werkzeug password hash; admin login is disabled when empty
    admin_password_hash: str = ""
    admin_session_minutes: int = 120

    square_access_token: str = ""
    square_location_id: str = ""
    square_environment: str = "sandbox"

    @property
    def push_enabled(self) -> bool:
        return bool(self.vapid_private_key)

    @property
    def square_enabled(self) -> bool:
        return bool(self.square_access_token and self.square_location_id)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            log_level=_env_or("LOG_LEVEL", "INFO"),
            app_url=_env_or("APP_URL", ""),
            vapid_public_key=_env_or("VAPID_PUBLIC_KEY", ""),
            vapid_private_key=_env_or("VAPID_PRIVATE_KEY", ""),
            vapid_claims_email=_env_or(
                "VAPID_CLAIMS_EMAIL", "mailto:ops@accessvaletparking.com"
            ),
            admin_password_hash=_env_or("ADMIN_PASSWORD_HASH", ""),
            admin_session_minutes=int(_env_or("ADMIN_SESSION_MINUTES", "120")),
            square_access_token=_env_or("SQUARE_ACCESS_TOKEN", ""),
            square_location_id=_env_or("SQUARE_LOCATION_ID", ""),
            square_environment=_env_or("SQUARE_ENVIRONMENT", "sandbox"),
        )


class DeviceSettings(BaseModel):
    server_url: str = "http://localhost:8000"
    storage_path: str = "valet-device.json"
    location_name: str = ""
    # platform push handle: {endpoint, keys: {p256dh, auth}}
    push_subscription: dict | None = None

    @classmethod
    def from_env(cls) -> "DeviceSettings":
        raw_subscription = _env_or("VALET_PUSH_SUBSCRIPTION", "")
        return cls(
            server_url=_env_or("VALET_SERVER_URL", "http://localhost:8000"),
            storage_path=_env_or("VALET_STORAGE_PATH", "valet-device.json"),
            location_name=_env_or("VALET_LOCATION", ""),
            push_subscription=(
                json.loads(raw_subscription) if raw_subscription else None
            ),
        )
