from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ADMIN_API_KEY = "of-admin-dev-key"
DEFAULT_SYSTEM_API_KEY = "of-system-dev-key"
DEFAULT_CUSTOMER_API_KEY = "of-customer-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="ORDERFLOW_", extra="ignore")

    app_name: str = "orderflow"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./orderflow.db"

    currency: str = "MNT"
    order_ttl_minutes: int = Field(default=60, ge=1, description="Unpaid Pending orders expire after this window")

    sweeper_enabled: bool = True
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    sweep_batch_size: int = Field(default=500, ge=1)

    # 0 dispatches notifications inline on the committing thread.
    notification_workers: int = Field(default=2, ge=0, le=32)

    # Email delivery: http | log
    email_backend: str = "log"
    email_api_url: str = "http://mailer:8025/api/send"
    email_api_key: str | None = None
    email_sender: str = "orders@orderflow.local"
    email_timeout_seconds: int = 15
    admin_notification_email: str | None = None

    # Fiscal receipts: http | fake
    receipt_backend: str = "fake"
    receipt_api_url: str = "http://receipts:8080/api/receipts"
    receipt_api_key: str | None = None
    receipt_timeout_seconds: int = 15

    auth_enabled: bool = True
    admin_api_key: str = DEFAULT_ADMIN_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    customer_api_key: str = DEFAULT_CUSTOMER_API_KEY
    admin_actor_id: str = "admin-001"
    system_actor_id: str = "system"

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.admin_api_key == DEFAULT_ADMIN_API_KEY:
            insecure_items.append("ORDERFLOW_ADMIN_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("ORDERFLOW_SYSTEM_API_KEY")
        if self.customer_api_key == DEFAULT_CUSTOMER_API_KEY:
            insecure_items.append("ORDERFLOW_CUSTOMER_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default api keys are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
