from typing import List, Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"

    database_url: str = "sqlite+aiosqlite:///./payments.db"
    service_api_key: str = ""  # empty keeps the admin endpoints locked

    # TPay merchant credentials; empty means "not configured"
    tpay_merchant_id: str = ""
    tpay_secret: str = ""
    tpay_env: str = "production"  # production | sandbox
    tpay_result_url: Optional[str] = None  # defaults to {public_base_url}/tpay/webhook
    tpay_language: str = "pl"
    tpay_signature_separator: str = ""  # "&" for the newer form signature

    public_base_url: str = "http://localhost:8000"
    frontend_return_url: str = "https://your-frontend.com/payments/return?status=ok"
    frontend_error_url: str = "https://your-frontend.com/payments/return?status=failed"
    cors_origins: List[str] = ["*"]

    # invoices
    invoice_storage_dir: str = "./invoices"
    seller_name: str = "MusicAcademy Sp. z o.o."
    seller_address: str = "ul. Dzwiekowa 10, 00-001 Warszawa"
    seller_nip: str = "123-456-78-90"

    # confirmation reconciler
    api_base_url: str = "http://localhost:8000"
    poll_interval_seconds: float = 1.5
    poll_max_attempts: int = 20

    log_level: str = "INFO"
    log_json: bool = False
    log_cache_loggers: bool = True  # off under test, where stderr is swapped per test

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
