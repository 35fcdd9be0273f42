from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True)
    db_path: str = Field(default="./data/app.db", alias="DB_PATH")
    local_tz: str = Field(default="America/Toronto", alias="LOCAL_TZ")
    recon_on_target_band_pct: float = Field(default=2.0, alias="RECON_ON_TARGET_BAND_PCT")
    recon_trade_noise_threshold: float = Field(default=50.0, alias="RECON_TRADE_NOISE_THRESHOLD")
    compliance_near_limit_ratio: float = Field(default=0.9, alias="COMPLIANCE_NEAR_LIMIT_RATIO")
    target_risk_warning_ratio: float = Field(default=0.8, alias="TARGET_RISK_WARNING_RATIO")
    ticker_table_version: str = Field(default="2025.1", alias="TICKER_TABLE_VERSION")
    ticker_extra_suffixes: str | None = Field(default=None, alias="TICKER_EXTRA_SUFFIXES")
    ticker_extra_crypto: str | None = Field(default=None, alias="TICKER_EXTRA_CRYPTO")
    signal_webhook_secret: str | None = Field(default=None, alias="SIGNAL_WEBHOOK_SECRET")
    report_default_recipient: str | None = Field(default=None, alias="REPORT_DEFAULT_RECIPIENT")
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str | None = Field(default=None, alias="TELEGRAM_CHAT_ID")
    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    yf_enable: int = Field(default=1, alias="YF_ENABLE")
    price_refresh_minutes: int = Field(default=15, alias="PRICE_REFRESH_MINUTES")
    market_batch_size: int = Field(default=25, alias="MARKET_BATCH_SIZE")
    market_rate_limit_seconds: float = Field(default=0.2, alias="MARKET_RATE_LIMIT_SECONDS")
    market_retry_attempts: int = Field(default=2, alias="MARKET_RETRY_ATTEMPTS")
    scheduler_enabled: int = Field(default=0, alias="SCHEDULER_ENABLED")
    task_stale_days: int = Field(default=30, alias="TASK_STALE_DAYS")

settings = Settings()
