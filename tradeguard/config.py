"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'tradeguard.db'}"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Broker (used when no active Credential row exists)
    broker_paper: bool = True
    broker_key_id: str = ""
    broker_secret: str = ""
    broker_base_url: str = ""  # empty = alpaca-py default for paper/live
    broker_timeout_seconds: float = 10.0
    broker_max_attempts: int = 3
    broker_backoff_seconds: float = 0.5

    # Sizing caps (fractions of equity)
    per_trade_risk_pct: float = 0.01
    day_risk_pct: float = 0.02
    week_risk_pct: float = 0.05

    # Reconciliation
    reconcile_interval_minutes: int = 1
    profit_take_grace_seconds: int = 60
    max_holding_hours: float = 24.0
    max_open_positions: int = 10
    breach_action: str = "liquidate"  # "liquidate" or "log_only"

    # Order tracking
    order_poll_attempts: int = 10
    order_poll_interval_seconds: float = 1.0
    order_track_deadline_seconds: float | None = 30.0
    max_order_attempts: int = 3

    # Narrative generator
    narrative_url: str = ""
    narrative_timeout_seconds: float = 5.0

    model_config = {"env_prefix": "TG_", "env_file": ".env"}


settings = Settings()
