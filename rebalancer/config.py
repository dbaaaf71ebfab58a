"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'rebalancer.db'}"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]
    api_token: str = ""  # Bearer token for the admin API

    # Ledger
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    dlmm_api_url: str = "http://localhost:8787"  # Transaction-builder gateway for the pool program
    pool_address: str = ""
    base_mint: str = ""
    base_decimals: int = 8
    quote_decimals: int = 9
    base_symbol: str = "zBTC"
    quote_symbol: str = "SOL"

    # Engine
    scan_interval_seconds: int = 30
    reposition_cooldown_seconds: float = 300.0
    range_buffer_bins: int = 2
    position_width_bins: int = 68
    slippage_bps: int = 1000
    settle_delay_seconds: float = 5.0
    verify_delay_seconds: float = 3.0
    create_max_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    bin_stability_threshold: int = 2
    bin_stability_pause_seconds: float = 3.0
    position_read_attempts: int = 3
    high_urgency_distance_bins: int = 10
    reposition_gas_estimate_sol: float = 0.001  # Seed for the gas limit check; replaced by each observed cost
    tx_resend_interval_seconds: float = 2.0
    http_timeout_seconds: float = 10.0

    # Access control
    access_control_url: str = "http://localhost:3001/mcp"
    access_control_api_key: str = ""
    access_control_timeout_seconds: float = 5.0
    status_cache_ttl_seconds: float = 60.0
    settings_cache_ttl_seconds: float = 300.0

    # Telegram
    telegram_bot_token: str = ""
    telegram_admin_chat_ids: list[int] = []
    notice_throttle_seconds: float = 8 * 3600

    model_config = {"env_prefix": "RB_", "env_file": ".env"}


settings = Settings()
