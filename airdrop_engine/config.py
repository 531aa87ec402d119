import os
from pydantic import BaseModel, Field

# Multicall3 is deployed at the same address on every EVM chain
MULTICALL3 = "0xcA11bde05977b3631167028862bE2a173976CA11"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() not in ("false", "0", "no", "")


class AppConfig(BaseModel):
    rpc_url: str = Field(default_factory=lambda: os.getenv("RPC_URL", "https://mainnet.base.org"))
    rpc_pool: list[str] = Field(
        default_factory=lambda: [x.strip() for x in os.getenv("RPC_POOL", "").split(",") if x.strip()])
    chain_id: int = Field(default_factory=lambda: int(os.getenv("CHAIN_ID", "8453")))
    rps: int = Field(default_factory=lambda: int(os.getenv("RPS", "25")))
    call_timeout: float = Field(default_factory=lambda: float(os.getenv("CALL_TIMEOUT", "15.0")))
    max_retries: int = Field(default_factory=lambda: int(os.getenv("MAX_RETRIES", "2")))
    retry_base_delay: float = Field(default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY", "0.25")))
    multicall_address: str = Field(default_factory=lambda: os.getenv("MULTICALL_ADDRESS", MULTICALL3))

    treasury_address: str = Field(default_factory=lambda: os.getenv("TREASURY_ADDRESS", "").strip().lower())
    treasury_private_key: str = Field(default_factory=lambda: os.getenv("TREASURY_PRIVATE_KEY", ""))
    bot_id: str = Field(default_factory=lambda: os.getenv("BOT_ID", "").strip().lower())
    admin_tax_address: str = Field(default_factory=lambda: os.getenv("ADMIN_TAX_ADDRESS", "").strip().lower())
    tax_nft_address: str = Field(default_factory=lambda: os.getenv("TAX_NFT_ADDRESS", "").strip().lower())
    tax_percent: float = Field(default_factory=lambda: float(os.getenv("TAX_PERCENT", "2")))
    admin_tax_percent: float = Field(default_factory=lambda: float(os.getenv("ADMIN_TAX_PERCENT", "1")))

    batch_size: int = Field(default_factory=lambda: int(os.getenv("BATCH_SIZE", "80")))
    distribute_retries: int = Field(default_factory=lambda: int(os.getenv("DISTRIBUTE_RETRIES", "4")))
    distribute_retry_delay: float = Field(default_factory=lambda: float(os.getenv("DISTRIBUTE_RETRY_DELAY", "2.0")))
    receipt_timeout: float = Field(default_factory=lambda: float(os.getenv("RECEIPT_TIMEOUT", "120.0")))

    holder_batch_size: int = Field(default_factory=lambda: int(os.getenv("HOLDER_BATCH_SIZE", "256")))
    holder_timeout: float = Field(default_factory=lambda: float(os.getenv("HOLDER_TIMEOUT", "30.0")))
    holder_retries: int = Field(default_factory=lambda: int(os.getenv("HOLDER_RETRIES", "3")))
    holder_retry_delay: float = Field(default_factory=lambda: float(os.getenv("HOLDER_RETRY_DELAY", "3.0")))
    logs_chunk: int = Field(default_factory=lambda: int(os.getenv("LOGS_CHUNK", "5000")))
    logs_max_retries: int = Field(default_factory=lambda: int(os.getenv("LOGS_MAX_RETRIES", "4")))
    holder_cache_ttl: float = Field(default_factory=lambda: float(os.getenv("HOLDER_CACHE_TTL", str(24 * 3600))))
    show_progress: bool = Field(default_factory=lambda: _flag("SHOW_PROGRESS", "true"))

    join_grace_delay: float = Field(default_factory=lambda: float(os.getenv("JOIN_GRACE_DELAY", "5.0")))

    data_dir: str = Field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))
    excludes_file: str = Field(default_factory=lambda: os.getenv("EXCLUDES_FILE", "excludes.json"))
    identity_resolver_url: str = Field(default_factory=lambda: os.getenv("IDENTITY_RESOLVER_URL", "").strip())

    debug: bool = Field(default_factory=lambda: _flag("DEBUG", "false"))
    log_file: str = Field(default_factory=lambda: os.getenv("LOG_FILE", "").strip())


def load_env() -> AppConfig:
    from dotenv import load_dotenv
    load_dotenv()
    return AppConfig()
