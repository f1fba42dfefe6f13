"""Application settings and configuration."""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings


# Uniswap V2 router / factory and WETH on Ethereum mainnet
DEFAULT_V2_ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"
DEFAULT_SUSHI_ROUTER = "0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f"
DEFAULT_V2_FACTORY = "0x5c69bee701ef814a2b6a3edd4b1652cb9cc5aa6f"
DEFAULT_WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level", alias="LOG_LEVEL")

    # Redis settings
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for persisting token safety verdicts (disabled if unset)",
        alias="REDIS_URL"
    )

    # Node settings
    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        description="HTTP RPC URL of the collaborator node",
        alias="RPC_URL"
    )

    ws_url: str = Field(
        default="ws://127.0.0.1:8546",
        description="WebSocket URL for the pending transaction subscription",
        alias="WS_URL"
    )

    backup_rpc_url: Optional[str] = Field(
        default=None,
        description="Backup HTTP RPC URL used after network failures",
        alias="BACKUP_RPC_URL"
    )

    chain_id: int = Field(default=1, description="Chain ID", alias="CHAIN_ID")

    # Relay settings
    relay_urls: str = Field(
        default="https://relay.flashbots.net",
        description="Comma-separated list of private relay URLs",
        alias="RELAY_URLS"
    )

    # Account settings
    private_key: Optional[str] = Field(
        default=None,
        description="Private key of the bot account",
        alias="PRIVATE_KEY"
    )

    relay_signing_key: Optional[str] = Field(
        default=None,
        description="Key used for X-Flashbots-Signature (defaults to PRIVATE_KEY)",
        alias="RELAY_SIGNING_KEY"
    )

    executor_address: Optional[str] = Field(
        default=None,
        description="Deployed executor contract address",
        alias="EXECUTOR_ADDRESS"
    )

    # Venue settings
    factory_address: str = Field(default=DEFAULT_V2_FACTORY, alias="FACTORY_ADDRESS")
    router_addresses: str = Field(
        default=f"{DEFAULT_V2_ROUTER},{DEFAULT_SUSHI_ROUTER}",
        description="Comma-separated list of tracked router addresses",
        alias="ROUTER_ADDRESSES"
    )
    weth_address: str = Field(default=DEFAULT_WETH, alias="WETH_ADDRESS")

    # Trading settings
    min_profit_wei: int = Field(
        default=10**15,
        description="Minimum net profit in wei of the base token",
        alias="MIN_PROFIT_WEI"
    )

    max_gas_price_gwei: float = Field(
        default=300.0,
        description="Ceiling for max fee per gas",
        alias="MAX_GAS_PRICE_GWEI"
    )

    max_position_wei: int = Field(
        default=10 * 10**18,
        description="Largest front-leg size the bot will commit",
        alias="MAX_POSITION_WEI"
    )

    pool_impact_cap_bps: int = Field(
        default=500,
        description="Front-leg size cap as basis points of reserveIn",
        alias="POOL_IMPACT_CAP_BPS"
    )

    safety_margin_bps: int = Field(
        default=9_000,
        description="Fraction of the refined optimum actually traded",
        alias="SAFETY_MARGIN_BPS"
    )

    whitelisted_tokens: str = Field(default="", alias="WHITELISTED_TOKENS")
    blacklisted_tokens: str = Field(default="", alias="BLACKLISTED_TOKENS")

    # Gas settings
    frontrun_gas_limit: int = Field(default=150_000, alias="FRONTRUN_GAS_LIMIT")
    backrun_gas_limit: int = Field(default=150_000, alias="BACKRUN_GAS_LIMIT")
    priority_fee_bump_bps: int = Field(default=1_000, alias="PRIORITY_FEE_BUMP_BPS")
    backrun_priority_fee_wei: int = Field(default=1, alias="BACKRUN_PRIORITY_FEE_WEI")

    # Cache settings
    pool_state_ttl_seconds: float = Field(default=12.0, alias="POOL_STATE_TTL_SECONDS")
    safe_verdict_ttl_seconds: float = Field(default=3600.0, alias="SAFE_VERDICT_TTL_SECONDS")
    unsafe_verdict_ttl_seconds: float = Field(default=86400.0, alias="UNSAFE_VERDICT_TTL_SECONDS")
    max_transfer_loss_bps: int = Field(default=10, alias="MAX_TRANSFER_LOSS_BPS")

    # Pipeline settings
    worker_count: int = Field(default=8, alias="WORKER_COUNT")
    ingest_queue_size: int = Field(default=2_000, alias="INGEST_QUEUE_SIZE")
    backpressure_policy: str = Field(
        default="drop_oldest",
        description="drop_oldest or reject_new",
        alias="BACKPRESSURE_POLICY"
    )
    evaluation_timeout_ms: int = Field(default=40, alias="EVALUATION_TIMEOUT_MS")
    rpc_timeout_ms: int = Field(default=25, alias="RPC_TIMEOUT_MS")
    relay_timeout_ms: int = Field(default=1_500, alias="RELAY_TIMEOUT_MS")
    rpc_max_retries: int = Field(default=1, alias="RPC_MAX_RETRIES")
    rpc_backoff_ms: int = Field(default=5, alias="RPC_BACKOFF_MS")
    opportunity_ttl_blocks: int = Field(default=1, alias="OPPORTUNITY_TTL_BLOCKS")
    max_inflight_bundles: int = Field(default=4, alias="MAX_INFLIGHT_BUNDLES")

    # Submission settings
    max_block_retries: int = Field(default=1, alias="MAX_BLOCK_RETRIES")
    max_relay_retries: int = Field(default=2, alias="MAX_RELAY_RETRIES")
    max_network_retries: int = Field(default=2, alias="MAX_NETWORK_RETRIES")
    network_backoff_ms: int = Field(default=100, alias="NETWORK_BACKOFF_MS")
    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_cooldown_seconds: float = Field(default=30.0, alias="CIRCUIT_COOLDOWN_SECONDS")
    relay_reject_alert_threshold: int = Field(default=5, alias="RELAY_REJECT_ALERT_THRESHOLD")
    dry_run: bool = Field(
        default=True,
        description="Evaluate and build bundles but never send them",
        alias="DRY_RUN"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"  # Ignore extra fields from .env
    }

    def to_engine_config(self) -> "EngineConfig":
        """Freeze the settings into the structure consumed by the engine."""
        return EngineConfig(
            chain_id=self.chain_id,
            relay_urls=_split_csv(self.relay_urls, lower=False),
            router_addresses=frozenset(_split_csv(self.router_addresses)),
            factory_address=self.factory_address.lower(),
            weth_address=self.weth_address.lower(),
            executor_address=self.executor_address.lower() if self.executor_address else None,
            min_profit_wei=self.min_profit_wei,
            max_gas_price_wei=int(self.max_gas_price_gwei * 10**9),
            max_position_wei=self.max_position_wei,
            pool_impact_cap_bps=self.pool_impact_cap_bps,
            safety_margin_bps=self.safety_margin_bps,
            whitelisted_tokens=frozenset(_split_csv(self.whitelisted_tokens)),
            blacklisted_tokens=frozenset(_split_csv(self.blacklisted_tokens)),
            frontrun_gas_limit=self.frontrun_gas_limit,
            backrun_gas_limit=self.backrun_gas_limit,
            priority_fee_bump_bps=self.priority_fee_bump_bps,
            backrun_priority_fee_wei=self.backrun_priority_fee_wei,
            pool_state_ttl_seconds=self.pool_state_ttl_seconds,
            safe_verdict_ttl_seconds=self.safe_verdict_ttl_seconds,
            unsafe_verdict_ttl_seconds=self.unsafe_verdict_ttl_seconds,
            max_transfer_loss_bps=self.max_transfer_loss_bps,
            worker_count=self.worker_count,
            ingest_queue_size=self.ingest_queue_size,
            backpressure_policy=self.backpressure_policy,
            evaluation_timeout=self.evaluation_timeout_ms / 1000,
            rpc_timeout=self.rpc_timeout_ms / 1000,
            relay_timeout=self.relay_timeout_ms / 1000,
            rpc_max_retries=self.rpc_max_retries,
            rpc_backoff=self.rpc_backoff_ms / 1000,
            opportunity_ttl_blocks=self.opportunity_ttl_blocks,
            max_inflight_bundles=self.max_inflight_bundles,
            max_block_retries=self.max_block_retries,
            max_relay_retries=self.max_relay_retries,
            max_network_retries=self.max_network_retries,
            network_backoff=self.network_backoff_ms / 1000,
            circuit_failure_threshold=self.circuit_failure_threshold,
            circuit_cooldown_seconds=self.circuit_cooldown_seconds,
            relay_reject_alert_threshold=self.relay_reject_alert_threshold,
            dry_run=self.dry_run,
        )


@dataclass(frozen=True)
class EngineConfig:
    """Static configuration handed to every engine component at startup."""

    chain_id: int = 1
    relay_urls: Tuple[str, ...] = ("https://relay.flashbots.net",)
    router_addresses: FrozenSet[str] = frozenset({DEFAULT_V2_ROUTER, DEFAULT_SUSHI_ROUTER})
    factory_address: str = DEFAULT_V2_FACTORY
    weth_address: str = DEFAULT_WETH
    executor_address: Optional[str] = None

    min_profit_wei: int = 10**15
    max_gas_price_wei: int = 300 * 10**9
    max_position_wei: int = 10 * 10**18
    pool_impact_cap_bps: int = 500
    safety_margin_bps: int = 9_000
    whitelisted_tokens: FrozenSet[str] = field(default_factory=frozenset)
    blacklisted_tokens: FrozenSet[str] = field(default_factory=frozenset)

    frontrun_gas_limit: int = 150_000
    backrun_gas_limit: int = 150_000
    priority_fee_bump_bps: int = 1_000
    backrun_priority_fee_wei: int = 1

    pool_state_ttl_seconds: float = 12.0
    safe_verdict_ttl_seconds: float = 3600.0
    unsafe_verdict_ttl_seconds: float = 86400.0
    max_transfer_loss_bps: int = 10

    worker_count: int = 8
    ingest_queue_size: int = 2_000
    backpressure_policy: str = "drop_oldest"
    evaluation_timeout: float = 0.040
    rpc_timeout: float = 0.025
    relay_timeout: float = 1.5
    rpc_max_retries: int = 1
    rpc_backoff: float = 0.005
    opportunity_ttl_blocks: int = 1
    max_inflight_bundles: int = 4

    max_block_retries: int = 1
    max_relay_retries: int = 2
    max_network_retries: int = 2
    network_backoff: float = 0.1
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0
    relay_reject_alert_threshold: int = 5
    dry_run: bool = True

    def __post_init__(self):
        if self.backpressure_policy not in ("drop_oldest", "reject_new"):
            raise ValueError(f"Unknown backpressure policy: {self.backpressure_policy}")
        if not 0 < self.safety_margin_bps <= 10_000:
            raise ValueError("safety_margin_bps must be in (0, 10000]")
        if self.worker_count < 1 or self.max_inflight_bundles < 1:
            raise ValueError("worker_count and max_inflight_bundles must be positive")


def _split_csv(value: str, lower: bool = True) -> Tuple[str, ...]:
    items = [item.strip() for item in value.split(",") if item.strip()]
    return tuple(item.lower() for item in items) if lower else tuple(items)


# Global settings instance
settings = Settings()
