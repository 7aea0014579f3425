"""
Configuration for the ORB miner.

Everything is read from the environment (or a .env file) once, at import.
One dataclass per concern, rolled up into MinerConfig.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from orb_miner.errors import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


@dataclass
class WalletConfig:
    private_key: str = os.getenv("PRIVATE_KEY", "")
    wallet_address: str = os.getenv("WALLET_ADDRESS", "")


@dataclass
class NetworkConfig:
    rpc_url: str = os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
    program_id: str = os.getenv("ORB_PROGRAM_ID", "boreXQWsKpsJz5RR9BMtN8Vk4ndAk23sutj8spWYhwk")
    token_mint: str = os.getenv("ORB_TOKEN_MINT", "orebyr4mDiPDVgnfqvF5xiu5gKnh94Szuz8dqgNqdJn")
    jupiter_api_url: str = os.getenv("JUPITER_API_URL", "https://quote-api.jup.ag/v6")
    # "package.module:factory" returning a ChainAdapter for live mode
    chain_adapter: str = os.getenv("CHAIN_ADAPTER", "")
    price_cache_ttl: float = float(os.getenv("PRICE_CACHE_TTL", "120"))
    request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "15"))


@dataclass
class MiningConfig:
    initial_budget_pct: float = float(os.getenv("INITIAL_AUTOMATION_BUDGET_PCT", "90"))
    min_setup_budget: float = float(os.getenv("MIN_SETUP_BUDGET", "0.5"))
    reward_pool_threshold: float = float(os.getenv("MOTHERLOAD_THRESHOLD", "200"))
    unit_count: int = int(os.getenv("UNIT_COUNT", "25"))
    strategy: str = os.getenv("AUTOMATION_STRATEGY", "random")
    execution_fee: float = float(os.getenv("EXECUTION_FEE", "0.00001"))
    checkpoint_batch_size: int = int(os.getenv("CHECKPOINT_BATCH_SIZE", "10"))
    check_round_interval: float = float(os.getenv("CHECK_ROUND_INTERVAL", "10"))
    sleep_increment: float = 1.0
    error_backoff: float = float(os.getenv("ERROR_BACKOFF", "5"))
    low_rounds_warning: int = 5
    # Rescale hysteresis: both the relative and the absolute change must clear the band
    scale_up_pct: float = float(os.getenv("RESCALE_UP_PCT", "0.5"))
    scale_up_abs: float = float(os.getenv("RESCALE_UP_ABS", "100"))
    scale_down_pct: float = float(os.getenv("RESCALE_DOWN_PCT", "0.4"))
    scale_down_abs: float = float(os.getenv("RESCALE_DOWN_ABS", "100"))

    @property
    def budget_fraction(self) -> float:
        return self.initial_budget_pct / 100.0


@dataclass
class ProfitabilityConfig:
    enabled: bool = _env_bool("ENABLE_PRODUCTION_COST_CHECK", "true")
    competition_multiplier: float = float(os.getenv("ESTIMATED_COMPETITION_MULTIPLIER", "10"))
    min_competition: float = float(os.getenv("MIN_COMPETITION", "0.01"))
    fixed_emission: float = 4.0  # tokens per round
    hit_probability: float = 1 / 625
    protocol_fee_rate: float = 0.10  # refining fee on claimed tokens
    refund_rate: float = float(os.getenv("EXPECTED_REFUND_RATE", "0.95"))
    min_expected_value: float = float(os.getenv("MIN_EXPECTED_VALUE", "0"))


@dataclass
class RewardsConfig:
    check_rewards_interval: float = float(os.getenv("CHECK_REWARDS_INTERVAL", "300"))
    check_stake_interval: Optional[float] = _env_optional_float("CHECK_STAKE_INTERVAL")
    auto_claim_native_threshold: float = float(os.getenv("AUTO_CLAIM_SOL_THRESHOLD", "0.1"))
    auto_claim_token_threshold: float = float(os.getenv("AUTO_CLAIM_ORB_THRESHOLD", "1.0"))
    auto_claim_stake_yield: bool = _env_bool("AUTO_CLAIM_STAKE_YIELD", "true")
    auto_stake_enabled: bool = _env_bool("AUTO_STAKE_ENABLED", "false")
    stake_token_threshold: float = float(os.getenv("STAKE_ORB_THRESHOLD", "50"))
    min_token_to_keep: float = float(os.getenv("MIN_ORB_TO_KEEP", "1"))

    @property
    def stake_interval(self) -> float:
        """Stake checks run less often than claims unless overridden."""
        if self.check_stake_interval is not None:
            return self.check_stake_interval
        return self.check_rewards_interval * 2


@dataclass
class RefundConfig:
    auto_swap_enabled: bool = _env_bool("AUTO_SWAP_ENABLED", "true")
    min_automation_balance: float = float(os.getenv("MIN_AUTOMATION_BALANCE", "0.1"))
    swap_token_amount: float = float(os.getenv("SWAP_ORB_AMOUNT", "10"))
    slippage_bps: int = int(os.getenv("SLIPPAGE_BPS", "50"))
    # Fraction of swap proceeds that must show up in the escrow after a transfer
    transfer_tolerance: float = float(os.getenv("TRANSFER_TOLERANCE", "0.9"))


@dataclass
class TransactionConfig:
    max_retries: int = int(os.getenv("DEPLOY_MAX_RETRIES", "3"))
    retry_base_delay: float = float(os.getenv("RETRY_BASE_DELAY", "1"))
    retry_max_delay: float = float(os.getenv("RETRY_MAX_DELAY", "30"))
    dry_run: bool = _env_bool("DRY_RUN", "false")


@dataclass
class PnLConfig:
    avg_tx_fee: float = float(os.getenv("AVG_TX_FEE", "0.000005"))
    protocol_skim_rate: float = float(os.getenv("PROTOCOL_SKIM_RATE", "0.001"))
    reconcile_tolerance: float = float(os.getenv("RECONCILE_TOLERANCE", "0.01"))


@dataclass
class StorageConfig:
    data_dir: Path = Path(os.getenv("DATA_DIR", "data"))
    log_dir: Path = Path(os.getenv("LOG_DIR", "logs"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    db_name: str = "orb_mining.db"
    sim_state_name: str = "sim_chain.json"
    maintenance_name: str = ".maintenance"
    maintenance_grace: float = float(os.getenv("MAINTENANCE_GRACE", "15"))

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def sim_state_path(self) -> Path:
        return self.data_dir / self.sim_state_name

    @property
    def maintenance_path(self) -> Path:
        return self.data_dir / self.maintenance_name


@dataclass
class SimulationConfig:
    starting_native: float = float(os.getenv("SIM_STARTING_SOL", "2.0"))
    starting_token: float = float(os.getenv("SIM_STARTING_ORB", "0"))
    token_price: float = float(os.getenv("SIM_ORB_PRICE_SOL", "0.25"))
    native_usd: float = float(os.getenv("SIM_SOL_USD", "150"))
    swap_fee_rate: float = 0.003
    reward_pool: float = float(os.getenv("SIM_MOTHERLOAD", "300"))
    competing_deployment: float = float(os.getenv("SIM_COMPETING_SOL", "3.0"))
    round_slots: int = 150
    slot_seconds: float = 0.4
    tx_fee: float = 0.000005
    seed: Optional[int] = None


@dataclass
class MinerConfig:
    wallet: WalletConfig = field(default_factory=WalletConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    mining: MiningConfig = field(default_factory=MiningConfig)
    profitability: ProfitabilityConfig = field(default_factory=ProfitabilityConfig)
    rewards: RewardsConfig = field(default_factory=RewardsConfig)
    refund: RefundConfig = field(default_factory=RefundConfig)
    transactions: TransactionConfig = field(default_factory=TransactionConfig)
    pnl: PnLConfig = field(default_factory=PnLConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    network_name: str = os.getenv("NETWORK", "mainnet-beta")

    def validate_live(self):
        """Checks that must pass before touching real funds."""
        if not self.wallet.private_key:
            raise ConfigurationError("No PRIVATE_KEY configured. Set it in your .env file.")
        if not self.network.chain_adapter:
            raise ConfigurationError(
                "No CHAIN_ADAPTER configured. Point it at a 'module:factory' that "
                "returns a ChainAdapter for your wallet."
            )
        if self.mining.checkpoint_batch_size < 1:
            raise ConfigurationError("CHECKPOINT_BATCH_SIZE must be at least 1")
