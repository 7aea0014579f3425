"""Shared fixtures: an isolated config, a manually-advanced simulated chain, a ledger."""

import pytest

from orb_miner.chain.simulated import SimulatedChain, SimulatedMarket
from orb_miner.chain.submitter import TransactionSubmitter
from orb_miner.config import MinerConfig
from orb_miner.trading.ledger import Ledger


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def config(tmp_path):
    cfg = MinerConfig()
    cfg.storage.data_dir = tmp_path / "data"
    cfg.storage.log_dir = tmp_path / "logs"
    cfg.storage.maintenance_grace = 0
    cfg.wallet.private_key = ""
    cfg.network.chain_adapter = ""
    cfg.transactions.dry_run = False
    cfg.transactions.max_retries = 3
    cfg.transactions.retry_base_delay = 1
    cfg.transactions.retry_max_delay = 30
    cfg.mining.strategy = "random"
    cfg.mining.unit_count = 25
    cfg.mining.initial_budget_pct = 90
    cfg.mining.min_setup_budget = 0.5
    cfg.mining.reward_pool_threshold = 200
    cfg.mining.checkpoint_batch_size = 10
    cfg.mining.sleep_increment = 1.0
    cfg.profitability.enabled = True
    cfg.rewards.check_rewards_interval = 300
    cfg.rewards.check_stake_interval = None
    cfg.rewards.auto_stake_enabled = False
    cfg.refund.auto_swap_enabled = True
    cfg.simulation.starting_native = 2.0
    cfg.simulation.starting_token = 0.0
    cfg.simulation.token_price = 0.25
    cfg.simulation.reward_pool = 300.0
    cfg.simulation.competing_deployment = 3.0
    cfg.simulation.seed = 7
    return cfg


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain(config):
    return SimulatedChain(config.simulation, owner="TestWa11et", auto_advance=False)


@pytest.fixture
def market(chain, config):
    return SimulatedMarket(chain, config.simulation)


@pytest.fixture
def ledger(config):
    db = Ledger(config.storage.db_path)
    yield db
    db.close()


@pytest.fixture
def submitter(chain, config, sleeper):
    return TransactionSubmitter(chain, config, sleep=sleeper)
