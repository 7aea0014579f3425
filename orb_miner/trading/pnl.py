"""
PnL - what did mining actually earn?

Separates three things:
- capital: SOL you hold right now (wallet + escrow + unclaimed)
- income/expenses: what the ledger says came in and went out
- true profit: current total value against a fixed baseline, if one is set

ORB holdings are marked to market at the oracle price. With a baseline we
also reconcile the wallet: baseline + income - expenses should match what's
actually there, give or take reconcile_tolerance.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from orb_miner.errors import OracleUnavailable
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PnLParams:
    avg_tx_fee: float = 0.000005
    protocol_skim_rate: float = 0.001
    reconcile_tolerance: float = 0.01

    @classmethod
    def from_config(cls, config) -> "PnLParams":
        return cls(
            avg_tx_fee=config.pnl.avg_tx_fee,
            protocol_skim_rate=config.pnl.protocol_skim_rate,
            reconcile_tolerance=config.pnl.reconcile_tolerance,
        )


@dataclass(frozen=True)
class Balances:
    wallet_native: float = 0.0
    escrow_native: float = 0.0
    claimable_native: float = 0.0
    wallet_token: float = 0.0
    claimable_token: float = 0.0
    staked_token: float = 0.0
    token_price: float = 0.0  # ORB in SOL

    @property
    def capital(self) -> float:
        return self.wallet_native + self.escrow_native + self.claimable_native

    @property
    def token_holdings(self) -> float:
        return self.claimable_token + self.wallet_token + self.staked_token

    @property
    def token_value(self) -> float:
        return self.token_holdings * self.token_price

    @property
    def total_value(self) -> float:
        return self.capital + self.token_value


@dataclass(frozen=True)
class PnLSummary:
    balances: Balances
    claimed_native: float
    native_from_swaps: float
    income: float
    tx_fees: float
    fees_estimated: bool
    swap_fees: float
    protocol_skim: float
    expenses: float
    net_profit_native: float
    net_profit_total: float
    capital_deployed: float
    roi: float
    rounds_participated: int
    deploy_count: int
    tx_count: int
    baseline: Optional[float] = None
    true_profit: Optional[float] = None
    expected_wallet: Optional[float] = None
    wallet_difference: Optional[float] = None
    reconciled: Optional[bool] = None

    @property
    def roi_percent(self) -> float:
        return self.roi * 100

    @property
    def has_baseline(self) -> bool:
        return self.baseline is not None

    @property
    def avg_deploy_per_round(self) -> float:
        if self.rounds_participated == 0:
            return 0.0
        return self.capital_deployed / self.rounds_participated

    @property
    def avg_profit_per_round(self) -> float:
        if self.rounds_participated == 0:
            return 0.0
        return self.net_profit_total / self.rounds_participated


def reconcile(balances: Balances, records: list, baseline: Optional[float] = None,
              params: PnLParams = PnLParams()) -> PnLSummary:
    """Pure PnL calculation from live balances and the full ledger."""
    ok = [r for r in records if r.succeeded and r.type != TxType.BASELINE]

    claimed_native = sum(r.native_amount for r in ok if r.type == TxType.CLAIM_NATIVE)
    swaps = [r for r in ok if r.type == TxType.SWAP]
    native_from_swaps = sum(r.native_amount for r in swaps)
    deploys = [r for r in ok if r.type == TxType.DEPLOY]
    capital_deployed = sum(r.native_amount for r in deploys)
    rounds = {r.round_id for r in deploys if r.round_id is not None}

    chain_txs = [r for r in ok if r.type != TxType.SWAP]
    recorded_fees = [r.fee for r in chain_txs if r.fee is not None]
    if recorded_fees:
        tx_fees = sum(recorded_fees)
        fees_estimated = False
    else:
        tx_fees = len(chain_txs) * params.avg_tx_fee
        fees_estimated = bool(chain_txs)
    swap_fees = sum(r.fee for r in swaps if r.fee is not None)
    protocol_skim = capital_deployed * params.protocol_skim_rate
    expenses = tx_fees + swap_fees + protocol_skim

    token_value = balances.token_value
    income = claimed_native + native_from_swaps + token_value
    net_profit_native = claimed_native + native_from_swaps - expenses
    net_profit_total = income - expenses
    roi = net_profit_total / capital_deployed if capital_deployed > 0 else 0.0

    true_profit = expected_wallet = wallet_difference = reconciled = None
    if baseline is not None:
        true_profit = balances.capital + token_value - baseline
        expected_wallet = baseline + income - expenses
        wallet_difference = balances.wallet_native - expected_wallet
        reconciled = abs(wallet_difference) <= params.reconcile_tolerance

    return PnLSummary(
        balances=balances,
        claimed_native=claimed_native,
        native_from_swaps=native_from_swaps,
        income=income,
        tx_fees=tx_fees,
        fees_estimated=fees_estimated,
        swap_fees=swap_fees,
        protocol_skim=protocol_skim,
        expenses=expenses,
        net_profit_native=net_profit_native,
        net_profit_total=net_profit_total,
        capital_deployed=capital_deployed,
        roi=roi,
        rounds_participated=len(rounds),
        deploy_count=len(deploys),
        tx_count=len(chain_txs),
        baseline=baseline,
        true_profit=true_profit,
        expected_wallet=expected_wallet,
        wallet_difference=wallet_difference,
        reconciled=reconciled,
    )


class PnLReconciler:
    """Reads live balances and the ledger. Never writes to the chain."""

    def __init__(self, chain, oracle, ledger: Ledger, config):
        self.chain = chain
        self.oracle = oracle
        self.ledger = ledger
        self.config = config
        self.params = PnLParams.from_config(config)

    def fetch_balances(self, require_price: bool = False) -> Balances:
        wallet = self.chain.fetch_wallet_balances()
        escrow = self.chain.fetch_escrow()
        agent = self.chain.fetch_agent_state()
        stake = self.chain.fetch_stake_account()
        quote = self.oracle.get_price()
        if not quote.available:
            if require_price:
                raise OracleUnavailable("ORB price unavailable")
            logger.warning("ORB price unavailable, ORB holdings valued at 0")

        return Balances(
            wallet_native=wallet.native,
            escrow_native=escrow.balance if escrow else 0.0,
            claimable_native=agent.rewards_native if agent else 0.0,
            wallet_token=wallet.token,
            claimable_token=agent.rewards_token if agent else 0.0,
            staked_token=stake.balance if stake else 0.0,
            token_price=quote.price_in_native,
        )

    def summary(self) -> PnLSummary:
        balances = self.fetch_balances()
        records = self.ledger.query()
        return reconcile(balances, records, self.ledger.get_baseline(), self.params)

    def total_value(self) -> float:
        """Everything the wallet controls, in SOL. Used for baselines."""
        return self.fetch_balances(require_price=True).total_value


def reset_pnl(ledger: Ledger, reconciler: PnLReconciler, maintenance, backup_dir,
              grace: float, record_baseline: bool = False, sleep=time.sleep) -> dict:
    """
    Archive the ledger and start PnL tracking over.

    Raises the maintenance flag so a running miner releases the database,
    waits `grace` seconds, archives and clears the ledger (settings survive),
    and optionally records the current total value as the new baseline.
    The flag comes down whatever happens.
    """
    maintenance.set(f"PnL reset in progress at {time.strftime('%Y-%m-%dT%H:%M:%S')}")
    try:
        if grace > 0:
            logger.info("Waiting %.0fs for the miner to release the database...", grace)
            sleep(grace)

        backup_path = ledger.archive_and_reset(backup_dir)
        result = {"backup_path": backup_path, "baseline": None}

        if record_baseline:
            value = reconciler.total_value()
            ledger.set_baseline(value)
            ledger.append(TransactionRecord(
                type=TxType.BASELINE,
                signature="MANUAL_RESET_BASELINE",
                native_amount=value,
                notes=f"PnL reset - baseline set to {value:.4f} SOL (total value of all assets)",
            ))
            result["baseline"] = value
        return result
    finally:
        maintenance.clear()
