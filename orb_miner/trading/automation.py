"""
Automation lifecycle - the escrow that pays for every round.

Handles:
- Creating the escrow sized to the current reward pool
- Closing it (automate with the default executor)
- Rescaling when the reward pool moves a lot
- Topping it up by swapping ORB to SOL

Every write goes through the TransactionSubmitter and lands in the ledger.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from orb_miner.chain.adapter import (
    ChainAdapter,
    EscrowSnapshot,
    FixedUnits,
    automate_instruction,
    close_escrow_instruction,
    parse_strategy,
    transfer_to_escrow_instruction,
)
from orb_miner.chain.submitter import TransactionSubmitter
from orb_miner.errors import InsufficientFunds
from orb_miner.strategies.profitability import target_rounds_for_pool
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType

logger = logging.getLogger(__name__)

SCALE_UP = "up"
SCALE_DOWN = "down"


@dataclass
class EscrowSetup:
    deposit: float
    amount_per_unit: float
    unit_count: int
    target_rounds: int
    reward_pool_size: float
    signature: str

    @property
    def cost_per_round(self) -> float:
        return self.amount_per_unit * self.unit_count


def rescale_decision(setup_pool: float, current_pool: float,
                     up_pct: float = 0.5, up_abs: float = 100,
                     down_pct: float = 0.4, down_abs: float = 100) -> Optional[str]:
    """
    Hysteresis check on the reward pool since the escrow was sized.

    Both the relative and the absolute change must clear the band, so a
    small pool wobbling by a few tokens never churns the escrow.
    """
    change = current_pool - setup_pool
    if setup_pool > 0:
        pct = change / setup_pool
    else:
        pct = float("inf") if change > 0 else 0.0

    if pct >= up_pct and change >= up_abs:
        return SCALE_UP
    if pct <= -down_pct and abs(change) >= down_abs:
        return SCALE_DOWN
    return None


class AutomationManager:
    """
    Creates, closes, rescales and refunds the automation escrow.

    `swapper` is anything with swap_token_to_native(amount, slippage_bps)
    returning a SwapResult: the Jupiter client live, the simulated market
    on paper.
    """

    def __init__(self, chain: ChainAdapter, submitter: TransactionSubmitter,
                 ledger: Ledger, swapper, config):
        self.chain = chain
        self.submitter = submitter
        self.ledger = ledger
        self.swapper = swapper
        self.config = config
        self.strategy = parse_strategy(config.mining.strategy)
        self.last_setup: Optional[EscrowSetup] = None

    @property
    def unit_count(self) -> int:
        if isinstance(self.strategy, FixedUnits):
            return len(set(self.strategy.units))
        return self.config.mining.unit_count

    def _record(self, record: TransactionRecord):
        if self.submitter.dry_run:
            return
        self.ledger.append(record)

    # ------------------------------------------------------------------
    # Create / close
    # ------------------------------------------------------------------

    def create(self, budget_fraction: float, reward_pool_size: float) -> EscrowSetup:
        """Fund a new escrow with `budget_fraction` of the wallet."""
        balances = self.chain.fetch_wallet_balances()
        budget = balances.native * budget_fraction
        logger.info("Wallet: %.4f SOL, usable budget (%.0f%%): %.4f SOL",
                    balances.native, budget_fraction * 100, budget)

        min_budget = self.config.mining.min_setup_budget
        if budget < min_budget:
            logger.error("Insufficient SOL for automation: budget %.4f < minimum %.4f",
                         budget, min_budget)
            raise InsufficientFunds(f"Usable budget {budget:.4f} SOL below minimum {min_budget} SOL")

        target_rounds = target_rounds_for_pool(reward_pool_size)
        units = self.unit_count
        amount_per_unit = budget / (target_rounds * units)
        logger.info("Target rounds: %d (reward pool %.0f ORB), %.6f SOL/unit, %.4f SOL/round",
                    target_rounds, reward_pool_size, amount_per_unit, amount_per_unit * units)

        instruction = automate_instruction(
            amount_per_unit=amount_per_unit,
            deposit=budget,
            fee=self.config.mining.execution_fee,
            strategy=self.strategy,
            executor=self.chain.owner,
        )
        receipt = self.submitter.submit([instruction], "Setup Automation")
        self._record(TransactionRecord(
            type=TxType.AUTOMATION_SETUP,
            signature=receipt.signature,
            native_amount=budget,
            fee=receipt.fee,
            notes=f"{target_rounds} rounds @ pool {reward_pool_size:.2f}",
        ))
        logger.info("Automation created: %.4f SOL deposited, ~%d rounds", budget, target_rounds)

        self.last_setup = EscrowSetup(
            deposit=budget,
            amount_per_unit=amount_per_unit,
            unit_count=units,
            target_rounds=target_rounds,
            reward_pool_size=reward_pool_size,
            signature=receipt.signature,
        )
        return self.last_setup

    def close(self) -> Optional[float]:
        """Close the escrow and return the reclaimed balance (None if there was none)."""
        escrow = self.chain.fetch_escrow()
        if escrow is None:
            logger.debug("No automation account to close")
            return None

        instruction = close_escrow_instruction()
        receipt = self.submitter.submit([instruction], "Close Automation")
        self._record(TransactionRecord(
            type=TxType.AUTOMATION_CLOSE,
            signature=receipt.signature,
            native_amount=escrow.balance,
            fee=receipt.fee,
        ))
        logger.info("Automation closed, reclaimed %.6f SOL", escrow.balance)
        return escrow.balance

    # ------------------------------------------------------------------
    # Rescale
    # ------------------------------------------------------------------

    def should_rescale(self, setup_pool: float, current_pool: float) -> Optional[str]:
        m = self.config.mining
        return rescale_decision(setup_pool, current_pool,
                                up_pct=m.scale_up_pct, up_abs=m.scale_up_abs,
                                down_pct=m.scale_down_pct, down_abs=m.scale_down_abs)

    def rescale(self, current_pool: float, setup_pool: float) -> Optional[EscrowSetup]:
        """Close and recreate the escrow if the pool moved outside the band."""
        direction = self.should_rescale(setup_pool, current_pool)
        if direction is None:
            return None

        logger.info("Reward pool moved %.2f -> %.2f ORB, scaling %s", setup_pool, current_pool, direction)
        self.close()
        return self.create(self.config.mining.budget_fraction, current_pool)

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def needs_refund(self, escrow: EscrowSnapshot) -> bool:
        return (escrow.balance < self.config.refund.min_automation_balance
                or not escrow.can_cover_round())

    def refund(self, escrow: EscrowSnapshot, reward_pool_size: float) -> bool:
        """
        Top up a low escrow by swapping ORB to SOL and transferring it in.

        Returns True when the escrow is usable afterwards. If the transfer
        doesn't show up in the escrow's tracked balance, falls back to
        close + create so the SOL isn't stranded.
        """
        if not self.needs_refund(escrow):
            return True

        cfg = self.config.refund
        logger.warning("Automation balance low: %.6f SOL (threshold %.4f, round cost %.6f)",
                       escrow.balance, cfg.min_automation_balance, escrow.cost_per_round)

        if not cfg.auto_swap_enabled:
            logger.warning("Auto-swap disabled. Refund the automation manually or set AUTO_SWAP_ENABLED")
            return False

        balances = self.chain.fetch_wallet_balances()
        available = balances.token - self.config.rewards.min_token_to_keep
        if available < cfg.swap_token_amount:
            logger.error("Insufficient ORB to swap: have %.2f available, need %.2f",
                         available, cfg.swap_token_amount)
            return False

        logger.info("Swapping %.2f ORB to SOL to refund automation", cfg.swap_token_amount)
        result = self.swapper.swap_token_to_native(cfg.swap_token_amount, cfg.slippage_bps)
        if not result.success:
            logger.error("Auto-swap failed: %s", result.error)
            return False

        self._record(TransactionRecord(
            type=TxType.SWAP,
            signature=result.signature or "",
            native_amount=result.native_received,
            token_amount=cfg.swap_token_amount,
            fee=result.fee,
        ))
        proceeds = result.native_received
        logger.info("Swap received %.6f SOL", proceeds)

        receipt = self.submitter.submit([transfer_to_escrow_instruction(proceeds)], "Refund Automation")
        self._record(TransactionRecord(
            type=TxType.AUTOMATION_REFUND,
            signature=receipt.signature,
            native_amount=proceeds,
            fee=receipt.fee,
        ))

        if self.submitter.dry_run:
            return True

        after = self.chain.fetch_escrow()
        rise = (after.balance - escrow.balance) if after is not None else 0.0
        if rise >= cfg.transfer_tolerance * proceeds:
            logger.info("Automation refunded: %.6f -> %.6f SOL", escrow.balance, after.balance)
            return True

        logger.warning("Escrow balance rose %.6f SOL, expected ~%.6f. Recreating automation",
                       rise, proceeds)
        self.close()
        self.create(self.config.mining.budget_fraction, reward_pool_size)
        return True
