"""
Reward claims and auto-stake.

Runs on its own cadence inside the miner loop:
- every check_rewards_interval: claim SOL and ORB mining rewards over their
  thresholds, and any staking yield
- every stake_interval: stake wallet ORB above the keep floor

Each claim is its own transaction so one failure doesn't block the others.
"""

import logging
from typing import Optional

from orb_miner.chain.adapter import (
    ChainAdapter,
    claim_native_instruction,
    claim_token_instruction,
    claim_yield_instruction,
    stake_instruction,
)
from orb_miner.chain.submitter import TransactionSubmitter
from orb_miner.errors import MinerError
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType

logger = logging.getLogger(__name__)


def is_due(last_check: Optional[float], interval: float, now: float) -> bool:
    return last_check is None or now - last_check >= interval


class RewardScheduler:

    def __init__(self, chain: ChainAdapter, submitter: TransactionSubmitter,
                 ledger: Ledger, config):
        self.chain = chain
        self.submitter = submitter
        self.ledger = ledger
        self.config = config

    def _record(self, record: TransactionRecord):
        if not self.submitter.dry_run:
            self.ledger.append(record)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def run_due(self, context, now: float) -> list:
        """
        Run whichever tasks are due and stamp their gates on `context`.

        `context` needs last_claim_check and last_stake_check attributes.
        Returns the names of the tasks that ran.
        """
        ran = []
        cfg = self.config.rewards
        if is_due(context.last_claim_check, cfg.check_rewards_interval, now):
            context.last_claim_check = now
            try:
                self.claim_rewards()
            except Exception as e:
                logger.error("Auto-claim failed: %s", e)
            ran.append("claim")
        if cfg.auto_stake_enabled and is_due(context.last_stake_check, cfg.stake_interval, now):
            context.last_stake_check = now
            try:
                self.stake_surplus()
            except Exception as e:
                logger.error("Auto-stake failed: %s", e)
            ran.append("stake")
        return ran

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim_rewards(self) -> dict:
        """Claim whatever is over its threshold. Returns amounts actually claimed."""
        cfg = self.config.rewards
        claimed = {"native": 0.0, "token": 0.0, "yield": 0.0}

        logger.debug("Checking rewards for auto-claim...")
        try:
            agent = self.chain.fetch_agent_state()
        except Exception as e:
            logger.error("Could not read mining rewards: %s", e)
            agent = None
        if agent is not None:
            if agent.rewards_native >= cfg.auto_claim_native_threshold:
                logger.info("Mining SOL rewards (%.4f) >= threshold (%s), claiming",
                            agent.rewards_native, cfg.auto_claim_native_threshold)
                if self._claim(claim_native_instruction(), "Claim SOL",
                               TxType.CLAIM_NATIVE, native=agent.rewards_native):
                    claimed["native"] = agent.rewards_native

            if agent.rewards_token >= cfg.auto_claim_token_threshold:
                logger.info("Mining ORB rewards (%.2f) >= threshold (%s), claiming",
                            agent.rewards_token, cfg.auto_claim_token_threshold)
                if self._claim(claim_token_instruction(), "Claim ORB",
                               TxType.CLAIM_TOKEN, token=agent.rewards_token):
                    claimed["token"] = agent.rewards_token

        if cfg.auto_claim_stake_yield:
            claimed["yield"] = self.claim_stake_yield()
        return claimed

    def _claim(self, instruction, context: str, tx_type: TxType,
               native: float = 0.0, token: float = 0.0) -> bool:
        try:
            receipt = self.submitter.submit([instruction], context)
        except MinerError as e:
            logger.error("%s failed: %s", context, e)
            return False
        self._record(TransactionRecord(
            type=tx_type,
            signature=receipt.signature,
            native_amount=native,
            token_amount=token,
            fee=receipt.fee,
        ))
        logger.info("%s successful: %s", context, receipt.signature)
        return True

    def claim_stake_yield(self) -> float:
        """Best effort. Nothing to claim is normal, so failures only log at debug."""
        try:
            stake = self.chain.fetch_stake_account()
            if stake is None or stake.rewards <= 0:
                return 0.0
            receipt = self.submitter.submit([claim_yield_instruction()], "Claim Stake Yield")
        except Exception as e:
            logger.debug("Stake yield claim skipped: %s", e)
            return 0.0

        self._record(TransactionRecord(
            type=TxType.CLAIM_STAKE_YIELD,
            signature=receipt.signature,
            token_amount=stake.rewards,
            fee=receipt.fee,
        ))
        logger.info("Claimed %.4f ORB staking yield", stake.rewards)
        return stake.rewards

    # ------------------------------------------------------------------
    # Stake
    # ------------------------------------------------------------------

    def stake_surplus(self) -> float:
        """Stake wallet ORB above min_token_to_keep once it reaches the threshold."""
        cfg = self.config.rewards
        balances = self.chain.fetch_wallet_balances()
        surplus = balances.token - cfg.min_token_to_keep
        if surplus < cfg.stake_token_threshold:
            logger.debug("ORB surplus %.2f below stake threshold %s", surplus, cfg.stake_token_threshold)
            return 0.0

        logger.info("ORB balance (%.2f) over stake threshold (%s), staking %.2f",
                    balances.token, cfg.stake_token_threshold, surplus)
        try:
            receipt = self.submitter.submit([stake_instruction(surplus)], "Auto-Stake")
        except MinerError as e:
            logger.error("Auto-stake failed: %s", e)
            return 0.0

        self._record(TransactionRecord(
            type=TxType.STAKE,
            signature=receipt.signature,
            token_amount=surplus,
            fee=receipt.fee,
        ))
        return surplus
