"""
Transaction submission with bounded retry.

Every chain write in the miner goes through TransactionSubmitter.submit():
transient failures are retried with exponential backoff, everything else is
classified and raised immediately so the caller can decide what it means.
"""

import logging
import time
import uuid

from orb_miner.chain.adapter import ChainAdapter, Receipt
from orb_miner.errors import TransientNetworkError, classify_chain_error

logger = logging.getLogger(__name__)
tx_logger = logging.getLogger("orb_miner.transactions")


class TransactionSubmitter:

    def __init__(self, chain: ChainAdapter, config, sleep=time.sleep):
        self.chain = chain
        self.config = config
        self.sleep = sleep
        self.max_retries = max(0, config.transactions.max_retries)
        self.base_delay = config.transactions.retry_base_delay
        self.max_delay = config.transactions.retry_max_delay

    @property
    def dry_run(self) -> bool:
        return self.config.transactions.dry_run

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def submit(self, instructions: list, context: str) -> Receipt:
        if not instructions:
            raise ValueError(f"{context}: nothing to submit")

        if self.dry_run:
            kinds = ", ".join(ix.kind.value for ix in instructions)
            logger.info("[DRY RUN] %s: would submit %d instruction(s): %s",
                        context, len(instructions), kinds)
            return Receipt(signature=f"DRY_RUN_{uuid.uuid4().hex[:16]}", fee=0.0)

        attempt = 0
        while True:
            try:
                receipt = self.chain.submit(instructions, context)
            except Exception as exc:
                error = classify_chain_error(exc)
                if not isinstance(error, TransientNetworkError):
                    raise error from exc
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("%s: giving up after %d attempt(s): %s", context, attempt, error)
                    raise TransientNetworkError(
                        f"{context}: retries exhausted ({attempt} attempts): {error}"
                    ) from exc
                delay = self.backoff_delay(attempt)
                logger.warning("%s: attempt %d/%d failed (%s), retrying in %.1fs",
                               context, attempt, self.max_retries + 1, error, delay)
                self.sleep(delay)
                continue

            tx_logger.info("[TRANSACTION] %s | %s", context, receipt.signature)
            return receipt
