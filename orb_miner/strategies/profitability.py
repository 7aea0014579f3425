"""
Profitability - is one more round worth paying for?

Each round we pay `cost_per_round` in SOL. Back comes:
- most of that SOL as a refund (the winning square's share is redistributed)
- a pro-rata slice of the fixed ORB emission
- a small chance at a pro-rata slice of the reward pool ("motherload")

The check is a straight expected-value comparison. It's pessimistic by
construction: no price means no deployment.
"""

from dataclasses import dataclass
from typing import Optional

POOL_TIER_START = 400
POOL_TIER_STEP = 100
MAX_TARGET_ROUNDS = 100
MIN_TARGET_ROUNDS = 30
ROUNDS_PER_TIER = 10


@dataclass(frozen=True)
class ProfitabilityParams:
    fixed_emission: float = 4.0
    hit_probability: float = 1 / 625
    protocol_fee_rate: float = 0.10
    refund_rate: float = 0.95
    competition_multiplier: float = 10.0
    min_competition: float = 0.01
    min_expected_value: float = 0.0

    @classmethod
    def from_config(cls, config) -> "ProfitabilityParams":
        p = config.profitability
        return cls(
            fixed_emission=p.fixed_emission,
            hit_probability=p.hit_probability,
            protocol_fee_rate=p.protocol_fee_rate,
            refund_rate=p.refund_rate,
            competition_multiplier=p.competition_multiplier,
            min_competition=p.min_competition,
            min_expected_value=p.min_expected_value,
        )


@dataclass(frozen=True)
class ProfitabilitySnapshot:
    production_cost: float
    our_share: float
    competing_deployment: float
    competition_source: str  # "onchain" or "estimated"
    expected_reward_tokens: float
    expected_reward_value: float
    expected_refund_value: float
    expected_value: float
    is_profitable: bool
    reason: str

    @property
    def roi(self) -> float:
        if self.production_cost <= 0:
            return 0.0
        return self.expected_value / self.production_cost


def evaluate_profitability(
    cost_per_round: float,
    reward_pool_size: float,
    market_price: float,
    competing_deployment: Optional[float] = None,
    params: ProfitabilityParams = ProfitabilityParams(),
) -> ProfitabilitySnapshot:
    """
    Expected value of deploying `cost_per_round` SOL this round.

    Args:
        cost_per_round: SOL we would deploy
        reward_pool_size: current reward pool in ORB
        market_price: ORB price in SOL (0 when the oracle failed)
        competing_deployment: SOL deployed by everyone else, if known
        params: model constants
    """
    if competing_deployment is not None and competing_deployment >= params.min_competition:
        competing = competing_deployment
        source = "onchain"
    else:
        competing = cost_per_round * params.competition_multiplier
        source = "estimated"

    total = cost_per_round + competing
    our_share = cost_per_round / total if total > 0 else 0.0

    gross_tokens = params.fixed_emission + params.hit_probability * max(reward_pool_size, 0.0)
    expected_tokens = our_share * gross_tokens * (1 - params.protocol_fee_rate)
    expected_reward_value = expected_tokens * max(market_price, 0.0)
    expected_refund = cost_per_round * params.refund_rate
    expected_value = expected_reward_value + expected_refund - cost_per_round

    if market_price <= 0:
        verdict, reason = False, "price unavailable"
    elif reward_pool_size <= 0:
        verdict, reason = False, "reward pool empty"
    elif cost_per_round <= 0:
        verdict, reason = False, "nothing to deploy"
    elif expected_value >= params.min_expected_value:
        verdict, reason = True, f"EV {expected_value:+.6f} SOL"
    else:
        verdict, reason = False, f"EV {expected_value:+.6f} SOL below {params.min_expected_value}"

    return ProfitabilitySnapshot(
        production_cost=cost_per_round,
        our_share=our_share,
        competing_deployment=competing,
        competition_source=source,
        expected_reward_tokens=expected_tokens,
        expected_reward_value=expected_reward_value,
        expected_refund_value=expected_refund,
        expected_value=expected_value,
        is_profitable=verdict,
        reason=reason,
    )


def target_rounds_for_pool(reward_pool_size: float) -> int:
    """
    How many rounds the escrow budget should last.

    Small pools get spread thin over 100 rounds. Past 400 ORB every extra 100
    takes 10 rounds off, so a big pool gets bigger bets. Never below 30.
    """
    if reward_pool_size < POOL_TIER_START:
        return MAX_TARGET_ROUNDS
    tiers_above = int(reward_pool_size // POOL_TIER_STEP) - POOL_TIER_START // POOL_TIER_STEP
    return max(MIN_TARGET_ROUNDS, MAX_TARGET_ROUNDS - tiers_above * ROUNDS_PER_TIER)
