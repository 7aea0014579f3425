"""
Simulated chain - paper mining without risking a lamport.

Implements the ChainAdapter contract against an in-memory copy of the game:
rounds advance with the clock, deployments need a current checkpoint, the
escrow pays for each round, and checkpointing settles rewards using the same
expected-value shape the profitability check assumes (plus a seeded roll for
the reward pool). State persists to JSON between runs so the report command
sees what the miner did.
"""

import copy
import json
import logging
import random
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from orb_miner.chain.adapter import (
    AgentState,
    BoardSnapshot,
    ChainAdapter,
    EscrowSnapshot,
    FixedUnits,
    InstructionKind,
    RandomUnits,
    Receipt,
    RewardPoolSnapshot,
    RoundSnapshot,
    StakeSnapshot,
    WalletBalances,
)
from orb_miner.chain.jupiter import PriceQuote, SwapResult

logger = logging.getLogger(__name__)

POOL_GROWTH_PER_ROUND = 0.2
STAKE_YIELD_PER_ROUND = 0.0001
REFINING_FEE = 0.10
FIXED_EMISSION = 4.0
HIT_PROBABILITY = 1 / 625
REFUND_RATE = 0.95


class SimulatedRejection(RuntimeError):
    """Raised the way a real program rejection would surface from the RPC."""

    def __init__(self, message: str):
        super().__init__(message)
        self.logs = [f"Program log: Error: {message}"]


@dataclass
class SimState:
    round_id: int = 1
    round_start_slot: int = 0
    slot: int = 0
    genesis_time: float = 0.0
    wallet_native: float = 0.0
    wallet_token: float = 0.0
    reward_pool: float = 0.0
    checkpoint_id: Optional[int] = None
    rewards_native: float = 0.0
    rewards_token: float = 0.0
    stake_balance: float = 0.0
    stake_rewards: float = 0.0
    escrow: Optional[dict] = None
    deployments: dict = field(default_factory=dict)  # round_id -> native deployed
    transfer_registers: bool = True


class SimulatedChain(ChainAdapter):
    """
    Paper-trading chain.

    auto_advance=True ties slots to the clock (used by `orbminer run`);
    tests pass auto_advance=False and call advance_round() themselves.
    """

    def __init__(self, sim_config, owner: str = "SiMuLaTeDWa11et", clock=time.time,
                 auto_advance: bool = True, state: Optional[SimState] = None):
        self.sim = sim_config
        self.owner = owner
        self.clock = clock
        self.auto_advance = auto_advance
        self.rng = random.Random(sim_config.seed)
        self.submissions: list = []
        self._queued_failures: list = []
        if state is None:
            state = SimState(
                genesis_time=clock(),
                wallet_native=sim_config.starting_native,
                wallet_token=sim_config.starting_token,
                reward_pool=sim_config.reward_pool,
            )
        self.state = state

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_state(self, path: Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(self.state)
        data["deployments"] = {str(k): v for k, v in self.state.deployments.items()}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, sim_config, path: Path, **kwargs) -> "SimulatedChain":
        path = Path(path)
        if not path.exists():
            return cls(sim_config, **kwargs)
        with open(path) as f:
            data = json.load(f)
        data["deployments"] = {int(k): v for k, v in data.get("deployments", {}).items()}
        state = SimState(**data)
        return cls(sim_config, state=state, **kwargs)

    # ------------------------------------------------------------------
    # Clock and rounds
    # ------------------------------------------------------------------

    def _sync(self):
        if self.auto_advance:
            elapsed = max(0.0, self.clock() - self.state.genesis_time)
            self.state.slot = max(self.state.slot, int(elapsed / self.sim.slot_seconds))
        while self.state.slot >= self.state.round_start_slot + self.sim.round_slots:
            self._roll_round()

    def _roll_round(self):
        s = self.state
        s.round_start_slot += self.sim.round_slots
        s.round_id += 1
        s.reward_pool += POOL_GROWTH_PER_ROUND
        s.stake_rewards += s.stake_balance * STAKE_YIELD_PER_ROUND

    def advance_round(self, count: int = 1):
        """Move the board forward `count` rounds (manual mode)."""
        for _ in range(count):
            self.state.slot = self.state.round_start_slot + self.sim.round_slots
            self._roll_round()
            self.state.slot = self.state.round_start_slot + 1

    def queue_failure(self, error: Exception):
        """Make the next submit() raise `error` before touching state."""
        self._queued_failures.append(error)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_board(self) -> BoardSnapshot:
        self._sync()
        s = self.state
        return BoardSnapshot(
            round_id=s.round_id,
            start_slot=s.round_start_slot,
            end_slot=s.round_start_slot + self.sim.round_slots,
        )

    def fetch_round(self, round_id: int) -> Optional[RoundSnapshot]:
        self._sync()
        if round_id > self.state.round_id:
            return None
        ours = self.state.deployments.get(round_id, 0.0)
        return RoundSnapshot(round_id=round_id,
                             total_deployed=self.sim.competing_deployment + ours)

    def fetch_agent_state(self) -> Optional[AgentState]:
        self._sync()
        s = self.state
        if s.checkpoint_id is None:
            return None
        return AgentState(checkpoint_id=s.checkpoint_id,
                          rewards_native=s.rewards_native,
                          rewards_token=s.rewards_token)

    def fetch_reward_pool(self) -> RewardPoolSnapshot:
        self._sync()
        return RewardPoolSnapshot(size=self.state.reward_pool)

    def fetch_stake_account(self) -> Optional[StakeSnapshot]:
        self._sync()
        s = self.state
        if s.stake_balance <= 0 and s.stake_rewards <= 0:
            return None
        return StakeSnapshot(balance=s.stake_balance, rewards=s.stake_rewards)

    def fetch_escrow(self) -> Optional[EscrowSnapshot]:
        self._sync()
        escrow = self.state.escrow
        if escrow is None:
            return None
        strategy = RandomUnits() if escrow["strategy"] == 0 else FixedUnits(
            units=tuple(i for i in range(25) if escrow["unit_mask"] >> i & 1))
        return EscrowSnapshot(
            amount_per_unit=escrow["amount_per_unit"],
            balance=escrow["balance"],
            unit_mask=escrow["unit_mask"],
            strategy=strategy,
        )

    def fetch_wallet_balances(self) -> WalletBalances:
        self._sync()
        return WalletBalances(native=self.state.wallet_native, token=self.state.wallet_token)

    def current_slot(self) -> int:
        self._sync()
        return self.state.slot

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def submit(self, instructions: list, context: str) -> Receipt:
        self._sync()
        if self._queued_failures:
            raise self._queued_failures.pop(0)

        # Transactions are atomic: apply to a copy, commit only if every instruction lands.
        draft = copy.deepcopy(self.state)
        fee = self.sim.tx_fee
        if draft.wallet_native < fee:
            raise SimulatedRejection("insufficient lamports for fee")
        draft.wallet_native -= fee
        for ix in instructions:
            self._apply(draft, ix)

        self.state = draft
        self.submissions.append((context, [ix for ix in instructions]))
        return Receipt(signature=f"SIM_{uuid.uuid4().hex[:16]}", fee=fee)

    def swap_token_to_native(self, amount: float, price: float) -> Receipt:
        self._sync()
        s = self.state
        if amount > s.wallet_token:
            raise SimulatedRejection("insufficient token balance for swap")
        fee = self.sim.tx_fee
        s.wallet_token -= amount
        s.wallet_native += amount * price * (1 - self.sim.swap_fee_rate) - fee
        return Receipt(signature=f"SIM_SWAP_{uuid.uuid4().hex[:12]}", fee=fee)

    def _apply(self, s: SimState, ix):
        handler = {
            InstructionKind.DEPLOY: self._apply_deploy,
            InstructionKind.CHECKPOINT: self._apply_checkpoint,
            InstructionKind.AUTOMATE: self._apply_automate,
            InstructionKind.TRANSFER: self._apply_transfer,
            InstructionKind.CLAIM_NATIVE: self._apply_claim_native,
            InstructionKind.CLAIM_TOKEN: self._apply_claim_token,
            InstructionKind.CLAIM_YIELD: self._apply_claim_yield,
            InstructionKind.STAKE: self._apply_stake,
        }[ix.kind]
        handler(s, ix.params)

    def _apply_deploy(self, s: SimState, params: dict):
        if s.escrow is None:
            raise SimulatedRejection("automation account not found")
        if s.checkpoint_id is None:
            s.checkpoint_id = s.round_id
        if s.checkpoint_id < s.round_id:
            raise SimulatedRejection(
                f"Miner not checkpointed (checkpoint {s.checkpoint_id}, round {s.round_id})")
        if params.get("round_id", s.round_id) != s.round_id:
            raise SimulatedRejection(f"round {params.get('round_id')} has ended")
        if s.round_id in s.deployments:
            raise SimulatedRejection("already deployed this round")
        escrow = s.escrow
        units = bin(escrow["unit_mask"]).count("1")
        cost = escrow["amount_per_unit"] * units
        if escrow["balance"] < cost + escrow["fee"]:
            raise SimulatedRejection("insufficient funds in automation account")
        escrow["balance"] -= cost + escrow["fee"]
        s.deployments[s.round_id] = cost

    def _apply_checkpoint(self, s: SimState, params: dict):
        if s.checkpoint_id is None:
            s.checkpoint_id = s.round_id
            return
        if s.checkpoint_id >= s.round_id:
            raise SimulatedRejection("already checkpointed")
        self._settle(s, s.checkpoint_id)
        s.checkpoint_id += 1

    def _settle(self, s: SimState, round_id: int):
        ours = s.deployments.get(round_id, 0.0)
        if ours <= 0:
            return
        share = ours / (ours + self.sim.competing_deployment)
        tokens = share * FIXED_EMISSION
        if self.rng.random() < HIT_PROBABILITY:
            tokens += share * s.reward_pool
            logger.info("Simulated reward pool hit in round %d", round_id)
            s.reward_pool = 0.0
        s.rewards_token += tokens * (1 - REFINING_FEE)
        s.rewards_native += ours * REFUND_RATE

    def _apply_automate(self, s: SimState, params: dict):
        if params.get("unit_mask", 0) == 0 and params.get("deposit", 0) == 0:
            if s.escrow is None:
                raise SimulatedRejection("automation account not found")
            s.wallet_native += s.escrow["balance"] + s.escrow.get("unregistered", 0.0)
            s.escrow = None
            return
        if s.escrow is not None:
            raise SimulatedRejection("automation account already exists")
        deposit = params["deposit"]
        if deposit > s.wallet_native:
            raise SimulatedRejection("insufficient funds for automation deposit")
        s.wallet_native -= deposit
        s.escrow = {
            "amount_per_unit": params["amount_per_unit"],
            "balance": deposit,
            "unit_mask": params["unit_mask"],
            "strategy": params["strategy"],
            "fee": params.get("fee", 0.0),
            "unregistered": 0.0,
        }
        if s.checkpoint_id is None:
            s.checkpoint_id = s.round_id

    def _apply_transfer(self, s: SimState, params: dict):
        amount = params["amount"]
        if s.escrow is None:
            raise SimulatedRejection("automation account not found")
        if amount > s.wallet_native:
            raise SimulatedRejection("insufficient funds for transfer")
        s.wallet_native -= amount
        # The program tracks the escrow balance itself; raw lamports may not count.
        if s.transfer_registers:
            s.escrow["balance"] += amount
        else:
            s.escrow["unregistered"] = s.escrow.get("unregistered", 0.0) + amount

    def _apply_claim_native(self, s: SimState, params: dict):
        s.wallet_native += s.rewards_native
        s.rewards_native = 0.0

    def _apply_claim_token(self, s: SimState, params: dict):
        s.wallet_token += s.rewards_token
        s.rewards_token = 0.0

    def _apply_claim_yield(self, s: SimState, params: dict):
        if s.stake_rewards <= 0:
            raise SimulatedRejection("no staking yield available")
        s.wallet_token += s.stake_rewards
        s.stake_rewards = 0.0

    def _apply_stake(self, s: SimState, params: dict):
        amount = params["amount"]
        if amount > s.wallet_token:
            raise SimulatedRejection("insufficient token balance to stake")
        s.wallet_token -= amount
        s.stake_balance += amount


class SimulatedMarket:
    """Price oracle and swap venue backed by the simulated chain."""

    def __init__(self, chain: SimulatedChain, sim_config):
        self.chain = chain
        self.sim = sim_config

    def get_price(self) -> PriceQuote:
        price = self.sim.token_price
        return PriceQuote(price_in_native=price, price_in_usd=price * self.sim.native_usd)

    def swap_token_to_native(self, amount: float, slippage_bps: Optional[int] = None) -> SwapResult:
        price = self.sim.token_price
        if price <= 0:
            return SwapResult(success=False, error="No price")
        try:
            receipt = self.chain.swap_token_to_native(amount, price)
        except SimulatedRejection as e:
            return SwapResult(success=False, error=str(e))
        return SwapResult(
            success=True,
            signature=receipt.signature,
            native_received=amount * price * (1 - self.sim.swap_fee_rate),
            fee=receipt.fee or 0.0,
        )
