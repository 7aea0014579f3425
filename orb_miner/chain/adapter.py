"""
Chain adapter interface and the snapshot types it returns.

The adapter owns encoding, signing and RPC transport. The miner only sees
typed snapshots coming out and Instructions going in. Amounts are in whole
units (SOL, ORB), never lamports.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

# All-zero address. Passing it as the escrow executor tells the program to close the escrow.
DEFAULT_EXECUTOR = "11111111111111111111111111111111"

MAX_UNITS = 25
ALL_UNITS_MASK = (1 << MAX_UNITS) - 1


@dataclass(frozen=True)
class BoardSnapshot:
    round_id: int
    start_slot: int
    end_slot: int


@dataclass(frozen=True)
class RoundSnapshot:
    round_id: int
    total_deployed: float  # by all participants, native units


@dataclass(frozen=True)
class AgentState:
    checkpoint_id: int
    rewards_native: float = 0.0
    rewards_token: float = 0.0


@dataclass(frozen=True)
class RewardPoolSnapshot:
    size: float  # tokens available to a round that hits the pool


@dataclass(frozen=True)
class StakeSnapshot:
    balance: float
    rewards: float = 0.0


@dataclass(frozen=True)
class WalletBalances:
    native: float
    token: float


@dataclass(frozen=True)
class Receipt:
    signature: str
    fee: Optional[float] = None


# ---------------------------------------------------------------------------
# Automation strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RandomUnits:
    """Let the program spread the deployment over every unit."""

    @property
    def unit_mask(self) -> int:
        return ALL_UNITS_MASK


@dataclass(frozen=True)
class FixedUnits:
    """Deploy only to the listed units (0-24)."""

    units: tuple

    def __post_init__(self):
        if not self.units:
            raise ValueError("FixedUnits needs at least one unit")
        bad = [u for u in self.units if not 0 <= int(u) < MAX_UNITS]
        if bad:
            raise ValueError(f"Units out of range 0-{MAX_UNITS - 1}: {bad}")

    @property
    def unit_mask(self) -> int:
        mask = 0
        for unit in self.units:
            mask |= 1 << int(unit)
        return mask


AutomationStrategy = Union[RandomUnits, FixedUnits]


def strategy_code(strategy: AutomationStrategy) -> int:
    """Wire code the program expects for each strategy."""
    if isinstance(strategy, RandomUnits):
        return 0
    if isinstance(strategy, FixedUnits):
        return 1
    raise TypeError(f"Unknown automation strategy: {strategy!r}")


def parse_strategy(value: str) -> AutomationStrategy:
    """'random' or a comma separated unit list like '0,6,12'."""
    text = (value or "").strip().lower()
    if text in ("", "random", "all"):
        return RandomUnits()
    return FixedUnits(units=tuple(int(part) for part in text.split(",") if part.strip()))


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EscrowSnapshot:
    amount_per_unit: float
    balance: float
    unit_mask: int
    strategy: AutomationStrategy = field(default_factory=RandomUnits)

    @property
    def unit_count(self) -> int:
        return bin(self.unit_mask).count("1")

    @property
    def cost_per_round(self) -> float:
        return self.amount_per_unit * self.unit_count

    @property
    def rounds_remaining(self) -> int:
        if self.cost_per_round <= 0:
            return 0
        return int(self.balance // self.cost_per_round)

    def can_cover_round(self) -> bool:
        return self.cost_per_round > 0 and self.balance >= self.cost_per_round


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

class InstructionKind(Enum):
    DEPLOY = "deploy"
    CHECKPOINT = "checkpoint"
    AUTOMATE = "automate"
    TRANSFER = "transfer"
    CLAIM_NATIVE = "claim_native"
    CLAIM_TOKEN = "claim_token"
    CLAIM_YIELD = "claim_yield"
    STAKE = "stake"


@dataclass(frozen=True)
class Instruction:
    kind: InstructionKind
    params: dict = field(default_factory=dict)

    @property
    def closes_escrow(self) -> bool:
        return (self.kind == InstructionKind.AUTOMATE
                and self.params.get("executor") == DEFAULT_EXECUTOR)


def deploy_instruction(round_id: int) -> Instruction:
    """Execute the escrow for the current round."""
    return Instruction(InstructionKind.DEPLOY, {"round_id": round_id})


def checkpoint_instruction(round_id: int) -> Instruction:
    return Instruction(InstructionKind.CHECKPOINT, {"round_id": round_id})


def automate_instruction(amount_per_unit: float, deposit: float, fee: float,
                         strategy: AutomationStrategy, executor: str) -> Instruction:
    return Instruction(InstructionKind.AUTOMATE, {
        "amount_per_unit": amount_per_unit,
        "deposit": deposit,
        "fee": fee,
        "strategy": strategy_code(strategy),
        "unit_mask": strategy.unit_mask,
        "executor": executor,
    })


def close_escrow_instruction() -> Instruction:
    """Automate with the default executor and zeroed amounts closes the escrow."""
    return Instruction(InstructionKind.AUTOMATE, {
        "amount_per_unit": 0.0,
        "deposit": 0.0,
        "fee": 0.0,
        "strategy": 0,
        "unit_mask": 0,
        "executor": DEFAULT_EXECUTOR,
    })


def transfer_to_escrow_instruction(amount: float) -> Instruction:
    return Instruction(InstructionKind.TRANSFER, {"amount": amount, "to": "escrow"})


def claim_native_instruction() -> Instruction:
    return Instruction(InstructionKind.CLAIM_NATIVE)


def claim_token_instruction() -> Instruction:
    return Instruction(InstructionKind.CLAIM_TOKEN)


def claim_yield_instruction() -> Instruction:
    return Instruction(InstructionKind.CLAIM_YIELD)


def stake_instruction(amount: float) -> Instruction:
    return Instruction(InstructionKind.STAKE, {"amount": amount})


class ChainAdapter(ABC):
    """
    Read/write access to the game's accounts for one wallet.

    fetch_* return None when the account does not exist. submit() sends the
    instructions as a single transaction and returns only after confirmation,
    raising on rejection. It does not deduplicate; callers handle the
    "already deployed" case.
    """

    owner: str = ""

    @abstractmethod
    def fetch_board(self) -> BoardSnapshot:
        ...

    @abstractmethod
    def fetch_round(self, round_id: int) -> Optional[RoundSnapshot]:
        ...

    @abstractmethod
    def fetch_agent_state(self) -> Optional[AgentState]:
        ...

    @abstractmethod
    def fetch_reward_pool(self) -> RewardPoolSnapshot:
        ...

    @abstractmethod
    def fetch_stake_account(self) -> Optional[StakeSnapshot]:
        ...

    @abstractmethod
    def fetch_escrow(self) -> Optional[EscrowSnapshot]:
        ...

    @abstractmethod
    def fetch_wallet_balances(self) -> WalletBalances:
        ...

    @abstractmethod
    def current_slot(self) -> int:
        ...

    @abstractmethod
    def submit(self, instructions: list, context: str) -> Receipt:
        ...

    def send_serialized(self, payload: str, context: str) -> Receipt:
        """Sign and send a prebuilt base64 transaction (e.g. from a swap API)."""
        raise NotImplementedError(f"{type(self).__name__} cannot send prebuilt transactions")
