"""
The Miner - one round at a time, forever.

Main loop:
1. Pause if the maintenance flag is up
2. Claim rewards / stake on their own timers
3. Wait for a new round
4. Catch up the checkpoint, make sure the escrow exists and is funded
5. Gate on reward pool size and expected value
6. Deploy, once per round, and write it down
"""

import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orb_miner import __version__
from orb_miner.chain.adapter import ChainAdapter, EscrowSnapshot, checkpoint_instruction, deploy_instruction
from orb_miner.chain.simulated import SimulatedChain
from orb_miner.chain.submitter import TransactionSubmitter
from orb_miner.config import MinerConfig
from orb_miner.errors import AlreadySatisfied, CheckpointRequired, MinerError, OperatorShutdown
from orb_miner.maintenance import MaintenanceFlag
from orb_miner.strategies.profitability import (
    ProfitabilityParams,
    ProfitabilitySnapshot,
    evaluate_profitability,
)
from orb_miner.trading.automation import AutomationManager
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType
from orb_miner.trading.rewards import RewardScheduler

logger = logging.getLogger(__name__)
console = Console()

SETUP_POOL_KEY = "automation_setup_pool"


class MinerState(Enum):
    AWAITING_SETUP = "awaiting_setup"
    CATCHING_UP_CHECKPOINT = "catching_up_checkpoint"
    EVALUATING_PROFITABILITY = "evaluating_profitability"
    DEPLOYING = "deploying"
    IDLE = "idle"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class OrchestratorContext:
    state: MinerState = MinerState.IDLE
    last_round_id: Optional[int] = None
    attempted_rounds: set = field(default_factory=set)
    setup_pool: Optional[float] = None
    last_claim_check: Optional[float] = None
    last_stake_check: Optional[float] = None
    paused_since: Optional[float] = None
    cycle_count: int = 0
    deployed_rounds: int = 0
    skipped_rounds: int = 0
    last_skip_reason: str = ""
    last_profitability: Optional[ProfitabilitySnapshot] = None


@dataclass
class RoundOutcome:
    round_id: int
    deployed: bool
    reason: str = ""
    signature: Optional[str] = None


def checkpoint_batches(checkpoint_id: int, round_id: int, batch_size: int) -> list:
    """Rounds after `checkpoint_id` up to and including `round_id`, one transaction per chunk."""
    pending = list(range(checkpoint_id + 1, round_id + 1))
    return [pending[i:i + batch_size] for i in range(0, len(pending), batch_size)]


class RoundOrchestrator:
    """
    The mining agent.

    Every step is its own method so tests can drive a single round without
    the loop. All chain writes go through one TransactionSubmitter, one at
    a time.
    """

    BANNER = r"""
   ___  ____  ____    __  __ _
  / _ \|  _ \| __ )  |  \/  (_)_ __   ___ _ __
 | | | | |_) |  _ \  | |\/| | | '_ \ / _ \ '__|
 | |_| |  _ <| |_) | | |  | | | | | |  __/ |
  \___/|_| \_\____/  |_|  |_|_|_| |_|\___|_|

          one round at a time
    """

    def __init__(self, config: MinerConfig, chain: ChainAdapter, oracle, swapper,
                 ledger: Ledger, live_mode: bool = False, clock=time.monotonic,
                 sleep=time.sleep, sim_state_path: Optional[Path] = None):
        self.config = config
        self.chain = chain
        self.oracle = oracle
        self.ledger = ledger
        self.live_mode = live_mode
        self.clock = clock
        self.sleep = sleep
        self.sim_state_path = sim_state_path
        self.running = False
        self.abort_requested = False

        self.submitter = TransactionSubmitter(chain, config, sleep=sleep)
        self.automation = AutomationManager(chain, self.submitter, ledger, swapper, config)
        self.rewards = RewardScheduler(chain, self.submitter, ledger, config)
        self.maintenance = MaintenanceFlag(config.storage.maintenance_path)
        self.params = ProfitabilityParams.from_config(config)
        self.ctx = OrchestratorContext()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start mining. Blocks until stopped."""
        console.print(self.BANNER, style="bold cyan")

        mode_text = "[bold red]LIVE MODE[/bold red]" if self.live_mode else "[bold yellow]SIMULATION MODE[/bold yellow]"
        if self.config.transactions.dry_run:
            mode_text += " [bold magenta](DRY RUN)[/bold magenta]"
        m, r = self.config.mining, self.config.rewards
        console.print(Panel(
            f"Mode: {mode_text}\n"
            f"Wallet: [cyan]{self.chain.owner or 'unknown'}[/cyan]\n"
            f"Reward pool threshold: [yellow]{m.reward_pool_threshold} ORB[/yellow]\n"
            f"Budget: [yellow]{m.initial_budget_pct:.0f}%[/yellow] of wallet\n"
            f"Auto-claim SOL / ORB: [green]{r.auto_claim_native_threshold} / {r.auto_claim_token_threshold}[/green]\n"
            f"Auto-swap: {'Enabled' if self.config.refund.auto_swap_enabled else 'Disabled'}\n"
            f"Auto-stake: {'Enabled' if r.auto_stake_enabled else 'Disabled'}\n"
            f"Profitability check: {'Enabled' if self.config.profitability.enabled else 'Disabled'}",
            title=f"[bold]ORB Miner v{__version__}[/bold]",
            subtitle="[dim]Press Ctrl+C to stop[/dim]",
        ))

        self._load_setup_pool()

        signal.signal(signal.SIGINT, self._shutdown_handler)
        signal.signal(signal.SIGTERM, self._shutdown_handler)

        self.running = True
        console.print("\n[bold green]Miner started. Watching for rounds...[/bold green]\n")

        self._main_loop()

    def stop(self):
        self.running = False

    def _main_loop(self):
        try:
            while self.running:
                try:
                    outcome = self.run_cycle()
                    if outcome is not None:
                        self._display_status(outcome)
                    self._save_sim_state()
                    self._interruptible_sleep(self.config.mining.check_round_interval)
                except OperatorShutdown:
                    raise
                except Exception as e:
                    logger.error("Error in main loop: %s", e, exc_info=True)
                    self._interruptible_sleep(self.config.mining.error_backoff)
        finally:
            self._shutdown()

    def _interruptible_sleep(self, seconds: float):
        """Sleep in small slices so a stop request is noticed quickly."""
        remaining = seconds
        step = max(self.config.mining.sleep_increment, 0.01)
        while remaining > 0 and self.running:
            chunk = min(step, remaining)
            self.sleep(chunk)
            remaining -= chunk

    def _shutdown_handler(self, signum, frame):
        if not self.running:
            console.print("\n[red]Second signal, abandoning the current cycle at the next step.[/red]")
            self.abort_requested = True
            return
        console.print("\n[yellow]Shutdown signal received, finishing current cycle...[/yellow]")
        self.running = False

    def _check_abort(self):
        """Raise between steps, never inside a write, once a second signal arrived."""
        if self.abort_requested:
            raise OperatorShutdown("second shutdown signal, abandoning the current cycle")

    def _shutdown(self):
        self.ctx.state = MinerState.STOPPED
        console.print("\n[yellow]Shutting down ORB Miner...[/yellow]")
        self._save_sim_state()
        self.ledger.close()
        console.print(f"[dim]Rounds deployed this run: {self.ctx.deployed_rounds}, "
                      f"skipped: {self.ctx.skipped_rounds}[/dim]")

    def _save_sim_state(self):
        if self.sim_state_path is not None and isinstance(self.chain, SimulatedChain):
            self.chain.save_state(self.sim_state_path)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> Optional[RoundOutcome]:
        """One pass of the loop. Returns an outcome only when a new round was handled."""
        self.ctx.cycle_count += 1

        if self.maintenance.is_set():
            if self.ctx.state != MinerState.PAUSED:
                logger.warning("Maintenance flag present (%s), pausing and releasing the ledger",
                               self.maintenance.message() or "no message")
                self.ledger.close()
                self.ctx.state = MinerState.PAUSED
                self.ctx.paused_since = self.clock()
            return None

        if self.ctx.state == MinerState.PAUSED:
            logger.info("Maintenance finished after %.0fs, resuming",
                        self.clock() - (self.ctx.paused_since or self.clock()))
            self.ctx.state = MinerState.IDLE
            self.ctx.paused_since = None
            self._load_setup_pool()

        self.run_maintenance()

        board = self.chain.fetch_board()
        if board.round_id == self.ctx.last_round_id:
            return None

        self.ctx.last_round_id = board.round_id
        logger.info("New round: %d", board.round_id)
        return self.handle_round(board)

    def run_maintenance(self):
        """Reward claims and staking. A failure here never blocks mining."""
        try:
            self.rewards.run_due(self.ctx, self.clock())
        except Exception as e:
            logger.error("Reward maintenance failed: %s", e)

    def handle_round(self, board) -> RoundOutcome:
        round_id = board.round_id
        self._check_abort()
        try:
            self.catch_up_checkpoint(round_id)
        except OperatorShutdown:
            raise
        except MinerError as e:
            return self._skip(round_id, f"checkpoint catch-up failed: {e}")

        self._check_abort()
        try:
            pool = self.chain.fetch_reward_pool().size
            escrow = self.ensure_escrow(pool)
        except MinerError as e:
            return self._skip(round_id, f"automation unavailable: {e}")
        if escrow is None:
            return self._skip(round_id, "automation escrow cannot cover a round")

        threshold = self.config.mining.reward_pool_threshold
        if pool < threshold:
            return self._skip(round_id, f"reward pool {pool:.2f} below threshold {threshold}")

        if self.config.profitability.enabled:
            snapshot = self.evaluate(escrow.cost_per_round, pool, round_id)
            if not snapshot.is_profitable:
                return self._skip(round_id, f"not profitable: {snapshot.reason}")

        if self.chain.current_slot() >= board.end_slot:
            return self._skip(round_id, "round has ended")

        self._check_abort()
        return self.deploy(round_id, escrow)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def catch_up_checkpoint(self, round_id: int) -> int:
        """Checkpoint every round behind `round_id`. Returns how many were sent."""
        agent = self.chain.fetch_agent_state()
        if agent is None or agent.checkpoint_id >= round_id:
            return 0

        self.ctx.state = MinerState.CATCHING_UP_CHECKPOINT
        behind = round_id - agent.checkpoint_id
        logger.info("Miner checkpoint behind by %d round(s)", behind)

        sent = 0
        for batch in checkpoint_batches(agent.checkpoint_id, round_id,
                                        self.config.mining.checkpoint_batch_size):
            self._check_abort()
            instructions = [checkpoint_instruction(r) for r in batch]
            try:
                receipt = self.submitter.submit(instructions, "Checkpoint")
            except AlreadySatisfied as e:
                logger.debug("Checkpoint batch already applied: %s", e)
                continue
            sent += len(batch)
            if not self.submitter.dry_run:
                self.ledger.append(TransactionRecord(
                    type=TxType.CHECKPOINT,
                    signature=receipt.signature,
                    round_id=batch[-1],
                    fee=receipt.fee,
                    notes=f"{len(batch)} round(s) {batch[0]}-{batch[-1]}",
                ))
            logger.info("Checkpointed %d round(s): %s", len(batch), receipt.signature)

        logger.info("Total checkpointed: %d round(s)", sent)
        return sent

    def ensure_escrow(self, pool: float) -> Optional[EscrowSnapshot]:
        """Rescale, create or refund the escrow. None if it can't pay for this round."""
        escrow = self.chain.fetch_escrow()

        if escrow is not None and self.ctx.setup_pool is None:
            self._remember_setup_pool(pool)
        elif escrow is not None:
            if self.automation.rescale(pool, self.ctx.setup_pool) is not None:
                escrow = self.chain.fetch_escrow()

        if escrow is None:
            self.ctx.state = MinerState.AWAITING_SETUP
            logger.info("No automation account found. Setting up...")
            self.automation.create(self.config.mining.budget_fraction, pool)
            escrow = self.chain.fetch_escrow()
            if escrow is None:
                logger.warning("Automation account not visible after setup")
                return None

        if self.automation.needs_refund(escrow):
            self.automation.refund(escrow, pool)
            escrow = self.chain.fetch_escrow()
        self._sync_setup_pool()

        if escrow is None or not escrow.can_cover_round():
            return None
        if escrow.rounds_remaining < self.config.mining.low_rounds_warning:
            logger.warning("Only ~%d round(s) of automation balance left", escrow.rounds_remaining)
        return escrow

    def evaluate(self, cost_per_round: float, pool: float, round_id: int) -> ProfitabilitySnapshot:
        self.ctx.state = MinerState.EVALUATING_PROFITABILITY
        quote = self.oracle.get_price()
        current = self.chain.fetch_round(round_id)
        competing = current.total_deployed if current is not None else None

        snapshot = evaluate_profitability(
            cost_per_round=cost_per_round,
            reward_pool_size=pool,
            market_price=quote.price_in_native,
            competing_deployment=competing,
            params=self.params,
        )
        if snapshot.competition_source == "estimated":
            logger.warning("Competition unknown for round %d, assuming %.4f SOL (%.0fx our deployment)",
                           round_id, snapshot.competing_deployment, self.params.competition_multiplier)
        logger.info("EV: %+.6f SOL (cost %.6f, refund %.6f, rewards %.4f ORB = %.6f SOL, share %.2f%%)",
                    snapshot.expected_value, snapshot.production_cost, snapshot.expected_refund_value,
                    snapshot.expected_reward_tokens, snapshot.expected_reward_value,
                    snapshot.our_share * 100)
        self.ctx.last_profitability = snapshot
        return snapshot

    def deploy(self, round_id: int, escrow: EscrowSnapshot) -> RoundOutcome:
        if round_id in self.ctx.attempted_rounds:
            return self._skip(round_id, "deployment already attempted this run")
        self.ctx.attempted_rounds.add(round_id)
        self.ctx.state = MinerState.DEPLOYING

        logger.info("Deploying %.4f SOL to %d units (%.6f SOL/unit), escrow balance %.6f SOL",
                    escrow.cost_per_round, escrow.unit_count, escrow.amount_per_unit, escrow.balance)
        try:
            try:
                receipt = self.submitter.submit([deploy_instruction(round_id)], "Auto-Mine")
            except CheckpointRequired as e:
                logger.info("Miner needs checkpointing (%s). Catching up and retrying once", e)
                self.catch_up_checkpoint(round_id)
                receipt = self.submitter.submit([deploy_instruction(round_id)], "Auto-Mine")
        except AlreadySatisfied:
            logger.debug("Already deployed for round %d, waiting for next round", round_id)
            self.ctx.state = MinerState.IDLE
            return RoundOutcome(round_id=round_id, deployed=False, reason="already deployed")
        except OperatorShutdown:
            raise
        except MinerError as e:
            return self._skip(round_id, f"deployment failed: {e}")

        if not self.submitter.dry_run:
            self.ledger.append(TransactionRecord(
                type=TxType.DEPLOY,
                signature=receipt.signature,
                native_amount=escrow.cost_per_round,
                round_id=round_id,
                fee=receipt.fee,
            ))
        self.ctx.deployed_rounds += 1
        self.ctx.state = MinerState.IDLE
        logger.info("Deployment successful: %s (total this run: %d)", receipt.signature, self.ctx.deployed_rounds)
        return RoundOutcome(round_id=round_id, deployed=True, signature=receipt.signature)

    def _skip(self, round_id: int, reason: str) -> RoundOutcome:
        logger.info("Skipping round %d: %s", round_id, reason)
        self.ctx.skipped_rounds += 1
        self.ctx.last_skip_reason = reason
        self.ctx.state = MinerState.IDLE
        return RoundOutcome(round_id=round_id, deployed=False, reason=reason)

    # ------------------------------------------------------------------
    # Setup pool bookkeeping
    # ------------------------------------------------------------------

    def _load_setup_pool(self):
        value = self.ledger.get_setting(SETUP_POOL_KEY)
        self.ctx.setup_pool = float(value) if value is not None else None

    def _remember_setup_pool(self, pool: float):
        self.ctx.setup_pool = pool
        if not self.submitter.dry_run:
            self.ledger.set_setting(SETUP_POOL_KEY, repr(float(pool)))

    def _sync_setup_pool(self):
        setup = self.automation.last_setup
        if setup is not None and setup.reward_pool_size != self.ctx.setup_pool:
            self._remember_setup_pool(setup.reward_pool_size)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def _display_status(self, outcome: RoundOutcome):
        table = Table(title=f"Round {outcome.round_id} - {datetime.now().strftime('%H:%M:%S')}",
                      show_header=True)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        result = "[green]deployed[/green]" if outcome.deployed else f"[yellow]skipped[/yellow] ({outcome.reason})"
        table.add_row("Result", result)
        table.add_row("Deployed / skipped", f"{self.ctx.deployed_rounds} / {self.ctx.skipped_rounds}")

        escrow = self.chain.fetch_escrow()
        if escrow is not None:
            table.add_row("Escrow balance", f"{escrow.balance:.6f} SOL")
            table.add_row("Rounds remaining", f"~{escrow.rounds_remaining}")
        snapshot = self.ctx.last_profitability
        if snapshot is not None:
            ev_style = "green" if snapshot.expected_value >= 0 else "red"
            table.add_row("Last EV", f"[{ev_style}]{snapshot.expected_value:+.6f} SOL[/{ev_style}]")
        if self.ctx.setup_pool is not None:
            table.add_row("Setup reward pool", f"{self.ctx.setup_pool:.2f} ORB")

        console.print(table)
