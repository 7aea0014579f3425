"""
CLI Entry Point for ORB Miner.

Commands:
  run            - Start mining (simulation mode)
  run-live       - Start mining (live mode - real SOL)
  pnl            - Profit and loss report
  set-baseline   - Record the starting value for true-profit tracking
  reset-pnl      - Archive the ledger and start PnL tracking over
  status         - Show board, escrow and wallet state
  profitability  - Run the expected-value check against the current round
  config         - Show current configuration
"""

import importlib
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orb_miner import __version__
from orb_miner.agent import RoundOrchestrator
from orb_miner.chain.jupiter import JupiterClient
from orb_miner.chain.simulated import SimulatedChain, SimulatedMarket
from orb_miner.config import MinerConfig
from orb_miner.errors import BaselineAlreadySet, ConfigurationError, MinerError, OperatorShutdown
from orb_miner.logging_setup import configure_logging
from orb_miner.maintenance import MaintenanceFlag
from orb_miner.strategies.profitability import (
    ProfitabilityParams,
    evaluate_profitability,
    target_rounds_for_pool,
)
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType
from orb_miner.trading.pnl import PnLReconciler, reset_pnl

console = Console()

live_option = click.option("--live", is_flag=True, default=False,
                           help="Read from the live chain instead of the simulation")


def build_chain(config: MinerConfig, live: bool, fresh: bool = False):
    """Live: the CHAIN_ADAPTER factory. Otherwise the saved simulation."""
    if not live:
        if fresh:
            return SimulatedChain(config.simulation)
        return SimulatedChain.load(config.simulation, config.storage.sim_state_path)

    config.validate_live()
    module_name, _, attr = config.network.chain_adapter.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"CHAIN_ADAPTER must look like 'package.module:factory', got {config.network.chain_adapter!r}"
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load chain adapter {config.network.chain_adapter}: {e}") from e
    return factory(config)


def build_market(config: MinerConfig, chain, live: bool):
    """Price oracle and swap venue in one object."""
    if live:
        return JupiterClient(config, chain=chain)
    return SimulatedMarket(chain, config.simulation)


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _start(miner: RoundOrchestrator):
    try:
        miner.start()
    except OperatorShutdown as e:
        _fail(f"Stopped: {e}")


@click.group()
@click.version_option(version=__version__, prog_name="ORB Miner")
@click.pass_context
def cli(ctx):
    """ORB Miner - unattended ORB mining on Solana."""
    if ctx.obj is None:
        ctx.obj = MinerConfig()


@cli.command()
@click.option("--check-interval", default=None, type=float, help="Seconds between round checks")
@click.option("--fresh", is_flag=True, default=False, help="Discard the saved simulation state")
@click.pass_obj
def run(config, check_interval, fresh):
    """Start mining in SIMULATION mode. No real SOL at risk."""
    if check_interval is not None:
        config.mining.check_round_interval = check_interval
    configure_logging(config, console=console)

    chain = build_chain(config, live=False, fresh=fresh)
    market = build_market(config, chain, live=False)
    miner = RoundOrchestrator(config, chain, market, market, Ledger(config.storage.db_path),
                              live_mode=False, sim_state_path=config.storage.sim_state_path)
    _start(miner)


@cli.command("run-live")
@click.option("--check-interval", default=None, type=float, help="Seconds between round checks")
@click.confirmation_option(
    prompt="This will mine with REAL SOL. Are you sure?"
)
@click.pass_obj
def run_live(config, check_interval):
    """Start mining in LIVE mode. Real SOL. Real risk."""
    if check_interval is not None:
        config.mining.check_round_interval = check_interval

    try:
        chain = build_chain(config, live=True)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        console.print("Set up your .env file first. See .env.example")
        sys.exit(1)

    configure_logging(config, console=console)
    console.print(Panel(
        "[bold red]LIVE MODE ACTIVATED[/bold red]\n\n"
        "This miner will deploy REAL SOL from your wallet every round\n"
        "the expected-value check passes.\n\n"
        "[yellow]Only risk what you can afford to lose.[/yellow]",
        title="WARNING",
    ))

    market = build_market(config, chain, live=True)
    miner = RoundOrchestrator(config, chain, market, market, Ledger(config.storage.db_path),
                              live_mode=True)
    _start(miner)


@cli.command()
@live_option
@click.pass_obj
def pnl(config, live):
    """Profit and loss report. Read-only."""
    ledger = Ledger(config.storage.db_path)
    try:
        chain = build_chain(config, live)
        reconciler = PnLReconciler(chain, build_market(config, chain, live), ledger, config)
        summary = reconciler.summary()
        daily = ledger.daily_aggregates(7)
        recent = ledger.recent(10)
    except (MinerError, OSError) as e:
        _fail(f"PnL report failed: {e}")
    finally:
        ledger.close()

    b = summary.balances
    table = Table(title="Mining Profit & Loss", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("[bold]CAPITAL[/bold]", "")
    table.add_row("Wallet", f"{b.wallet_native:.4f} SOL")
    table.add_row("Automation escrow", f"{b.escrow_native:.4f} SOL")
    table.add_row("Pending SOL claims", f"{b.claimable_native:.4f} SOL")
    table.add_row("Total SOL capital", f"{b.capital:.4f} SOL")
    table.add_row("ORB holdings", f"{b.token_holdings:.2f} ORB "
                  f"({b.claimable_token:.2f} pending + {b.wallet_token:.2f} wallet + {b.staked_token:.2f} staked)")
    if b.token_price > 0:
        table.add_row("ORB value", f"{b.token_value:.4f} SOL @ {b.token_price:.6f}")
    else:
        table.add_row("ORB value", "[yellow]price unavailable[/yellow]")

    table.add_row("[bold]INCOME[/bold]", "")
    table.add_row("SOL rewards claimed", f"{summary.claimed_native:.4f} SOL")
    table.add_row("ORB swapped to SOL", f"{summary.native_from_swaps:.4f} SOL")
    table.add_row("Total income", f"{summary.income:.4f} SOL")

    table.add_row("[bold]EXPENSES[/bold]", "")
    fee_label = "Transaction fees (estimated)" if summary.fees_estimated else "Transaction fees"
    table.add_row(fee_label, f"{summary.tx_fees:.6f} SOL ({summary.tx_count} txs)")
    table.add_row("Swap fees", f"{summary.swap_fees:.6f} SOL")
    table.add_row("Protocol skim", f"{summary.protocol_skim:.6f} SOL")
    table.add_row("Total expenses", f"{summary.expenses:.6f} SOL")

    table.add_row("[bold]NET[/bold]", "")
    table.add_row("SOL-only PnL", _signed(summary.net_profit_native))
    table.add_row("Total PnL (incl. ORB)", _signed(summary.net_profit_total))
    table.add_row("ROI", f"{summary.roi_percent:+.2f}%")
    table.add_row("Rounds / deploys", f"{summary.rounds_participated} / {summary.deploy_count}")
    table.add_row("Avg deploy per round", f"{summary.avg_deploy_per_round:.6f} SOL")
    table.add_row("Avg profit per round", _signed(summary.avg_profit_per_round))
    console.print(table)

    if summary.has_baseline:
        status = ("[green]Wallet reconciled - all SOL accounted for[/green]" if summary.reconciled
                  else "[yellow]Wallet mismatch - check for missing transactions[/yellow]")
        console.print(Panel(
            f"Starting balance: {summary.baseline:.4f} SOL\n"
            f"Current total: {b.total_value:.4f} SOL\n"
            f"True mining profit: {_signed(summary.true_profit)}\n\n"
            f"Expected wallet: {summary.expected_wallet:.4f} SOL\n"
            f"Actual wallet: {b.wallet_native:.4f} SOL\n"
            f"Difference: {summary.wallet_difference:+.4f} SOL\n"
            f"{status}",
            title="[bold]Baseline & Reconciliation[/bold]",
        ))
    else:
        console.print("[yellow]No baseline set.[/yellow] Run [bold]orbminer set-baseline[/bold] "
                      "to enable true profit tracking.")

    if daily:
        console.print(_daily_table(daily))
    if recent:
        console.print(_recent_table(recent))


def _signed(value: float) -> str:
    style = "green" if value >= 0 else "red"
    return f"[{style}]{value:+.4f} SOL[/{style}]"


def _daily_table(rows: list) -> Table:
    table = Table(title="Daily Breakdown (7 days)", show_header=True)
    table.add_column("Day", style="cyan")
    table.add_column("Deployed", justify="right")
    table.add_column("Deploys", justify="right")
    table.add_column("Claimed SOL", justify="right")
    table.add_column("Claimed ORB", justify="right")
    table.add_column("Fees", justify="right")
    for row in rows:
        table.add_row(
            row["day"],
            f"{row['deployed'] or 0:.4f}",
            str(row["deploys"] or 0),
            f"{row['claimed_native'] or 0:.4f}",
            f"{row['claimed_token'] or 0:.2f}",
            f"{row['fees'] or 0:.6f}",
        )
    return table


def _recent_table(records: list) -> Table:
    table = Table(title="Recent Transactions", show_header=True)
    table.add_column("Time", style="cyan")
    table.add_column("Type")
    table.add_column("SOL", justify="right")
    table.add_column("ORB", justify="right")
    table.add_column("Round", justify="right")
    table.add_column("Status")
    table.add_column("Signature")
    for record in records:
        status_style = "green" if record.status == "success" else "red"
        table.add_row(
            datetime.fromtimestamp(record.timestamp).strftime("%m-%d %H:%M"),
            record.type.value,
            f"{record.native_amount:.4f}" if record.native_amount else "-",
            f"{record.token_amount:.2f}" if record.token_amount else "-",
            str(record.round_id) if record.round_id is not None else "-",
            f"[{status_style}]{record.status}[/{status_style}]",
            record.signature[:12],
        )
    return table


@cli.command("set-baseline")
@click.argument("amount", required=False, type=float)
@live_option
@click.pass_obj
def set_baseline(config, amount, live):
    """Record the starting value (defaults to current total value). Set once."""
    ledger = Ledger(config.storage.db_path)
    try:
        existing = ledger.get_baseline()
        if existing is not None:
            _fail(f"Baseline already set to {existing:.4f} SOL. Use reset-pnl to start over.")

        if amount is None:
            chain = build_chain(config, live)
            reconciler = PnLReconciler(chain, build_market(config, chain, live), ledger, config)
            amount = reconciler.total_value()

        ledger.set_baseline(amount)
        ledger.append(TransactionRecord(
            type=TxType.BASELINE,
            signature="MANUAL_BASELINE",
            native_amount=amount,
            notes=f"Baseline set to {amount:.4f} SOL",
        ))
    except BaselineAlreadySet as e:
        _fail(str(e))
    except (MinerError, ValueError) as e:
        _fail(f"Could not set baseline: {e}")
    finally:
        ledger.close()

    console.print(f"[green]Baseline set to {amount:.4f} SOL[/green]")


@cli.command("reset-pnl")
@click.option("--record-baseline", is_flag=True, default=False,
              help="Set the new baseline to the current total value")
@click.option("--grace", default=None, type=float,
              help="Seconds to wait for a running miner to release the database")
@live_option
@click.confirmation_option(prompt="This archives and clears the transaction history. Continue?")
@click.pass_obj
def reset_pnl_command(config, record_baseline, grace, live):
    """Archive the ledger and start PnL tracking from scratch."""
    ledger = Ledger(config.storage.db_path)
    grace = config.storage.maintenance_grace if grace is None else grace
    try:
        chain = build_chain(config, live)
        reconciler = PnLReconciler(chain, build_market(config, chain, live), ledger, config)
        result = reset_pnl(ledger, reconciler, MaintenanceFlag(config.storage.maintenance_path),
                           config.storage.backup_dir, grace, record_baseline=record_baseline)
    except (MinerError, OSError) as e:
        _fail(f"PnL reset failed: {e}")
    finally:
        ledger.close()

    if result["backup_path"] is not None:
        console.print(f"[green]Ledger archived to {result['backup_path']}[/green]")
    else:
        console.print("[dim]No ledger to archive.[/dim]")
    if result["baseline"] is not None:
        console.print(f"[green]Baseline set to {result['baseline']:.4f} SOL[/green]")
    console.print("[green]PnL reset complete. A paused miner will resume on its next cycle.[/green]")


@cli.command()
@live_option
@click.pass_obj
def status(config, live):
    """Show board, escrow and wallet state."""
    try:
        chain = build_chain(config, live)
        board = chain.fetch_board()
        agent = chain.fetch_agent_state()
        escrow = chain.fetch_escrow()
        wallet = chain.fetch_wallet_balances()
        pool = chain.fetch_reward_pool()
        stake = chain.fetch_stake_account()
        slot = chain.current_slot()
    except MinerError as e:
        _fail(f"Status failed: {e}")

    lines = [
        f"Round: [bold]{board.round_id}[/bold] (slots {board.start_slot}-{board.end_slot}, now {slot})",
        f"Reward pool: {pool.size:.2f} ORB",
        f"Wallet: {wallet.native:.4f} SOL, {wallet.token:.2f} ORB",
    ]
    if agent is not None:
        behind = board.round_id - agent.checkpoint_id
        lines.append(f"Checkpoint: {agent.checkpoint_id} ({behind} behind)")
        lines.append(f"Claimable: {agent.rewards_native:.4f} SOL, {agent.rewards_token:.4f} ORB")
    else:
        lines.append("Miner account: [dim]not created[/dim]")
    if escrow is not None:
        lines.append(f"Escrow: {escrow.balance:.6f} SOL, {escrow.cost_per_round:.6f} SOL/round "
                     f"over {escrow.unit_count} units (~{escrow.rounds_remaining} rounds)")
    else:
        lines.append("Escrow: [dim]none[/dim]")
    if stake is not None:
        lines.append(f"Staked: {stake.balance:.2f} ORB, yield {stake.rewards:.4f} ORB")
    maintenance = MaintenanceFlag(config.storage.maintenance_path)
    if maintenance.is_set():
        lines.append(f"[yellow]Maintenance: {maintenance.message()}[/yellow]")

    console.print(Panel("\n".join(lines), title="[bold]Miner Status[/bold]"))


@cli.command()
@live_option
@click.pass_obj
def profitability(config, live):
    """Run the expected-value check against the current round."""
    try:
        chain = build_chain(config, live)
        market = build_market(config, chain, live)
        board = chain.fetch_board()
        pool = chain.fetch_reward_pool().size
        escrow = chain.fetch_escrow()
        current = chain.fetch_round(board.round_id)
        quote = market.get_price()
        wallet = chain.fetch_wallet_balances()
    except MinerError as e:
        _fail(f"Profitability check failed: {e}")

    if escrow is not None:
        cost = escrow.cost_per_round
        cost_note = "current escrow"
    else:
        rounds = target_rounds_for_pool(pool)
        cost = wallet.native * config.mining.budget_fraction / rounds
        cost_note = f"projected, {rounds} rounds"

    snapshot = evaluate_profitability(
        cost_per_round=cost,
        reward_pool_size=pool,
        market_price=quote.price_in_native,
        competing_deployment=current.total_deployed if current else None,
        params=ProfitabilityParams.from_config(config),
    )

    table = Table(title=f"Profitability - round {board.round_id}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Cost per round", f"{snapshot.production_cost:.6f} SOL ({cost_note})")
    table.add_row("Reward pool", f"{pool:.2f} ORB")
    table.add_row("ORB price", f"{quote.price_in_native:.6f} SOL (${quote.price_in_usd:.4f})")
    table.add_row("Competition", f"{snapshot.competing_deployment:.4f} SOL ({snapshot.competition_source})")
    table.add_row("Our share", f"{snapshot.our_share:.2%}")
    table.add_row("Expected ORB", f"{snapshot.expected_reward_tokens:.6f} ORB")
    table.add_row("Expected reward value", f"{snapshot.expected_reward_value:.6f} SOL")
    table.add_row("Expected refund", f"{snapshot.expected_refund_value:.6f} SOL")
    table.add_row("Expected value", _signed(snapshot.expected_value))
    table.add_row("ROI", f"{snapshot.roi:+.2%}")
    verdict = "[green]PROFITABLE[/green]" if snapshot.is_profitable else "[red]NOT PROFITABLE[/red]"
    table.add_row("Verdict", f"{verdict} ({snapshot.reason})")
    console.print(table)


@cli.command()
@click.pass_obj
def config(cfg):
    """Show current miner configuration."""
    m, p, r, f, t = cfg.mining, cfg.profitability, cfg.rewards, cfg.refund, cfg.transactions
    console.print(Panel(
        f"Network: {cfg.network_name} ({cfg.network.rpc_url})\n"
        f"Program: {cfg.network.program_id}\n"
        f"ORB mint: {cfg.network.token_mint}\n"
        f"Chain adapter: {cfg.network.chain_adapter or 'Not set'}\n"
        f"Wallet: {'Configured' if cfg.wallet.private_key else 'Not set'}\n\n"
        f"Budget: {m.initial_budget_pct:.0f}% of wallet (min {m.min_setup_budget} SOL)\n"
        f"Strategy: {m.strategy}, {m.unit_count} units\n"
        f"Reward pool threshold: {m.reward_pool_threshold} ORB\n"
        f"Rescale up: +{m.scale_up_pct:.0%} and +{m.scale_up_abs:.0f} ORB, "
        f"down: -{m.scale_down_pct:.0%} and -{m.scale_down_abs:.0f} ORB\n"
        f"Round check interval: {m.check_round_interval}s\n\n"
        f"Profitability check: {'Enabled' if p.enabled else 'Disabled'} "
        f"(competition x{p.competition_multiplier}, refund {p.refund_rate:.0%})\n"
        f"Auto-claim: {r.auto_claim_native_threshold} SOL / {r.auto_claim_token_threshold} ORB "
        f"every {r.check_rewards_interval:.0f}s\n"
        f"Auto-stake: {'Enabled' if r.auto_stake_enabled else 'Disabled'} "
        f"(>{r.stake_token_threshold} ORB, keep {r.min_token_to_keep})\n"
        f"Auto-swap refund: {'Enabled' if f.auto_swap_enabled else 'Disabled'} "
        f"({f.swap_token_amount} ORB below {f.min_automation_balance} SOL)\n"
        f"Retries: {t.max_retries} (backoff {t.retry_base_delay}s-{t.retry_max_delay}s)\n"
        f"Dry run: {t.dry_run}\n"
        f"Data dir: {cfg.storage.data_dir}",
        title="[bold]Miner Configuration[/bold]",
    ))


def main():
    cli()


if __name__ == "__main__":
    main()
