"""Tests for the CLI commands against the simulated chain."""

import pytest
from click.testing import CliRunner

from orb_miner.chain.simulated import SimulatedChain
from orb_miner import cli as cli_module
from orb_miner.cli import build_chain, cli
from orb_miner.errors import ConfigurationError
from orb_miner.trading.ledger import Ledger, TransactionRecord, TxType


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, config, args, **kwargs):
    return runner.invoke(cli, args, obj=config, **kwargs)


@pytest.fixture
def wide_console(monkeypatch):
    monkeypatch.setattr(cli_module.console, "width", 200)


def _saved_chain_with_escrow(config):
    chain = SimulatedChain(config.simulation)
    chain.state.escrow = {
        "amount_per_unit": 0.00072, "balance": 1.8, "unit_mask": (1 << 25) - 1,
        "strategy": 0, "fee": 0.0, "unregistered": 0.0,
    }
    chain.state.checkpoint_id = chain.state.round_id
    chain.state.wallet_native = 0.2
    chain.save_state(config.storage.sim_state_path)


class TestBuildChain:
    def test_simulation_by_default(self, config):
        assert isinstance(build_chain(config, live=False), SimulatedChain)

    def test_live_needs_a_key(self, config):
        with pytest.raises(ConfigurationError):
            build_chain(config, live=True)

    def test_live_adapter_must_be_module_and_factory(self, config):
        config.wallet.private_key = "secret"
        config.network.chain_adapter = "no_colon_here"
        with pytest.raises(ConfigurationError):
            build_chain(config, live=True)

    def test_live_adapter_import_failure(self, config):
        config.wallet.private_key = "secret"
        config.network.chain_adapter = "orb_miner_missing_module:make"
        with pytest.raises(ConfigurationError, match="Cannot load chain adapter"):
            build_chain(config, live=True)


class TestInfoCommands:
    def test_config(self, runner, config):
        result = _invoke(runner, config, ["config"])

        assert result.exit_code == 0
        assert "Miner Configuration" in result.output
        assert "Wallet: Not set" in result.output

    def test_status_fresh(self, runner, config):
        result = _invoke(runner, config, ["status"])

        assert result.exit_code == 0
        assert "Reward pool: 300.00 ORB" in result.output
        assert "Escrow: none" in result.output

    def test_status_with_saved_escrow(self, runner, config):
        _saved_chain_with_escrow(config)

        result = _invoke(runner, config, ["status"])

        assert result.exit_code == 0
        assert "Escrow: 1.800000 SOL" in result.output
        assert "Wallet: 0.2000 SOL" in result.output

    def test_status_shows_maintenance(self, runner, config):
        from orb_miner.maintenance import MaintenanceFlag

        MaintenanceFlag(config.storage.maintenance_path).set("resetting")
        result = _invoke(runner, config, ["status"])

        assert "Maintenance: resetting" in result.output

    def test_profitability_projects_cost_without_escrow(self, runner, config):
        result = _invoke(runner, config, ["profitability"])

        assert result.exit_code == 0
        assert "projected, 100 rounds" in result.output
        assert "NOT PROFITABLE" not in result.output
        assert "PROFITABLE" in result.output
        assert "ROI" in result.output

    def test_profitability_without_price(self, runner, config):
        config.simulation.token_price = 0.0

        result = _invoke(runner, config, ["profitability"])

        assert result.exit_code == 0
        assert "NOT PROFITABLE" in result.output
        assert "price unavailable" in result.output


class TestPnLCommands:
    def test_pnl_without_baseline(self, runner, config):
        result = _invoke(runner, config, ["pnl"])

        assert result.exit_code == 0
        assert "Mining Profit & Loss" in result.output
        assert "No baseline set." in result.output
        assert "Daily Breakdown" not in result.output
        assert "Recent Transactions" not in result.output

    def test_pnl_shows_daily_and_recent_activity(self, runner, config, wide_console):
        ledger = Ledger(config.storage.db_path)
        ledger.append(TransactionRecord(type=TxType.DEPLOY, signature="deploysig0001xyz",
                                        native_amount=0.018, round_id=1, fee=0.000005))
        ledger.append(TransactionRecord(type=TxType.CLAIM_NATIVE, signature="claimsig0001xyz",
                                        native_amount=0.05, fee=0.000005))
        ledger.close()

        result = _invoke(runner, config, ["pnl"])

        assert result.exit_code == 0, result.output
        assert "Avg profit per round" in result.output
        assert "Daily Breakdown (7 days)" in result.output
        assert "0.0180" in result.output
        assert "Recent Transactions" in result.output
        assert "claim_native" in result.output
        assert "deploysig000" in result.output
        assert "deploysig0001xyz" not in result.output

    def test_set_baseline_explicit_then_refuses_second(self, runner, config):
        first = _invoke(runner, config, ["set-baseline", "2.5"])
        assert first.exit_code == 0
        assert "Baseline set to 2.5000 SOL" in first.output

        second = _invoke(runner, config, ["set-baseline", "3"])
        assert second.exit_code == 1
        assert "already set" in second.output

        ledger = Ledger(config.storage.db_path)
        assert ledger.get_baseline() == pytest.approx(2.5)
        [record] = ledger.query(types=[TxType.BASELINE])
        assert record.signature == "MANUAL_BASELINE"
        ledger.close()

    def test_set_baseline_defaults_to_total_value(self, runner, config):
        result = _invoke(runner, config, ["set-baseline"])

        assert result.exit_code == 0
        assert "Baseline set to 2.0000 SOL" in result.output

    def test_pnl_with_baseline_reconciles(self, runner, config):
        _invoke(runner, config, ["set-baseline"])

        result = _invoke(runner, config, ["pnl"])

        assert result.exit_code == 0
        assert "Baseline & Reconciliation" in result.output
        assert "Wallet reconciled" in result.output

    def test_reset_pnl_archives_and_records_baseline(self, runner, config):
        ledger = Ledger(config.storage.db_path)
        ledger.append(TransactionRecord(type=TxType.DEPLOY, signature="s1", native_amount=0.018, round_id=1))
        ledger.close()

        result = _invoke(runner, config, ["reset-pnl", "--yes", "--record-baseline", "--grace", "0"])

        assert result.exit_code == 0, result.output
        assert "Ledger archived" in result.output
        assert "Baseline set to 2.0000 SOL" in result.output
        assert len(list(config.storage.backup_dir.glob("*.db"))) == 1

        ledger = Ledger(config.storage.db_path)
        assert ledger.query(types=[TxType.DEPLOY]) == []
        assert ledger.get_baseline() == pytest.approx(2.0)
        ledger.close()

    def test_reset_pnl_needs_confirmation(self, runner, config):
        result = _invoke(runner, config, ["reset-pnl"], input="n\n")

        assert result.exit_code == 1
        assert not config.storage.maintenance_path.exists()


class TestRunLive:
    def test_refuses_without_wallet(self, runner, config):
        result = _invoke(runner, config, ["run-live", "--yes"])

        assert result.exit_code == 1
        assert "PRIVATE_KEY" in result.output

    def test_refuses_unloadable_adapter(self, runner, config):
        config.wallet.private_key = "secret"
        config.network.chain_adapter = "orb_miner_missing_module:make"

        result = _invoke(runner, config, ["run-live", "--yes"])

        assert result.exit_code == 1
        assert "Cannot load chain adapter" in result.output
