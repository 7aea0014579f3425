"""Tests for PnL reconciliation and the reset flow."""

import pytest

from orb_miner.maintenance import MaintenanceFlag
from orb_miner.trading.ledger import TransactionRecord, TxType
from orb_miner.trading.pnl import Balances, PnLParams, PnLReconciler, reconcile, reset_pnl


def _tx(tx_type, native=0.0, token=0.0, fee=None, round_id=None, status="success"):
    return TransactionRecord(type=tx_type, native_amount=native, token_amount=token,
                             fee=fee, round_id=round_id, status=status)


class TestReconcile:
    def test_wallet_reconciles_against_baseline(self):
        records = [
            _tx(TxType.CLAIM_NATIVE, native=2.0, fee=1.0),
            _tx(TxType.SWAP, native=0.5, token=10.0),
        ]
        summary = reconcile(Balances(wallet_native=11.5), records, baseline=10.0)

        assert summary.income == pytest.approx(2.5)
        assert summary.expenses == pytest.approx(1.0)
        assert summary.expected_wallet == pytest.approx(11.5)
        assert summary.wallet_difference == pytest.approx(0.0)
        assert summary.reconciled

    def test_wallet_mismatch_is_signed_actual_minus_expected(self):
        records = [
            _tx(TxType.CLAIM_NATIVE, native=2.0, fee=1.0),
            _tx(TxType.SWAP, native=0.5, token=10.0),
        ]
        summary = reconcile(Balances(wallet_native=11.0), records, baseline=10.0)

        assert summary.wallet_difference == pytest.approx(-0.5)
        assert not summary.reconciled

    def test_income_expenses_and_roi(self):
        records = [
            _tx(TxType.DEPLOY, native=1.0, fee=0.01, round_id=1),
            _tx(TxType.DEPLOY, native=1.0, fee=0.01, round_id=2),
            _tx(TxType.CLAIM_NATIVE, native=1.5, fee=0.01),
            _tx(TxType.SWAP, native=0.4, token=2.0, fee=0.02),
        ]
        balances = Balances(wallet_native=1.0, escrow_native=0.5, claimable_native=0.1,
                            wallet_token=2.0, claimable_token=1.0, staked_token=1.0,
                            token_price=0.25)
        params = PnLParams(avg_tx_fee=0.0, protocol_skim_rate=0.001)

        s = reconcile(balances, records, params=params)

        assert s.balances.capital == pytest.approx(1.6)
        assert s.balances.token_holdings == pytest.approx(4.0)
        assert s.balances.token_value == pytest.approx(1.0)
        assert s.claimed_native == pytest.approx(1.5)
        assert s.native_from_swaps == pytest.approx(0.4)
        assert s.income == pytest.approx(2.9)
        assert s.tx_fees == pytest.approx(0.03)
        assert s.swap_fees == pytest.approx(0.02)
        assert s.protocol_skim == pytest.approx(0.002)
        assert s.expenses == pytest.approx(0.052)
        assert s.net_profit_native == pytest.approx(1.848)
        assert s.net_profit_total == pytest.approx(2.848)
        assert s.capital_deployed == pytest.approx(2.0)
        assert s.roi == pytest.approx(1.424)
        assert s.roi_percent == pytest.approx(142.4)
        assert s.rounds_participated == 2
        assert s.deploy_count == 2
        assert s.avg_deploy_per_round == pytest.approx(1.0)
        assert not s.has_baseline
        assert s.true_profit is None and s.reconciled is None

    def test_fees_estimated_when_none_recorded(self):
        records = [_tx(TxType.DEPLOY, native=0.1, round_id=1), _tx(TxType.CHECKPOINT)]
        s = reconcile(Balances(), records, params=PnLParams(avg_tx_fee=0.001, protocol_skim_rate=0))

        assert s.fees_estimated
        assert s.tx_fees == pytest.approx(0.002)

    def test_failed_and_baseline_records_are_ignored(self):
        records = [
            _tx(TxType.DEPLOY, native=5.0, round_id=1, status="failed"),
            _tx(TxType.BASELINE, native=10.0),
        ]
        s = reconcile(Balances(), records)

        assert s.capital_deployed == 0
        assert s.roi == 0
        assert s.tx_count == 0
        assert s.expenses == 0

    def test_true_profit_includes_marked_tokens(self):
        balances = Balances(wallet_native=1.0, escrow_native=0.5, wallet_token=4.0, token_price=0.25)
        s = reconcile(balances, [], baseline=2.0)
        assert s.true_profit == pytest.approx(0.5)

    def test_empty_ledger(self):
        s = reconcile(Balances(wallet_native=1.0), [])
        assert s.income == 0
        assert s.expenses == 0
        assert s.avg_profit_per_round == 0


class TestPnLReconciler:
    def test_summary_reads_chain_oracle_and_ledger(self, chain, market, ledger, config):
        ledger.append(_tx(TxType.CLAIM_NATIVE, native=0.3, fee=0.000005))
        ledger.set_baseline(2.0)
        chain.state.wallet_token = 4.0

        summary = PnLReconciler(chain, market, ledger, config).summary()

        assert summary.balances.wallet_native == pytest.approx(2.0)
        assert summary.balances.token_price == pytest.approx(0.25)
        assert summary.balances.token_value == pytest.approx(1.0)
        assert summary.baseline == pytest.approx(2.0)
        assert summary.true_profit == pytest.approx(1.0)

    def test_summary_is_repeatable(self, chain, market, ledger, config):
        ledger.append(_tx(TxType.DEPLOY, native=0.018, round_id=1, fee=0.000005))
        ledger.append(_tx(TxType.CLAIM_NATIVE, native=0.3))
        ledger.set_baseline(2.0)
        reconciler = PnLReconciler(chain, market, ledger, config)

        first = reconciler.summary()

        assert reconciler.summary() == first
        assert ledger.count() == 2

    def test_total_value(self, chain, market, ledger, config):
        chain.state.wallet_token = 8.0
        value = PnLReconciler(chain, market, ledger, config).total_value()
        assert value == pytest.approx(2.0 + 8.0 * 0.25)


class TestResetPnL:
    def test_reset_archives_and_records_baseline(self, chain, market, ledger, config):
        ledger.append(_tx(TxType.DEPLOY, native=0.1, round_id=1))
        ledger.set_baseline(1.0)
        flag = MaintenanceFlag(config.storage.maintenance_path)
        waits = []

        result = reset_pnl(ledger, PnLReconciler(chain, market, ledger, config), flag,
                           config.storage.backup_dir, grace=15, record_baseline=True,
                           sleep=waits.append)

        assert waits == [15]
        assert result["backup_path"].exists()
        assert result["baseline"] == pytest.approx(2.0)
        assert ledger.get_baseline() == pytest.approx(2.0)
        [record] = ledger.query()
        assert record.type == TxType.BASELINE
        assert not flag.is_set()

    def test_flag_cleared_on_failure(self, chain, ledger, config):
        class BrokenOracle:
            def get_price(self):
                raise RuntimeError("oracle down")

        ledger.append(_tx(TxType.DEPLOY, native=0.1, round_id=1))
        flag = MaintenanceFlag(config.storage.maintenance_path)

        with pytest.raises(RuntimeError):
            reset_pnl(ledger, PnLReconciler(chain, BrokenOracle(), ledger, config), flag,
                      config.storage.backup_dir, grace=0, record_baseline=True)
        assert not flag.is_set()
