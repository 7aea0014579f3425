"""Tests for the round orchestrator, driven one cycle at a time."""

import signal

import pytest

from orb_miner.agent import MinerState, RoundOrchestrator, SETUP_POOL_KEY, checkpoint_batches
from orb_miner.chain.adapter import InstructionKind
from orb_miner.chain.simulated import SimulatedChain
from orb_miner.errors import OperatorShutdown
from orb_miner.trading.ledger import TxType


@pytest.fixture
def orchestrator(config, chain, market, ledger, clock, sleeper):
    return RoundOrchestrator(config, chain, market, market, ledger, clock=clock, sleep=sleeper)


def _submitted(chain, kind):
    return [ixs for _, ixs in chain.submissions if ixs[0].kind == kind]


class TestCheckpointBatches:
    def test_chunks_pending_rounds(self):
        assert checkpoint_batches(10, 25, 10) == [list(range(11, 21)), list(range(21, 26))]

    def test_up_to_date(self):
        assert checkpoint_batches(5, 5, 10) == []


class TestRunCycle:
    def test_first_round_sets_up_escrow_and_deploys(self, orchestrator, chain, ledger):
        outcome = orchestrator.run_cycle()

        assert outcome.deployed
        assert outcome.round_id == 1
        assert chain.state.deployments[1] == pytest.approx(0.018)
        [deploy] = ledger.query(types=[TxType.DEPLOY])
        assert deploy.round_id == 1
        assert deploy.native_amount == pytest.approx(0.018)
        assert len(ledger.query(types=[TxType.AUTOMATION_SETUP])) == 1
        assert ledger.get_setting(SETUP_POOL_KEY) == "300.0"
        assert orchestrator.ctx.state == MinerState.IDLE

    def test_same_round_is_not_handled_twice(self, orchestrator, chain):
        orchestrator.run_cycle()
        count = len(chain.submissions)

        assert orchestrator.run_cycle() is None
        assert len(chain.submissions) == count

    def test_catches_up_checkpoint_in_batches(self, orchestrator, chain, ledger):
        orchestrator.run_cycle()
        chain.advance_round(12)

        outcome = orchestrator.run_cycle()

        assert outcome.deployed and outcome.round_id == 13
        batches = _submitted(chain, InstructionKind.CHECKPOINT)
        assert [len(b) for b in batches] == [10, 2]
        assert chain.state.checkpoint_id == 13
        assert [r.round_id for r in ledger.query(types=[TxType.CHECKPOINT])] == [11, 13]
        assert chain.state.rewards_native > 0

    def test_pool_below_threshold_skips(self, orchestrator, chain, ledger):
        chain.state.reward_pool = 100.0

        outcome = orchestrator.run_cycle()

        assert not outcome.deployed
        assert "below threshold" in outcome.reason
        assert ledger.query(types=[TxType.DEPLOY]) == []
        assert orchestrator.ctx.skipped_rounds == 1

    def test_unprofitable_round_skips(self, orchestrator, config, ledger):
        config.simulation.token_price = 0.0

        outcome = orchestrator.run_cycle()

        assert not outcome.deployed
        assert outcome.reason == "not profitable: price unavailable"
        assert ledger.query(types=[TxType.DEPLOY]) == []
        assert not orchestrator.ctx.last_profitability.is_profitable

    def test_profitability_check_disabled(self, orchestrator, config):
        config.simulation.token_price = 0.0
        config.profitability.enabled = False

        assert orchestrator.run_cycle().deployed

    def test_round_ended_skips(self, orchestrator, chain, monkeypatch):
        monkeypatch.setattr(chain, "current_slot", lambda: 10_000)

        outcome = orchestrator.run_cycle()

        assert not outcome.deployed
        assert outcome.reason == "round has ended"

    def test_insufficient_wallet_skips(self, orchestrator, chain, ledger):
        chain.state.wallet_native = 0.3

        outcome = orchestrator.run_cycle()

        assert not outcome.deployed
        assert outcome.reason.startswith("automation unavailable")
        assert ledger.count() == 0

    def test_reward_failure_does_not_block_mining(self, orchestrator, monkeypatch):
        def broken(ctx, now):
            raise RuntimeError("rpc hiccup")

        monkeypatch.setattr(orchestrator.rewards, "run_due", broken)

        assert orchestrator.run_cycle().deployed

    def test_rescales_when_pool_jumps(self, orchestrator, chain, ledger):
        orchestrator.run_cycle()
        chain.state.reward_pool = 1000.0
        chain.advance_round()

        assert orchestrator.run_cycle().round_id == 2

        assert orchestrator.ctx.setup_pool == pytest.approx(1000.2)
        assert len(ledger.query(types=[TxType.AUTOMATION_CLOSE])) == 1
        assert len(ledger.query(types=[TxType.AUTOMATION_SETUP])) == 2
        assert float(ledger.get_setting(SETUP_POOL_KEY)) == pytest.approx(1000.2)

    def test_dry_run_leaves_no_trace(self, orchestrator, config, chain, ledger):
        config.transactions.dry_run = True

        outcome = orchestrator.run_cycle()

        assert not outcome.deployed
        assert chain.submissions == []
        assert ledger.count() == 0
        assert ledger.get_setting(SETUP_POOL_KEY) is None


class TestDeploy:
    @pytest.fixture
    def escrow(self, orchestrator, chain):
        orchestrator.automation.create(0.9, 300.0)
        return chain.fetch_escrow()

    def test_checkpoint_required_catches_up_and_retries_once(self, orchestrator, chain, ledger):
        chain.advance_round(5)
        orchestrator.automation.create(0.9, 300.0)
        chain.state.checkpoint_id = 3

        outcome = orchestrator.deploy(6, chain.fetch_escrow())

        assert outcome.deployed
        assert chain.state.checkpoint_id == 6
        [checkpoint] = ledger.query(types=[TxType.CHECKPOINT])
        assert checkpoint.round_id == 6
        assert checkpoint.notes == "3 round(s) 4-6"
        assert len(ledger.query(types=[TxType.DEPLOY])) == 1

    def test_already_deployed_is_a_quiet_noop(self, orchestrator, chain, ledger, escrow):
        chain.queue_failure(RuntimeError("already deployed this round"))

        outcome = orchestrator.deploy(1, escrow)

        assert not outcome.deployed
        assert outcome.reason == "already deployed"
        assert orchestrator.ctx.skipped_rounds == 0
        assert ledger.query(types=[TxType.DEPLOY]) == []

    def test_attempted_once_per_round(self, orchestrator, chain, escrow):
        assert orchestrator.deploy(1, escrow).deployed
        count = len(chain.submissions)

        outcome = orchestrator.deploy(1, escrow)

        assert not outcome.deployed
        assert "already attempted" in outcome.reason
        assert len(chain.submissions) == count

    def test_rejection_skips_round(self, orchestrator, chain, ledger, escrow):
        chain.queue_failure(RuntimeError("custom program error: 0x1771"))

        outcome = orchestrator.deploy(1, escrow)

        assert not outcome.deployed
        assert outcome.reason.startswith("deployment failed")
        assert ledger.query(types=[TxType.DEPLOY]) == []


class TestMaintenancePause:
    def test_pauses_releases_ledger_and_resumes(self, orchestrator, chain, ledger, clock):
        ledger.count()
        orchestrator.maintenance.set("resetting PnL")

        assert orchestrator.run_cycle() is None
        assert orchestrator.ctx.state == MinerState.PAUSED
        assert not ledger.is_open
        assert chain.submissions == []

        clock.advance(30)
        orchestrator.maintenance.clear()
        outcome = orchestrator.run_cycle()

        assert outcome.deployed
        assert orchestrator.ctx.paused_since is None


class TestLoop:
    def test_sleep_is_sliced(self, orchestrator, sleeper):
        orchestrator.running = True
        orchestrator._interruptible_sleep(3.5)
        assert sleeper.calls == [1.0, 1.0, 1.0, 0.5]

    def test_stop_interrupts_sleep(self, config, chain, market, ledger, clock):
        calls = []

        def sleep(seconds):
            calls.append(seconds)
            if len(calls) == 2:
                orchestrator.stop()

        orchestrator = RoundOrchestrator(config, chain, market, market, ledger,
                                         clock=clock, sleep=sleep)
        orchestrator.running = True
        orchestrator._interruptible_sleep(10)

        assert calls == [1.0, 1.0]

    def test_main_loop_saves_state_on_shutdown(self, config, chain, market, ledger, clock):
        state_path = config.storage.sim_state_path

        def sleep(seconds):
            orchestrator.stop()

        orchestrator = RoundOrchestrator(config, chain, market, market, ledger,
                                         clock=clock, sleep=sleep, sim_state_path=state_path)
        orchestrator.running = True
        orchestrator._main_loop()

        assert orchestrator.ctx.state == MinerState.STOPPED
        assert not ledger.is_open
        restored = SimulatedChain.load(config.simulation, state_path, auto_advance=False)
        assert restored.state.deployments[1] == pytest.approx(0.018)
        assert restored.fetch_escrow() is not None

    def test_second_signal_only_flags_the_abort(self, orchestrator, chain):
        orchestrator.running = True
        orchestrator._shutdown_handler(signal.SIGINT, None)
        assert not orchestrator.running
        assert not orchestrator.abort_requested

        orchestrator._shutdown_handler(signal.SIGINT, None)
        assert orchestrator.abort_requested

        with pytest.raises(OperatorShutdown):
            orchestrator.run_cycle()
        assert chain.submissions == []

    def test_abort_lands_between_checkpoint_batches(self, orchestrator, chain, ledger):
        orchestrator.run_cycle()
        chain.advance_round(12)
        submit = orchestrator.submitter.submit

        def submit_then_signal(instructions, context):
            receipt = submit(instructions, context)
            if context == "Checkpoint":
                orchestrator.abort_requested = True
            return receipt

        orchestrator.submitter.submit = submit_then_signal

        with pytest.raises(OperatorShutdown):
            orchestrator.run_cycle()

        assert len(_submitted(chain, InstructionKind.CHECKPOINT)) == 1
        assert [r.round_id for r in ledger.query(types=[TxType.CHECKPOINT])] == [11]
        assert 13 not in chain.state.deployments

    def test_operator_shutdown_escapes_the_loop(self, orchestrator, monkeypatch, ledger):
        def interrupted():
            raise OperatorShutdown("second shutdown signal")

        monkeypatch.setattr(orchestrator, "run_cycle", interrupted)
        orchestrator.running = True

        with pytest.raises(OperatorShutdown):
            orchestrator._main_loop()
        assert orchestrator.ctx.state == MinerState.STOPPED
        assert not ledger.is_open

    def test_main_loop_survives_errors(self, orchestrator, monkeypatch, sleeper, caplog):
        def boom():
            orchestrator.stop()
            raise RuntimeError("unexpected")

        monkeypatch.setattr(orchestrator, "run_cycle", boom)
        orchestrator.running = True
        orchestrator._main_loop()

        assert "Error in main loop" in caplog.text
        assert orchestrator.ctx.state == MinerState.STOPPED
