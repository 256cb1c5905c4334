"""Tests for the run/trigger controller and the run state machine"""

import threading
from datetime import datetime, timedelta

import numpy as np
import pytest

from bayesian_bid_engine.controller import OptimizerRunController, RunStateMachine
from bayesian_bid_engine.exceptions import InvalidRunTransition, RunFailure, StoreUnavailable
from bayesian_bid_engine.ledger import PerformanceLedgerReader
from bayesian_bid_engine.models import (
    BidPoint,
    CampaignSnapshot,
    OptimizerRun,
    RunStatus,
    SpendSalesPoint,
    TriggerStatus,
    entity_key,
)
from bayesian_bid_engine.store import InMemoryBidStateStore

from conftest import PROFILE, eligible_state, ledger_row, make_observation

NOW = datetime(2024, 4, 1, 12, 0, 0)
KEY = entity_key(PROFILE, 'keyword', 'kw-1')


@pytest.fixture
def controller(config, store):
    return OptimizerRunController(config, store, rng=np.random.default_rng(5), owner='worker-a')


def seed_states(store, *entity_ids, **overrides):
    for entity_id in entity_ids:
        store.create_bid_state(eligible_state(entity_id, **overrides))


class FlakyHistoryStore(InMemoryBidStateStore):
    """Raises the given error when reading bid history for selected entities"""

    def __init__(self, error, failing_ids):
        super().__init__()
        self.error = error
        self.failing_ids = set(failing_ids)

    def get_bid_history(self, key):
        if key[2] in self.failing_ids:
            raise self.error
        return super().get_bid_history(key)


# ---------------------------------------------------------------------- #
# Run state machine
# ---------------------------------------------------------------------- #

def test_run_state_machine_happy_path():
    fsm = RunStateMachine(OptimizerRun(profile_id=PROFILE))
    fsm.start()
    assert fsm.run.started_at is not None
    fsm.complete()
    assert fsm.run.status == RunStatus.COMPLETED.value
    assert fsm.run.completed_at is not None


def test_run_can_fail_before_starting():
    fsm = RunStateMachine(OptimizerRun(profile_id=PROFILE))
    fsm.fail('store unavailable')
    assert fsm.run.status == RunStatus.FAILED.value
    assert fsm.run.error == 'store unavailable'


@pytest.mark.parametrize('terminal', [RunStatus.COMPLETED, RunStatus.FAILED])
def test_terminal_runs_do_not_move(terminal):
    fsm = RunStateMachine(OptimizerRun(profile_id=PROFILE, status=RunStatus.RUNNING.value))
    fsm.transition(terminal)
    for target in RunStatus:
        with pytest.raises(InvalidRunTransition):
            fsm.transition(target)


def test_pending_cannot_complete_directly():
    fsm = RunStateMachine(OptimizerRun(profile_id=PROFILE))
    with pytest.raises(InvalidRunTransition):
        fsm.complete()


# ---------------------------------------------------------------------- #
# Real-time trigger
# ---------------------------------------------------------------------- #

def test_trigger_optimizes_and_records_run(controller, store):
    seed_states(store, 'kw-1')

    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)

    assert result.status == TriggerStatus.OPTIMIZED.value
    assert result.recommendation is not None
    state = store.get_bid_state(KEY)
    assert state.last_optimized_at == NOW
    assert state.recommended_bid_micros == result.recommendation.recommended_bid_micros
    assert state.version == 2

    run = store.get_latest_run(PROFILE)
    assert run.id == result.run_id
    assert run.run_type == 'realtime'
    assert run.status == 'completed'
    assert run.entities_considered == 1
    assert result.recommendation.idempotency_key.endswith(f":{run.id}")
    assert store.get_curve_fit(KEY).status == 'insufficient_data'


def test_second_trigger_inside_cooldown_is_rate_limited(controller, store):
    seed_states(store, 'kw-1')
    controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)
    before = store.get_bid_state(KEY)
    runs_before = len(store.list_runs(PROFILE))

    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW + timedelta(seconds=600))

    assert result.status == TriggerStatus.RATE_LIMITED.value
    assert result.retry_after_seconds == 3000
    assert store.get_bid_state(KEY) == before
    assert len(store.list_runs(PROFILE)) == runs_before


def test_trigger_after_cooldown_runs_again(controller, store):
    seed_states(store, 'kw-1')
    controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)
    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW + timedelta(hours=1, seconds=1))
    assert result.status == TriggerStatus.OPTIMIZED.value


def test_ineligible_trigger_does_not_consume_cooldown(controller, store):
    seed_states(store, 'kw-1', observations_count=2, total_impressions=30)

    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)

    assert result.status == TriggerStatus.INSUFFICIENT_DATA.value
    assert result.details['min_observations'] == 7
    assert store.get_bid_state(KEY).last_optimized_at is None
    assert store.list_runs(PROFILE) == []


def test_trigger_unknown_and_disabled_entities(controller, store):
    assert controller.trigger_entity(PROFILE, 'keyword', 'nope').status == TriggerStatus.NOT_FOUND.value

    seed_states(store, 'kw-1')
    controller.disable_entity(PROFILE, 'keyword', 'kw-1')
    assert controller.trigger_entity(PROFILE, 'keyword', 'kw-1').status == TriggerStatus.DISABLED.value


def test_trigger_reports_busy_when_lease_is_held(controller, store):
    seed_states(store, 'kw-1')
    assert store.acquire_lease(KEY, 'worker-b', 300)

    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)

    assert result.status == TriggerStatus.BUSY.value
    assert store.get_bid_state(KEY).recommended_bid_micros is None
    assert store.get_latest_run(PROFILE).status == 'completed'


def test_dry_run_trigger_persists_nothing_but_the_run(controller, store):
    seed_states(store, 'kw-1')

    result = controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW, dry_run=True)

    assert result.status == TriggerStatus.OPTIMIZED.value
    state = store.get_bid_state(KEY)
    assert state.version == 1
    assert state.last_optimized_at is None
    assert store.get_curve_fit(KEY) is None


def test_trigger_failure_marks_run_failed(config):
    store = FlakyHistoryStore(RuntimeError('history table missing'), ['kw-1'])
    controller = OptimizerRunController(config, store, owner='worker-a')
    seed_states(store, 'kw-1')

    with pytest.raises(RunFailure) as excinfo:
        controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW)

    run = store.get_latest_run(PROFILE)
    assert excinfo.value.run_id == run.id
    assert run.status == 'failed'
    assert 'history table missing' in run.error


def test_concurrent_triggers_claim_the_slot_once(config, store):
    seed_states(store, 'kw-1')
    results = []
    barrier = threading.Barrier(4)

    def trigger(worker):
        controller = OptimizerRunController(config, store, owner=f'worker-{worker}')
        barrier.wait()
        results.append(controller.trigger_entity(PROFILE, 'keyword', 'kw-1', now=NOW).status)

    threads = [threading.Thread(target=trigger, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(TriggerStatus.OPTIMIZED.value) == 1
    assert results.count(TriggerStatus.RATE_LIMITED.value) == 3
    assert store.get_bid_state(KEY).version == 2


# ---------------------------------------------------------------------- #
# Batch runs
# ---------------------------------------------------------------------- #

def test_batch_ingests_and_recommends(config, store):
    rows = [ledger_row(make_observation(entity_id, day=d, impressions=100, clicks=15, conversions=1))
            for entity_id in ('kw-1', 'kw-2') for d in range(8)]
    rows += [ledger_row(make_observation('kw-3', day=0))]
    store.add_ledger_rows(PROFILE, rows)
    controller = OptimizerRunController(config, store, ledger_reader=PerformanceLedgerReader(store),
                                        rng=np.random.default_rng(1))

    run = controller.run_batch(PROFILE)

    assert run.status == 'completed'
    assert run.entities_considered == 3
    assert run.summary['ingest']['cycles_applied'] == 17
    assert run.summary['ingest']['states_created'] == 3
    assert run.summary['insufficient_data'] == 1
    assert run.bids_changed == len(run.summary['recommendations'])
    assert store.get_bid_state(KEY).recommended_bid_micros is not None
    assert store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-3')).recommended_bid_micros is None


def ledger_controller(config, store):
    return OptimizerRunController(config, store, ledger_reader=PerformanceLedgerReader(store),
                                  rng=np.random.default_rng(1))


def test_repeated_batch_does_not_double_count(config, store):
    store.add_ledger_rows(PROFILE, [
        ledger_row(make_observation(day=d, impressions=100, clicks=20, conversions=1)) for d in range(3)
    ])
    controller = ledger_controller(config, store)

    controller.run_batch(PROFILE)
    first = store.get_bid_state(KEY)
    second_run = controller.run_batch(PROFILE)
    second = store.get_bid_state(KEY)

    assert (first.alpha, first.beta, first.observations_count) == (4.0, 58.0, 3)
    assert (second.alpha, second.beta, second.observations_count) == (4.0, 58.0, 3)
    assert second.total_impressions == 300
    assert second_run.summary['ingest']['cycles_applied'] == 0
    # Two of the three cycles fall inside the overlap behind the watermark
    assert second_run.summary['ingest']['cycles_already_applied'] == 2


def test_daily_cycle_is_ingested_after_it_closes(config, store):
    controller = ledger_controller(config, store)
    store.add_ledger_rows(PROFILE, [ledger_row(make_observation(day=0))])

    # Cycle 2024-03-01 -> 2024-03-02, batch runs at 06:00 the next morning
    run = controller.run_batch(PROFILE, until=datetime(2024, 3, 2, 6, 0))
    assert run.summary['ingest']['cycles_applied'] == 1
    assert run.summary['ingest']['since'] is None

    store.add_ledger_rows(PROFILE, [ledger_row(make_observation(day=1))])
    run = controller.run_batch(PROFILE, until=datetime(2024, 3, 3, 6, 0))

    assert run.summary['ingest']['since'] == '2024-02-29T00:00:00'
    assert run.summary['ingest']['cycles_applied'] == 1
    assert run.summary['ingest']['cycles_already_applied'] == 1
    assert store.get_bid_state(KEY).observations_count == 2


def test_explicit_window_includes_cycle_closed_inside_it(config, store):
    controller = ledger_controller(config, store)
    store.add_ledger_rows(PROFILE, [ledger_row(make_observation(day=0))])
    until = datetime(2024, 3, 2, 6, 0)

    run = controller.run_batch(PROFILE, since=until - timedelta(days=1), until=until)

    assert run.summary['ingest']['cycles_applied'] == 1


def test_ingest_window_trails_the_watermark(config, store):
    controller = ledger_controller(config, store)
    assert controller.ingest_since(PROFILE) is None

    store.create_bid_state(eligible_state('kw-1', last_observation_at=datetime(2024, 3, 10)))
    store.create_bid_state(eligible_state('kw-2', last_observation_at=datetime(2024, 3, 8)))

    assert controller.ingest_since(PROFILE) == datetime(2024, 3, 8)


def test_batch_with_curve_history_publishes_fit(controller, store):
    seed_states(store, 'kw-1')
    for bid_cents in range(50, 150, 10):
        clicks = bid_cents // 2
        store.add_bid_point(KEY, BidPoint(bid_micros=bid_cents * 10_000, clicks=clicks,
                                          conversions=clicks // 5, spend_micros=clicks * bid_cents * 10_000,
                                          sales_micros=(clicks // 5) * 10_000_000))
    run = controller.run_batch(PROFILE)

    fit = store.get_curve_fit(KEY)
    assert run.status == 'completed'
    assert fit.status == 'fitted'
    assert fit.optimal_bid_micros is not None


def test_batch_skips_disabled_entities(controller, store):
    seed_states(store, 'kw-1', 'kw-2')
    controller.disable_entity(PROFILE, 'keyword', 'kw-2')

    run = controller.run_batch(PROFILE)

    assert run.entities_considered == 1
    assert store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-2')).recommended_bid_micros is None


def test_cancelled_batch_completes_with_flag(controller, store):
    seed_states(store, 'kw-1', 'kw-2')
    cancel = threading.Event()
    cancel.set()

    run = controller.run_batch(PROFILE, cancel_event=cancel)

    assert run.status == 'completed'
    assert run.summary['cancelled'] is True
    assert run.entities_considered == 0


def test_partial_failures_keep_committed_entities(config):
    store = FlakyHistoryStore(RuntimeError('boom'), ['kw-2'])
    seed_states(store, 'kw-1', 'kw-2', 'kw-3')
    controller = OptimizerRunController(config, store, owner='worker-a')

    run = controller.run_batch(PROFILE)

    assert run.status == 'completed'
    assert run.entities_failed == 1
    assert store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-1')).recommended_bid_micros is not None
    assert store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-3')).recommended_bid_micros is not None


def test_majority_failure_fails_the_run(config):
    store = FlakyHistoryStore(RuntimeError('boom'), ['kw-1', 'kw-2'])
    seed_states(store, 'kw-1', 'kw-2', 'kw-3')
    controller = OptimizerRunController(config, store, owner='worker-a')

    run = controller.run_batch(PROFILE)
    assert run.status == 'failed'
    assert run.entities_failed == 2

    with pytest.raises(RunFailure):
        controller.run_batch(PROFILE, raise_on_failure=True)


def test_store_outage_fails_the_run(config):
    store = FlakyHistoryStore(StoreUnavailable('connection refused'), ['kw-2'])
    seed_states(store, 'kw-1', 'kw-2', 'kw-3')
    controller = OptimizerRunController(config, store, owner='worker-a')

    run = controller.run_batch(PROFILE)

    assert run.status == 'failed'
    assert 'store unavailable' in run.error
    assert run.entities_considered == 2
    # kw-1 was committed before the outage
    assert store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-1')).recommended_bid_micros is not None


def test_dry_run_batch_leaves_states_alone(controller, store):
    seed_states(store, 'kw-1')
    run = controller.run_batch(PROFILE, dry_run=True)
    assert run.summary['dry_run'] is True
    assert store.get_bid_state(KEY).version == 1


# ---------------------------------------------------------------------- #
# Portfolio runs and enablement
# ---------------------------------------------------------------------- #

def test_portfolio_run_persists_curves(controller, store):
    M = 1_000_000
    store.set_campaign_snapshots(PROFILE, [
        CampaignSnapshot('c-1', 100 * M, 600 * M, history=[SpendSalesPoint(80 * M, 420 * M)]),
        CampaignSnapshot('c-2', 100 * M, 250 * M, history=[SpendSalesPoint(80 * M, 230 * M)]),
    ])

    run, plan = controller.run_portfolio(PROFILE)

    assert run.status == 'completed'
    assert run.run_type == 'portfolio'
    assert plan.method == 'finite_difference'
    curves = {c.campaign_id: c for c in store.list_marginal_curves(PROFILE)}
    assert curves['c-1'].optimal_spend_micros == 120 * M
    assert curves['c-2'].optimal_spend_micros == 80 * M
    assert run.summary['reallocations'][0]['idempotency_key'].startswith('budget:')


def test_portfolio_dry_run_does_not_persist(controller, store):
    store.set_campaign_snapshots(PROFILE, [CampaignSnapshot('c-1', 1_000_000, 3_000_000)])
    run, plan = controller.run_portfolio(PROFILE, dry_run=True)
    assert run.status == 'completed'
    assert plan is not None
    assert store.list_marginal_curves(PROFILE) == []


def test_enable_creates_state_with_prior(config, store):
    config = config.copy(category_priors={'toys': (2.0, 60.0)})
    controller = OptimizerRunController(config, store)

    state = controller.enable_entity(PROFILE, 'keyword', 'kw-9', category='toys', campaign_id='c-1')

    assert (state.alpha, state.beta) == (2.0, 60.0)
    assert state.optimization_enabled
    controller.disable_entity(PROFILE, 'keyword', 'kw-9')
    assert not store.get_bid_state(entity_key(PROFILE, 'keyword', 'kw-9')).optimization_enabled
    again = controller.enable_entity(PROFILE, 'keyword', 'kw-9')
    assert again.optimization_enabled
    assert (again.alpha, again.beta) == (2.0, 60.0)
