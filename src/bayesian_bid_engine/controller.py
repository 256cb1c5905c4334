"""
Run/Trigger Controller

Drives batch runs, real-time single-entity triggers and portfolio runs.

Run state machine::

    pending -> running -> completed
       |          |
       +----------+----> failed

Each entity is committed on its own (optimistic version check under a
per-entity lease), so a failed run leaves already processed entities valid.
Cancellation is checked between entities only.
"""

import logging
import math
import os
import socket
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np

from .bayesian_updater import BayesianUpdater
from .config import OptimizerConfig
from .confidence import ConfidenceScorer
from .curve_fitter import BidResponseCurveFitter
from .exceptions import (
    InvalidRunTransition,
    LeaseUnavailable,
    RunFailure,
    StaleStateError,
    StoreUnavailable,
)
from .ledger import PerformanceLedgerReader
from .models import (
    BidRecommendation,
    BidState,
    CurveFitResult,
    EntityKey,
    OptimizerRun,
    PortfolioPlan,
    RunStatus,
    RunType,
    TriggerResult,
    TriggerStatus,
    entity_key,
)
from .portfolio_optimizer import PortfolioMarginalOptimizer
from .store import BidStateStore
from .telemetry import TelemetryClient
from .thompson_selector import ThompsonBidSelector
from .utils.units import decimal_to_percentage


class RunStateMachine:
    """Enforces the documented OptimizerRun status transitions"""

    TRANSITIONS = {
        RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
        RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
        RunStatus.COMPLETED: set(),
        RunStatus.FAILED: set(),
    }

    def __init__(self, run: OptimizerRun):
        self.run = run

    @property
    def status(self) -> RunStatus:
        return RunStatus(self.run.status)

    def can_transition(self, target: RunStatus) -> bool:
        return RunStatus(target) in self.TRANSITIONS[self.status]

    def transition(self, target: RunStatus) -> OptimizerRun:
        target = RunStatus(target)
        if not self.can_transition(target):
            raise InvalidRunTransition(f"Run {self.run.id}: {self.status.value} -> {target.value} not allowed")
        self.run.status = target.value
        if target == RunStatus.RUNNING:
            self.run.started_at = self.run.started_at or datetime.now()
        elif target in (RunStatus.COMPLETED, RunStatus.FAILED):
            self.run.completed_at = datetime.now()
        return self.run

    def start(self) -> OptimizerRun:
        return self.transition(RunStatus.RUNNING)

    def complete(self) -> OptimizerRun:
        return self.transition(RunStatus.COMPLETED)

    def fail(self, error: str) -> OptimizerRun:
        self.run.error = error
        return self.transition(RunStatus.FAILED)


class OptimizerRunController:
    """Wires the updater, fitter, selector and portfolio optimizer to the store"""

    def __init__(self, config: OptimizerConfig, store: BidStateStore,
                 ledger_reader: Optional[PerformanceLedgerReader] = None,
                 telemetry: Optional[TelemetryClient] = None,
                 rng: Optional[np.random.Generator] = None,
                 owner: Optional[str] = None,
                 max_retries: int = 3):
        self.config = config
        self.store = store
        self.ledger_reader = ledger_reader
        self.telemetry = telemetry or TelemetryClient.from_config(config)
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.max_retries = max_retries
        self.logger = logging.getLogger(__name__)

        self.scorer = ConfidenceScorer(config)
        self.updater = BayesianUpdater(config, store=store, max_retries=max_retries)
        self.fitter = BidResponseCurveFitter(config)
        self.selector = ThompsonBidSelector(config, scorer=self.scorer, rng=rng)
        self.portfolio = PortfolioMarginalOptimizer(config)

    # ------------------------------------------------------------------ #
    # Batch runs
    # ------------------------------------------------------------------ #

    def run_batch(self, profile_id: str, since: Optional[datetime] = None,
                  until: Optional[datetime] = None, dry_run: bool = False,
                  cancel_event: Optional[threading.Event] = None,
                  raise_on_failure: bool = False) -> OptimizerRun:
        """
        Ingest new ledger cycles and re-optimize every enabled entity of a profile

        Args:
            profile_id: Advertising profile
            since/until: Ledger window to ingest; cycles closing after ``since`` are read.
                Without ``since`` the window starts ``ingest_overlap_seconds`` behind the
                profile's ingestion watermark (the whole ledger on a first run)
            dry_run: Compute recommendations without persisting bid states or fits
            cancel_event: Checked between entities; a cancelled run ends completed
            raise_on_failure: Raise RunFailure instead of returning a failed run

        Returns:
            The finished OptimizerRun; recommendations are in summary['recommendations']
        """
        run, fsm = self._open_run(profile_id, RunType.BATCH)
        started = time.monotonic()
        summary: Dict[str, object] = {'dry_run': dry_run}
        recommendations: List[dict] = []
        considered = failed = busy = not_ready = 0

        try:
            if self.ledger_reader is not None and not dry_run:
                if since is None:
                    since = self.ingest_since(profile_id)
                ingest = self.updater.ingest(self.ledger_reader.fetch_cycles(profile_id, since, until))
                summary['ingest'] = {
                    'status': ingest.status,
                    'since': since.isoformat() if since else None,
                    'cycles_applied': ingest.cycles_applied,
                    'cycles_already_applied': ingest.cycles_already_applied,
                    'states_created': ingest.states_created,
                    'states_updated': ingest.states_updated,
                    'skipped': len(ingest.skipped),
                    'failures': len(ingest.failures),
                }
                self.telemetry.record_skipped_observations(len(ingest.skipped))

            all_states = self.store.list_bid_states(profile_id)
            portfolio_aov = self.selector.portfolio_average_order_value(all_states)
            enabled = [s for s in all_states if s.optimization_enabled]

            for state in enabled:
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.warning(f"Run {run.id} cancelled after {considered} entit(ies)")
                    summary['cancelled'] = True
                    break
                considered += 1
                try:
                    outcome = self._optimize_entity(state.key, run.id, portfolio_aov, dry_run)
                except StoreUnavailable:
                    raise
                except LeaseUnavailable as e:
                    busy += 1
                    self.logger.info(f"Skipping {state.entity_type} {state.entity_id}: {e}")
                    continue
                except Exception as e:
                    failed += 1
                    self.logger.error(
                        f"Failed to optimize {state.entity_type} {state.entity_id} "
                        f"(profile {profile_id}): {type(e).__name__}: {e}"
                    )
                    self.telemetry.record_entity_failure(state.entity_type, type(e).__name__)
                    continue

                if outcome is None:
                    not_ready += 1
                    continue
                recommendation, _ = outcome
                if recommendation.changed:
                    run.bids_changed += 1
                    recommendations.append(recommendation.to_action_payload())

            run.entities_considered = considered
            run.entities_failed = failed
            summary.update({'busy': busy, 'insufficient_data': not_ready,
                            'recommendations': recommendations})
            run.summary = summary
            if not dry_run:
                self.telemetry.record_learning_progress(
                    profile_id, self.scorer.learning_progress(self.store.list_bid_states(profile_id)))

            if considered and failed / considered > self.config.run_failure_ratio:
                fsm.fail(f"{failed} of {considered} entities failed")
            else:
                fsm.complete()
        except StoreUnavailable as e:
            self.logger.error(f"Bid state store unavailable during run {run.id}: {e}")
            run.entities_considered = considered
            run.entities_failed = failed
            run.summary = summary
            fsm.fail(f"store unavailable: {e}")
        except Exception as e:
            self.logger.exception(f"Run {run.id} aborted: {e}")
            run.entities_considered = considered
            run.entities_failed = failed
            run.summary = summary
            fsm.fail(f"{type(e).__name__}: {e}")

        self._close_run(run, started)
        if raise_on_failure and run.status == RunStatus.FAILED.value:
            raise RunFailure(run.error, run_id=run.id, entities_considered=run.entities_considered)
        return run

    def ingest_since(self, profile_id: str) -> Optional[datetime]:
        """Start of the ledger window for the next ingest, None before anything was ingested"""
        watermarks = [s.last_observation_at for s in self.store.list_bid_states(profile_id)
                      if s.last_observation_at is not None]
        if not watermarks:
            return None
        return max(watermarks) - timedelta(seconds=self.config.ingest_overlap_seconds)

    # ------------------------------------------------------------------ #
    # Real-time trigger
    # ------------------------------------------------------------------ #

    def trigger_entity(self, profile_id: str, entity_type: str, entity_id: str,
                       now: Optional[datetime] = None, dry_run: bool = False) -> TriggerResult:
        """
        Re-optimize one entity right away, subject to the cool-down

        Args:
            profile_id: Advertising profile
            entity_type: campaign, ad_group, keyword or target
            entity_id: Entity identifier
            now: Clock override
            dry_run: Compute without claiming the slot or persisting

        Returns:
            TriggerResult; rate_limited carries retry_after_seconds
        """
        key = entity_key(profile_id, entity_type, entity_id)
        now = now or datetime.now()
        result = TriggerResult(status='', profile_id=key[0], entity_type=key[1], entity_id=key[2])
        cooldown = self.config.rate_limit_cooldown_seconds

        state = self.store.get_bid_state(key)
        if state is None:
            return self._trigger_result(result, TriggerStatus.NOT_FOUND)
        if not state.optimization_enabled:
            return self._trigger_result(result, TriggerStatus.DISABLED)

        retry_after = self._retry_after(state.last_optimized_at, now, cooldown)
        if retry_after:
            result.retry_after_seconds = retry_after
            return self._trigger_result(result, TriggerStatus.RATE_LIMITED)

        if not self.scorer.is_eligible(state):
            result.details = {
                'observations_count': state.observations_count,
                'total_impressions': state.total_impressions,
                'min_observations': self.config.min_observations,
                'min_impressions': self.config.min_impressions,
            }
            return self._trigger_result(result, TriggerStatus.INSUFFICIENT_DATA)

        if not dry_run:
            claimed, last = self.store.claim_optimization_slot(key, cooldown, now)
            if not claimed:
                result.retry_after_seconds = self._retry_after(last, now, cooldown) or cooldown
                return self._trigger_result(result, TriggerStatus.RATE_LIMITED)

        run, fsm = self._open_run(profile_id, RunType.REALTIME)
        started = time.monotonic()
        result.run_id = run.id
        run.entities_considered = 1
        run.summary = {'entity_type': key[1], 'entity_id': key[2], 'dry_run': dry_run}
        portfolio_aov = self.selector.portfolio_average_order_value(self.store.list_bid_states(profile_id))

        try:
            outcome = self._optimize_entity(key, run.id, portfolio_aov, dry_run)
        except LeaseUnavailable as e:
            self.logger.info(f"Real-time trigger for {key} found the entity busy: {e}")
            run.summary['status'] = TriggerStatus.BUSY.value
            fsm.complete()
            self._close_run(run, started)
            return self._trigger_result(result, TriggerStatus.BUSY)
        except Exception as e:
            self.logger.error(f"Real-time trigger for {key} failed: {type(e).__name__}: {e}")
            run.entities_failed = 1
            fsm.fail(f"{type(e).__name__}: {e}")
            self._close_run(run, started)
            raise RunFailure(str(e), run_id=run.id, entities_considered=1) from e

        if outcome is None:
            # Entity changed between the eligibility check and the lease
            run.summary['status'] = TriggerStatus.INSUFFICIENT_DATA.value
            fsm.complete()
            self._close_run(run, started)
            return self._trigger_result(result, TriggerStatus.INSUFFICIENT_DATA)

        recommendation, fit = outcome
        if recommendation.changed:
            run.bids_changed = 1
        run.summary.update({
            'status': TriggerStatus.OPTIMIZED.value,
            'recommendations': [recommendation.to_action_payload()],
            'curve_fit_status': fit.status,
        })
        fsm.complete()
        self._close_run(run, started)
        result.recommendation = recommendation
        return self._trigger_result(result, TriggerStatus.OPTIMIZED)

    # ------------------------------------------------------------------ #
    # Portfolio runs
    # ------------------------------------------------------------------ #

    def run_portfolio(self, profile_id: str, dry_run: bool = False) -> Tuple[OptimizerRun, Optional[PortfolioPlan]]:
        """Compute and (unless dry_run) persist the campaign reallocation plan"""
        run, fsm = self._open_run(profile_id, RunType.PORTFOLIO)
        started = time.monotonic()
        plan = None
        try:
            snapshots = self._with_entity_curve_marginals(profile_id, self.store.get_campaign_snapshots(profile_id))
            plan = self.portfolio.optimize(profile_id, snapshots, run_id=run.id)
            if not dry_run:
                self.store.save_marginal_curves(profile_id, plan.curves)
            run.entities_considered = len(snapshots)
            run.summary = dict(self.portfolio.summarize(plan), dry_run=dry_run,
                               reallocations=plan.to_action_payload(),
                               opportunities=[c.to_action_payload() for c in plan.opportunities])
            self.telemetry.record_portfolio_efficiency(profile_id, plan.efficiency_score)
            fsm.complete()
        except Exception as e:
            self.logger.error(f"Portfolio run {run.id} for profile {profile_id} failed: {type(e).__name__}: {e}")
            fsm.fail(f"{type(e).__name__}: {e}")
        self._close_run(run, started)
        return run, plan

    def _with_entity_curve_marginals(self, profile_id: str, snapshots):
        fits = {fit.key: fit for fit in self.store.list_curve_fits(profile_id) if fit.is_fitted}
        if not fits:
            return snapshots
        by_campaign: Dict[str, List[Tuple[CurveFitResult, int]]] = {}
        for state in self.store.list_bid_states(profile_id):
            fit = fits.get(state.key)
            if fit is not None and state.campaign_id and state.current_bid_micros:
                by_campaign.setdefault(str(state.campaign_id), []).append((fit, state.current_bid_micros))
        enriched = []
        for snapshot in snapshots:
            if snapshot.entity_curve_marginal_roas is None and str(snapshot.campaign_id) in by_campaign:
                snapshot = replace(snapshot, entity_curve_marginal_roas=self.fitter.campaign_marginal_roas(
                    by_campaign[str(snapshot.campaign_id)]))
            enriched.append(snapshot)
        return enriched

    # ------------------------------------------------------------------ #
    # Entity enablement
    # ------------------------------------------------------------------ #

    def enable_entity(self, profile_id: str, entity_type: str, entity_id: str,
                      category: Optional[str] = None, **attributes) -> BidState:
        """Explicit enablement; creates the state with its prior when it does not exist yet"""
        key = entity_key(profile_id, entity_type, entity_id)
        state = self.store.get_bid_state(key)
        if state is None:
            try:
                return self.store.create_bid_state(
                    self.updater.new_state(*key, category=category, **attributes))
            except StaleStateError:
                self.logger.debug(f"{key} was created concurrently")
        return self.store.set_optimization_enabled(key, True)

    def disable_entity(self, profile_id: str, entity_type: str, entity_id: str) -> Optional[BidState]:
        """Exclude an entity from bid changes; it keeps accruing observations"""
        return self.store.set_optimization_enabled(entity_key(profile_id, entity_type, entity_id), False)

    # ------------------------------------------------------------------ #
    # Per-entity pipeline
    # ------------------------------------------------------------------ #

    def _optimize_entity(self, key: EntityKey, run_id: Optional[int], portfolio_aov: Optional[float],
                         dry_run: bool) -> Optional[Tuple[BidRecommendation, CurveFitResult]]:
        """
        Fit, select and commit one entity under its lease

        Returns None when the entity is missing, disabled or not yet eligible.
        """
        if not self.store.acquire_lease(key, self.owner, self.config.lease_ttl_seconds):
            raise LeaseUnavailable(key)
        try:
            for attempt in range(1, self.max_retries + 1):
                state = self.store.get_bid_state(key)
                if state is None or not state.optimization_enabled:
                    return None
                if not self.scorer.is_eligible(state):
                    scored = self.scorer.score(state)
                    if not dry_run and (scored.confidence_level, scored.confidence_pct) != \
                            (state.confidence_level, state.confidence_pct):
                        self.store.save_bid_state(scored, expected_version=state.version)
                    return None

                fit = self.fitter.fit(key[0], key[1], key[2], self.store.get_bid_history(key), state)
                recommendation, updated = self.selector.select(state, fit, portfolio_aov, run_id=run_id)
                if dry_run:
                    return recommendation, fit
                try:
                    self.store.save_bid_state(updated, expected_version=state.version)
                except StaleStateError:
                    self.logger.debug(f"Version conflict on {key}, retry {attempt}/{self.max_retries}")
                    continue
                self.store.save_curve_fit(fit)
                self.telemetry.record_curve_fit(fit.model_type, fit.status, fit.r_squared)
                if recommendation.changed and recommendation.previous_bid_micros:
                    change = (recommendation.recommended_bid_micros - recommendation.previous_bid_micros) \
                        / recommendation.previous_bid_micros
                    self.telemetry.record_bid_change_magnitude(key[1], decimal_to_percentage(change))
                return recommendation, fit
            raise StaleStateError(key, expected_version=-1)
        finally:
            self.store.release_lease(key, self.owner)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _open_run(self, profile_id: str, run_type: RunType) -> Tuple[OptimizerRun, RunStateMachine]:
        run = self.store.create_run(OptimizerRun(profile_id=str(profile_id), run_type=run_type.value))
        fsm = RunStateMachine(run)
        fsm.start()
        self.store.update_run(run)
        self.logger.info(f"Started {run_type.value} run {run.id} for profile {profile_id}")
        return run, fsm

    def _close_run(self, run: OptimizerRun, started: float) -> None:
        try:
            self.store.update_run(run)
        except StoreUnavailable as e:
            self.logger.error(f"Could not record outcome of run {run.id}: {e}")
        self.telemetry.record_run(run.run_type, run.status, run.bids_changed,
                                  run.entities_considered, time.monotonic() - started)
        self.logger.info(
            f"Run {run.id} ({run.run_type}) {run.status}: {run.entities_considered} considered, "
            f"{run.bids_changed} bid(s) changed, {run.entities_failed} failed"
        )

    @staticmethod
    def _retry_after(last_optimized_at: Optional[datetime], now: datetime, cooldown_seconds: int) -> Optional[int]:
        if last_optimized_at is None:
            return None
        remaining = (last_optimized_at + timedelta(seconds=cooldown_seconds) - now).total_seconds()
        if remaining <= 0:
            return None
        return int(math.ceil(remaining))

    def _trigger_result(self, result: TriggerResult, status: TriggerStatus) -> TriggerResult:
        result.status = status.value
        self.telemetry.record_trigger(status.value)
        if status != TriggerStatus.OPTIMIZED:
            self.logger.info(
                f"Real-time trigger {result.entity_type} {result.entity_id} "
                f"(profile {result.profile_id}): {status.value}"
            )
        return result
