"""
Bayesian Updater

Folds aggregation-cycle observations into a Beta-Binomial posterior over
"probability this click converts":

    alpha' = alpha + conversions
    beta'  = beta + (clicks - conversions)

Every update is a sum, so replaying any partition of the same cycles in any
order lands on the same (alpha, beta) and the same running totals.

``ingest`` commits against the stored ``last_observation_at`` watermark: a
cycle whose window closed at or before it has already been folded in and is
dropped, so re-reading an overlapping ledger window never counts it twice.
"""

import logging
import math
import numbers
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .config import OptimizerConfig
from .exceptions import InvalidObservation, StaleStateError
from .ledger import LedgerResult, RealData, SimulatedData, Unavailable
from .models import BidState, EntityKey, Observation

COUNT_FIELDS = ('impressions', 'clicks', 'conversions', 'spend_micros', 'sales_micros')


@dataclass
class SkippedObservation:
    observation: Observation
    reason: str


@dataclass
class IngestSummary:
    """Outcome of folding one ledger batch into the store"""
    status: str = 'completed'
    cycles_applied: int = 0
    cycles_already_applied: int = 0
    states_created: int = 0
    states_updated: int = 0
    skipped: List[SkippedObservation] = field(default_factory=list)
    failures: Dict[EntityKey, str] = field(default_factory=dict)
    reason: Optional[str] = None


class BayesianUpdater:
    """Conjugate Beta-Binomial updates for bid states"""

    def __init__(self, config: OptimizerConfig, store=None, max_retries: int = 3):
        self.config = config
        self.store = store
        self.max_retries = max_retries
        self.logger = logging.getLogger(__name__)

    def validate_observation(self, observation: Observation) -> None:
        """Raise InvalidObservation for negative, non-integral or inconsistent counts"""
        for name in COUNT_FIELDS:
            value = getattr(observation, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise InvalidObservation(f"{name} must be numeric, got {value!r}", name, value)
            if not math.isfinite(value):
                raise InvalidObservation(f"{name} must be finite, got {value!r}", name, value)
            if value < 0:
                raise InvalidObservation(f"{name} must be non-negative, got {value!r}", name, value)
            if value != int(value):
                raise InvalidObservation(f"{name} must be a whole number, got {value!r}", name, value)
        if observation.conversions > observation.clicks:
            raise InvalidObservation(
                f"conversions ({observation.conversions}) exceed clicks ({observation.clicks})",
                'conversions', observation.conversions
            )

    def new_state(self, profile_id: str, entity_type: str, entity_id: str,
                  category: Optional[str] = None, **attributes) -> BidState:
        """Fresh state carrying the configured prior; the prior is never mutated afterwards"""
        prior_alpha, prior_beta = self.config.prior_for(category)
        return BidState(
            profile_id=str(profile_id),
            entity_type=entity_type,
            entity_id=str(entity_id),
            alpha=prior_alpha,
            beta=prior_beta,
            prior_alpha=prior_alpha,
            prior_beta=prior_beta,
            category=category,
            **attributes
        )

    def apply(self, state: BidState, observation: Observation) -> BidState:
        """Return a new state with one cycle folded in; the input is left untouched"""
        self.validate_observation(observation)
        if observation.key != state.key:
            raise InvalidObservation(f"Observation for {observation.key} applied to {state.key}")

        clicks = int(observation.clicks)
        conversions = int(observation.conversions)
        impressions = int(observation.impressions)

        observed_at = observation.window_end or observation.window_start
        last_observation_at = state.last_observation_at
        is_newest = (observed_at is None or last_observation_at is None
                     or observed_at >= last_observation_at)
        if observed_at is not None and is_newest:
            last_observation_at = observed_at
        current_bid_micros = state.current_bid_micros
        if observation.bid_micros and is_newest:
            current_bid_micros = int(observation.bid_micros)

        return replace(
            state,
            alpha=state.alpha + conversions,
            beta=state.beta + (clicks - conversions),
            # Idle cycles are not evidence
            observations_count=state.observations_count + (1 if impressions > 0 else 0),
            total_clicks=state.total_clicks + clicks,
            total_conversions=state.total_conversions + conversions,
            total_impressions=state.total_impressions + impressions,
            total_spend_micros=state.total_spend_micros + int(observation.spend_micros),
            total_sales_micros=state.total_sales_micros + int(observation.sales_micros),
            current_bid_micros=current_bid_micros,
            campaign_id=state.campaign_id or observation.campaign_id,
            ad_group_id=state.ad_group_id or observation.ad_group_id,
            last_observation_at=last_observation_at,
        )

    @staticmethod
    def already_applied(state: BidState, observation: Observation) -> bool:
        """True when the cycle closed at or before the state's ingestion watermark"""
        observed_at = observation.window_end or observation.window_start
        if observed_at is None or state.last_observation_at is None:
            return False
        return observed_at <= state.last_observation_at

    def fold(self, state: BidState,
             observations: Iterable[Observation]) -> Tuple[BidState, List[SkippedObservation]]:
        """Apply a sequence of cycles, skipping (and logging) invalid ones"""
        skipped = []
        for observation in observations:
            try:
                state = self.apply(state, observation)
            except InvalidObservation as e:
                self.logger.warning(
                    f"Skipped cycle for {observation.entity_type} {observation.entity_id} "
                    f"(profile {observation.profile_id}): {e}"
                )
                skipped.append(SkippedObservation(observation=observation, reason=str(e)))
        return state, skipped

    def ingest(self, ledger_result: LedgerResult, category_lookup=None) -> IngestSummary:
        """
        Fold a ledger batch into the store, committing each entity independently

        Args:
            ledger_result: Tagged ledger read; only RealData is applied
            category_lookup: Optional callable (entity_key) -> category for new entities

        Returns:
            IngestSummary
        """
        if isinstance(ledger_result, SimulatedData):
            self.logger.error(f"Refusing to update posteriors from simulated data ({ledger_result.reason})")
            return IngestSummary(status='rejected', reason='simulated_data')
        if isinstance(ledger_result, Unavailable):
            self.logger.warning(f"Ledger unavailable, no posterior updates: {ledger_result.reason}")
            return IngestSummary(status='unavailable', reason=ledger_result.reason)
        if not isinstance(ledger_result, RealData):
            raise TypeError(f"Unsupported ledger result: {type(ledger_result).__name__}")
        if self.store is None:
            raise RuntimeError("BayesianUpdater.ingest requires a store")

        grouped: Dict[EntityKey, List[Observation]] = OrderedDict()
        for observation in ledger_result.observations:
            grouped.setdefault(observation.key, []).append(observation)

        summary = IngestSummary()
        for key, observations in grouped.items():
            try:
                created, applied, duplicates, skipped = self._commit_entity(key, observations, category_lookup)
            except StaleStateError as e:
                self.logger.error(f"Gave up updating {key} after {self.max_retries} attempts: {e}")
                summary.failures[key] = str(e)
                continue
            summary.cycles_applied += applied
            summary.cycles_already_applied += duplicates
            summary.skipped.extend(skipped)
            if created:
                summary.states_created += 1
            elif applied:
                summary.states_updated += 1

        self.logger.info(
            f"Ingested {summary.cycles_applied} cycle(s): {summary.states_created} new, "
            f"{summary.states_updated} updated, {summary.cycles_already_applied} already applied, "
            f"{len(summary.skipped)} skipped, {len(summary.failures)} failed"
        )
        return summary

    def _commit_entity(self, key: EntityKey, observations: List[Observation], category_lookup):
        profile_id, entity_type, entity_id = key
        for attempt in range(1, self.max_retries + 1):
            existing = self.store.get_bid_state(key)
            if existing is None:
                category = category_lookup(key) if category_lookup else None
                base = self.new_state(profile_id, entity_type, entity_id, category=category)
            else:
                base = existing
            pending = [o for o in observations if not self.already_applied(base, o)]
            duplicates = len(observations) - len(pending)
            if duplicates:
                self.logger.debug(f"{duplicates} cycle(s) for {key} already applied, ignoring")
            updated, skipped = self.fold(base, pending)
            applied = len(pending) - len(skipped)
            if not applied:
                return False, 0, duplicates, skipped
            try:
                if existing is None:
                    self.store.create_bid_state(updated)
                else:
                    self.store.save_bid_state(updated, expected_version=existing.version)
                return existing is None, applied, duplicates, skipped
            except StaleStateError:
                # Re-read picks up the other writer's watermark before re-folding
                self.logger.debug(f"Version conflict on {key}, retry {attempt}/{self.max_retries}")
        raise StaleStateError(key, expected_version=-1)
