"""
Optimizer status reporting

Read-only aggregates polled by the dashboard, plus the optimizer health
state machine:

    setup_required -> learning -> active
    active -> learning            (no high-confidence entity left)
    any -> warning                (latest run failed)
    warning -> setup_required | learning | active   (next run completed)
"""

import logging
from datetime import datetime, time as dt_time
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import OptimizerConfig
from .confidence import ConfidenceScorer
from .curve_fitter import BidResponseCurveFitter
from .models import BidState, ConfidenceLevel, OptimizerRun, RunStatus
from .store import BidStateStore


class OptimizerHealth(str, Enum):
    SETUP_REQUIRED = 'setup_required'
    LEARNING = 'learning'
    ACTIVE = 'active'
    WARNING = 'warning'


HEALTH_TRANSITIONS = {
    OptimizerHealth.SETUP_REQUIRED: {OptimizerHealth.LEARNING, OptimizerHealth.WARNING},
    OptimizerHealth.LEARNING: {OptimizerHealth.ACTIVE, OptimizerHealth.SETUP_REQUIRED, OptimizerHealth.WARNING},
    OptimizerHealth.ACTIVE: {OptimizerHealth.LEARNING, OptimizerHealth.WARNING},
    OptimizerHealth.WARNING: {OptimizerHealth.SETUP_REQUIRED, OptimizerHealth.LEARNING, OptimizerHealth.ACTIVE},
}


class HealthStateMachine:
    """Tracks the optimizer health of one profile across polls"""

    def __init__(self, state: OptimizerHealth = OptimizerHealth.SETUP_REQUIRED):
        self.state = OptimizerHealth(state)
        self.history: List[OptimizerHealth] = [self.state]

    @staticmethod
    def target(total_entities: int, high_confidence: int, last_run_status: Optional[str],
               has_completed_run: bool) -> OptimizerHealth:
        if last_run_status == RunStatus.FAILED.value:
            return OptimizerHealth.WARNING
        if total_entities == 0:
            return OptimizerHealth.SETUP_REQUIRED
        if has_completed_run and high_confidence > 0:
            return OptimizerHealth.ACTIVE
        return OptimizerHealth.LEARNING

    def advance(self, target: OptimizerHealth) -> OptimizerHealth:
        """Move toward target, passing through learning when coming from setup"""
        target = OptimizerHealth(target)
        if target == self.state:
            return self.state
        if target not in HEALTH_TRANSITIONS[self.state]:
            # setup_required -> active goes through learning
            self._move(OptimizerHealth.LEARNING)
        self._move(target)
        return self.state

    def _move(self, state: OptimizerHealth) -> None:
        if state not in HEALTH_TRANSITIONS[self.state]:
            raise ValueError(f"Health transition {self.state.value} -> {state.value} not allowed")
        self.state = state
        self.history.append(state)


class StatusReporter:
    """Builds the status and model-accuracy aggregates for one profile"""

    def __init__(self, config: OptimizerConfig, store: BidStateStore,
                 health_registry: Optional[Dict[str, HealthStateMachine]] = None):
        self.config = config
        self.store = store
        self.scorer = ConfidenceScorer(config)
        self.logger = logging.getLogger(__name__)
        # Shared across reporters so health survives between polls
        self._health = health_registry if health_registry is not None else {}

    def status(self, profile_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Aggregate status of the optimizer for a profile

        Confidence counts use the labels derived from the current posteriors,
        so they are available even for entities that never reached a run.
        """
        now = now or datetime.now()
        states = self.store.list_bid_states(profile_id)
        labels = [self.scorer.label(s) for s in states]
        high = sum(1 for label in labels if label == ConfidenceLevel.HIGH)
        medium = sum(1 for label in labels if label == ConfidenceLevel.MEDIUM)
        low = sum(1 for label in labels if label == ConfidenceLevel.LOW)
        average_pct = (sum(self.scorer.confidence_pct(s) for s in states) / len(states)) if states else 0.0

        runs = self.store.list_runs(profile_id)
        latest = self._latest(runs)
        first_created = min((s.created_at for s in states if s.created_at), default=None)

        machine = self._health.setdefault(str(profile_id), HealthStateMachine())
        machine.advance(HealthStateMachine.target(
            total_entities=len(states),
            high_confidence=sum(1 for s, label in zip(states, labels)
                                if s.optimization_enabled and label == ConfidenceLevel.HIGH),
            last_run_status=latest.status if latest else None,
            has_completed_run=any(r.status == RunStatus.COMPLETED.value for r in runs),
        ))

        return {
            'total_entities': len(states),
            'high_confidence_count': high,
            'medium_confidence_count': medium,
            'low_confidence_count': low,
            'average_confidence_pct': round(average_pct, 2),
            'learning_progress_pct': self.scorer.learning_progress(states),
            'total_observations': sum(s.observations_count for s in states),
            'days_since_start': (now - first_created).days if first_created else 0,
            'last_run_at': latest.started_at if latest else None,
            'last_run_status': latest.status if latest else None,
            'bids_changed_today': self.bids_changed_today(runs, now),
            'health': machine.state.value,
        }

    def model_accuracy(self, profile_id: str) -> Dict[str, Any]:
        """Curve-fit accuracy over every eligible, optimization-enabled entity"""
        states = self.store.list_bid_states(profile_id, enabled_only=True)
        eligible = {s.key for s in states if self.scorer.is_eligible(s)}
        fits = [f for f in self.store.list_curve_fits(profile_id) if f.key in eligible]
        accuracy = BidResponseCurveFitter.model_accuracy(fits)
        accuracy['total_models'] = len(eligible)
        return accuracy

    def entity_view(self, state: BidState) -> Dict[str, Any]:
        """Per-entity row for the UI; never blank while evidence accumulates"""
        return {
            'entity_type': state.entity_type,
            'entity_id': state.entity_id,
            'confidence': self.scorer.display_label(state),
            'confidence_pct': self.scorer.confidence_pct(state),
            'observations_count': state.observations_count,
            'current_bid_micros': state.current_bid_micros,
            'recommended_bid_micros': state.recommended_bid_micros,
            'optimization_enabled': state.optimization_enabled,
        }

    @staticmethod
    def bids_changed_today(runs: List[OptimizerRun], now: datetime) -> int:
        midnight = datetime.combine(now.date(), dt_time.min)
        return sum(r.bids_changed for r in runs
                   if r.status == RunStatus.COMPLETED.value and r.started_at and r.started_at >= midnight)

    @staticmethod
    def _latest(runs: List[OptimizerRun]) -> Optional[OptimizerRun]:
        if not runs:
            return None
        return max(runs, key=lambda r: (r.started_at or datetime.min, r.id or 0))
