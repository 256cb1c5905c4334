"""
Confidence Scorer

Maps posterior concentration and observation volume to a low/medium/high
label, a 0-100 confidence percentage and population learning progress.
"""

import logging
from dataclasses import replace
from typing import Iterable, Tuple

from scipy import stats

from .config import OptimizerConfig
from .models import BidState, ConfidenceLevel
from .utils.units import percentage_to_decimal

LEARNING_LABEL = 'Learning'


class ConfidenceScorer:
    """
    Confidence label semantics:

    - high: both volume thresholds met and the posterior mean's relative
      standard error is at or below ``confidence_tight_rse``
    - medium: exactly one volume threshold met, or both met with a moderate
      relative standard error
    - low: everything else

    The percentage is ``100 * n / (n + k)`` with ``n`` the evidence weight
    since the prior and ``k`` the configured half-saturation point, so it only
    grows as evidence accumulates.
    """

    def __init__(self, config: OptimizerConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def meets_volume(self, state: BidState) -> Tuple[bool, bool]:
        return (state.observations_count >= self.config.min_observations,
                state.total_impressions >= self.config.min_impressions)

    def is_eligible(self, state: BidState) -> bool:
        """Enough observed cycles and impressions to act on"""
        return all(self.meets_volume(state))

    @staticmethod
    def relative_standard_error(state: BidState) -> float:
        mean = state.posterior_mean
        if mean <= 0:
            return float('inf')
        return state.posterior_std / mean

    def label(self, state: BidState) -> ConfidenceLevel:
        observations_ok, impressions_ok = self.meets_volume(state)
        rse = self.relative_standard_error(state)

        if observations_ok and impressions_ok:
            if rse <= self.config.confidence_tight_rse:
                return ConfidenceLevel.HIGH
            if rse <= self.config.confidence_moderate_rse:
                return ConfidenceLevel.MEDIUM
            return ConfidenceLevel.LOW
        if observations_ok or impressions_ok:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW

    def confidence_pct(self, state: BidState) -> float:
        evidence = max(0.0, state.evidence_weight)
        return round(100.0 * evidence / (evidence + self.config.confidence_half_saturation), 2)

    def confidence_fraction(self, state: BidState) -> float:
        return percentage_to_decimal(self.confidence_pct(state))

    @staticmethod
    def credible_interval(state: BidState, level: float = 0.95) -> Tuple[float, float]:
        """Equal-tailed credible interval of the conversion probability"""
        tail = (1.0 - level) / 2.0
        lower = float(stats.beta.ppf(tail, state.alpha, state.beta))
        upper = float(stats.beta.ppf(1.0 - tail, state.alpha, state.beta))
        return lower, upper

    def score(self, state: BidState) -> BidState:
        """Return the state with its derived confidence fields refreshed"""
        return replace(
            state,
            confidence_level=self.label(state).value,
            confidence_pct=self.confidence_pct(state),
        )

    def display_label(self, state: BidState) -> str:
        """UI label; entities still accumulating evidence render as 'Learning'"""
        if not self.is_eligible(state):
            return LEARNING_LABEL
        return self.label(state).value.title()

    def learning_progress(self, states: Iterable[BidState]) -> float:
        """
        Percent of optimization-enabled entities at high confidence

        Disabled entities are left out of both numerator and denominator.
        """
        enabled = [s for s in states if s.optimization_enabled]
        if not enabled:
            return 0.0
        high = sum(1 for s in enabled if self.label(s) == ConfidenceLevel.HIGH)
        return round(100.0 * high / len(enabled), 2)
