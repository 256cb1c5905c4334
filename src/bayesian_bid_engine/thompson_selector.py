"""
Thompson Sampling Bid Selector

For one optimization-enabled entity:

1. sample p from Beta(alpha, beta)
2. expected revenue per click = p * average order value
3. candidate bid = expected revenue per click * target ACOS
4. blend with a trusted curve-fit optimum:
       bid = (1 - w) * candidate + w * curve_bid
       w   = clip((r2 - r2_min) / (1 - r2_min), 0, 1) * confidence_fraction
   Low posterior confidence keeps the Thompson sample in charge (exploration);
   a tight posterior and a good fit hand control to the curve (exploitation).
5. limit the move to max_bid_change_pct of the current bid, then clamp to the
   entity and account bid bounds.
"""

import logging
from dataclasses import replace
from typing import Optional, Tuple

import numpy as np
from scipy import stats

from .config import OptimizerConfig
from .confidence import ConfidenceScorer
from .models import BidRecommendation, BidState, CurveFitResult, MIN_TRUSTED_R_SQUARED
from .utils.units import clamp


class ThompsonBidSelector:
    """Posterior sampling bid selection with curve-fit blending"""

    def __init__(self, config: OptimizerConfig, scorer: Optional[ConfidenceScorer] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config
        self.scorer = scorer or ConfidenceScorer(config)
        self.rng = rng if rng is not None else np.random.default_rng(config.random_seed)
        self.logger = logging.getLogger(__name__)

    def sample_conversion_rate(self, state: BidState) -> float:
        """One Thompson draw from the posterior"""
        return float(stats.beta.rvs(state.alpha, state.beta, random_state=self.rng))

    def average_order_value(self, state: BidState,
                            portfolio_aov_micros: Optional[float] = None) -> float:
        """Entity AOV, else the portfolio AOV, else the configured default"""
        if state.total_conversions > 0:
            return state.average_order_value_micros
        if portfolio_aov_micros:
            return float(portfolio_aov_micros)
        return float(self.config.default_avg_order_value_micros)

    def candidate_bid(self, conversion_rate: float, avg_order_value_micros: float) -> float:
        return conversion_rate * avg_order_value_micros * self.config.target_acos

    def blend_weight(self, r_squared: Optional[float], confidence_fraction: float) -> float:
        """Curve weight, non-decreasing in both R^2 and posterior confidence"""
        if r_squared is None:
            return 0.0
        r_min = max(self.config.curve_fit_min_r_squared, MIN_TRUSTED_R_SQUARED)
        if r_squared < r_min:
            return 0.0
        fit_quality = 1.0 if r_min >= 1.0 else (r_squared - r_min) / (1.0 - r_min)
        return clamp(fit_quality, 0.0, 1.0) * clamp(confidence_fraction, 0.0, 1.0)

    @staticmethod
    def blend(candidate_micros: float, curve_micros: float, weight: float) -> float:
        return (1.0 - weight) * candidate_micros + weight * curve_micros

    def bid_bounds(self, state: BidState) -> Tuple[int, int]:
        """Entity bounds intersected with the account bounds"""
        low = self.config.min_bid_micros
        high = self.config.max_bid_micros
        if state.min_bid_micros is not None:
            low = max(low, state.min_bid_micros)
        if state.max_bid_micros is not None:
            high = min(high, state.max_bid_micros)
        if low > high:
            self.logger.warning(
                f"Bid bounds for {state.entity_type} {state.entity_id} do not overlap the account "
                f"bounds, using account bounds"
            )
            return self.config.min_bid_micros, self.config.max_bid_micros
        return low, high

    def limit_change(self, bid_micros: float, current_bid_micros: Optional[int]) -> float:
        if not current_bid_micros:
            return bid_micros
        step = current_bid_micros * self.config.max_bid_change_pct
        return clamp(bid_micros, current_bid_micros - step, current_bid_micros + step)

    def is_change(self, previous_bid_micros: Optional[int], recommended_bid_micros: int) -> bool:
        if not previous_bid_micros:
            return True
        relative = abs(recommended_bid_micros - previous_bid_micros) / previous_bid_micros
        return relative > self.config.min_bid_change_pct

    def select(self, state: BidState, curve_fit: Optional[CurveFitResult] = None,
               portfolio_aov_micros: Optional[float] = None,
               run_id: Optional[int] = None) -> Tuple[BidRecommendation, BidState]:
        """
        Pick the next bid for one entity

        Args:
            state: Current BidState
            curve_fit: Latest curve fit for the entity, if any
            portfolio_aov_micros: Fallback AOV when the entity has no conversions
            run_id: OptimizerRun the recommendation belongs to

        Returns:
            (BidRecommendation, BidState with refreshed recommendation and confidence fields)
        """
        scored = self.scorer.score(state)
        low, high = self.bid_bounds(state)

        sampled = self.sample_conversion_rate(state)
        aov = self.average_order_value(state, portfolio_aov_micros)
        candidate = self.candidate_bid(sampled, aov)

        curve_bid = None
        weight = 0.0
        if curve_fit is not None and curve_fit.has_trusted_optimum:
            curve_bid = curve_fit.optimal_bid_micros
            weight = self.blend_weight(curve_fit.r_squared, self.scorer.confidence_fraction(scored))

        bid = self.blend(candidate, curve_bid, weight) if curve_bid is not None else candidate
        bid = self.limit_change(bid, state.current_bid_micros)
        recommended = int(round(clamp(bid, low, high)))

        ci_low_rate, ci_high_rate = self.scorer.credible_interval(state)
        ci_lower = int(round(clamp(self.candidate_bid(ci_low_rate, aov), low, high)))
        ci_upper = int(round(clamp(self.candidate_bid(ci_high_rate, aov), low, high)))

        recommendation = BidRecommendation(
            entity_type=state.entity_type,
            entity_id=state.entity_id,
            previous_bid_micros=state.current_bid_micros,
            recommended_bid_micros=recommended,
            confidence_level=scored.confidence_level,
            confidence_pct=scored.confidence_pct,
            sampled_conversion_rate=sampled,
            candidate_bid_micros=int(round(candidate)),
            curve_bid_micros=curve_bid,
            curve_weight=weight,
            confidence_interval_lower_micros=ci_lower,
            confidence_interval_upper_micros=ci_upper,
            changed=self.is_change(state.current_bid_micros, recommended),
            run_id=run_id,
        )
        updated = replace(
            scored,
            recommended_bid_micros=recommended,
            confidence_interval_lower_micros=ci_lower,
            confidence_interval_upper_micros=ci_upper,
        )
        self.logger.debug(
            f"{state.entity_type} {state.entity_id}: sample={sampled:.4f}, candidate={candidate:.0f}, "
            f"curve={curve_bid}, w={weight:.2f}, recommended={recommended}"
        )
        return recommendation, updated

    @staticmethod
    def portfolio_average_order_value(states) -> Optional[float]:
        """Pooled AOV over entities with conversions, None when nobody converted"""
        conversions = sum(s.total_conversions for s in states)
        if not conversions:
            return None
        return sum(s.total_sales_micros for s in states) / conversions
