"""
Portfolio Marginal Optimizer

Estimates each campaign's marginal ROAS at its current spend and moves the
optimal spend toward the portfolio target:

- marginal ROAS above target: candidate for more spend
- marginal ROAS below target: candidate for less spend
- per-cycle move capped at max_spend_change_pct of current spend

One estimation method is used for the whole run so campaigns are compared on
the same footing.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import OptimizerConfig
from .models import CampaignSnapshot, PortfolioMarginalCurve, PortfolioPlan
from .utils.units import clamp

FINITE_DIFFERENCE = 'finite_difference'
HISTORY_CURVE = 'history_curve'
ENTITY_CURVES = 'entity_curves'
UNAVAILABLE = 'unavailable'

# Preference order when methods cover the same number of campaigns
METHODS = (FINITE_DIFFERENCE, HISTORY_CURVE, ENTITY_CURVES)

MIN_HISTORY_POINTS = 3


def piecewise_marginal_curve(points: Sequence[Tuple[float, float]]) -> List[Tuple[float, float]]:
    """
    Segment slopes of a sales-vs-spend history

    Args:
        points: (spend_micros, sales_micros) pairs in any order

    Returns:
        (spend_level_micros, marginal_roas) per segment, by increasing spend
    """
    ordered = sorted(points)
    curve = []
    for (prev_spend, prev_sales), (spend, sales) in zip(ordered, ordered[1:]):
        if spend - prev_spend > 0:
            curve.append((float(spend), (sales - prev_sales) / (spend - prev_spend)))
    return curve


def interpolate_marginal(curve: List[Tuple[float, float]], spend_micros: float) -> Optional[float]:
    """Marginal ROAS at a spend level, held flat outside the observed range"""
    if not curve:
        return None
    levels = np.array([level for level, _ in curve])
    values = np.array([value for _, value in curve])
    return float(np.interp(spend_micros, levels, values))


class PortfolioMarginalOptimizer:
    """Campaign-level budget reallocator"""

    def __init__(self, config: OptimizerConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Marginal ROAS
    # ------------------------------------------------------------------ #

    def finite_difference_marginal(self, snapshot: CampaignSnapshot) -> Optional[float]:
        """Sales/spend slope between the current and the immediately preceding period"""
        if not snapshot.history:
            return None
        previous = snapshot.history[-1]
        delta_spend = snapshot.current_spend_micros - previous.spend_micros
        reference = max(snapshot.current_spend_micros, previous.spend_micros)
        if reference <= 0 or abs(delta_spend) < self.config.min_spend_delta_pct * reference:
            return None
        return (snapshot.current_sales_micros - previous.sales_micros) / delta_spend

    def history_curve_marginal(self, snapshot: CampaignSnapshot) -> Optional[float]:
        points = [(p.spend_micros, p.sales_micros) for p in snapshot.history]
        points.append((snapshot.current_spend_micros, snapshot.current_sales_micros))
        if len(points) < MIN_HISTORY_POINTS:
            return None
        return interpolate_marginal(piecewise_marginal_curve(points), snapshot.current_spend_micros)

    @staticmethod
    def entity_curve_marginal(snapshot: CampaignSnapshot) -> Optional[float]:
        return snapshot.entity_curve_marginal_roas

    def marginal_for(self, method: str, snapshot: CampaignSnapshot) -> Optional[float]:
        if method == FINITE_DIFFERENCE:
            return self.finite_difference_marginal(snapshot)
        if method == HISTORY_CURVE:
            return self.history_curve_marginal(snapshot)
        if method == ENTITY_CURVES:
            return self.entity_curve_marginal(snapshot)
        raise ValueError(f"Unknown marginal ROAS method: {method}")

    def choose_method(self, snapshots: List[CampaignSnapshot]) -> str:
        """Method covering the most campaigns; earlier methods win ties"""
        coverage = {
            method: sum(1 for s in snapshots if self.marginal_for(method, s) is not None)
            for method in METHODS
        }
        best = max(METHODS, key=lambda m: (coverage[m], -METHODS.index(m)))
        if coverage[best] == 0:
            return UNAVAILABLE
        self.logger.debug(f"Marginal ROAS coverage: {coverage}, using {best}")
        return best

    # ------------------------------------------------------------------ #
    # Spend targets
    # ------------------------------------------------------------------ #

    def optimal_spend(self, current_spend_micros: int, marginal_roas: Optional[float],
                      target_roas: float) -> int:
        """Current spend moved by the relative ROAS gap, capped per cycle"""
        if marginal_roas is None or current_spend_micros <= 0 or target_roas <= 0:
            return int(current_spend_micros)
        cap = self.config.max_spend_change_pct
        delta_pct = clamp((marginal_roas - target_roas) / target_roas, -cap, cap)
        return int(round(current_spend_micros * (1.0 + delta_pct)))

    def apply_budget_neutrality(self, curves: List[PortfolioMarginalCurve]) -> List[PortfolioMarginalCurve]:
        """
        Scale increases down to what decreases (plus any headroom) free up

        Decreases are never scaled, so every campaign stays inside its
        per-cycle change cap.
        """
        total_current = sum(c.current_spend_micros for c in curves)
        budget = self.config.portfolio_total_budget_micros
        headroom = max(0, budget - total_current) if budget is not None else 0

        freed = sum(c.current_spend_micros - c.optimal_spend_micros
                    for c in curves if c.optimal_spend_micros < c.current_spend_micros)
        requested = sum(c.optimal_spend_micros - c.current_spend_micros
                        for c in curves if c.optimal_spend_micros > c.current_spend_micros)
        available = freed + headroom
        if requested <= available:
            return curves

        scale = available / requested if requested else 0.0
        self.logger.info(
            f"Budget-neutral scaling of increases: requested {requested}, available {available}"
        )
        scaled = []
        for curve in curves:
            if curve.optimal_spend_micros > curve.current_spend_micros:
                increase = (curve.optimal_spend_micros - curve.current_spend_micros) * scale
                curve = replace(curve, optimal_spend_micros=int(curve.current_spend_micros + increase))
            scaled.append(curve)
        return scaled

    # ------------------------------------------------------------------ #
    # Scores
    # ------------------------------------------------------------------ #

    @staticmethod
    def efficiency_score(current_spends: Sequence[float], optimal_spends: Sequence[float]) -> float:
        """100 * max(0, 1 - total_abs_deviation / (2 * total_current_spend))"""
        total_current = float(sum(current_spends))
        deviation = float(sum(abs(c - o) for c, o in zip(current_spends, optimal_spends)))
        if total_current <= 0:
            return 100.0 if deviation == 0 else 0.0
        return 100.0 * max(0.0, 1.0 - deviation / (2.0 * total_current))

    def top_opportunities(self, curves: List[PortfolioMarginalCurve],
                          top_n: Optional[int] = None) -> List[PortfolioMarginalCurve]:
        top_n = top_n or self.config.portfolio_top_n
        movers = [c for c in curves if c.optimal_spend_micros != c.current_spend_micros]
        return sorted(movers, key=lambda c: c.potential_gain, reverse=True)[:top_n]

    # ------------------------------------------------------------------ #
    # Plan
    # ------------------------------------------------------------------ #

    def optimize(self, profile_id: str, snapshots: List[CampaignSnapshot],
                 run_id: Optional[int] = None) -> PortfolioPlan:
        """
        Build the reallocation plan for one profile

        Args:
            profile_id: Advertising profile
            snapshots: Campaign roll-ups for the evaluation window
            run_id: OptimizerRun the plan belongs to

        Returns:
            PortfolioPlan with one curve per campaign and the ranked opportunities
        """
        target = self.config.target_roas
        method = self.choose_method(snapshots)
        now = datetime.now()

        curves = []
        for snapshot in snapshots:
            marginal = self.marginal_for(method, snapshot) if method != UNAVAILABLE else None
            if marginal is None:
                self.logger.info(
                    f"No marginal ROAS for campaign {snapshot.campaign_id} via {method}, holding spend"
                )
            curves.append(PortfolioMarginalCurve(
                profile_id=str(profile_id),
                campaign_id=str(snapshot.campaign_id),
                current_spend_micros=int(snapshot.current_spend_micros),
                current_sales_micros=int(snapshot.current_sales_micros),
                current_roas=snapshot.current_roas,
                marginal_roas_at_current=marginal,
                optimal_spend_micros=self.optimal_spend(snapshot.current_spend_micros, marginal, target),
                marginal_source=method if marginal is not None else UNAVAILABLE,
                data_points=len(snapshot.history) + 1,
                run_id=run_id,
                calculated_at=now,
            ))

        if self.config.portfolio_budget_neutral:
            curves = self.apply_budget_neutrality(curves)

        score = self.efficiency_score([c.current_spend_micros for c in curves],
                                      [c.optimal_spend_micros for c in curves])
        plan = PortfolioPlan(
            profile_id=str(profile_id),
            method=method,
            target_roas=target,
            efficiency_score=round(score, 2),
            curves=curves,
            opportunities=self.top_opportunities(curves),
            run_id=run_id,
        )
        self.logger.info(
            f"Portfolio plan for profile {profile_id}: {len(curves)} campaign(s), method={method}, "
            f"efficiency={plan.efficiency_score:.1f}, {len(plan.opportunities)} opportunit(ies)"
        )
        return plan

    @staticmethod
    def summarize(plan: PortfolioPlan) -> Dict[str, object]:
        return {
            'method': plan.method,
            'target_roas': plan.target_roas,
            'efficiency_score': plan.efficiency_score,
            'campaigns': len(plan.curves),
            'reallocations': len(plan.to_action_payload()),
            'total_current_spend_micros': sum(c.current_spend_micros for c in plan.curves),
            'total_optimal_spend_micros': sum(c.optimal_spend_micros for c in plan.curves),
        }
