"""
Bid-Response Curve Fitter

Fits a monotonic clicks-vs-bid response per entity from its bid history and
derives the expected value curve

    value(bid) = clicks(bid) * (conversion_rate * avg_order_value - cpc(bid))

with cpc(bid) = cpc_to_bid_ratio * bid. Candidates (sigmoid, log-linear,
linear) are scored by leave-one-out R^2 on the (bid, clicks) pairs and the
best one is refitted on all points. R^2 and RMSE are advisory; the optimal
bid is only published when R^2 clears the trust threshold.
"""

import logging
import warnings
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit
from sklearn.metrics import mean_squared_error, r2_score
from sklearn.model_selection import LeaveOneOut

from .config import OptimizerConfig
from .exceptions import FitFailure
from .models import BidPoint, BidState, CurveFitResult, FitStatus, MIN_TRUSTED_R_SQUARED
from .utils.units import MICROS_PER_UNIT, currency_to_micros

MODEL_TYPES = ('sigmoid', 'log_linear', 'linear')
GRID_POINTS = 200


def _sigmoid(x, L, k, x0):
    return L / (1.0 + np.exp(np.clip(-k * (x - x0), -500, 500)))


def _fit_linear(x: np.ndarray, y: np.ndarray, **_) -> Dict[str, float]:
    slope, intercept = np.polyfit(x, y, 1)
    if slope < 0:
        # Clicks never fall as bids rise
        slope, intercept = 0.0, float(np.mean(y))
    return {'m': float(slope), 'c': float(intercept)}


def _fit_log_linear(x: np.ndarray, y: np.ndarray, **_) -> Dict[str, float]:
    if np.any(x <= 0):
        raise FitFailure("log-linear model needs positive bids")
    slope, intercept = np.polyfit(np.log(x), y, 1)
    if slope < 0:
        slope, intercept = 0.0, float(np.mean(y))
    return {'a': float(slope), 'b': float(intercept)}


def _fit_sigmoid(x: np.ndarray, y: np.ndarray, max_iterations: int = 5000) -> Dict[str, float]:
    spread = float(np.ptp(x)) or 1e-6
    p0 = [max(float(np.max(y)) * 1.1, 1e-6), 4.0 / spread, float(np.median(x))]
    bounds = ([0.0, 0.0, 0.0], [np.inf, np.inf, float(np.max(x)) * 10.0])
    with warnings.catch_warnings():
        warnings.simplefilter('error', OptimizeWarning)
        try:
            params, _ = curve_fit(_sigmoid, x, y, p0=p0, bounds=bounds, max_nfev=max_iterations)
        except (RuntimeError, ValueError, OptimizeWarning) as e:
            raise FitFailure(f"sigmoid did not converge: {e}") from e
    L, k, x0 = (float(p) for p in params)
    return {'L': L, 'k': k, 'x0': x0}


FITTERS: Dict[str, Callable[..., Dict[str, float]]] = {
    'sigmoid': _fit_sigmoid,
    'log_linear': _fit_log_linear,
    'linear': _fit_linear,
}


def predict_clicks(model_type: str, params: Dict[str, float], bids: np.ndarray) -> np.ndarray:
    """Predicted clicks per cycle at bids given in currency units"""
    bids = np.asarray(bids, dtype=float)
    if model_type == 'sigmoid':
        predictions = _sigmoid(bids, params['L'], params['k'], params['x0'])
    elif model_type == 'log_linear':
        predictions = params['a'] * np.log(np.maximum(bids, 1e-9)) + params['b']
    elif model_type == 'linear':
        predictions = params['m'] * bids + params['c']
    else:
        raise ValueError(f"Unknown model type: {model_type}")
    return np.maximum(predictions, 0.0)


class BidResponseCurveFitter:
    """Per-entity bid-response modeler"""

    def __init__(self, config: OptimizerConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def fit(self, profile_id: str, entity_type: str, entity_id: str,
            points: List[BidPoint], state: Optional[BidState] = None) -> CurveFitResult:
        """
        Fit the bid-response curve for one entity

        Args:
            points: One BidPoint per observed cycle
            state: Current BidState, used for conversion rate and order value

        Returns:
            CurveFitResult with status fitted, insufficient_data or fit_failure
        """
        points = [p for p in points if p.bid_micros and p.bid_micros > 0]
        distinct_levels = len({p.bid_micros for p in points})
        base = dict(
            profile_id=str(profile_id),
            entity_type=entity_type,
            entity_id=str(entity_id),
            samples_used=len(points),
            distinct_bid_levels=distinct_levels,
            fitted_at=datetime.now(),
        )

        if distinct_levels < self.config.min_distinct_bid_levels:
            return CurveFitResult(
                status=FitStatus.INSUFFICIENT_DATA.value,
                reason=f"{distinct_levels} distinct bid level(s), need {self.config.min_distinct_bid_levels}",
                **base
            )

        x = np.array([p.bid_micros for p in points], dtype=float) / MICROS_PER_UNIT
        y = np.array([p.clicks for p in points], dtype=float)

        try:
            model_type, r_squared, rmse = self._select_model(x, y)
            params = FITTERS[model_type](x, y, max_iterations=self.config.curve_fit_max_iterations)
        except FitFailure as e:
            self.logger.warning(f"Curve fit failed for {entity_type} {entity_id} (profile {profile_id}): {e}")
            return CurveFitResult(status=FitStatus.FIT_FAILURE.value, reason=str(e), **base)

        conversion_rate, avg_order_value, cpc_ratio = self._value_inputs(points, state)
        optimal_bid_micros = None
        threshold = max(self.config.curve_fit_min_r_squared, MIN_TRUSTED_R_SQUARED)
        if r_squared >= threshold:
            optimal_bid_micros = self._optimal_bid_micros(
                model_type, params, x, conversion_rate, avg_order_value, cpc_ratio
            )

        result = CurveFitResult(
            status=FitStatus.FITTED.value,
            model_type=model_type,
            params=params,
            r_squared=r_squared,
            rmse=rmse,
            optimal_bid_micros=optimal_bid_micros,
            conversion_rate=conversion_rate,
            avg_order_value_micros=avg_order_value,
            cpc_to_bid_ratio=cpc_ratio,
            **base
        )
        self.logger.debug(
            f"Fitted {model_type} for {entity_type} {entity_id}: R2={r_squared:.3f}, "
            f"RMSE={rmse:.2f}, optimal={optimal_bid_micros}"
        )
        return result

    def _select_model(self, x: np.ndarray, y: np.ndarray) -> Tuple[str, float, float]:
        """Pick the candidate with the best leave-one-out R^2"""
        scores = {}
        for model_type in MODEL_TYPES:
            try:
                scores[model_type] = self._leave_one_out(model_type, x, y)
            except FitFailure as e:
                self.logger.debug(f"Candidate {model_type} rejected: {e}")
        if not scores:
            raise FitFailure("no candidate model converged")
        best = max(scores, key=lambda m: scores[m][0])
        return best, scores[best][0], scores[best][1]

    def _leave_one_out(self, model_type: str, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
        predictions = np.empty_like(y)
        fitter = FITTERS[model_type]
        for train_index, test_index in LeaveOneOut().split(x):
            params = fitter(x[train_index], y[train_index],
                            max_iterations=self.config.curve_fit_max_iterations)
            predictions[test_index] = predict_clicks(model_type, params, x[test_index])
        r_squared = max(0.0, float(r2_score(y, predictions)))
        rmse = float(np.sqrt(mean_squared_error(y, predictions)))
        return r_squared, rmse

    def _value_inputs(self, points: List[BidPoint],
                      state: Optional[BidState]) -> Tuple[float, float, float]:
        clicks = sum(p.clicks for p in points)
        conversions = sum(p.conversions for p in points)
        sales = sum(p.sales_micros for p in points)

        if state is not None:
            conversion_rate = state.posterior_mean
        else:
            conversion_rate = conversions / clicks if clicks else 0.0

        if state is not None and state.total_conversions > 0:
            avg_order_value = state.average_order_value_micros
        elif conversions > 0:
            avg_order_value = sales / conversions
        else:
            avg_order_value = float(self.config.default_avg_order_value_micros)

        bid_weighted_clicks = sum(p.clicks * p.bid_micros for p in points)
        spend = sum(p.spend_micros for p in points)
        cpc_ratio = spend / bid_weighted_clicks if bid_weighted_clicks else 1.0
        cpc_ratio = min(max(cpc_ratio, 0.01), 1.0)
        return conversion_rate, avg_order_value, cpc_ratio

    def _optimal_bid_micros(self, model_type: str, params: Dict[str, float], x: np.ndarray,
                            conversion_rate: float, avg_order_value_micros: float,
                            cpc_ratio: float) -> int:
        upper = float(np.max(x)) * (1.0 + self.config.curve_search_extension)
        grid = np.linspace(float(np.min(x)), upper, GRID_POINTS)
        values = self.expected_value(model_type, params, grid, conversion_rate,
                                     avg_order_value_micros / MICROS_PER_UNIT, cpc_ratio)
        return currency_to_micros(grid[int(np.argmax(values))])

    @staticmethod
    def expected_value(model_type: str, params: Dict[str, float], bids: np.ndarray,
                       conversion_rate: float, avg_order_value: float, cpc_ratio: float) -> np.ndarray:
        """Value per cycle (currency units) at bids given in currency units"""
        clicks = predict_clicks(model_type, params, bids)
        return clicks * (conversion_rate * avg_order_value - cpc_ratio * np.asarray(bids, dtype=float))

    @staticmethod
    def sales_and_spend_micros(result: CurveFitResult, bid_micros: int) -> Tuple[float, float]:
        """Predicted (sales, spend) per cycle in micros at a bid level"""
        bid = bid_micros / MICROS_PER_UNIT
        clicks = float(predict_clicks(result.model_type, result.params, np.array([bid]))[0])
        sales = clicks * result.conversion_rate * result.avg_order_value_micros
        spend = clicks * result.cpc_to_bid_ratio * bid_micros
        return sales, spend

    @classmethod
    def marginal_roas(cls, result: CurveFitResult, bid_micros: int,
                      step: float = 0.05) -> Optional[float]:
        """Incremental sales per incremental spend for a small bid increase"""
        return cls.campaign_marginal_roas([(result, bid_micros)], step=step)

    @classmethod
    def campaign_marginal_roas(cls, fits_and_bids: Iterable[Tuple[CurveFitResult, int]],
                               step: float = 0.05) -> Optional[float]:
        """Entity curves aggregated upward: sum of incremental sales over sum of incremental spend"""
        delta_sales = 0.0
        delta_spend = 0.0
        for result, bid_micros in fits_and_bids:
            if not result.is_fitted or not bid_micros:
                continue
            sales_lo, spend_lo = cls.sales_and_spend_micros(result, bid_micros)
            sales_hi, spend_hi = cls.sales_and_spend_micros(result, int(round(bid_micros * (1 + step))))
            delta_sales += sales_hi - sales_lo
            delta_spend += spend_hi - spend_lo
        if delta_spend <= 0:
            return None
        return delta_sales / delta_spend

    @staticmethod
    def model_accuracy(results: Iterable[CurveFitResult]) -> Dict[str, Any]:
        """
        Aggregate Model Accuracy metrics

        total_models counts every eligible entity that was attempted,
        models_fitted only those with a converged fit.
        """
        results = list(results)
        fitted = [r for r in results if r.is_fitted]
        return {
            'average_r_squared': float(np.mean([r.r_squared for r in fitted])) if fitted else 0.0,
            'average_rmse': float(np.mean([r.rmse for r in fitted])) if fitted else 0.0,
            'models_fitted': len(fitted),
            'models_with_optimal_bid': sum(1 for r in fitted if r.optimal_bid_micros is not None),
            'total_models': len(results),
        }
