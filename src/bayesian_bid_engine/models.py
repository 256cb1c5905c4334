"""
Data model for the Bayesian bid engine

BidState is the single source of truth for an entity's learned posterior.
Everything else is either an input snapshot (Observation, BidPoint,
CampaignSnapshot) or a derived output that is superseded by the next run.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Hard floor under which a curve fit is treated as noise, whatever the policy says
MIN_TRUSTED_R_SQUARED = 0.3


class EntityType(str, Enum):
    CAMPAIGN = 'campaign'
    AD_GROUP = 'ad_group'
    KEYWORD = 'keyword'
    TARGET = 'target'


class ConfidenceLevel(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class RunStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class RunType(str, Enum):
    BATCH = 'batch'
    REALTIME = 'realtime'
    PORTFOLIO = 'portfolio'


class FitStatus(str, Enum):
    FITTED = 'fitted'
    INSUFFICIENT_DATA = 'insufficient_data'
    FIT_FAILURE = 'fit_failure'


class TriggerStatus(str, Enum):
    OPTIMIZED = 'optimized'
    RATE_LIMITED = 'rate_limited'
    INSUFFICIENT_DATA = 'insufficient_data'
    NOT_FOUND = 'not_found'
    DISABLED = 'disabled'
    BUSY = 'busy'


EntityKey = Tuple[str, str, str]


def entity_key(profile_id: str, entity_type, entity_id: str) -> EntityKey:
    """Lock/rate-limit key for one entity: (profile_id, entity_type, entity_id)"""
    return (str(profile_id), EntityType(entity_type).value, str(entity_id))


@dataclass
class Observation:
    """One aggregation cycle from the Performance Ledger"""
    profile_id: str
    entity_type: str
    entity_id: str
    impressions: int
    clicks: int
    conversions: int
    spend_micros: int
    sales_micros: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    bid_micros: Optional[int] = None
    campaign_id: Optional[str] = None
    ad_group_id: Optional[str] = None

    @property
    def key(self) -> EntityKey:
        return entity_key(self.profile_id, self.entity_type, self.entity_id)


@dataclass
class BidState:
    """Posterior parameters, running totals and outputs for one entity"""
    profile_id: str
    entity_type: str
    entity_id: str
    alpha: float = 1.0
    beta: float = 1.0
    prior_alpha: float = 1.0
    prior_beta: float = 1.0
    observations_count: int = 0
    total_clicks: int = 0
    total_conversions: int = 0
    total_impressions: int = 0
    total_spend_micros: int = 0
    total_sales_micros: int = 0
    confidence_level: str = ConfidenceLevel.LOW.value
    confidence_pct: float = 0.0
    optimization_enabled: bool = True
    current_bid_micros: Optional[int] = None
    recommended_bid_micros: Optional[int] = None
    confidence_interval_lower_micros: Optional[int] = None
    confidence_interval_upper_micros: Optional[int] = None
    min_bid_micros: Optional[int] = None
    max_bid_micros: Optional[int] = None
    campaign_id: Optional[str] = None
    ad_group_id: Optional[str] = None
    category: Optional[str] = None
    version: int = 0
    last_observation_at: Optional[datetime] = None
    last_optimized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.entity_type = EntityType(self.entity_type).value

    @property
    def key(self) -> EntityKey:
        return entity_key(self.profile_id, self.entity_type, self.entity_id)

    @property
    def evidence_weight(self) -> float:
        """Posterior concentration gained since the prior"""
        return self.alpha + self.beta - self.prior_alpha - self.prior_beta

    @property
    def posterior_mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def posterior_std(self) -> float:
        total = self.alpha + self.beta
        return ((self.alpha * self.beta) / (total ** 2 * (total + 1))) ** 0.5

    @property
    def average_order_value_micros(self) -> float:
        return self.total_sales_micros / max(self.total_conversions, 1)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BidPoint:
    """One (bid level, resulting metrics) pair from the entity's bid history"""
    bid_micros: int
    clicks: int
    impressions: int = 0
    conversions: int = 0
    spend_micros: int = 0
    sales_micros: int = 0


@dataclass
class CurveFitResult:
    """Bid-response fit for one entity; optional 1:1 extension of BidState"""
    profile_id: str
    entity_type: str
    entity_id: str
    status: str = FitStatus.INSUFFICIENT_DATA.value
    model_type: Optional[str] = None
    params: Dict[str, float] = field(default_factory=dict)
    r_squared: Optional[float] = None
    rmse: Optional[float] = None
    optimal_bid_micros: Optional[int] = None
    samples_used: int = 0
    distinct_bid_levels: int = 0
    conversion_rate: Optional[float] = None
    avg_order_value_micros: Optional[float] = None
    cpc_to_bid_ratio: Optional[float] = None
    reason: Optional[str] = None
    fitted_at: Optional[datetime] = None

    def __post_init__(self):
        if self.r_squared is None or self.r_squared < MIN_TRUSTED_R_SQUARED:
            self.optimal_bid_micros = None

    @property
    def key(self) -> EntityKey:
        return entity_key(self.profile_id, self.entity_type, self.entity_id)

    @property
    def is_fitted(self) -> bool:
        return self.status == FitStatus.FITTED.value

    @property
    def has_trusted_optimum(self) -> bool:
        return self.is_fitted and self.optimal_bid_micros is not None


@dataclass
class OptimizerRun:
    """Append-only audit record, one per batch, portfolio or real-time invocation"""
    profile_id: str
    run_type: str = RunType.BATCH.value
    status: str = RunStatus.PENDING.value
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    bids_changed: int = 0
    entities_considered: int = 0
    entities_failed: int = 0
    error: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


@dataclass
class SpendSalesPoint:
    spend_micros: int
    sales_micros: int
    period_start: Optional[datetime] = None


@dataclass
class CampaignSnapshot:
    """Campaign roll-up consumed by the portfolio optimizer"""
    campaign_id: str
    current_spend_micros: int
    current_sales_micros: int
    name: Optional[str] = None
    # Preceding comparable periods, oldest first
    history: List[SpendSalesPoint] = field(default_factory=list)
    # Marginal ROAS aggregated upward from entity-level curve fits
    entity_curve_marginal_roas: Optional[float] = None

    @property
    def current_roas(self) -> float:
        if self.current_spend_micros <= 0:
            return 0.0
        return self.current_sales_micros / self.current_spend_micros


@dataclass
class PortfolioMarginalCurve:
    """Derived per (profile, campaign) each portfolio run; superseded by the next one"""
    profile_id: str
    campaign_id: str
    current_spend_micros: int
    current_roas: float
    marginal_roas_at_current: Optional[float]
    optimal_spend_micros: int
    marginal_source: str = 'unavailable'
    current_sales_micros: int = 0
    data_points: int = 0
    run_id: Optional[int] = None
    calculated_at: Optional[datetime] = None

    @property
    def potential_gain(self) -> float:
        if self.marginal_roas_at_current is None:
            return 0.0
        return (self.optimal_spend_micros - self.current_spend_micros) * self.marginal_roas_at_current

    def to_action_payload(self) -> Dict[str, Any]:
        return {
            'campaign_id': self.campaign_id,
            'current_spend_micros': self.current_spend_micros,
            'optimal_spend_micros': self.optimal_spend_micros,
            'potential_gain': self.potential_gain,
            'idempotency_key': f"budget:{self.campaign_id}:{self.optimal_spend_micros}:{self.run_id}",
        }


@dataclass
class PortfolioPlan:
    profile_id: str
    method: str
    target_roas: float
    efficiency_score: float
    curves: List[PortfolioMarginalCurve]
    opportunities: List[PortfolioMarginalCurve]
    run_id: Optional[int] = None

    def to_action_payload(self) -> List[Dict[str, Any]]:
        return [curve.to_action_payload() for curve in self.curves
                if curve.optimal_spend_micros != curve.current_spend_micros]


@dataclass
class BidRecommendation:
    """Selector output for one entity, exposed to the action-application layer"""
    entity_type: str
    entity_id: str
    previous_bid_micros: Optional[int]
    recommended_bid_micros: int
    confidence_level: str
    confidence_pct: float
    sampled_conversion_rate: float
    candidate_bid_micros: int
    curve_bid_micros: Optional[int] = None
    curve_weight: float = 0.0
    confidence_interval_lower_micros: Optional[int] = None
    confidence_interval_upper_micros: Optional[int] = None
    changed: bool = False
    run_id: Optional[int] = None

    @property
    def idempotency_key(self) -> str:
        return f"bid:{self.entity_type}:{self.entity_id}:{self.recommended_bid_micros}:{self.run_id}"

    def to_action_payload(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity_id,
            'entity_type': self.entity_type,
            'previous_bid_micros': self.previous_bid_micros,
            'recommended_bid_micros': self.recommended_bid_micros,
            'confidence_level': self.confidence_level,
            'confidence_pct': self.confidence_pct,
            'idempotency_key': self.idempotency_key,
        }


@dataclass
class TriggerResult:
    """Outcome of a real-time single-entity trigger"""
    status: str
    profile_id: str
    entity_type: str
    entity_id: str
    retry_after_seconds: Optional[int] = None
    recommendation: Optional[BidRecommendation] = None
    run_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def optimized(self) -> bool:
        return self.status == TriggerStatus.OPTIMIZED.value
