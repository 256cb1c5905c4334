"""
Pydantic schemas for API request/response validation
"""

from datetime import datetime
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class TriggerRequest(BaseModel):
    """Real-time single-entity re-optimization request"""
    profile_id: str = Field(..., description="Advertising profile ID")
    entity_type: str = Field(..., pattern="^(campaign|ad_group|keyword|target)$",
                             description="Entity type: campaign, ad_group, keyword, target")
    entity_id: str = Field(..., description="Entity ID")
    dry_run: bool = Field(default=False, description="Compute without persisting")


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class BidOptimizerStatusResponse(BaseModel):
    """Aggregate optimizer status for a profile"""
    total_entities: int
    high_confidence_count: int
    medium_confidence_count: int
    low_confidence_count: int
    average_confidence_pct: float
    learning_progress_pct: float
    total_observations: int
    days_since_start: int
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    bids_changed_today: int
    health: str


class ModelAccuracyResponse(BaseModel):
    """Curve-fit accuracy aggregate"""
    average_r_squared: float
    average_rmse: float
    models_fitted: int
    models_with_optimal_bid: int
    total_models: int


class EntityStatusResponse(BaseModel):
    """Per-entity confidence row"""
    entity_type: str
    entity_id: str
    confidence: str  # Learning, Low, Medium, High
    confidence_pct: float
    observations_count: int
    current_bid_micros: Optional[int] = None
    recommended_bid_micros: Optional[int] = None
    optimization_enabled: bool


class OptimizerRunResponse(BaseModel):
    """Optimizer run audit row"""
    id: int
    run_type: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    bids_changed: int
    entities_considered: int
    entities_failed: int = 0
    error: Optional[str] = None


class MarginalCurveResponse(BaseModel):
    """Latest portfolio marginal curve for a campaign"""
    campaign_id: str
    current_spend_micros: int
    current_roas: float
    marginal_roas_at_current: Optional[float] = None
    optimal_spend_micros: int
    marginal_source: str
    potential_gain: float
    calculated_at: Optional[datetime] = None


class BidRecommendationResponse(BaseModel):
    """Bid recommendation exposed to the action-application layer"""
    entity_id: str
    entity_type: str
    previous_bid_micros: Optional[int] = None
    recommended_bid_micros: int
    confidence_level: str
    confidence_pct: float
    idempotency_key: str


class TriggerResponse(BaseModel):
    """Outcome of a real-time trigger"""
    status: str  # optimized, rate_limited, insufficient_data, not_found, disabled, busy
    profile_id: str
    entity_type: str
    entity_id: str
    retry_after_seconds: Optional[int] = None
    run_id: Optional[int] = None
    recommendation: Optional[BidRecommendationResponse] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class PortfolioSummaryResponse(BaseModel):
    """Latest marginal curves and ranked opportunities"""
    curves: List[MarginalCurveResponse]
    opportunities: List[MarginalCurveResponse]
