"""
FastAPI application for the Bayesian bid optimizer dashboard
Read-only status/accuracy endpoints and the real-time trigger endpoint
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bayesian_bid_engine.config import OptimizerConfig
from bayesian_bid_engine.controller import OptimizerRunController
from bayesian_bid_engine.database import DatabaseConnector
from bayesian_bid_engine.exceptions import RunFailure, StoreUnavailable
from bayesian_bid_engine.models import PortfolioMarginalCurve, TriggerStatus
from bayesian_bid_engine.portfolio_optimizer import PortfolioMarginalOptimizer
from bayesian_bid_engine.status import HealthStateMachine, StatusReporter
from bayesian_bid_engine.store import BidStateStore

from dashboard.api.schemas import (
    BidOptimizerStatusResponse,
    EntityStatusResponse,
    MarginalCurveResponse,
    ModelAccuracyResponse,
    OptimizerRunResponse,
    PortfolioSummaryResponse,
    TriggerRequest,
    TriggerResponse,
)

# Load environment variables from .env file in project root
project_root = Path(__file__).parent.parent.parent
env_path = project_root / '.env'
if env_path.exists():
    load_dotenv(env_path)

logger = logging.getLogger(__name__)

# Global instances
store: Optional[BidStateStore] = None
base_config: OptimizerConfig = OptimizerConfig()
health_machines: Dict[str, HealthStateMachine] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources"""
    global store, base_config

    if not os.getenv('DB_PASSWORD'):
        error_msg = (
            "DB_PASSWORD environment variable is required. "
            f"Please check your .env file at: {env_path}"
        )
        logger.error(error_msg)
        raise ValueError(error_msg)

    store = DatabaseConnector()
    config_path = os.getenv('BID_OPTIMIZER_CONFIG', str(project_root / 'config' / 'bid_optimizer.json'))
    base_config = OptimizerConfig.from_file(config_path)
    base_config.validate()
    logger.info("Bid optimizer API initialized successfully")

    yield

    logger.info("Bid optimizer API shutting down")


app = FastAPI(
    title="Amazon Ads Bayesian Bid Optimizer API",
    description="Status, model accuracy and real-time trigger endpoints for the bid optimizer",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware for React frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_store() -> BidStateStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Bid state store not initialized")
    return store


def get_base_config() -> OptimizerConfig:
    return base_config


def profile_config(profile_id: str, db: BidStateStore, base: OptimizerConfig) -> OptimizerConfig:
    try:
        return OptimizerConfig.for_profile(db, profile_id, base=base)
    except StoreUnavailable as e:
        logger.error(f"Settings unavailable for profile {profile_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))


def curve_response(curve: PortfolioMarginalCurve) -> MarginalCurveResponse:
    return MarginalCurveResponse(
        campaign_id=curve.campaign_id,
        current_spend_micros=curve.current_spend_micros,
        current_roas=curve.current_roas,
        marginal_roas_at_current=curve.marginal_roas_at_current,
        optimal_spend_micros=curve.optimal_spend_micros,
        marginal_source=curve.marginal_source,
        potential_gain=curve.potential_gain,
        calculated_at=curve.calculated_at,
    )


# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.get("/api/bid-optimizer/{profile_id}/status", response_model=BidOptimizerStatusResponse)
async def get_optimizer_status(profile_id: str, db: BidStateStore = Depends(get_store),
                               base: OptimizerConfig = Depends(get_base_config)):
    """Aggregate confidence, learning progress and last-run status"""
    config = profile_config(profile_id, db, base)
    try:
        return StatusReporter(config, db, health_registry=health_machines).status(profile_id)
    except StoreUnavailable as e:
        logger.error(f"Error fetching optimizer status: {e}")
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/bid-optimizer/{profile_id}/model-accuracy", response_model=ModelAccuracyResponse)
async def get_model_accuracy(profile_id: str, db: BidStateStore = Depends(get_store),
                             base: OptimizerConfig = Depends(get_base_config)):
    """Mean R^2/RMSE of the bid-response curve fits"""
    config = profile_config(profile_id, db, base)
    try:
        return StatusReporter(config, db).model_accuracy(profile_id)
    except StoreUnavailable as e:
        logger.error(f"Error fetching model accuracy: {e}")
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/bid-optimizer/{profile_id}/entities", response_model=List[EntityStatusResponse])
async def get_entities(profile_id: str,
                       enabled_only: bool = Query(False, description="Only optimization-enabled entities"),
                       limit: int = Query(500, ge=1, le=5000),
                       db: BidStateStore = Depends(get_store),
                       base: OptimizerConfig = Depends(get_base_config)):
    """Per-entity confidence rows; entities still accumulating evidence show 'Learning'"""
    config = profile_config(profile_id, db, base)
    reporter = StatusReporter(config, db)
    try:
        states = db.list_bid_states(profile_id, enabled_only=enabled_only)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [reporter.entity_view(state) for state in states[:limit]]


@app.get("/api/bid-optimizer/{profile_id}/runs", response_model=List[OptimizerRunResponse])
async def get_runs(profile_id: str, limit: int = Query(20, ge=1, le=200),
                   db: BidStateStore = Depends(get_store)):
    """Most recent optimizer runs, newest first"""
    try:
        runs = db.list_runs(profile_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    runs = sorted(runs, key=lambda r: (r.started_at or datetime.min, r.id or 0), reverse=True)
    return [
        OptimizerRunResponse(
            id=r.id, run_type=r.run_type, status=r.status, started_at=r.started_at,
            completed_at=r.completed_at, bids_changed=r.bids_changed,
            entities_considered=r.entities_considered, entities_failed=r.entities_failed, error=r.error,
        )
        for r in runs[:limit]
    ]


@app.get("/api/bid-optimizer/{profile_id}/portfolio", response_model=PortfolioSummaryResponse)
async def get_portfolio(profile_id: str, db: BidStateStore = Depends(get_store),
                        base: OptimizerConfig = Depends(get_base_config)):
    """Latest marginal curves and the top reallocation opportunities"""
    config = profile_config(profile_id, db, base)
    try:
        curves = db.list_marginal_curves(profile_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    opportunities = PortfolioMarginalOptimizer(config).top_opportunities(curves)
    return PortfolioSummaryResponse(
        curves=[curve_response(c) for c in curves],
        opportunities=[curve_response(c) for c in opportunities],
    )


@app.post("/api/bid-optimizer/trigger", response_model=TriggerResponse)
async def trigger_entity(request: TriggerRequest, db: BidStateStore = Depends(get_store),
                         base: OptimizerConfig = Depends(get_base_config)):
    """Re-optimize one entity now; 429 with Retry-After while cooling down"""
    config = profile_config(request.profile_id, db, base)
    controller = OptimizerRunController(config, db)
    try:
        result = controller.trigger_entity(request.profile_id, request.entity_type, request.entity_id,
                                           dry_run=request.dry_run)
    except StoreUnavailable as e:
        logger.error(f"Store unavailable during trigger: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except RunFailure as e:
        logger.error(f"Trigger failed for {request.entity_type} {request.entity_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    response = TriggerResponse(
        status=result.status,
        profile_id=result.profile_id,
        entity_type=result.entity_type,
        entity_id=result.entity_id,
        retry_after_seconds=result.retry_after_seconds,
        run_id=result.run_id,
        recommendation=result.recommendation.to_action_payload() if result.recommendation else None,
        details=result.details,
    )
    if result.status == TriggerStatus.NOT_FOUND.value:
        raise HTTPException(status_code=404, detail=f"No bid state for {request.entity_type} {request.entity_id}")
    if result.status == TriggerStatus.RATE_LIMITED.value:
        return JSONResponse(status_code=429, content=jsonable_encoder(response),
                            headers={"Retry-After": str(result.retry_after_seconds)})
    return response
