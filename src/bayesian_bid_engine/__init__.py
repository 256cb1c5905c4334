"""
Amazon Ads Bayesian Bid Engine
==============================

Per-entity Bayesian bid optimization (Beta-Binomial posteriors, Thompson
sampling, confidence scoring, bid-response curve fits) and a campaign-level
marginal-ROAS budget reallocator sharing one bid state store.

Version: 1.0.0
"""

from .config import OptimizerConfig
from .models import (
    EntityType,
    ConfidenceLevel,
    RunStatus,
    RunType,
    FitStatus,
    TriggerStatus,
    Observation,
    BidState,
    BidPoint,
    CurveFitResult,
    OptimizerRun,
    SpendSalesPoint,
    CampaignSnapshot,
    PortfolioMarginalCurve,
    PortfolioPlan,
    BidRecommendation,
    TriggerResult,
    entity_key,
)
from .exceptions import (
    OptimizerError,
    InvalidObservation,
    FitFailure,
    StoreUnavailable,
    StaleStateError,
    LeaseUnavailable,
    InvalidRunTransition,
    RunFailure,
)
from .ledger import RealData, SimulatedData, Unavailable, PerformanceLedgerReader, simulate_cycles
from .store import BidStateStore, InMemoryBidStateStore
from .database import DatabaseConnector
from .bayesian_updater import BayesianUpdater, IngestSummary
from .confidence import ConfidenceScorer
from .curve_fitter import BidResponseCurveFitter
from .thompson_selector import ThompsonBidSelector
from .portfolio_optimizer import PortfolioMarginalOptimizer
from .controller import OptimizerRunController, RunStateMachine
from .status import StatusReporter, HealthStateMachine, OptimizerHealth
from .telemetry import TelemetryClient

__version__ = "1.0.0"
__all__ = [
    # Configuration
    "OptimizerConfig",
    # Data model
    "EntityType",
    "ConfidenceLevel",
    "RunStatus",
    "RunType",
    "FitStatus",
    "TriggerStatus",
    "Observation",
    "BidState",
    "BidPoint",
    "CurveFitResult",
    "OptimizerRun",
    "SpendSalesPoint",
    "CampaignSnapshot",
    "PortfolioMarginalCurve",
    "PortfolioPlan",
    "BidRecommendation",
    "TriggerResult",
    "entity_key",
    # Errors
    "OptimizerError",
    "InvalidObservation",
    "FitFailure",
    "StoreUnavailable",
    "StaleStateError",
    "LeaseUnavailable",
    "InvalidRunTransition",
    "RunFailure",
    # Ledger
    "RealData",
    "SimulatedData",
    "Unavailable",
    "PerformanceLedgerReader",
    "simulate_cycles",
    # Storage
    "BidStateStore",
    "InMemoryBidStateStore",
    "DatabaseConnector",
    # Engines
    "BayesianUpdater",
    "IngestSummary",
    "ConfidenceScorer",
    "BidResponseCurveFitter",
    "ThompsonBidSelector",
    "PortfolioMarginalOptimizer",
    # Runs and status
    "OptimizerRunController",
    "RunStateMachine",
    "StatusReporter",
    "HealthStateMachine",
    "OptimizerHealth",
    # Observability
    "TelemetryClient",
]
