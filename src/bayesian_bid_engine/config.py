"""
Configuration module for the Bayesian bid engine
"""

import json
import logging
from dataclasses import dataclass, field, asdict, fields, replace
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class OptimizerConfig:
    """Policy values for the bid engine; externally settable per profile"""

    # Target efficiency
    target_acos: float = 0.30  # Target ACOS (30%)
    default_avg_order_value_micros: int = 25_000_000  # $25.00 when no sales history exists

    # Eligibility thresholds
    min_observations: int = 7
    min_impressions: int = 100

    # Real-time trigger rate limiting and entity leases
    rate_limit_cooldown_seconds: int = 3600  # 1 hour
    lease_ttl_seconds: int = 300

    # Bid limits (account level; entity bounds are intersected with these)
    min_bid_micros: int = 100_000  # $0.10
    max_bid_micros: int = 10_000_000  # $10.00
    max_bid_change_pct: float = 0.25  # Max 25% move per cycle
    min_bid_change_pct: float = 0.02  # Moves under 2% are not counted as changes

    # Priors
    default_prior_alpha: float = 1.0
    default_prior_beta: float = 1.0
    category_priors: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    # Confidence scoring
    confidence_tight_rse: float = 0.5  # Relative standard error for "high"
    confidence_moderate_rse: float = 1.0  # Relative standard error for "medium"
    confidence_half_saturation: float = 50.0  # Evidence weight at which confidence_pct = 50

    # Curve fitting
    curve_fit_min_r_squared: float = 0.3
    min_distinct_bid_levels: int = 5
    curve_fit_max_iterations: int = 5000
    curve_search_extension: float = 0.25  # Search optimum up to 25% beyond observed bids

    # Portfolio reallocation
    portfolio_target_roas: Optional[float] = None  # Defaults to 1 / target_acos
    max_spend_change_pct: float = 0.20
    min_spend_delta_pct: float = 0.05  # Min spend movement for a finite difference
    portfolio_budget_neutral: bool = True
    portfolio_total_budget_micros: Optional[int] = None
    portfolio_top_n: int = 10

    # Run control
    run_failure_ratio: float = 0.5
    ingest_overlap_seconds: int = 172800  # Re-read 48h behind the watermark for late-closing cycles
    random_seed: Optional[int] = None

    # Engine feature flags
    enable_telemetry: bool = True
    telemetry_exporter: str = 'prometheus'

    @property
    def target_roas(self) -> float:
        if self.portfolio_target_roas:
            return self.portfolio_target_roas
        return 1.0 / self.target_acos

    def prior_for(self, category: Optional[str] = None) -> Tuple[float, float]:
        """Informative prior for a category, else the uninformative default"""
        if category and category in self.category_priors:
            alpha, beta = self.category_priors[category]
            return float(alpha), float(beta)
        return self.default_prior_alpha, self.default_prior_beta

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'OptimizerConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(config_data) - known
        if unknown:
            logger.warning(f"Ignoring unknown optimizer settings: {sorted(unknown)}")
        data = {k: v for k, v in config_data.items() if k in known}
        if 'category_priors' in data:
            data['category_priors'] = {
                category: tuple(prior) for category, prior in data['category_priors'].items()
            }
        return cls(**data)

    @classmethod
    def from_file(cls, config_path: str) -> 'OptimizerConfig':
        """Load configuration from JSON file"""
        try:
            with open(config_path, 'r') as f:
                config_data = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Config file {config_path} not found, using defaults")
            return cls()
        return cls.from_dict(config_data)

    @classmethod
    def for_profile(cls, db_connector, profile_id: str,
                    base: Optional['OptimizerConfig'] = None) -> 'OptimizerConfig':
        """Merge the profile's stored overrides over the base configuration"""
        base = base or cls()
        overrides = db_connector.get_optimizer_settings(profile_id) or {}
        if overrides:
            logger.info(f"Applying {len(overrides)} setting override(s) for profile {profile_id}")
        return base.with_overrides(overrides)

    def with_overrides(self, overrides: Dict[str, Any]) -> 'OptimizerConfig':
        merged = self.to_dict()
        merged.update(overrides or {})
        return self.from_dict(merged)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['category_priors'] = {k: list(v) for k, v in self.category_priors.items()}
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to JSON file"""
        with open(config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def copy(self, **changes) -> 'OptimizerConfig':
        return replace(self, **changes)

    def validate(self) -> bool:
        """Validate configuration parameters"""
        errors = []

        if self.target_acos <= 0 or self.target_acos > 1:
            errors.append("Target ACOS must be between 0 and 1")

        if self.default_avg_order_value_micros <= 0:
            errors.append("Default average order value must be positive")

        if self.min_observations < 0:
            errors.append("Minimum observations must be non-negative")

        if self.min_impressions < 0:
            errors.append("Minimum impressions must be non-negative")

        if self.rate_limit_cooldown_seconds < 0:
            errors.append("Rate limit cooldown must be non-negative")

        if self.lease_ttl_seconds <= 0:
            errors.append("Lease TTL must be positive")

        # Bid limits
        if self.min_bid_micros <= 0:
            errors.append("Minimum bid must be positive")

        if self.min_bid_micros > self.max_bid_micros:
            errors.append("Minimum bid must not exceed maximum bid")

        if self.max_bid_change_pct <= 0 or self.max_bid_change_pct > 1:
            errors.append("Max bid change must be between 0 and 1")

        if self.min_bid_change_pct < 0 or self.min_bid_change_pct > 1:
            errors.append("Min bid change must be between 0 and 1")

        # Priors
        if self.default_prior_alpha <= 0 or self.default_prior_beta <= 0:
            errors.append("Default prior parameters must be positive")

        for category, (alpha, beta) in self.category_priors.items():
            if alpha <= 0 or beta <= 0:
                errors.append(f"Prior for category '{category}' must be positive")

        # Confidence
        if self.confidence_tight_rse <= 0:
            errors.append("Tight relative standard error must be positive")

        if self.confidence_moderate_rse < self.confidence_tight_rse:
            errors.append("Moderate relative standard error must be >= tight threshold")

        if self.confidence_half_saturation <= 0:
            errors.append("Confidence half saturation must be positive")

        # Curve fitting
        if self.curve_fit_min_r_squared < 0 or self.curve_fit_min_r_squared > 1:
            errors.append("Curve fit R-squared threshold must be between 0 and 1")

        if self.min_distinct_bid_levels < 2:
            errors.append("Curve fitting needs at least 2 distinct bid levels")

        # Portfolio
        if self.portfolio_target_roas is not None and self.portfolio_target_roas <= 0:
            errors.append("Portfolio target ROAS must be positive")

        if self.max_spend_change_pct <= 0 or self.max_spend_change_pct > 1:
            errors.append("Max spend change must be between 0 and 1")

        if self.min_spend_delta_pct < 0:
            errors.append("Min spend delta must be non-negative")

        if self.portfolio_top_n < 1:
            errors.append("Portfolio top N must be at least 1")

        if self.run_failure_ratio <= 0 or self.run_failure_ratio > 1:
            errors.append("Run failure ratio must be between 0 and 1")

        if self.ingest_overlap_seconds < 0:
            errors.append("Ingest overlap must be non-negative")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        return True
