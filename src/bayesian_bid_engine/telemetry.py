"""
Lightweight telemetry/observability helper.
Exports Prometheus metrics, or structured log lines when the exporter is 'log'.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Dict, Optional, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

METRIC_PREFIX = 'bid_optimizer_'

# Prometheus refuses duplicate registrations, so metrics are shared per registry
_METRICS: 'weakref.WeakKeyDictionary[CollectorRegistry, Dict[Tuple[str, str, Tuple[str, ...]], Any]]' = \
    weakref.WeakKeyDictionary()
_METRICS_LOCK = threading.Lock()


class TelemetryClient:
    """Simple telemetry helper supporting increment/gauge/observe."""

    def __init__(self, config: Dict[str, Any], registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.enabled = config.get('enable_telemetry', True)
        self.exporter = config.get('telemetry_exporter', 'prometheus')
        self.registry = registry or REGISTRY

    @classmethod
    def from_config(cls, config, registry: Optional[CollectorRegistry] = None) -> 'TelemetryClient':
        return cls({'enable_telemetry': config.enable_telemetry,
                    'telemetry_exporter': config.telemetry_exporter}, registry=registry)

    def _should_use_prometheus(self) -> bool:
        return self.enabled and self.exporter == 'prometheus'

    def increment(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._get_metric(Counter, name, labels).labels(**labels).inc(value)
        else:
            self.logger.info("metric_increment", extra={'metric': name, 'value': value, 'labels': labels})

    def gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._get_metric(Gauge, name, labels).labels(**labels).set(value)
        else:
            self.logger.info("metric_gauge", extra={'metric': name, 'value': value, 'labels': labels})

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        if not self.enabled:
            return
        labels = labels or {}
        if self._should_use_prometheus():
            self._get_metric(Histogram, name, labels).labels(**labels).observe(value)
        else:
            self.logger.info("metric_observe", extra={'metric': name, 'value': value, 'labels': labels})

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _get_metric(self, kind, name: str, labels: Dict[str, str]):
        full_name = f"{METRIC_PREFIX}{name}"
        labelnames = tuple(sorted(labels.keys()))
        key = (kind.__name__, full_name, labelnames)
        with _METRICS_LOCK:
            metrics = _METRICS.setdefault(self.registry, {})
            if key not in metrics:
                metrics[key] = kind(full_name, f"{name} {kind.__name__.lower()}",
                                    labelnames=list(labelnames), registry=self.registry)
            return metrics[key]

    # ------------------------------------------------------------------ #
    # Bid engine metrics
    # ------------------------------------------------------------------ #

    def record_run(self, run_type: str, status: str, bids_changed: int,
                   entities_considered: int, duration_seconds: float) -> None:
        """
        Record the outcome of one optimizer run

        Args:
            run_type: batch, realtime or portfolio
            status: Final run status
            bids_changed: Recommendations that moved past the change threshold
            entities_considered: Entities the run looked at
            duration_seconds: Wall-clock duration
        """
        self.increment('runs_total', labels={'run_type': run_type, 'status': status})
        self.increment('bids_changed_total', float(bids_changed), labels={'run_type': run_type})
        self.gauge('entities_considered', float(entities_considered), labels={'run_type': run_type})
        self.observe('run_duration_seconds', duration_seconds, labels={'run_type': run_type})

    def record_skipped_observations(self, count: int) -> None:
        if count:
            self.increment('skipped_observations_total', float(count))

    def record_entity_failure(self, entity_type: str, reason: str) -> None:
        self.increment('entity_failures_total', labels={'entity_type': entity_type, 'reason': reason})

    def record_trigger(self, status: str) -> None:
        self.increment('realtime_triggers_total', labels={'status': status})

    def record_curve_fit(self, model_type: Optional[str], status: str,
                         r_squared: Optional[float]) -> None:
        self.increment('curve_fits_total', labels={'status': status})
        if r_squared is not None:
            self.observe('curve_fit_r_squared', r_squared, labels={'model_type': model_type or 'none'})

    def record_bid_change_magnitude(self, entity_type: str, change_pct: float) -> None:
        self.observe('bid_change_magnitude', abs(change_pct), labels={'entity_type': entity_type})

    def record_learning_progress(self, profile_id: str, learning_progress_pct: float) -> None:
        self.gauge('learning_progress_pct', learning_progress_pct, labels={'profile_id': str(profile_id)})

    def record_portfolio_efficiency(self, profile_id: str, efficiency_score: float) -> None:
        self.gauge('portfolio_efficiency_score', efficiency_score, labels={'profile_id': str(profile_id)})
