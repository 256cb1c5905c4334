"""Tests for the telemetry helper"""

import logging

from prometheus_client import CollectorRegistry

from bayesian_bid_engine.config import OptimizerConfig
from bayesian_bid_engine.telemetry import TelemetryClient


def test_prometheus_metrics_are_recorded():
    registry = CollectorRegistry()
    telemetry = TelemetryClient({'enable_telemetry': True}, registry=registry)

    telemetry.record_run('batch', 'completed', bids_changed=4, entities_considered=10, duration_seconds=1.5)
    telemetry.record_run('batch', 'completed', bids_changed=1, entities_considered=3, duration_seconds=0.5)
    telemetry.record_learning_progress('1001', 42.5)

    assert registry.get_sample_value(
        'bid_optimizer_runs_total', {'run_type': 'batch', 'status': 'completed'}) == 2.0
    assert registry.get_sample_value('bid_optimizer_bids_changed_total', {'run_type': 'batch'}) == 5.0
    assert registry.get_sample_value('bid_optimizer_entities_considered', {'run_type': 'batch'}) == 3.0
    assert registry.get_sample_value('bid_optimizer_run_duration_seconds_count', {'run_type': 'batch'}) == 2.0
    assert registry.get_sample_value('bid_optimizer_learning_progress_pct', {'profile_id': '1001'}) == 42.5


def test_clients_share_metrics_per_registry():
    registry = CollectorRegistry()
    TelemetryClient({}, registry=registry).record_trigger('optimized')
    TelemetryClient({}, registry=registry).record_trigger('optimized')

    assert registry.get_sample_value(
        'bid_optimizer_realtime_triggers_total', {'status': 'optimized'}) == 2.0

    other = CollectorRegistry()
    TelemetryClient({}, registry=other).record_trigger('optimized')
    assert other.get_sample_value('bid_optimizer_realtime_triggers_total', {'status': 'optimized'}) == 1.0


def test_disabled_telemetry_records_nothing():
    registry = CollectorRegistry()
    telemetry = TelemetryClient.from_config(OptimizerConfig(enable_telemetry=False), registry=registry)
    telemetry.record_trigger('rate_limited')
    assert registry.get_sample_value('bid_optimizer_realtime_triggers_total', {'status': 'rate_limited'}) is None


def test_log_exporter_writes_log_lines(caplog):
    registry = CollectorRegistry()
    telemetry = TelemetryClient({'telemetry_exporter': 'log'}, registry=registry)

    with caplog.at_level(logging.INFO, logger='bayesian_bid_engine.telemetry'):
        telemetry.record_portfolio_efficiency('1001', 75.0)

    records = [r for r in caplog.records if r.getMessage() == 'metric_gauge']
    assert records[0].metric == 'portfolio_efficiency_score'
    assert records[0].value == 75.0
    assert registry.get_sample_value('bid_optimizer_portfolio_efficiency_score', {'profile_id': '1001'}) is None
