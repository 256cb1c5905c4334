"""Tests for optimizer configuration"""

import json

import pytest

from bayesian_bid_engine.config import OptimizerConfig
from bayesian_bid_engine.store import InMemoryBidStateStore


def test_defaults_validate():
    config = OptimizerConfig()
    assert config.validate()
    assert config.target_roas == pytest.approx(1 / 0.30)


def test_explicit_portfolio_target_wins():
    assert OptimizerConfig(portfolio_target_roas=5.0).target_roas == 5.0


@pytest.mark.parametrize('changes', [
    {'target_acos': 0},
    {'target_acos': 1.5},
    {'min_bid_micros': 5_000_000, 'max_bid_micros': 1_000_000},
    {'max_bid_change_pct': 0},
    {'max_spend_change_pct': 1.5},
    {'curve_fit_min_r_squared': 1.2},
    {'confidence_tight_rse': 0.8, 'confidence_moderate_rse': 0.5},
    {'category_priors': {'toys': (0.0, 10.0)}},
    {'run_failure_ratio': 0},
    {'ingest_overlap_seconds': -1},
])
def test_invalid_settings_rejected(changes):
    with pytest.raises(ValueError):
        OptimizerConfig(**changes).validate()


def test_file_round_trip(tmp_path):
    path = tmp_path / 'bid_optimizer.json'
    original = OptimizerConfig(target_acos=0.2, category_priors={'toys': (2.0, 40.0)})
    original.to_file(str(path))

    loaded = OptimizerConfig.from_file(str(path))

    assert loaded == original
    assert loaded.prior_for('toys') == (2.0, 40.0)
    assert loaded.prior_for('garden') == (1.0, 1.0)


def test_missing_file_uses_defaults(tmp_path):
    assert OptimizerConfig.from_file(str(tmp_path / 'absent.json')) == OptimizerConfig()


def test_unknown_keys_are_ignored(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'target_acos': 0.25, 'legacy_feature_flag': True}))
    assert OptimizerConfig.from_file(str(path)).target_acos == 0.25


def test_profile_overrides_merge_over_base():
    store = InMemoryBidStateStore()
    store.set_optimizer_settings('1001', {'rate_limit_cooldown_seconds': 600, 'min_observations': 3})
    base = OptimizerConfig(target_acos=0.2)

    config = OptimizerConfig.for_profile(store, '1001', base=base)

    assert config.rate_limit_cooldown_seconds == 600
    assert config.min_observations == 3
    assert config.target_acos == 0.2
    assert OptimizerConfig.for_profile(store, '2002', base=base) == base
