"""Shared fixtures for the bid engine tests"""

from datetime import datetime, timedelta

import numpy as np
import pytest

from bayesian_bid_engine.config import OptimizerConfig
from bayesian_bid_engine.models import BidState, Observation
from bayesian_bid_engine.store import InMemoryBidStateStore

PROFILE = '1001'
START = datetime(2024, 3, 1)


@pytest.fixture
def config():
    return OptimizerConfig(random_seed=42, enable_telemetry=False)


@pytest.fixture
def store():
    return InMemoryBidStateStore()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def make_observation(entity_id='kw-1', day=0, impressions=200, clicks=20, conversions=2,
                     spend_micros=None, sales_micros=None, bid_micros=1_000_000,
                     entity_type='keyword', profile_id=PROFILE, campaign_id='c-1'):
    window_start = START + timedelta(days=day)
    return Observation(
        profile_id=profile_id,
        entity_type=entity_type,
        entity_id=entity_id,
        impressions=impressions,
        clicks=clicks,
        conversions=conversions,
        spend_micros=clicks * 800_000 if spend_micros is None else spend_micros,
        sales_micros=conversions * 30_000_000 if sales_micros is None else sales_micros,
        window_start=window_start,
        window_end=window_start + timedelta(days=1),
        bid_micros=bid_micros,
        campaign_id=campaign_id,
    )


def ledger_row(observation: Observation) -> dict:
    return {
        'entity_type': observation.entity_type,
        'entity_id': observation.entity_id,
        'campaign_id': observation.campaign_id,
        'ad_group_id': observation.ad_group_id,
        'window_start': observation.window_start,
        'window_end': observation.window_end,
        'impressions': observation.impressions,
        'clicks': observation.clicks,
        'conversions': observation.conversions,
        'spend_micros': observation.spend_micros,
        'sales_micros': observation.sales_micros,
        'bid_micros': observation.bid_micros,
    }


def eligible_state(entity_id='kw-1', alpha=6.0, beta=96.0, current_bid_micros=1_000_000,
                   profile_id=PROFILE, **overrides) -> BidState:
    """A state past both volume thresholds with a tight posterior"""
    data = dict(
        profile_id=profile_id,
        entity_type='keyword',
        entity_id=entity_id,
        alpha=alpha,
        beta=beta,
        observations_count=10,
        total_clicks=int(alpha + beta - 2),
        total_conversions=int(alpha - 1),
        total_impressions=5000,
        total_spend_micros=80_000_000,
        total_sales_micros=int(alpha - 1) * 50_000_000,
        current_bid_micros=current_bid_micros,
        campaign_id='c-1',
    )
    data.update(overrides)
    return BidState(**data)
