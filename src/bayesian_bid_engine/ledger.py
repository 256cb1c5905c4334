"""
Performance Ledger access

Reads per-cycle aggregates and tags where they came from. Only ``RealData``
may be folded into a posterior; ``SimulatedData`` exists for what-if previews
and ``Unavailable`` reports a source that could not be read.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

import numpy as np

from .exceptions import StoreUnavailable
from .models import BidState, Observation


@dataclass
class RealData:
    observations: List[Observation]
    source: str = 'performance_ledger'
    fetched_at: Optional[datetime] = None


@dataclass
class SimulatedData:
    observations: List[Observation]
    reason: str = 'simulation'


@dataclass
class Unavailable:
    reason: str
    details: dict = field(default_factory=dict)


LedgerResult = Union[RealData, SimulatedData, Unavailable]


class PerformanceLedgerReader:
    """Reads aggregated cycles from the ledger tables through the database connector"""

    def __init__(self, db_connector):
        self.db = db_connector
        self.logger = logging.getLogger(__name__)

    def fetch_cycles(self, profile_id: str, since: Optional[datetime] = None,
                     until: Optional[datetime] = None) -> LedgerResult:
        try:
            rows = self.db.get_ledger_cycles(profile_id, since=since, until=until)
        except StoreUnavailable as e:
            self.logger.error(f"Performance ledger unavailable for profile {profile_id}: {e}")
            return Unavailable(reason='ledger_unreachable', details={'error': str(e)})

        observations = [self._row_to_observation(profile_id, row) for row in rows]
        self.logger.info(f"Fetched {len(observations)} ledger cycle(s) for profile {profile_id}")
        return RealData(observations=observations, fetched_at=datetime.now())

    @staticmethod
    def _row_to_observation(profile_id: str, row: dict) -> Observation:
        return Observation(
            profile_id=profile_id,
            entity_type=row['entity_type'],
            entity_id=str(row['entity_id']),
            window_start=row.get('window_start'),
            window_end=row.get('window_end'),
            impressions=row.get('impressions'),
            clicks=row.get('clicks'),
            conversions=row.get('conversions'),
            spend_micros=row.get('spend_micros'),
            sales_micros=row.get('sales_micros'),
            bid_micros=row.get('bid_micros'),
            campaign_id=row.get('campaign_id'),
            ad_group_id=row.get('ad_group_id'),
        )


def simulate_cycles(states: List[BidState], cycles: int = 7, clicks_per_cycle: int = 20,
                    impressions_per_click: int = 40,
                    rng: Optional[np.random.Generator] = None) -> SimulatedData:
    """
    Draw synthetic cycles from each entity's current posterior mean

    Used for previews only; the updater rejects simulated observations.
    """
    rng = rng or np.random.default_rng()
    observations = []
    for state in states:
        cvr = state.posterior_mean
        aov = state.average_order_value_micros
        cpc = state.total_spend_micros / state.total_clicks if state.total_clicks else 0
        for _ in range(cycles):
            clicks = int(rng.poisson(clicks_per_cycle))
            conversions = int(rng.binomial(clicks, cvr)) if clicks else 0
            observations.append(Observation(
                profile_id=state.profile_id,
                entity_type=state.entity_type,
                entity_id=state.entity_id,
                impressions=clicks * impressions_per_click,
                clicks=clicks,
                conversions=conversions,
                spend_micros=int(round(clicks * cpc)),
                sales_micros=int(round(conversions * aov)),
            ))
    return SimulatedData(observations=observations, reason=f'posterior_mean_{cycles}_cycles')
