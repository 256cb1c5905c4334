"""
Bid State Store interface

The store is the only shared mutable resource. Writers use optimistic
concurrency (``version``) per entity, leases with expiry for mutual exclusion
and a compare-and-swap on ``last_optimized_at`` for real-time rate limiting.
``DatabaseConnector`` is the durable Postgres implementation;
``InMemoryBidStateStore`` keeps the same semantics inside one process for
dry runs and tests.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import StaleStateError
from .models import (
    BidPoint,
    BidState,
    CampaignSnapshot,
    CurveFitResult,
    EntityKey,
    OptimizerRun,
    PortfolioMarginalCurve,
)


class BidStateStore(ABC):
    """Persistence contract shared by the updater, selector and controller"""

    # -- bid states -----------------------------------------------------

    @abstractmethod
    def get_bid_state(self, key: EntityKey) -> Optional[BidState]:
        ...

    @abstractmethod
    def list_bid_states(self, profile_id: str, enabled_only: bool = False) -> List[BidState]:
        ...

    @abstractmethod
    def create_bid_state(self, state: BidState) -> BidState:
        """Insert a new state; raises StaleStateError if the key already exists"""

    @abstractmethod
    def save_bid_state(self, state: BidState, expected_version: int) -> BidState:
        """Write if the stored version still equals expected_version; bumps the version"""

    # -- leases and rate limiting ----------------------------------------

    @abstractmethod
    def acquire_lease(self, key: EntityKey, owner: str, ttl_seconds: int,
                      now: Optional[datetime] = None) -> bool:
        ...

    @abstractmethod
    def release_lease(self, key: EntityKey, owner: str) -> None:
        ...

    @abstractmethod
    def claim_optimization_slot(self, key: EntityKey, cooldown_seconds: int,
                                now: Optional[datetime] = None) -> Tuple[bool, Optional[datetime]]:
        """
        Atomically set last_optimized_at to now unless it falls inside the cool-down

        Returns (claimed, last_optimized_at seen before the attempt).
        """

    # -- curve fits and bid history --------------------------------------

    @abstractmethod
    def get_bid_history(self, key: EntityKey) -> List[BidPoint]:
        ...

    @abstractmethod
    def save_curve_fit(self, result: CurveFitResult) -> None:
        ...

    @abstractmethod
    def get_curve_fit(self, key: EntityKey) -> Optional[CurveFitResult]:
        ...

    @abstractmethod
    def list_curve_fits(self, profile_id: str) -> List[CurveFitResult]:
        ...

    # -- runs --------------------------------------------------------------

    @abstractmethod
    def create_run(self, run: OptimizerRun) -> OptimizerRun:
        ...

    @abstractmethod
    def update_run(self, run: OptimizerRun) -> None:
        ...

    @abstractmethod
    def list_runs(self, profile_id: str, since: Optional[datetime] = None) -> List[OptimizerRun]:
        ...

    # -- portfolio ---------------------------------------------------------

    @abstractmethod
    def get_campaign_snapshots(self, profile_id: str) -> List[CampaignSnapshot]:
        ...

    @abstractmethod
    def save_marginal_curves(self, profile_id: str, curves: List[PortfolioMarginalCurve]) -> None:
        """Supersede each campaign's previous curve row"""

    @abstractmethod
    def list_marginal_curves(self, profile_id: str) -> List[PortfolioMarginalCurve]:
        ...

    # -- ledger and settings -----------------------------------------------

    @abstractmethod
    def get_ledger_cycles(self, profile_id: str, since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Cycles that closed after since and no later than until"""
        ...

    @abstractmethod
    def get_optimizer_settings(self, profile_id: str) -> Dict[str, Any]:
        ...

    def set_optimization_enabled(self, key: EntityKey, enabled: bool) -> Optional[BidState]:
        """Toggle the enablement flag; states are disabled, never deleted"""
        state = self.get_bid_state(key)
        if state is None:
            return None
        if state.optimization_enabled == enabled:
            return state
        state.optimization_enabled = enabled
        return self.save_bid_state(state, expected_version=state.version)

    def get_latest_run(self, profile_id: str) -> Optional[OptimizerRun]:
        runs = self.list_runs(profile_id)
        if not runs:
            return None
        return max(runs, key=lambda r: (r.started_at or datetime.min, r.id or 0))


class InMemoryBidStateStore(BidStateStore):
    """Process-local store with the same concurrency semantics as the database"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._mutex = threading.Lock()
        self._states: Dict[EntityKey, BidState] = {}
        self._leases: Dict[EntityKey, Tuple[str, datetime]] = {}
        self._history: Dict[EntityKey, List[BidPoint]] = defaultdict(list)
        self._fits: Dict[EntityKey, CurveFitResult] = {}
        self._runs: Dict[int, OptimizerRun] = {}
        self._snapshots: Dict[str, List[CampaignSnapshot]] = {}
        self._curves: Dict[Tuple[str, str], PortfolioMarginalCurve] = {}
        self._ledger: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._settings: Dict[str, Dict[str, Any]] = {}
        self._next_state_id = 1
        self._next_run_id = 1

    # -- seeding helpers -----------------------------------------------------

    def add_bid_point(self, key: EntityKey, point: BidPoint) -> None:
        with self._mutex:
            self._history[key].append(copy.deepcopy(point))

    def set_campaign_snapshots(self, profile_id: str, snapshots: List[CampaignSnapshot]) -> None:
        with self._mutex:
            self._snapshots[profile_id] = copy.deepcopy(snapshots)

    def add_ledger_rows(self, profile_id: str, rows: List[Dict[str, Any]]) -> None:
        with self._mutex:
            self._ledger[profile_id].extend(copy.deepcopy(rows))

    def set_optimizer_settings(self, profile_id: str, settings: Dict[str, Any]) -> None:
        with self._mutex:
            self._settings[profile_id] = dict(settings)

    # -- bid states -----------------------------------------------------------

    def get_bid_state(self, key: EntityKey) -> Optional[BidState]:
        with self._mutex:
            state = self._states.get(key)
            return copy.deepcopy(state) if state else None

    def list_bid_states(self, profile_id: str, enabled_only: bool = False) -> List[BidState]:
        with self._mutex:
            states = [s for k, s in self._states.items() if k[0] == str(profile_id)]
            if enabled_only:
                states = [s for s in states if s.optimization_enabled]
            return [copy.deepcopy(s) for s in sorted(states, key=lambda s: s.key)]

    def create_bid_state(self, state: BidState) -> BidState:
        with self._mutex:
            if state.key in self._states:
                raise StaleStateError(state.key, expected_version=-1)
            stored = copy.deepcopy(state)
            stored.id = self._next_state_id
            self._next_state_id += 1
            stored.version = 1
            stored.created_at = stored.created_at or datetime.now()
            stored.updated_at = stored.created_at
            self._states[state.key] = stored
            return copy.deepcopy(stored)

    def save_bid_state(self, state: BidState, expected_version: int) -> BidState:
        with self._mutex:
            current = self._states.get(state.key)
            if current is None or current.version != expected_version:
                raise StaleStateError(state.key, expected_version)
            stored = copy.deepcopy(state)
            stored.id = current.id
            stored.created_at = current.created_at
            # Rate-limit claims are owned by claim_optimization_slot
            stored.last_optimized_at = current.last_optimized_at
            stored.version = expected_version + 1
            stored.updated_at = datetime.now()
            self._states[state.key] = stored
            return copy.deepcopy(stored)

    # -- leases and rate limiting ------------------------------------------------

    def acquire_lease(self, key: EntityKey, owner: str, ttl_seconds: int,
                      now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        with self._mutex:
            held = self._leases.get(key)
            if held and held[0] != owner and held[1] > now:
                return False
            self._leases[key] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    def release_lease(self, key: EntityKey, owner: str) -> None:
        with self._mutex:
            held = self._leases.get(key)
            if held and held[0] == owner:
                del self._leases[key]

    def claim_optimization_slot(self, key: EntityKey, cooldown_seconds: int,
                                now: Optional[datetime] = None) -> Tuple[bool, Optional[datetime]]:
        now = now or datetime.now()
        with self._mutex:
            state = self._states.get(key)
            if state is None:
                return False, None
            last = state.last_optimized_at
            if last is not None and now - last < timedelta(seconds=cooldown_seconds):
                return False, last
            state.last_optimized_at = now
            return True, last

    # -- curve fits and bid history ------------------------------------------------

    def get_bid_history(self, key: EntityKey) -> List[BidPoint]:
        with self._mutex:
            return copy.deepcopy(self._history.get(key, []))

    def save_curve_fit(self, result: CurveFitResult) -> None:
        with self._mutex:
            self._fits[result.key] = copy.deepcopy(result)

    def get_curve_fit(self, key: EntityKey) -> Optional[CurveFitResult]:
        with self._mutex:
            fit = self._fits.get(key)
            return copy.deepcopy(fit) if fit else None

    def list_curve_fits(self, profile_id: str) -> List[CurveFitResult]:
        with self._mutex:
            return [copy.deepcopy(f) for k, f in self._fits.items() if k[0] == str(profile_id)]

    # -- runs ------------------------------------------------------------------------

    def create_run(self, run: OptimizerRun) -> OptimizerRun:
        with self._mutex:
            stored = copy.deepcopy(run)
            stored.id = self._next_run_id
            self._next_run_id += 1
            self._runs[stored.id] = stored
            return copy.deepcopy(stored)

    def update_run(self, run: OptimizerRun) -> None:
        with self._mutex:
            self._runs[run.id] = copy.deepcopy(run)

    def list_runs(self, profile_id: str, since: Optional[datetime] = None) -> List[OptimizerRun]:
        with self._mutex:
            runs = [r for r in self._runs.values() if r.profile_id == str(profile_id)]
            if since is not None:
                runs = [r for r in runs if r.started_at and r.started_at >= since]
            return [copy.deepcopy(r) for r in sorted(runs, key=lambda r: r.id)]

    # -- portfolio -----------------------------------------------------------------------

    def get_campaign_snapshots(self, profile_id: str) -> List[CampaignSnapshot]:
        with self._mutex:
            return copy.deepcopy(self._snapshots.get(profile_id, []))

    def save_marginal_curves(self, profile_id: str, curves: List[PortfolioMarginalCurve]) -> None:
        with self._mutex:
            for curve in curves:
                self._curves[(profile_id, curve.campaign_id)] = copy.deepcopy(curve)

    def list_marginal_curves(self, profile_id: str) -> List[PortfolioMarginalCurve]:
        with self._mutex:
            return [copy.deepcopy(c) for (p, _), c in self._curves.items() if p == profile_id]

    # -- ledger and settings ---------------------------------------------------------------

    def get_ledger_cycles(self, profile_id: str, since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> List[Dict[str, Any]]:
        with self._mutex:
            rows = self._ledger.get(profile_id, [])
            if since is not None:
                rows = [r for r in rows if r.get('window_end') is None or r['window_end'] > since]
            if until is not None:
                rows = [r for r in rows if r.get('window_end') is None or r['window_end'] <= until]
            return copy.deepcopy(rows)

    def get_optimizer_settings(self, profile_id: str) -> Dict[str, Any]:
        with self._mutex:
            return dict(self._settings.get(profile_id, {}))
