"""
Database connector for the Bayesian bid engine
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import psycopg2.extras

from .exceptions import StaleStateError, StoreUnavailable
from .models import (
    BidPoint,
    BidState,
    CampaignSnapshot,
    CurveFitResult,
    EntityKey,
    OptimizerRun,
    PortfolioMarginalCurve,
    SpendSalesPoint,
)
from .store import BidStateStore

BID_STATE_COLUMNS = [f.name for f in fields(BidState) if f.name != 'id']
CURVE_FIT_COLUMNS = [f.name for f in fields(CurveFitResult)]
RUN_COLUMNS = [f.name for f in fields(OptimizerRun) if f.name != 'id']
CURVE_COLUMNS = [f.name for f in fields(PortfolioMarginalCurve)]

KEY_FILTER = "profile_id = %(profile_id)s AND entity_type = %(entity_type)s AND entity_id = %(entity_id)s"


def _key_params(key: EntityKey) -> Dict[str, str]:
    profile_id, entity_type, entity_id = key
    return {'profile_id': profile_id, 'entity_type': entity_type, 'entity_id': entity_id}


class DatabaseConnector(BidStateStore):
    """PostgreSQL implementation of the bid state store and ledger reads"""

    def __init__(self, connection_string: str = None):
        """
        Initialize database connector

        Args:
            connection_string: PostgreSQL connection string (optional, will use env vars if not provided)
        """
        if connection_string:
            self.connection_string = connection_string
        else:
            db_host = os.getenv('DB_HOST', 'localhost')
            db_port = os.getenv('DB_PORT', '5432')
            db_name = os.getenv('DB_NAME', 'amazon_ads')
            db_user = os.getenv('DB_USER', 'postgres')
            db_password = os.getenv('DB_PASSWORD')

            if not db_password:
                raise ValueError("DB_PASSWORD environment variable is required")

            self.connection_string = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"

        self.logger = logging.getLogger(__name__)

    def get_connection(self):
        """Get database connection"""
        return psycopg2.connect(self.connection_string)

    @contextmanager
    def cursor(self, dict_rows: bool = True):
        """Cursor in its own transaction; connection problems surface as StoreUnavailable"""
        try:
            conn = self.get_connection()
        except psycopg2.OperationalError as e:
            raise StoreUnavailable(f"Cannot connect to database: {e}") from e
        try:
            with conn:
                factory = psycopg2.extras.RealDictCursor if dict_rows else None
                with conn.cursor(cursor_factory=factory) as cursor:
                    yield cursor
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise StoreUnavailable(f"Database connection lost: {e}") from e
        finally:
            conn.close()

    def execute_script(self, sql: str) -> None:
        with self.cursor(dict_rows=False) as cursor:
            cursor.execute(sql)

    # ------------------------------------------------------------------ #
    # Bid states
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_state(row: Dict[str, Any]) -> BidState:
        data = {name: row[name] for name in BID_STATE_COLUMNS if name in row}
        return BidState(id=row.get('id'), **data)

    def get_bid_state(self, key: EntityKey) -> Optional[BidState]:
        query = f"SELECT * FROM bid_optimizer_states WHERE {KEY_FILTER}"
        with self.cursor() as cursor:
            cursor.execute(query, _key_params(key))
            row = cursor.fetchone()
        return self._row_to_state(row) if row else None

    def list_bid_states(self, profile_id: str, enabled_only: bool = False) -> List[BidState]:
        query = """
        SELECT * FROM bid_optimizer_states
        WHERE profile_id = %s
        """
        if enabled_only:
            query += " AND optimization_enabled = TRUE"
        query += " ORDER BY entity_type, entity_id"

        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id),))
            return [self._row_to_state(row) for row in cursor.fetchall()]

    def create_bid_state(self, state: BidState) -> BidState:
        """
        Insert a new bid state

        Raises:
            StaleStateError: A state for the same key already exists
        """
        columns = [c for c in BID_STATE_COLUMNS if c not in ('version', 'created_at', 'updated_at')]
        query = f"""
        INSERT INTO bid_optimizer_states ({', '.join(columns)}, version, created_at, updated_at)
        VALUES ({', '.join(f'%({c})s' for c in columns)}, 1, NOW(), NOW())
        ON CONFLICT (profile_id, entity_type, entity_id) DO NOTHING
        RETURNING *
        """
        params = {c: getattr(state, c) for c in columns}
        with self.cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        if row is None:
            raise StaleStateError(state.key, expected_version=-1)
        self.logger.info(f"Created bid state for {state.entity_type} {state.entity_id} (profile {state.profile_id})")
        return self._row_to_state(row)

    def save_bid_state(self, state: BidState, expected_version: int) -> BidState:
        """
        Write a bid state if nobody else wrote it since expected_version

        Identity, prior, creation and rate-limit columns are never touched here.
        """
        immutable = {'profile_id', 'entity_type', 'entity_id', 'prior_alpha', 'prior_beta',
                     'version', 'created_at', 'updated_at', 'last_optimized_at'}
        columns = [c for c in BID_STATE_COLUMNS if c not in immutable]
        query = f"""
        UPDATE bid_optimizer_states
        SET {', '.join(f'{c} = %({c})s' for c in columns)},
            version = version + 1,
            updated_at = NOW()
        WHERE {KEY_FILTER} AND version = %(expected_version)s
        RETURNING *
        """
        params = {c: getattr(state, c) for c in columns}
        params.update(_key_params(state.key))
        params['expected_version'] = expected_version
        with self.cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        if row is None:
            raise StaleStateError(state.key, expected_version)
        return self._row_to_state(row)

    # ------------------------------------------------------------------ #
    # Leases and rate limiting
    # ------------------------------------------------------------------ #

    def acquire_lease(self, key: EntityKey, owner: str, ttl_seconds: int,
                      now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        query = f"""
        UPDATE bid_optimizer_states
        SET lease_owner = %(owner)s, lease_expires_at = %(expires_at)s
        WHERE {KEY_FILTER}
            AND (lease_owner IS NULL OR lease_owner = %(owner)s OR lease_expires_at <= %(now)s)
        RETURNING id
        """
        params = _key_params(key)
        params.update({'owner': owner, 'expires_at': now + timedelta(seconds=ttl_seconds), 'now': now})
        with self.cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone() is not None

    def release_lease(self, key: EntityKey, owner: str) -> None:
        query = f"""
        UPDATE bid_optimizer_states
        SET lease_owner = NULL, lease_expires_at = NULL
        WHERE {KEY_FILTER} AND lease_owner = %(owner)s
        """
        params = _key_params(key)
        params['owner'] = owner
        with self.cursor() as cursor:
            cursor.execute(query, params)

    def claim_optimization_slot(self, key: EntityKey, cooldown_seconds: int,
                                now: Optional[datetime] = None) -> Tuple[bool, Optional[datetime]]:
        now = now or datetime.now()
        params = _key_params(key)
        with self.cursor() as cursor:
            cursor.execute(
                f"SELECT last_optimized_at FROM bid_optimizer_states WHERE {KEY_FILTER} FOR UPDATE",
                params
            )
            row = cursor.fetchone()
            if row is None:
                return False, None
            last = row['last_optimized_at']
            if last is not None and now - last < timedelta(seconds=cooldown_seconds):
                return False, last
            params['now'] = now
            cursor.execute(
                f"UPDATE bid_optimizer_states SET last_optimized_at = %(now)s WHERE {KEY_FILTER}",
                params
            )
        return True, last

    # ------------------------------------------------------------------ #
    # Curve fits and bid history
    # ------------------------------------------------------------------ #

    def get_bid_history(self, key: EntityKey) -> List[BidPoint]:
        query = f"""
        SELECT bid_micros, clicks, impressions, conversions, spend_micros, sales_micros
        FROM performance_ledger_cycles
        WHERE {KEY_FILTER} AND bid_micros IS NOT NULL AND impressions > 0
        ORDER BY window_start
        """
        with self.cursor() as cursor:
            cursor.execute(query, _key_params(key))
            return [BidPoint(**row) for row in cursor.fetchall()]

    def save_curve_fit(self, result: CurveFitResult) -> None:
        columns = CURVE_FIT_COLUMNS
        updates = [c for c in columns if c not in ('profile_id', 'entity_type', 'entity_id')]
        query = f"""
        INSERT INTO bid_response_curves ({', '.join(columns)})
        VALUES ({', '.join(f'%({c})s' for c in columns)})
        ON CONFLICT (profile_id, entity_type, entity_id)
        DO UPDATE SET {', '.join(f'{c} = EXCLUDED.{c}' for c in updates)}
        """
        params = {c: getattr(result, c) for c in columns}
        params['params'] = psycopg2.extras.Json(result.params)
        with self.cursor() as cursor:
            cursor.execute(query, params)

    @staticmethod
    def _row_to_fit(row: Dict[str, Any]) -> CurveFitResult:
        return CurveFitResult(**{c: row[c] for c in CURVE_FIT_COLUMNS})

    def get_curve_fit(self, key: EntityKey) -> Optional[CurveFitResult]:
        query = f"SELECT * FROM bid_response_curves WHERE {KEY_FILTER}"
        with self.cursor() as cursor:
            cursor.execute(query, _key_params(key))
            row = cursor.fetchone()
        return self._row_to_fit(row) if row else None

    def list_curve_fits(self, profile_id: str) -> List[CurveFitResult]:
        query = "SELECT * FROM bid_response_curves WHERE profile_id = %s"
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id),))
            return [self._row_to_fit(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Runs
    # ------------------------------------------------------------------ #

    def _run_params(self, run: OptimizerRun) -> Dict[str, Any]:
        params = {c: getattr(run, c) for c in RUN_COLUMNS}
        params['summary'] = psycopg2.extras.Json(run.summary, dumps=self._dumps)
        return params

    @staticmethod
    def _dumps(value) -> str:
        return json.dumps(value, default=str)

    def create_run(self, run: OptimizerRun) -> OptimizerRun:
        query = f"""
        INSERT INTO bid_optimizer_runs ({', '.join(RUN_COLUMNS)})
        VALUES ({', '.join(f'%({c})s' for c in RUN_COLUMNS)})
        RETURNING id
        """
        with self.cursor() as cursor:
            cursor.execute(query, self._run_params(run))
            run.id = cursor.fetchone()['id']
        return run

    def update_run(self, run: OptimizerRun) -> None:
        columns = [c for c in RUN_COLUMNS if c not in ('profile_id', 'run_type')]
        query = f"""
        UPDATE bid_optimizer_runs
        SET {', '.join(f'{c} = %({c})s' for c in columns)}
        WHERE id = %(id)s
        """
        params = self._run_params(run)
        params['id'] = run.id
        with self.cursor() as cursor:
            cursor.execute(query, params)

    def list_runs(self, profile_id: str, since: Optional[datetime] = None) -> List[OptimizerRun]:
        query = "SELECT * FROM bid_optimizer_runs WHERE profile_id = %s"
        params: List[Any] = [str(profile_id)]
        if since is not None:
            query += " AND started_at >= %s"
            params.append(since)
        query += " ORDER BY id"
        with self.cursor() as cursor:
            cursor.execute(query, params)
            return [OptimizerRun(id=row['id'], **{c: row[c] for c in RUN_COLUMNS})
                    for row in cursor.fetchall()]

    def get_latest_run(self, profile_id: str) -> Optional[OptimizerRun]:
        query = """
        SELECT * FROM bid_optimizer_runs
        WHERE profile_id = %s
        ORDER BY started_at DESC NULLS LAST, id DESC
        LIMIT 1
        """
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id),))
            row = cursor.fetchone()
        return OptimizerRun(id=row['id'], **{c: row[c] for c in RUN_COLUMNS}) if row else None

    # ------------------------------------------------------------------ #
    # Portfolio
    # ------------------------------------------------------------------ #

    def get_campaign_snapshots(self, profile_id: str, periods: int = 4) -> List[CampaignSnapshot]:
        """
        Campaign roll-ups: the latest period is current, earlier ones are history

        Args:
            profile_id: Advertising profile
            periods: Number of most recent comparable periods per campaign
        """
        query = """
        SELECT campaign_id, campaign_name, period_start, spend_micros, sales_micros
        FROM (
            SELECT *, ROW_NUMBER() OVER (PARTITION BY campaign_id ORDER BY period_start DESC) AS rn
            FROM campaign_spend_periods
            WHERE profile_id = %s
        ) ranked
        WHERE rn <= %s
        ORDER BY campaign_id, period_start
        """
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id), periods))
            rows = cursor.fetchall()

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row['campaign_id'], []).append(row)

        snapshots = []
        for campaign_id, periods_rows in grouped.items():
            current = periods_rows[-1]
            snapshots.append(CampaignSnapshot(
                campaign_id=campaign_id,
                name=current['campaign_name'],
                current_spend_micros=int(current['spend_micros']),
                current_sales_micros=int(current['sales_micros']),
                history=[
                    SpendSalesPoint(spend_micros=int(r['spend_micros']), sales_micros=int(r['sales_micros']),
                                    period_start=r['period_start'])
                    for r in periods_rows[:-1]
                ],
            ))
        return snapshots

    def save_marginal_curves(self, profile_id: str, curves: List[PortfolioMarginalCurve]) -> None:
        columns = CURVE_COLUMNS
        updates = [c for c in columns if c not in ('profile_id', 'campaign_id')]
        query = f"""
        INSERT INTO portfolio_marginal_curves ({', '.join(columns)})
        VALUES ({', '.join(f'%({c})s' for c in columns)})
        ON CONFLICT (profile_id, campaign_id)
        DO UPDATE SET {', '.join(f'{c} = EXCLUDED.{c}' for c in updates)}
        """
        with self.cursor() as cursor:
            psycopg2.extras.execute_batch(cursor, query, [
                {c: getattr(curve, c) for c in columns} for curve in curves
            ])
        self.logger.info(f"Saved {len(curves)} marginal curve(s) for profile {profile_id}")

    def list_marginal_curves(self, profile_id: str) -> List[PortfolioMarginalCurve]:
        query = "SELECT * FROM portfolio_marginal_curves WHERE profile_id = %s ORDER BY campaign_id"
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id),))
            return [PortfolioMarginalCurve(**{c: row[c] for c in CURVE_COLUMNS}) for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Ledger and settings
    # ------------------------------------------------------------------ #

    def get_ledger_cycles(self, profile_id: str, since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> List[Dict[str, Any]]:
        query = """
        SELECT
            entity_type, entity_id, campaign_id, ad_group_id,
            window_start, window_end,
            impressions, clicks, conversions, spend_micros, sales_micros, bid_micros
        FROM performance_ledger_cycles
        WHERE profile_id = %s
        """
        params: List[Any] = [str(profile_id)]
        if since is not None:
            query += " AND window_end > %s"
            params.append(since)
        if until is not None:
            query += " AND window_end <= %s"
            params.append(until)
        query += " ORDER BY window_start, entity_type, entity_id"

        with self.cursor() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def get_optimizer_settings(self, profile_id: str) -> Dict[str, Any]:
        query = "SELECT settings FROM bid_optimizer_settings WHERE profile_id = %s"
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id),))
            row = cursor.fetchone()
        return dict(row['settings']) if row and row['settings'] else {}

    def set_optimizer_settings(self, profile_id: str, settings: Dict[str, Any]) -> None:
        query = """
        INSERT INTO bid_optimizer_settings (profile_id, settings, updated_at)
        VALUES (%s, %s, NOW())
        ON CONFLICT (profile_id)
        DO UPDATE SET settings = EXCLUDED.settings, updated_at = NOW()
        """
        with self.cursor() as cursor:
            cursor.execute(query, (str(profile_id), psycopg2.extras.Json(settings)))
        self.logger.info(f"Saved optimizer settings for profile {profile_id}")
