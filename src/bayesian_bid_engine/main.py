#!/usr/bin/env python3
"""
Main script for the Bayesian bid engine
Usage: python -m bayesian_bid_engine.main <command> --profile-id <id> [options]
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

from .config import OptimizerConfig
from .controller import OptimizerRunController
from .database import DatabaseConnector
from .exceptions import OptimizerError
from .ledger import PerformanceLedgerReader
from .status import StatusReporter
from .utils.units import micros_to_currency

# Load environment variables from .env file
load_dotenv()


def setup_logging(level: str = 'INFO', log_dir: str = 'logs') -> None:
    """Setup logging configuration"""
    log_level = getattr(logging, level.upper(), logging.INFO)
    os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(log_dir, f'bid_optimizer_{datetime.now().strftime("%Y%m%d")}.log'))
        ]
    )


def load_config(config_path: str, db_connector: Optional[DatabaseConnector], profile_id: str) -> OptimizerConfig:
    """Base configuration from file, with the profile's stored overrides on top"""
    if os.path.exists(config_path):
        config = OptimizerConfig.from_file(config_path)
    else:
        print(f"Config file {config_path} not found, using default configuration")
        config = OptimizerConfig()
    if db_connector is not None:
        config = OptimizerConfig.for_profile(db_connector, profile_id, base=config)
    config.validate()
    return config


def print_run(run) -> None:
    print("\n" + "=" * 60)
    print(f"BID OPTIMIZER {run.run_type.upper()} RUN {run.id}")
    print("=" * 60)
    print(f"Status: {run.status}")
    print(f"Entities considered: {run.entities_considered}")
    print(f"Bids changed: {run.bids_changed}")
    if run.entities_failed:
        print(f"Entities failed: {run.entities_failed}")
    if run.error:
        print(f"Error: {run.error}")
    print("=" * 60)

    recommendations = run.summary.get('recommendations') or []
    if recommendations:
        print("\nBID CHANGES:")
        print("-" * 60)
        for i, rec in enumerate(recommendations[:20], 1):
            previous = micros_to_currency(rec['previous_bid_micros']) if rec['previous_bid_micros'] else None
            previous_text = f"${previous:.2f}" if previous is not None else "unset"
            print(f"{i:2d}. {rec['entity_type'].upper()} {rec['entity_id']}: "
                  f"{previous_text} → ${micros_to_currency(rec['recommended_bid_micros']):.2f} "
                  f"({rec['confidence_level']}, {rec['confidence_pct']:.0f}%)")


def write_output(path: Optional[str], payload) -> None:
    if not path:
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2, default=str)
    print(f"Output written to: {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Amazon Ads Bayesian Bid Optimizer')
    parser.add_argument('command', choices=['batch', 'realtime', 'portfolio', 'status', 'accuracy'],
                        help='Operation to run')
    parser.add_argument('--profile-id', '-p', required=True, help='Advertising profile ID')
    parser.add_argument('--entity-type', choices=['campaign', 'ad_group', 'keyword', 'target'],
                        help='Entity type (realtime only)')
    parser.add_argument('--entity-id', help='Entity ID (realtime only)')
    parser.add_argument('--config', '-c', default='config/bid_optimizer.json',
                        help='Configuration file path')
    parser.add_argument('--days-back', type=int,
                        help='Re-read cycles closed in the last N days (default: since the ingestion watermark)')
    parser.add_argument('--output', '-o', help='Write the result as JSON to this path')
    parser.add_argument('--log-level', '-l', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Logging level')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute recommendations without persisting them')
    return parser


def main(argv=None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    if args.command == 'realtime' and not (args.entity_type and args.entity_id):
        logger.error("realtime requires --entity-type and --entity-id")
        return 2

    try:
        try:
            db_connector = DatabaseConnector()
        except ValueError as e:
            logger.error(f"Database configuration error: {e}")
            logger.error("Please ensure DB_HOST, DB_PORT, DB_NAME, DB_USER, and DB_PASSWORD are set")
            return 1

        config = load_config(args.config, db_connector, args.profile_id)
        logger.info("Configuration loaded and validated")

        if args.command in ('status', 'accuracy'):
            reporter = StatusReporter(config, db_connector)
            if args.command == 'status':
                result = reporter.status(args.profile_id)
            else:
                result = reporter.model_accuracy(args.profile_id)
            print(json.dumps(result, indent=2, default=str))
            write_output(args.output, result)
            return 0

        controller = OptimizerRunController(
            config, db_connector, ledger_reader=PerformanceLedgerReader(db_connector)
        )

        if args.command == 'batch':
            until = datetime.now()
            since = until - timedelta(days=args.days_back) if args.days_back else None
            run = controller.run_batch(args.profile_id, since=since, until=until, dry_run=args.dry_run)
            print_run(run)
            write_output(args.output, run.summary)
            return 0 if run.status == 'completed' else 1

        if args.command == 'realtime':
            result = controller.trigger_entity(args.profile_id, args.entity_type, args.entity_id,
                                               dry_run=args.dry_run)
            print(f"Trigger {result.entity_type} {result.entity_id}: {result.status}")
            if result.retry_after_seconds:
                print(f"Retry after {result.retry_after_seconds}s")
            if result.recommendation:
                payload = result.recommendation.to_action_payload()
                print(json.dumps(payload, indent=2))
                write_output(args.output, payload)
            return 0

        run, plan = controller.run_portfolio(args.profile_id, dry_run=args.dry_run)
        print_run(run)
        if plan is not None:
            print(f"Method: {plan.method} | Target ROAS: {plan.target_roas:.2f} | "
                  f"Efficiency score: {plan.efficiency_score:.1f}")
            for i, curve in enumerate(plan.opportunities, 1):
                print(f"{i:2d}. Campaign {curve.campaign_id}: "
                      f"${micros_to_currency(curve.current_spend_micros):.2f} → "
                      f"${micros_to_currency(curve.optimal_spend_micros):.2f} "
                      f"(marginal ROAS {curve.marginal_roas_at_current:.2f})")
        write_output(args.output, run.summary)
        return 0 if run.status == 'completed' else 1

    except (OptimizerError, ValueError) as e:
        logger.error(f"Bid optimizer {args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
