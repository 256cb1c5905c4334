#!/usr/bin/env python3
"""
Convenience script to run the Bayesian bid optimizer from a checkout
Usage: python scripts/run_bid_optimizer.py batch --profile-id 123 [options]

Works without installing the package: src/ is put on PYTHONPATH for the CLI.
"""

import os
import subprocess
import sys
from datetime import datetime
from typing import Dict, List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DB_VARS = ('DB_HOST', 'DB_PORT', 'DB_NAME', 'DB_USER', 'DB_PASSWORD')


def build_command(args: List[str], now: datetime = None) -> List[str]:
    """CLI invocation with the checkout's config file and a timestamped report"""
    command, options = args[0], list(args[1:])
    if '--config' not in options and '-c' not in options:
        options += ['--config', 'config/bid_optimizer.json']
    if '--output' not in options and '-o' not in options:
        stamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
        options += ['--output', f'reports/bid_optimizer_{command}_{stamp}.json']
    return [sys.executable, '-m', 'bayesian_bid_engine.main', command] + options


def build_env(project_root: str = PROJECT_ROOT) -> Dict[str, str]:
    env = dict(os.environ)
    src = os.path.join(project_root, 'src')
    env['PYTHONPATH'] = os.pathsep.join(p for p in (src, env.get('PYTHONPATH')) if p)
    return env


def main():
    args = sys.argv[1:]
    if not args:
        print("Usage: run_bid_optimizer.py {batch,realtime,portfolio,status,accuracy} --profile-id ID [options]")
        sys.exit(2)

    missing_vars = [var for var in DB_VARS if not os.getenv(var)]
    if missing_vars:
        print(f"Error: missing database environment variables: {', '.join(missing_vars)}")
        print("Set them in the environment or in a .env file at the project root")
        sys.exit(1)

    os.chdir(PROJECT_ROOT)
    for directory in ('logs', 'reports', 'config'):
        os.makedirs(directory, exist_ok=True)

    cmd = build_command(args)
    print(f"Command: {' '.join(cmd)}")
    print("-" * 60)

    try:
        subprocess.run(cmd, check=True, env=build_env())
    except subprocess.CalledProcessError as e:
        print(f"\nBid optimizer failed with exit code {e.returncode}")
        sys.exit(e.returncode)
    except KeyboardInterrupt:
        print("\nBid optimizer interrupted by user")
        sys.exit(1)


if __name__ == '__main__':
    main()
