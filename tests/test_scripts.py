"""Tests for the checkout wrapper script"""

import os
import sys
from datetime import datetime

from scripts.run_bid_optimizer import build_command, build_env


def test_command_adds_config_and_report():
    cmd = build_command(['batch', '--profile-id', '1001'], now=datetime(2024, 3, 2, 6, 0))

    assert cmd[:4] == [sys.executable, '-m', 'bayesian_bid_engine.main', 'batch']
    assert cmd[cmd.index('--config') + 1] == 'config/bid_optimizer.json'
    assert cmd[cmd.index('--output') + 1] == 'reports/bid_optimizer_batch_20240302_060000.json'


def test_command_keeps_explicit_options():
    cmd = build_command(['status', '-p', '1001', '-c', 'custom.json', '-o', 'out.json'])
    assert '--config' not in cmd
    assert '--output' not in cmd
    assert cmd[-2:] == ['-o', 'out.json']


def test_env_puts_src_first_on_pythonpath(monkeypatch):
    monkeypatch.setenv('PYTHONPATH', '/opt/extra')
    env = build_env('/srv/bid-engine')
    assert env['PYTHONPATH'].split(os.pathsep) == [os.path.join('/srv/bid-engine', 'src'), '/opt/extra']


def test_env_without_existing_pythonpath(monkeypatch):
    monkeypatch.delenv('PYTHONPATH', raising=False)
    assert build_env('/srv/bid-engine')['PYTHONPATH'] == os.path.join('/srv/bid-engine', 'src')
