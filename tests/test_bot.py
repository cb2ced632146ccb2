"""Tests for bot.py — component wiring and log formatting."""

import logging
from dataclasses import replace
from unittest.mock import MagicMock

from updown_arb.bot import _StripAnsiFormatter, build_engine
from updown_arb.config import Secrets
from updown_arb.hedge import HedgeMonitor
from updown_arb.merge import MergeScheduler
from updown_arb.models import C_GREEN, C_RESET
from updown_arb.recovery import HedgeOnExitStrategy


class TestBuildEngine:
    def test_without_proxy_disables_settlement(self, default_cfg):
        orch = build_engine(default_cfg, Secrets(), MagicMock())
        assert orch._merge_scheduler is None
        assert orch._hedge is None
        assert orch._tracker.sync_from_api() == 0

    def test_full_wiring(self, default_cfg):
        cfg = replace(default_cfg, hedge_enabled=True, merge_interval_minutes=5)
        secrets = Secrets(private_key="0x" + "11" * 32, proxy_address="0x" + "aa" * 20)
        orch = build_engine(cfg, secrets, MagicMock())
        assert isinstance(orch._merge_scheduler, MergeScheduler)
        assert isinstance(orch._hedge, HedgeMonitor)
        assert isinstance(orch._risk._recovery, HedgeOnExitStrategy)


class TestLogFormatting:
    def test_file_formatter_strips_colors(self):
        record = logging.LogRecord("ua.test", logging.INFO, __file__, 1,
                                   f"{C_GREEN}MERGE_OK{C_RESET}", None, None)
        assert _StripAnsiFormatter("%(message)s").format(record) == "MERGE_OK"
