"""
Service wiring, the monitor loop and the CLI.
"""
import asyncio
import importlib
import os
import subprocess
import sys
import textwrap
from decimal import Decimal
from pathlib import Path

import pytest
from typer.testing import CliRunner

from oko.cli import app
from oko.config.config import Config
from oko.domain.models import Alert, Side
from oko.main import OkoService
from oko.paper.paper_exchange import PaperExchange
from oko.storage.memory import InMemoryLedger
from oko.storage.repository import SqlLedger

REPO_ROOT = Path(__file__).resolve().parents[2]

ENTRYPOINTS = ["oko.main", "oko.cli", "oko.storage.repository"]


@pytest.mark.parametrize("module_path", ENTRYPOINTS)
def test_entrypoint_imports(module_path: str):
    """The modules `python -m oko` and the console script depend on must import cleanly."""
    assert importlib.import_module(module_path) is not None


def test_config_import_has_no_dotenv_side_effects():
    """
    Importing oko.config.config must not load dotenv files.

    Enforced by patching `dotenv.load_dotenv` to abort the process if called.
    """
    code = textwrap.dedent(
        """
        import dotenv

        def load_dotenv(*args, **kwargs):
            raise SystemExit("DOTENV_CALLED")

        dotenv.load_dotenv = load_dotenv

        import oko.config.config
        print("OK")
        """
    ).strip()

    env = dict(os.environ)
    env["PYTHONPATH"] = str(REPO_ROOT)

    res = subprocess.run(
        [sys.executable, "-c", code],
        cwd=str(REPO_ROOT),
        env=env,
        capture_output=True,
        text=True,
    )

    assert res.returncode == 0, f"stdout={res.stdout}\nstderr={res.stderr}"
    assert "OK" in (res.stdout or "")


@pytest.fixture
def config():
    return Config(system={"dry_run": True}, storage={"database_url": None})


class TestService:

    def test_dry_run_wires_paper_and_memory(self, config):
        service = OkoService(config)
        assert isinstance(service.exchange, PaperExchange)
        assert isinstance(service.ledger, InMemoryLedger)
        # One limiter and one ban book shared by the guard, ladder and opener
        assert service.engine.limiter is service.protection.limiter
        assert service.ladder.bans is service.engine.bans is service.opener.bans

    def test_database_url_selects_sql_ledger(self):
        service = OkoService(Config(system={"dry_run": True}, storage={"database_url": "sqlite://"}))
        assert isinstance(service.ledger, SqlLedger)
        assert service.ledger.load_open_positions() == []

    @pytest.mark.asyncio
    async def test_signal_then_cycle(self, config):
        service = OkoService(config)
        service.exchange.set_price("BTCUSDT", Decimal("50000"))

        result = await service.accept_signal(Alert(id=1, symbol="btc", side=Side.LONG, tier="Standard", strength=0.9))
        assert result.accepted

        summary = await service.run_monitor_cycle()
        assert summary.checked == 1
        assert summary.errors == []

        analysis = service.resolve_conflict(Alert(id=2, symbol="BTCUSDT", side=Side.SHORT, tier="Quick", strength=0.1))
        assert not analysis.should_proceed

    @pytest.mark.asyncio
    async def test_run_forever_bounded(self, config):
        service = OkoService(config)
        assert await service.run_forever(interval_seconds=0, max_cycles=2) == 2
        assert service.monitor.cycles_run == 2

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, config):
        service = OkoService(config)
        stop = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop.set()

        stopper = asyncio.create_task(stop_soon())
        cycles = await service.run_forever(interval_seconds=30, stop_event=stop)
        await stopper
        assert cycles == 1

    @pytest.mark.asyncio
    async def test_slow_cycles_keep_detections_inside_the_window(self, make_position):
        """-60% on margin needs three detections in 1s; 0.15s of work per cycle must not push the third out."""
        service = OkoService(Config(
            system={"dry_run": True},
            guard={"close_verify_delay_seconds": 0, "confirmation_window_seconds": 1.0},
        ))
        position = service.ledger.upsert_position(make_position())
        service.exchange.seed_position(
            "BTCUSDT", Side.LONG, position.quantity, position.entry_price,
            leverage=Decimal("20"), stop_loss=position.stop_loss, take_profit=position.tp1_price,
        )
        service.exchange.set_price("BTCUSDT", Decimal("48500"))
        run_cycle = service.monitor.run_monitor_cycle

        async def slow_cycle():
            summary = await run_cycle()
            await asyncio.sleep(0.15)
            return summary

        service.run_monitor_cycle = slow_cycle

        assert await service.run_forever(interval_seconds=0.4, max_cycles=3) == 3
        assert not service.ledger.get_position(position.id).is_open
        assert (await service.exchange.get_position("BTCUSDT")).value is None

    def test_status_and_capitulation_reset(self, config):
        service = OkoService(config)
        service.ledger.update_settings({"capitulation_counter": 2})
        assert service.status()["capitulation_counter"] == 2

        service.reset_capitulation()

        status = service.status()
        assert status["capitulation_counter"] == 0
        assert status["exchange"] == "paper"
        assert status["monitor"]["cycles_run"] == 0


class TestCli:

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr("oko.cli.setup_logging", lambda *args, **kwargs: None)
        for name in ("DATABASE_URL", "ENVIRONMENT", "DRY_RUN"):
            monkeypatch.delenv(name, raising=False)

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("system:\n  dry_run: true\n")
        return path

    def test_status(self, config_file):
        result = CliRunner().invoke(app, ["status", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert '"capitulation_counter": 0' in result.output

    def test_cycle(self, config_file):
        result = CliRunner().invoke(app, ["cycle", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "checked=0" in result.output

    def test_reset_capitulation(self, config_file):
        result = CliRunner().invoke(app, ["reset-capitulation", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "reset" in result.output

    def test_bad_config_exits_nonzero(self, tmp_path):
        result = CliRunner().invoke(app, ["status", "--config", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
