"""
Tests for the Engine orchestrator and the command line entry point.
"""

import json
from decimal import Decimal

import pytest

import main as cli
from kandle.app import Engine
from kandle.config import DatabaseConfig, Settings

from tests.fixtures.ticks import DAY0_MS, raw_tick


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.chdir(tmp_path)
    return Settings(database=DatabaseConfig(path=tmp_path / "engine.db"))


class TestEngine:
    def test_components_unavailable_before_start(self, settings):
        engine = Engine(settings)

        assert not engine.is_running
        with pytest.raises(RuntimeError):
            engine.query

    @pytest.mark.asyncio
    async def test_start_seeds_default_timeframes(self, settings):
        engine = Engine(settings)
        await engine.start(run_sweeper=False)
        try:
            names = [tf.name for tf in engine.query.available_timeframes()]
            assert names == ["1min", "3min", "5min", "15min", "30min", "1hour", "1day"]
            assert engine.aggregator.update_policy == "single_tick"
        finally:
            await engine.stop()

        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_ingest_and_query(self, settings):
        engine = Engine(settings)
        await engine.start(run_sweeper=False)
        try:
            await engine.ingest(raw_tick(DAY0_MS, "100", 10))
            result = await engine.ingest(raw_tick(DAY0_MS + 90_000, "104", 5))

            assert not result.is_partial
            assert result.summary == "7 of 7 timeframes updated"

            candles = await engine.query.historical_range("NIFTY", "3min")
            assert len(candles) == 1
            assert candles[0].volume == 15
            assert candles[0].close == Decimal("104")
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_restart_keeps_data(self, settings):
        engine = Engine(settings)
        await engine.start(run_sweeper=False)
        await engine.ingest(raw_tick(DAY0_MS, "100", 10))
        await engine.stop()

        engine = Engine(settings)
        await engine.start(run_sweeper=False)
        try:
            stats = await engine.query.instrument_stats("NIFTY")
            assert stats.total_ticks == 1
            assert stats.total_candles_by_timeframe["1day"] == 1
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_reload_timeframes(self, settings):
        engine = Engine(settings)
        await engine.start(run_sweeper=False)
        try:
            await engine.repository.set_timeframe_active("3min", False)
            await engine.reload_timeframes()

            result = await engine.ingest(raw_tick(DAY0_MS, "100", 10))

            assert "3min" not in result.updated
            assert result.total == 6
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_context_manager_runs_sweeper(self, settings):
        async with Engine(settings) as engine:
            assert engine.is_running
            assert engine._sweep_task is not None

        assert not engine.is_running
        assert engine._sweep_task is None


class TestCommandLine:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)

    def test_ingest_file_reports_rejections(self, settings, tmp_path, capsys):
        feed = tmp_path / "ticks.jsonl"
        lines = [
            json.dumps(raw_tick(DAY0_MS, "100", 10)),
            json.dumps(raw_tick(DAY0_MS + 1000, "101", 5)),
            "",
            json.dumps({"symbol": "NIFTY", "ltp": -5, "timestamp": DAY0_MS}),
            "{not json",
            json.dumps(raw_tick(DAY0_MS + 2000, "99", 1)),
        ]
        feed.write_text("\n".join(lines) + "\n", encoding="utf-8")

        code = cli.main(["--db", str(settings.database.path), "ingest", str(feed)])
        captured = capsys.readouterr()

        assert code == 2
        assert "Ingested 3 ticks (0 partial, 2 rejected)" in captured.out
        assert "line 4: rejected" in captured.err
        assert "line 5: rejected" in captured.err

    def test_non_object_lines_rejected(self, settings, tmp_path, capsys):
        feed = tmp_path / "ticks.jsonl"
        lines = [
            "[1]",
            json.dumps(raw_tick(DAY0_MS, "100", 10)),
            '"NIFTY"',
        ]
        feed.write_text("\n".join(lines) + "\n", encoding="utf-8")

        code = cli.main(["--db", str(settings.database.path), "ingest", str(feed)])
        captured = capsys.readouterr()

        assert code == 2
        assert "Ingested 1 ticks (0 partial, 2 rejected)" in captured.out
        assert "line 1: rejected" in captured.err
        assert "line 3: rejected" in captured.err

    def test_queries(self, settings, tmp_path, capsys):
        feed = tmp_path / "ticks.jsonl"
        feed.write_text(json.dumps(raw_tick(DAY0_MS, "100", 10)) + "\n", encoding="utf-8")
        db = str(settings.database.path)

        assert cli.main(["--db", db, "ingest", str(feed)]) == 0
        capsys.readouterr()

        assert cli.main(["--db", db, "stats", "NIFTY"]) == 0
        assert "NIFTY: 1 ticks" in capsys.readouterr().out

        assert cli.main(["--db", db, "history", "NIFTY", "1min", "--limit", "5"]) == 0
        assert "V=10" in capsys.readouterr().out

        assert cli.main(["--db", db, "timeframes"]) == 0
        assert "1hour (60 min)" in capsys.readouterr().out

    def test_unknown_symbol_exits_with_error(self, settings, capsys):
        code = cli.main(["--db", str(settings.database.path), "latest", "NOPE"])

        assert code == 1
        assert "Instrument 'NOPE' not found" in capsys.readouterr().err
