"""Shared fixtures: a fresh SQLite store per test and the components built on it."""

import pytest
import pytest_asyncio

from kandle.ingestion.pipeline import TickIngestionPipeline
from kandle.market.candle import CandleAggregator
from kandle.market.timeframes import TimeframeRegistry
from kandle.market.types import Instrument, InstrumentSpec
from kandle.persistence.database import Database
from kandle.persistence.repository import Repository
from kandle.query.service import CandleQueryService

from tests.fixtures.ticks import TEST_TIMEFRAMES


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "kandle.db")
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def repo(db) -> Repository:
    return Repository(db)


@pytest_asyncio.fixture
async def registry(repo) -> TimeframeRegistry:
    """1sec, 1min, 5min, 1hour and 1day, persisted."""
    for timeframe in TEST_TIMEFRAMES:
        await repo.ensure_timeframe(timeframe)
    return await TimeframeRegistry.load(repo)


@pytest.fixture
def aggregator(repo) -> CandleAggregator:
    return CandleAggregator(repo)


@pytest.fixture
def pipeline(repo, registry, aggregator) -> TickIngestionPipeline:
    return TickIngestionPipeline(repo, registry, aggregator)


@pytest.fixture
def query(repo, registry) -> CandleQueryService:
    return CandleQueryService(repo, registry)


@pytest_asyncio.fixture
async def instrument(repo) -> Instrument:
    return await repo.create_instrument(
        InstrumentSpec(symbol="NIFTY", exchange="NSE", instrument_type="INDEX")
    )
