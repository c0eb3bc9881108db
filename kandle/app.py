"""Engine orchestrator: wires the store, registry, pipeline, queries and sweeper."""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from decimal import Decimal

from kandle.config import Settings
from kandle.ingestion.pipeline import IngestResult, RawTick, TickIngestionPipeline
from kandle.market.candle import CandleAggregator
from kandle.market.timeframes import TimeframeRegistry, seed_timeframes
from kandle.market.types import Tick
from kandle.persistence.database import Database
from kandle.persistence.repository import Repository
from kandle.query.service import CandleQueryService
from kandle.retention.sweeper import RetentionPolicy, RetentionSweeper

logger = logging.getLogger(__name__)


def retention_policy_from_settings(settings: Settings) -> RetentionPolicy:
    """Build the retention policy described by configuration."""
    retention = settings.retention
    return RetentionPolicy(
        tick_retention=timedelta(days=retention.tick_retention_days),
        candle_retention=timedelta(days=retention.candle_retention_days),
        candle_timeframes=tuple(retention.candle_timeframes),
    )


class Engine:
    """Owns one database connection and every component built on it."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._running = False
        self._stop_event: asyncio.Event | None = None

        self._db: Database | None = None
        self._repo: Repository | None = None
        self._registry: TimeframeRegistry | None = None
        self._aggregator: CandleAggregator | None = None
        self._pipeline: TickIngestionPipeline | None = None
        self._query: CandleQueryService | None = None
        self._sweeper: RetentionSweeper | None = None
        self._sweep_task: asyncio.Task | None = None

    def _require(self, component):
        if component is None:
            raise RuntimeError("Engine not started")
        return component

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def repository(self) -> Repository:
        return self._require(self._repo)

    @property
    def registry(self) -> TimeframeRegistry:
        return self._require(self._registry)

    @property
    def aggregator(self) -> CandleAggregator:
        return self._require(self._aggregator)

    @property
    def pipeline(self) -> TickIngestionPipeline:
        return self._require(self._pipeline)

    @property
    def query(self) -> CandleQueryService:
        return self._require(self._query)

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._require(self._sweeper)

    async def start(self, run_sweeper: bool = True) -> None:
        """
        Connect, seed timeframes and build every component.

        Args:
            run_sweeper: Start the periodic retention sweep in the background
        """
        if self._running:
            return

        logger.info("Starting kandle engine...")
        settings = self._settings

        self._db = Database(settings.database.path, settings.database.busy_timeout_ms)
        await self._db.connect()
        self._repo = Repository(self._db)

        await seed_timeframes(self._repo, settings.timeframes)
        self._registry = await TimeframeRegistry.load(self._repo)

        self._aggregator = CandleAggregator(
            self._repo,
            update_policy=settings.aggregation.update_policy,
            tick_retention=timedelta(days=settings.retention.tick_retention_days),
        )
        self._pipeline = TickIngestionPipeline(
            self._repo,
            self._registry,
            self._aggregator,
            default_exchange=settings.ingestion.default_exchange,
            default_instrument_type=settings.ingestion.default_instrument_type,
        )
        self._query = CandleQueryService(
            self._repo,
            self._registry,
            default_limit=settings.query.default_limit,
            timeout=settings.query.timeout_seconds,
            volume_profile_step=Decimal(str(settings.query.volume_profile_step)),
        )
        self._sweeper = RetentionSweeper(
            self._repo,
            retention_policy_from_settings(settings),
            interval=timedelta(minutes=settings.retention.sweep_interval_minutes),
        )

        if run_sweeper:
            self._sweep_task = asyncio.create_task(self._sweeper.run_forever())

        self._running = True
        logger.info(
            "Kandle started (db=%s, policy=%s, timeframes=%d)",
            settings.database.path,
            settings.aggregation.update_policy,
            len(self._registry.list_active()),
        )

    async def stop(self) -> None:
        """Stop the sweeper and close the database."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

        if self._db:
            await self._db.disconnect()

        self._running = False
        if self._stop_event:
            self._stop_event.set()
        logger.info("Kandle stopped")

    async def run(self) -> None:
        """Start, then block until SIGINT/SIGTERM, then stop."""
        self._stop_event = asyncio.Event()
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup OS signal handlers for graceful shutdown."""
        # add_signal_handler is not supported on Windows
        if sys.platform == "win32":
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown_signal)

    def _handle_shutdown_signal(self) -> None:
        logger.warning("Received shutdown signal")
        if self._stop_event:
            self._stop_event.set()

    async def ingest(self, raw: RawTick | Tick) -> IngestResult:
        """Ingest one tick through the pipeline."""
        return await self.pipeline.ingest(raw)

    async def reload_timeframes(self) -> None:
        """Re-read timeframe configuration from the store."""
        await self.registry.refresh(self.repository)

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()
