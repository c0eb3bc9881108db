"""Tick ingestion: persist the tick, then fan it out to every active timeframe."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

import aiosqlite

from kandle.errors import CandleConsistencyError, PersistenceError
from kandle.market.candle import AggregationOutcome, CandleAggregator
from kandle.market.timeframes import TimeframeRegistry
from kandle.market.types import (
    Instrument,
    InstrumentSpec,
    Tick,
    parse_instrument_spec,
    parse_tick,
)
from kandle.monitor.logger import get_ingest_logger
from kandle.persistence.repository import Repository

logger = logging.getLogger(__name__)
ingest_logger = get_ingest_logger()

RawTick = Mapping[str, Any]


@dataclass
class IngestResult:
    """Outcome of ingesting one tick.

    The tick itself was persisted; individual timeframes may still have
    failed, which makes the result partial rather than unsuccessful.
    """

    symbol: str
    instrument_id: int
    timestamp: datetime
    outcomes: list[AggregationOutcome] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def updated(self) -> list[str]:
        """Timeframes whose candle was created or updated."""
        return [outcome.timeframe for outcome in self.outcomes]

    @property
    def total(self) -> int:
        return len(self.outcomes) + len(self.failed)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)

    @property
    def summary(self) -> str:
        return f"{len(self.outcomes)} of {self.total} timeframes updated"


class TickIngestionPipeline:
    """
    Sequential per-instrument entry point for raw ticks.

    Ticks for the same symbol are serialized behind a per-symbol lock so the
    aggregator sees them in arrival order; different symbols run concurrently.
    """

    def __init__(
        self,
        repository: Repository,
        registry: TimeframeRegistry,
        aggregator: CandleAggregator,
        default_exchange: str = "NSE",
        default_instrument_type: str = "EQ",
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._aggregator = aggregator
        self._default_exchange = default_exchange
        self._default_instrument_type = default_instrument_type

        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._instruments: dict[str, Instrument] = {}

    @property
    def registry(self) -> TimeframeRegistry:
        return self._registry

    async def ingest(self, raw: RawTick | Tick) -> IngestResult:
        """
        Ingest one tick.

        Args:
            raw: Feed payload (validated here) or an already-parsed Tick

        Returns:
            Per-timeframe outcome; failed timeframes are listed, not raised

        Raises:
            TickValidationError: If the payload is malformed
            PersistenceError: If the instrument or tick could not be stored
        """
        if isinstance(raw, Tick):
            tick = raw
            spec = InstrumentSpec(
                symbol=tick.symbol,
                exchange=self._default_exchange,
                instrument_type=self._default_instrument_type,
            )
        else:
            tick = parse_tick(raw)
            spec = parse_instrument_spec(
                raw, self._default_exchange, self._default_instrument_type
            )

        async with self._locks[tick.symbol]:
            return await self._ingest_in_order(tick, spec)

    async def ingest_many(self, raws: Iterable[RawTick | Tick]) -> list[IngestResult]:
        """Ingest ticks one after another, in the given order."""
        return [await self.ingest(raw) for raw in raws]

    async def _ingest_in_order(self, tick: Tick, spec: InstrumentSpec) -> IngestResult:
        try:
            instrument = await self._resolve_instrument(spec)
            await self._repo.insert_tick(instrument.id, tick)
        except (aiosqlite.Error, OverflowError) as e:
            logger.error("Failed to persist tick for %s: %s", tick.symbol, e)
            raise PersistenceError(f"Failed to persist tick for {tick.symbol}: {e}") from e

        tick = replace(tick, instrument_id=instrument.id)
        result = IngestResult(
            symbol=tick.symbol,
            instrument_id=instrument.id,
            timestamp=tick.timestamp,
        )

        for timeframe in self._registry.list_active():
            try:
                outcome = await self._aggregator.apply(instrument.id, timeframe, tick)
            except CandleConsistencyError as e:
                logger.error(
                    "Internal consistency error aggregating %s to %s: %s",
                    tick.symbol,
                    timeframe.name,
                    e,
                )
                result.failed[timeframe.name] = str(e)
            except Exception as e:
                logger.exception(
                    "Failed to aggregate %s to %s", tick.symbol, timeframe.name
                )
                result.failed[timeframe.name] = str(e) or type(e).__name__
            else:
                result.outcomes.append(outcome)

        ingest_logger.info(
            "Tick ingested",
            extra={
                "symbol": tick.symbol,
                "price": str(tick.price),
                "volume": tick.volume,
                "updated": result.updated,
                "failed": sorted(result.failed),
            },
        )

        if result.failed:
            logger.warning("Partial aggregation for %s: %s", tick.symbol, result.summary)
        else:
            logger.debug(
                "Processed tick for %s across %d timeframes", tick.symbol, result.total
            )

        return result

    async def _resolve_instrument(self, spec: InstrumentSpec) -> Instrument:
        """Find or create the instrument, backfilling missing metadata."""
        instrument = self._instruments.get(spec.symbol)
        if instrument is None:
            instrument = await self._repo.find_instrument_by_symbol(spec.symbol)
        if instrument is None:
            instrument = await self._repo.create_instrument(spec)

        needs_backfill = (spec.lot_size is not None and instrument.lot_size is None) or (
            spec.tick_size is not None and instrument.tick_size is None
        )
        if needs_backfill:
            await self._repo.update_instrument_metadata(
                instrument.id, lot_size=spec.lot_size, tick_size=spec.tick_size
            )
            instrument = await self._repo.find_instrument_by_symbol(spec.symbol)
            logger.info("Backfilled metadata for %s", spec.symbol)

        self._instruments[spec.symbol] = instrument
        return instrument
