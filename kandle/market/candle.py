"""Candle aggregation from ticks."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Literal

from kandle.errors import CandleConsistencyError
from kandle.market.clock import Bucket, get_bucket
from kandle.market.types import Candle, Tick, TimeframeConfig
from kandle.monitor.logger import get_ingest_logger

if TYPE_CHECKING:
    from kandle.persistence.repository import Repository

logger = logging.getLogger(__name__)
ingest_logger = get_ingest_logger()

UpdatePolicy = Literal["single_tick", "reaggregate"]
AggregationAction = Literal["created", "updated"]


@dataclass(frozen=True)
class AggregationOutcome:
    """What apply() did to a bucket."""

    timeframe: str
    action: AggregationAction
    candle: Candle

    @property
    def open_time(self) -> datetime:
        return self.candle.open_time


class CandleAggregator:
    """
    Folds ticks into persisted candles, one timeframe at a time.

    A tick lands in the bucket computed from its own timestamp, so late ticks
    update whichever past bucket they belong to. Creation seeds the candle
    from every stored tick in the bucket; later ticks take the update path.

    Ticks older than the tick retention window may already be swept, so a
    bucket that starts before that window is never rebuilt from stored ticks.
    """

    def __init__(
        self,
        repository: "Repository",
        update_policy: UpdatePolicy = "single_tick",
        tick_retention: timedelta | None = None,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            repository: Store holding ticks and candles
            update_policy: single_tick folds only the arriving tick into an
                open candle (ticks must arrive in order per instrument);
                reaggregate rebuilds the candle from every stored tick
            tick_retention: How long stored ticks are kept; None keeps them
                forever
        """
        self._repo = repository
        self._update_policy = update_policy
        self._tick_retention = tick_retention

    @property
    def update_policy(self) -> UpdatePolicy:
        return self._update_policy

    async def apply(
        self,
        instrument_id: int,
        timeframe: TimeframeConfig,
        tick: Tick,
    ) -> AggregationOutcome:
        """
        Apply a tick to its bucket for one timeframe.

        The tick is expected to be persisted already, so seeding and
        re-aggregation see it among the stored ticks.

        Raises:
            CandleConsistencyError: If a single-tick update would fold a tick
                into a candle it does not belong to, or out of order
        """
        if timeframe.id is None:
            raise ValueError(f"Timeframe {timeframe.name} has not been persisted")

        bucket = get_bucket(tick.timestamp, timeframe.interval_ms)
        existing = await self._repo.find_candle(instrument_id, timeframe.id, bucket.start)

        if existing is None:
            candle = await self._seed(instrument_id, timeframe, bucket, tick)
            if await self._repo.insert_candle(candle):
                logger.debug(
                    "New candle started: %d %s at %s",
                    instrument_id,
                    timeframe.name,
                    bucket.start,
                )
                return self._outcome(timeframe, "created", candle)

            # Another writer created the bucket between our read and insert.
            # Its seed may or may not include this tick, so rebuild from the
            # stored ticks instead of folding the tick in a second time.
            logger.info(
                "Lost candle creation race for %d %s at %s, updating instead",
                instrument_id,
                timeframe.name,
                bucket.start,
            )
            candle = await self._reaggregate(instrument_id, timeframe, bucket, tick)
            return self._outcome(timeframe, "updated", candle)

        if self._update_policy == "reaggregate" and self._ticks_complete(bucket):
            candle = await self._reaggregate(instrument_id, timeframe, bucket, tick)
        else:
            self._check_fold(existing, bucket, tick)
            existing.update_with_tick(tick)
            candle = await self._repo.upsert_candle(existing)

        return self._outcome(timeframe, "updated", candle)

    async def backfill(
        self,
        instrument_id: int,
        timeframe: TimeframeConfig,
        start: datetime,
        end: datetime,
    ) -> list[Candle]:
        """
        Materialize every bucket touching [start, end] from stored ticks.

        Buckets are widened to their full extent so partially covered edges
        still produce complete candles. An existing candle whose bucket
        starts before the tick retention window is kept as stored.

        Returns:
            The written candles, oldest first
        """
        if timeframe.id is None:
            raise ValueError(f"Timeframe {timeframe.name} has not been persisted")

        first = get_bucket(start, timeframe.interval_ms)
        last = get_bucket(end, timeframe.interval_ms)
        ticks = await self._repo.find_ticks_in_range(instrument_id, first.start, last.end)

        grouped: dict[datetime, list[Tick]] = defaultdict(list)
        for tick in ticks:
            grouped[get_bucket(tick.timestamp, timeframe.interval_ms).start].append(tick)

        candles: list[Candle] = []
        for open_time in sorted(grouped):
            if not self._ticks_complete(get_bucket(open_time, timeframe.interval_ms)):
                if await self._repo.find_candle(instrument_id, timeframe.id, open_time):
                    logger.warning(
                        "Keeping %s candle at %s, its ticks may have been swept",
                        timeframe.name,
                        open_time,
                    )
                    continue
            candle = Candle.from_ticks(grouped[open_time], instrument_id, timeframe, open_time)
            candles.append(await self._repo.upsert_candle(candle))

        logger.info(
            "Aggregated %d ticks into %d candles for %s",
            len(ticks),
            len(candles),
            timeframe.name,
        )
        return candles

    async def _seed(
        self,
        instrument_id: int,
        timeframe: TimeframeConfig,
        bucket: Bucket,
        tick: Tick,
    ) -> Candle:
        ticks = await self._repo.find_ticks_in_range(instrument_id, bucket.start, bucket.end)
        if not ticks:
            ticks = [tick]
        return Candle.from_ticks(ticks, instrument_id, timeframe, bucket.start)

    async def _reaggregate(
        self,
        instrument_id: int,
        timeframe: TimeframeConfig,
        bucket: Bucket,
        tick: Tick,
    ) -> Candle:
        candle = await self._seed(instrument_id, timeframe, bucket, tick)
        return await self._repo.upsert_candle(candle)

    def _ticks_complete(self, bucket: Bucket) -> bool:
        if self._tick_retention is None:
            return True
        return bucket.start >= datetime.now(timezone.utc) - self._tick_retention

    def _check_fold(self, candle: Candle, bucket: Bucket, tick: Tick) -> None:
        if candle.open_time != bucket.start or not bucket.contains(tick.timestamp):
            raise CandleConsistencyError(
                f"Tick at {tick.timestamp} does not belong to {candle.timeframe} "
                f"candle opened at {candle.open_time}",
                instrument_id=candle.instrument_id,
                timeframe=candle.timeframe,
            )
        if candle.last_tick_at is not None and tick.timestamp < candle.last_tick_at:
            raise CandleConsistencyError(
                f"Out-of-order tick at {tick.timestamp} for {candle.timeframe} candle "
                f"last updated at {candle.last_tick_at}",
                instrument_id=candle.instrument_id,
                timeframe=candle.timeframe,
            )

    def _outcome(
        self,
        timeframe: TimeframeConfig,
        action: AggregationAction,
        candle: Candle,
    ) -> AggregationOutcome:
        ingest_logger.debug(
            "Candle %s",
            action,
            extra={
                "timeframe": timeframe.name,
                "bucket": candle.open_time.isoformat(),
                "action": action,
                "price": str(candle.close),
                "volume": candle.volume,
            },
        )
        return AggregationOutcome(timeframe=timeframe.name, action=action, candle=candle)
