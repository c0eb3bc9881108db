"""Read side: historical ranges, latest snapshots, summaries and profiles."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TypeVar

from kandle.errors import InstrumentNotFoundError, TimeframeNotFoundError
from kandle.market.clock import ensure_utc
from kandle.market.timeframes import TimeframeRegistry
from kandle.market.types import Candle, Instrument, TimeframeConfig
from kandle.persistence.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ONE_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class CandlePage:
    """A bounded slice of a candle range plus its total size."""

    symbol: str
    timeframe: str
    candles: list[Candle]
    total_count: int

    @property
    def has_more(self) -> bool:
        return self.total_count > len(self.candles)


@dataclass(frozen=True)
class PriceChange:
    """Change summary taken from a candle's stored derived fields."""

    change: Decimal
    change_percent: Decimal
    open: Decimal
    close: Decimal


@dataclass(frozen=True)
class VolumeLevel:
    """Traded volume at one price level."""

    price_level: Decimal
    volume: int
    is_point_of_control: bool


@dataclass(frozen=True)
class InstrumentStats:
    """Tick and candle counts for an instrument."""

    symbol: str
    total_ticks: int
    total_candles_by_timeframe: dict[str, int]
    last_update: datetime | None


class CandleQueryService:
    """
    Read-only queries against persisted ticks and candles.

    Every query accepts a timeout in seconds. Single queries raise
    asyncio.TimeoutError when it expires; multi-timeframe queries degrade
    the slow timeframe to an empty result instead.
    """

    def __init__(
        self,
        repository: Repository,
        registry: TimeframeRegistry,
        default_limit: int = 100,
        timeout: float | None = None,
        volume_profile_step: Decimal = Decimal("0.05"),
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._default_limit = default_limit
        self._timeout = timeout
        self._volume_profile_step = volume_profile_step

    async def _run(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        effective = timeout if timeout is not None else self._timeout
        if effective is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=effective)

    async def _instrument(self, symbol: str) -> Instrument:
        instrument = await self._repo.find_instrument_by_symbol(symbol)
        if instrument is None:
            raise InstrumentNotFoundError(symbol)
        return instrument

    def _timeframe(self, name: str) -> TimeframeConfig | None:
        try:
            return self._registry.by_name(name)
        except TimeframeNotFoundError as e:
            logger.warning("Skipping query: %s", e)
            return None

    # --- Ranges ---

    async def historical_range(
        self,
        symbol: str,
        timeframe: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[Candle]:
        """
        Get candles for one timeframe, newest first.

        Args:
            symbol: Instrument symbol
            timeframe: Timeframe name
            start: Earliest bucket start to include
            end: Latest bucket start to include
            limit: Maximum candles returned (default from configuration)
            timeout: Seconds before giving up

        Raises:
            InstrumentNotFoundError: If the symbol is unknown
        """
        page = await self.historical_page(symbol, timeframe, start, end, limit, timeout)
        return page.candles

    async def historical_page(
        self,
        symbol: str,
        timeframe: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> CandlePage:
        """Like historical_range, with the total count for pagination."""
        return await self._run(
            self._historical_page(symbol, timeframe, start, end, limit), timeout
        )

    async def _historical_page(
        self,
        symbol: str,
        timeframe_name: str,
        start: datetime | None,
        end: datetime | None,
        limit: int | None,
    ) -> CandlePage:
        instrument = await self._instrument(symbol)
        timeframe = self._timeframe(timeframe_name)
        if timeframe is None:
            return CandlePage(symbol=symbol, timeframe=timeframe_name, candles=[], total_count=0)

        candles = await self._repo.find_candles(
            instrument.id,
            timeframe.id,
            start=start,
            end=end,
            limit=self._default_limit if limit is None else limit,
        )
        total = await self._repo.count_candles(instrument.id, timeframe.id, start=start, end=end)
        return CandlePage(
            symbol=symbol,
            timeframe=timeframe_name,
            candles=candles,
            total_count=total,
        )

    async def multi_timeframe_range(
        self,
        symbol: str,
        timeframes: Iterable[str],
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> dict[str, list[Candle]]:
        """
        Get candles for several timeframes at once.

        Each timeframe is queried independently; one that fails or times out
        maps to an empty list without affecting the others.

        Raises:
            InstrumentNotFoundError: If the symbol is unknown
        """
        await self._instrument(symbol)

        names = list(dict.fromkeys(timeframes))
        results = await asyncio.gather(
            *(
                self.historical_range(symbol, name, start, end, limit, timeout)
                for name in names
            ),
            return_exceptions=True,
        )

        combined: dict[str, list[Candle]] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error("Failed to load %s candles for %s: %r", name, symbol, result)
                combined[name] = []
            else:
                combined[name] = result
        return combined

    # --- Snapshots ---

    async def latest_per_timeframe(
        self,
        symbol: str,
        timeout: float | None = None,
    ) -> dict[str, Candle | None]:
        """Get the latest candle of every active timeframe."""
        instrument = await self._run(self._instrument(symbol), timeout)

        latest: dict[str, Candle | None] = {}
        for timeframe in self._registry.list_active():
            try:
                latest[timeframe.name] = await self._run(
                    self._repo.find_latest_candle(instrument.id, timeframe.id), timeout
                )
            except Exception as e:
                logger.error(
                    "Failed to load latest %s candle for %s: %r", timeframe.name, symbol, e
                )
                latest[timeframe.name] = None
        return latest

    async def price_change(
        self,
        symbol: str,
        timeframe: str = "1day",
        timeout: float | None = None,
    ) -> PriceChange | None:
        """Get the change of the latest candle, or None if there is none."""
        return await self._run(self._price_change(symbol, timeframe), timeout)

    async def _price_change(self, symbol: str, timeframe_name: str) -> PriceChange | None:
        instrument = await self._instrument(symbol)
        timeframe = self._timeframe(timeframe_name)
        if timeframe is None:
            return None

        stored = await self._repo.find_latest_price_change(instrument.id, timeframe.id)
        if stored is None:
            return None

        return PriceChange(
            change=stored["price_change"],
            change_percent=stored["price_change_percent"],
            open=stored["open"],
            close=stored["close"],
        )

    async def current_price(
        self,
        symbol: str,
        timeout: float | None = None,
    ) -> Decimal | None:
        """Get the price of the latest stored tick."""
        return await self._run(self._current_price(symbol), timeout)

    async def _current_price(self, symbol: str) -> Decimal | None:
        instrument = await self._instrument(symbol)
        tick = await self._repo.find_latest_tick(instrument.id)
        return tick.price if tick else None

    # --- Profiles and statistics ---

    async def volume_profile(
        self,
        symbol: str,
        timeframe: str,
        day: date | datetime,
        price_step: Decimal | None = None,
        timeout: float | None = None,
    ) -> list[VolumeLevel]:
        """
        Bucket one UTC day's traded volume by price level.

        Each candle of the timeframe that opens within the day contributes
        its volume at its typical price, rounded to the nearest multiple of
        price_step (default: the instrument's tick size, else the configured
        step). Levels are returned lowest price first; every level holding
        the maximum volume is a point of control.
        """
        return await self._run(
            self._volume_profile(symbol, timeframe, day, price_step), timeout
        )

    async def _volume_profile(
        self,
        symbol: str,
        timeframe_name: str,
        day: date | datetime,
        price_step: Decimal | None,
    ) -> list[VolumeLevel]:
        instrument = await self._instrument(symbol)
        timeframe = self._timeframe(timeframe_name)
        if timeframe is None:
            return []

        if isinstance(day, datetime):
            day = ensure_utc(day).date()
        day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1) - _ONE_MS

        candles = await self._repo.find_candles(
            instrument.id, timeframe.id, start=day_start, end=day_end, limit=None
        )
        if not candles:
            return []

        step = price_step or instrument.tick_size or self._volume_profile_step
        if step <= 0:
            raise ValueError(f"Price step must be positive, got {step}")

        volume_by_level: dict[Decimal, int] = defaultdict(int)
        for candle in candles:
            level = (candle.typical_price / step).to_integral_value(ROUND_HALF_UP) * step
            volume_by_level[level] += candle.volume

        max_volume = max(volume_by_level.values())
        return [
            VolumeLevel(
                price_level=level,
                volume=volume,
                is_point_of_control=volume == max_volume,
            )
            for level, volume in sorted(volume_by_level.items())
        ]

    async def instrument_stats(
        self,
        symbol: str,
        timeout: float | None = None,
    ) -> InstrumentStats:
        """Get tick count, candle count per active timeframe and last tick time."""
        return await self._run(self._instrument_stats(symbol), timeout)

    async def _instrument_stats(self, symbol: str) -> InstrumentStats:
        instrument = await self._instrument(symbol)
        total_ticks = await self._repo.count_ticks(instrument.id)

        totals: dict[str, int] = {}
        for timeframe in self._registry.list_active():
            totals[timeframe.name] = await self._repo.count_candles(instrument.id, timeframe.id)

        last_tick = await self._repo.find_latest_tick(instrument.id)
        return InstrumentStats(
            symbol=symbol,
            total_ticks=total_ticks,
            total_candles_by_timeframe=totals,
            last_update=last_tick.timestamp if last_tick else None,
        )

    def available_timeframes(self) -> list[TimeframeConfig]:
        """Get active timeframes, shortest interval first."""
        return self._registry.list_active()
