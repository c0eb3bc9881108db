"""Periodic deletion of stale ticks and candles."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from kandle.market.clock import ensure_utc
from kandle.persistence.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """How long raw ticks and candles are kept.

    Only timeframes listed in candle_timeframes are pruned; candles of every
    other timeframe are kept indefinitely.
    """

    tick_retention: timedelta = timedelta(days=7)
    candle_retention: timedelta = timedelta(days=90)
    candle_timeframes: tuple[str, ...] = ("1day",)


@dataclass
class SweepResult:
    """Counts of rows removed by one sweep."""

    ticks_deleted: int = 0
    candles_deleted: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class RetentionSweeper:
    """Deletes data older than the retention windows.

    Deleting only rows strictly older than a cutoff makes sweeps idempotent
    and safe to run alongside ingestion.
    """

    def __init__(
        self,
        repository: Repository,
        policy: RetentionPolicy | None = None,
        interval: timedelta = timedelta(hours=1),
    ) -> None:
        self._repo = repository
        self._policy = policy or RetentionPolicy()
        self._interval = interval

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Run one retention pass.

        Failures are logged and recorded on the result; the next scheduled
        sweep retries them.
        """
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        result = SweepResult()

        tick_cutoff = now - self._policy.tick_retention
        try:
            result.ticks_deleted = await self._repo.delete_ticks_older_than(tick_cutoff)
        except Exception as e:
            logger.error("Failed to clean up ticks older than %s: %s", tick_cutoff, e)
            result.errors.append(f"ticks: {e}")

        candle_cutoff = now - self._policy.candle_retention
        for name in self._policy.candle_timeframes:
            try:
                timeframe = await self._repo.find_timeframe_by_name(name)
                if timeframe is None:
                    logger.warning("Retention timeframe %s not configured, skipping", name)
                    continue
                result.candles_deleted[name] = await self._repo.delete_candles_older_than(
                    timeframe.id, candle_cutoff
                )
            except Exception as e:
                logger.error("Failed to clean up %s candles: %s", name, e)
                result.errors.append(f"{name}: {e}")

        logger.info(
            "Retention sweep completed: %d ticks, %d candles deleted",
            result.ticks_deleted,
            sum(result.candles_deleted.values()),
        )
        return result

    async def run_forever(self) -> None:
        """Sweep on a fixed interval until cancelled."""
        logger.info("Retention sweeper started (every %s)", self._interval)
        try:
            while True:
                await self.sweep()
                await asyncio.sleep(self._interval.total_seconds())
        except asyncio.CancelledError:
            logger.info("Retention sweeper cancelled")
            raise
