"""Timeframe registry.

The registry is an explicit object owned by whoever builds the pipeline, so
independent pipelines (per test, per tenant) never share timeframe state.
"""

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from kandle.errors import TimeframeNotFoundError
from kandle.market.types import TimeframeConfig

if TYPE_CHECKING:
    from kandle.config import TimeframeSeed
    from kandle.persistence.repository import Repository

logger = logging.getLogger(__name__)


def _sort_key(timeframe: TimeframeConfig) -> tuple[float, str]:
    return (timeframe.interval_minutes, timeframe.name)


class TimeframeRegistry:
    """Holds configured timeframes and answers lookups by name."""

    def __init__(self, timeframes: Iterable[TimeframeConfig] = ()) -> None:
        self._timeframes: dict[str, TimeframeConfig] = {}
        self._replace(timeframes)

    def _replace(self, timeframes: Iterable[TimeframeConfig]) -> None:
        ordered = sorted(timeframes, key=_sort_key)
        self._timeframes = {tf.name: tf for tf in ordered}

    @classmethod
    async def load(cls, repository: "Repository") -> "TimeframeRegistry":
        """Build a registry from the timeframes stored in the repository."""
        registry = cls()
        await registry.refresh(repository)
        return registry

    async def refresh(self, repository: "Repository") -> None:
        """Reload every timeframe from the repository."""
        self._replace(await repository.list_timeframes())
        logger.info(
            "Timeframes loaded: %s",
            ", ".join(tf.name for tf in self.list_active()) or "(none active)",
        )

    def list_active(self) -> list[TimeframeConfig]:
        """Active timeframes, shortest interval first."""
        return [tf for tf in self._timeframes.values() if tf.is_active]

    def list_all(self) -> list[TimeframeConfig]:
        """All timeframes, shortest interval first."""
        return list(self._timeframes.values())

    def get(self, name: str) -> TimeframeConfig | None:
        """Get a timeframe by name, or None."""
        return self._timeframes.get(name)

    def by_name(self, name: str) -> TimeframeConfig:
        """
        Get a timeframe by name.

        Raises:
            TimeframeNotFoundError: If the name is not configured
        """
        timeframe = self._timeframes.get(name)
        if timeframe is None:
            raise TimeframeNotFoundError(name)
        return timeframe

    def __contains__(self, name: object) -> bool:
        return name in self._timeframes

    def __len__(self) -> int:
        return len(self._timeframes)


async def seed_timeframes(
    repository: "Repository",
    seeds: Iterable["TimeframeSeed"],
) -> list[TimeframeConfig]:
    """Create any configured timeframes missing from the store."""
    created = []
    for seed in seeds:
        timeframe = await repository.ensure_timeframe(
            TimeframeConfig(
                name=seed.name,
                interval_minutes=seed.interval_minutes,
                description=seed.description,
                is_active=seed.is_active,
            )
        )
        created.append(timeframe)
    logger.debug("Seeded %d timeframes", len(created))
    return created
