"""Normalized error types for the candle engine."""


class KandleError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(KandleError):
    """Administrative configuration is missing or invalid."""

    pass


class TimeframeNotFoundError(ConfigurationError):
    """Timeframe name is not configured."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Timeframe '{name}' not found", code="TIMEFRAME_NOT_FOUND")
        self.name = name


class TickValidationError(KandleError, ValueError):
    """Raw tick is malformed and was rejected before persistence."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code="INVALID_TICK")
        self.field = field


class PersistenceError(KandleError):
    """Store unavailable or write failed."""

    pass


class CandleConsistencyError(KandleError):
    """An update would break an existing candle's invariants."""

    def __init__(
        self,
        message: str,
        instrument_id: int | None = None,
        timeframe: str | None = None,
    ) -> None:
        super().__init__(message, code="CANDLE_CONSISTENCY")
        self.instrument_id = instrument_id
        self.timeframe = timeframe


class InstrumentNotFoundError(KandleError):
    """Symbol has never been ingested."""

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Instrument '{symbol}' not found", code="INSTRUMENT_NOT_FOUND")
        self.symbol = symbol
