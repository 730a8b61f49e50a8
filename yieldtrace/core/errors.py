"""
Exception taxonomy for the attribution core.

Missing inputs exclude a single position; upstream failures and timeouts
abort the query and are surfaced to the HTTP layer.
"""


class YieldTraceError(Exception):
    """Base class for all YieldTrace errors."""


class PriceUnavailableError(YieldTraceError):
    """No usable (> 0) price could be resolved. The position must be skipped."""

    def __init__(self, asset_address: str, date=None):
        self.asset_address = asset_address
        self.date = date
        where = f" on {date}" if date else ""
        super().__init__(f"No usable price for {asset_address}{where}")


class DataSourceError(YieldTraceError):
    """A backing store could not be read. Retryable by the caller."""

    retryable = True


class QueryTimeoutError(YieldTraceError):
    """The query did not finish inside its time budget."""


class InvariantViolationError(YieldTraceError):
    """Inputs reached the decomposer in a state that should be impossible."""


class InvalidQueryError(YieldTraceError):
    """Query parameters failed validation at the boundary."""
