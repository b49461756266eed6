"""Error kinds raised inside the pricing pipeline.

Upstream, exhaustion and storage errors never reach an HTTP caller; each has
a recovery point that turns it into a degraded but valid result. Bad caller
input (unknown market, invalid numbers) becomes a 400 at the HTTP layer.
"""


class MetalRatesError(Exception):
    """Base class for pipeline errors."""


class UpstreamUnavailable(MetalRatesError):
    """A single provider failed, timed out, or returned an unusable payload."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {reason}")


class AllStrategiesExhausted(MetalRatesError):
    """Every resolution strategy came back empty."""

    def __init__(self, attempted: list[str]):
        self.attempted = attempted
        super().__init__(f"No strategy produced a price (tried: {', '.join(attempted) or 'none'})")


class InvalidInput(MetalRatesError):
    """Non-numeric or out-of-range calculator input.

    Calculators return a CannotCompute value instead of raising this; it exists
    so callers that need an exception can convert one.
    """

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class StorageUnavailable(MetalRatesError):
    """Local persistence could not be read or written."""


class UnknownMarket(MetalRatesError, LookupError):
    """A market key with no configured currency or formula."""
