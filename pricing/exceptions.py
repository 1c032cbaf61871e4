class PricingError(Exception):
    """Base class for errors raised by the pricing core."""


class NotFound(PricingError):
    """A train, bogie, composition membership, route distance or fare range is missing."""


class RangeConflict(PricingError):
    """A new or updated fare range overlaps an existing one in the same scope."""

    def __init__(self, message: str, conflicting=None):
        super().__init__(message)
        self.conflicting = conflicting


class MissingConfiguration(PricingError):
    """No applicable fare configuration for a component (raised only by the strict policy)."""

    def __init__(self, component: str, message: str):
        super().__init__(message)
        self.component = component
