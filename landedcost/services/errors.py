"""Pricing error taxonomy.

Only ``InvalidDimensions``, ``NoDefaultMultiplierConfigured`` and
``NoRatesAvailable`` ever reach the caller of the engine. Everything else is
caught at the component that raised it and turned into a tagged fallback.
"""


class PricingError(Exception):
    """Base class for all engine errors."""

    code = "pricing_error"


class InvalidDimensions(PricingError, ValueError):
    """Package dimensions or weight are non-positive or non-finite."""

    code = "invalid_dimensions"


class NoDefaultMultiplierConfigured(PricingError):
    """The global default multiplier tier is missing (configuration defect)."""

    code = "no_default_multiplier"


class NoRatesAvailable(PricingError):
    """Every carrier provider failed or returned nothing usable."""

    code = "no_rates_available"


class InsuranceRangeOverlap(PricingError, ValueError):
    """An insurance range would overlap an existing one."""

    code = "insurance_range_overlap"


class PolicyStoreError(PricingError):
    """A policy table could not be read."""

    code = "policy_store_error"


class ProviderError(PricingError):
    """An external carrier, currency or duty source failed."""

    code = "provider_error"

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
