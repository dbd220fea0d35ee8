"""Billable weight from package dimensions."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from landedcost.services.errors import InvalidDimensions

VOLUMETRIC_DIVISOR = Decimal("5000")  # L*W*H (cm) / divisor = kg

Measure = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class PackageDimensions:
    """Physical package as supplied by the caller."""
    length_cm: Decimal
    width_cm: Decimal
    height_cm: Decimal
    actual_weight_kg: Decimal


@dataclass(frozen=True)
class BillableWeight:
    volumetric_weight_kg: Decimal
    actual_weight_kg: Decimal
    billable_weight_kg: Decimal

    @property
    def is_volumetric(self) -> bool:
        return self.volumetric_weight_kg > self.actual_weight_kg


def _positive(name: str, value: Measure) -> Decimal:
    if isinstance(value, bool):
        raise InvalidDimensions(f"{name} must be a number, got {value!r}")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidDimensions(f"{name} must be a number, got {value!r}")
    if not d.is_finite() or d <= 0:
        raise InvalidDimensions(f"{name} must be positive and finite, got {value!r}")
    return d


def package_dimensions(
    length: Measure,
    width: Measure,
    height: Measure,
    actual_weight: Measure,
) -> PackageDimensions:
    """Validate raw inputs into a PackageDimensions."""
    return PackageDimensions(
        length_cm=_positive("length", length),
        width_cm=_positive("width", width),
        height_cm=_positive("height", height),
        actual_weight_kg=_positive("actual_weight", actual_weight),
    )


def normalize(
    dims: PackageDimensions,
    divisor: Decimal = VOLUMETRIC_DIVISOR,
) -> BillableWeight:
    """billable = max(actual, L*W*H / divisor)."""
    # Re-check: PackageDimensions can be built directly, bypassing package_dimensions()
    length = _positive("length", dims.length_cm)
    width = _positive("width", dims.width_cm)
    height = _positive("height", dims.height_cm)
    actual = _positive("actual_weight", dims.actual_weight_kg)

    volumetric = (length * width * height) / divisor
    return BillableWeight(
        volumetric_weight_kg=volumetric,
        actual_weight_kg=actual,
        billable_weight_kg=max(actual, volumetric),
    )
