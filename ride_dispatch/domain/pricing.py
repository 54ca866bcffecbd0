"""
Fare Quotation  (Tariff Table)
==============================

Formula
-------
Price = ceil((Base_Fare + Distance x Rate_Per_KM) / Rounding) x Rounding,
floored at ``Minimum_Fare``.

* **Rounding** = 50 (fares are paid in notes of 50)
* **Minimum_Fare** = 500

The tariff table lives in ``app_settings['ride_prices']`` and is re-read on
every request, so an admin edit takes effect on the next quote.  When the
row is absent the built-in defaults apply.

Arithmetic is done in ``Decimal`` so that the same inputs always produce
the same fare, which keeps quotes reproducible for disputes.

Complexity: O(1) per quote.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal
from typing import Any, Mapping, Optional

from .enums import RideType
from .errors import ValidationFailed

DEFAULT_ROUNDING = Decimal("50")
DEFAULT_MINIMUM_FARE = Decimal("500")

# Flat layout stored by older deployments: ride type -> (base key, rate key)
LEGACY_KEYS: dict[RideType, tuple[str, str]] = {
    RideType.STANDARD: ("base_price", "km_rate"),
    RideType.MOTORCYCLE: ("moto_base", "moto_km_rate"),
    RideType.DELIVERY: ("delivery_base", "delivery_km_rate"),
}


def _dec(value: Any) -> Decimal:
    # str() first so binary float noise never leaks into the fare
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ── Tariffs ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Tariff:
    base: Decimal
    per_km: Decimal

    def raw_price(self, distance_km: Decimal) -> Decimal:
        return self.base + distance_km * self.per_km


DEFAULT_TARIFFS: dict[RideType, Tariff] = {
    RideType.STANDARD: Tariff(Decimal("600"), Decimal("300")),
    RideType.MOTORCYCLE: Tariff(Decimal("400"), Decimal("180")),
    RideType.DELIVERY: Tariff(Decimal("1000"), Decimal("450")),
}


@dataclass(frozen=True)
class TariffTable:
    tariffs: Mapping[RideType, Tariff] = field(
        default_factory=lambda: dict(DEFAULT_TARIFFS)
    )
    rounding: Decimal = DEFAULT_ROUNDING
    minimum_fare: Decimal = DEFAULT_MINIMUM_FARE

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "TariffTable":
        """
        Build a table from the stored JSON value.

        Two layouts are understood::

            {"tariffs": {"standard": {"base": 600, "per_km": 300}, ...},
             "rounding": 50, "minimum_fare": 500}

            {"base_price": 600, "km_rate": 300, "moto_base": 400, ...}

        Ride types missing from *raw* keep their default tariff.
        """
        if not raw:
            return cls()

        tariffs = dict(DEFAULT_TARIFFS)
        try:
            if "tariffs" in raw:
                for name, entry in raw["tariffs"].items():
                    tariffs[RideType(name)] = Tariff(
                        _dec(entry["base"]), _dec(entry["per_km"])
                    )
            else:
                for ride_type, (base_key, rate_key) in LEGACY_KEYS.items():
                    if base_key in raw and rate_key in raw:
                        tariffs[ride_type] = Tariff(
                            _dec(raw[base_key]), _dec(raw[rate_key])
                        )
            rounding = _dec(raw.get("rounding", DEFAULT_ROUNDING))
            minimum = _dec(raw.get("minimum_fare", DEFAULT_MINIMUM_FARE))
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ValidationFailed(f"Malformed tariff table: {exc}") from exc

        if rounding <= 0 or minimum < 0:
            raise ValidationFailed("Rounding must be positive and minimum fare >= 0")
        for tariff in tariffs.values():
            if tariff.base < 0 or tariff.per_km < 0:
                raise ValidationFailed("Tariff values must be >= 0")

        return cls(tariffs=tariffs, rounding=rounding, minimum_fare=minimum)

    def tariff_for(self, ride_type: RideType) -> Tariff:
        return self.tariffs.get(RideType(ride_type), DEFAULT_TARIFFS[RideType.STANDARD])

    def to_dict(self) -> dict:
        return {
            "tariffs": {
                rt.value: {"base": float(t.base), "per_km": float(t.per_km)}
                for rt, t in self.tariffs.items()
            },
            "rounding": float(self.rounding),
            "minimum_fare": float(self.minimum_fare),
        }


# ── Quotation ─────────────────────────────────────────────────────────


def quote(
    ride_type: RideType,
    distance_km: float,
    table: Optional[TariffTable] = None,
) -> int:
    """Return the fare for a trip of *distance_km* of the given type."""
    table = table or TariffTable()
    distance = _dec(distance_km)
    if not distance.is_finite() or distance < 0:
        raise ValidationFailed("Distance must be a non-negative number")

    raw = table.tariff_for(ride_type).raw_price(distance)
    steps = (raw / table.rounding).to_integral_value(rounding=ROUND_CEILING)
    price = max(steps * table.rounding, table.minimum_fare)
    return int(price)


def settle_fare(
    initial_price: float,
    agreed_price: float,
    corrected_quote: Optional[float] = None,
) -> float:
    """
    Price charged at completion.

    The agreed price (initial, or the last accepted counter-offer) is
    shifted by the difference between the re-quoted fare for the actual
    distance and the original quote.  Never negative.
    """
    agreed = _dec(agreed_price)
    if corrected_quote is not None:
        agreed += _dec(corrected_quote) - _dec(initial_price)
    return float(max(agreed, Decimal("0")))
