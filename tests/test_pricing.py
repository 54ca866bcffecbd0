"""Unit tests for the fare quotation and completion settlement."""

import pytest

from ride_dispatch.domain.enums import RideType
from ride_dispatch.domain.errors import ValidationFailed
from ride_dispatch.domain.pricing import TariffTable, quote, settle_fare


class TestQuote:
    def test_standard_ten_km(self):
        # 600 + 10 * 300 = 3600, already a multiple of 50
        assert quote(RideType.STANDARD, 10) == 3600

    def test_rounds_up_to_next_fifty(self):
        assert quote(RideType.STANDARD, 1.1) == 950  # 930 -> 950

    def test_float_noise_does_not_leak(self):
        # 2.3 * 300 is 689.9999... in binary floating point
        assert quote(RideType.STANDARD, 2.3) == 1300

    def test_minimum_fare_applies(self):
        assert quote(RideType.MOTORCYCLE, 0) == 500  # 400 < minimum

    def test_each_ride_type_uses_its_tariff(self):
        assert quote(RideType.MOTORCYCLE, 10) == 2200  # 400 + 1800
        assert quote(RideType.DELIVERY, 10) == 5500  # 1000 + 4500

    def test_accepts_plain_string_type(self):
        assert quote("delivery", 2) == 1900

    def test_is_deterministic(self):
        assert {quote(RideType.STANDARD, 7.77) for _ in range(50)} == {2950}

    def test_monotonic_in_distance(self):
        prices = [quote(RideType.STANDARD, d / 4) for d in range(0, 200)]
        assert prices == sorted(prices)

    def test_always_multiple_of_rounding(self):
        for d in (0.01, 0.5, 3.33, 12.7, 45.9):
            assert quote(RideType.DELIVERY, d) % 50 == 0

    def test_negative_distance_rejected(self):
        with pytest.raises(ValidationFailed):
            quote(RideType.STANDARD, -1)

    def test_nan_distance_rejected(self):
        with pytest.raises(ValidationFailed):
            quote(RideType.STANDARD, float("nan"))


class TestTariffTable:
    def test_empty_mapping_uses_defaults(self):
        assert TariffTable.from_mapping(None) == TariffTable()
        assert TariffTable.from_mapping({}) == TariffTable()

    def test_normalized_layout(self):
        table = TariffTable.from_mapping(
            {"tariffs": {"standard": {"base": 1000, "per_km": 100}}, "rounding": 100}
        )
        assert quote(RideType.STANDARD, 10, table) == 2000
        # untouched types keep their defaults
        assert quote(RideType.MOTORCYCLE, 10, table) == 2200

    def test_legacy_flat_layout(self):
        table = TariffTable.from_mapping(
            {"base_price": 700, "km_rate": 200, "moto_base": 300, "moto_km_rate": 100}
        )
        assert quote(RideType.STANDARD, 10, table) == 2700
        assert quote(RideType.MOTORCYCLE, 10, table) == 1300

    def test_custom_minimum_fare(self):
        table = TariffTable.from_mapping({"tariffs": {}, "minimum_fare": 2000})
        assert quote(RideType.STANDARD, 1, table) == 2000

    def test_round_trip_through_dict(self):
        table = TariffTable.from_mapping(
            {"tariffs": {"delivery": {"base": 1200, "per_km": 500}}}
        )
        assert TariffTable.from_mapping(table.to_dict()) == table

    @pytest.mark.parametrize(
        "raw",
        [
            {"tariffs": {"standard": {"base": 600}}},
            {"tariffs": {"helicopter": {"base": 1, "per_km": 1}}},
            {"tariffs": {}, "rounding": 0},
            {"tariffs": {"standard": {"base": -1, "per_km": 300}}},
            {"tariffs": {"standard": {"base": "abc", "per_km": 300}}},
        ],
    )
    def test_malformed_tables_rejected(self, raw):
        with pytest.raises(ValidationFailed):
            TariffTable.from_mapping(raw)


class TestSettleFare:
    def test_no_correction_charges_agreed_price(self):
        assert settle_fare(3600, 3000) == 3000

    def test_longer_trip_shifts_agreed_price_up(self):
        # re-quote 4200 for 12 km vs 3600 quoted
        assert settle_fare(3600, 3000, 4200) == 3600

    def test_shorter_trip_shifts_agreed_price_down(self):
        assert settle_fare(3600, 3600, 2400) == 2400

    def test_never_negative(self):
        assert settle_fare(3600, 500, 500) == 0
