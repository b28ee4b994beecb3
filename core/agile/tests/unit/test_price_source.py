"""Tests for tariff rate retrieval and slot normalisation."""

from datetime import timedelta

import pytest
import requests

from core.agile.exceptions import PriceDataUnavailableError, SystemConfigurationError
from core.agile.price_source import (
    MockTariffSource,
    OctopusTariffSource,
    PriceManager,
    compare_tariffs,
    split_into_half_hour_slots,
)


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload or {}
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self.payload


class TestSplitIntoHalfHourSlots:
    def test_half_hour_rates_kept_and_sorted(self, rate_factory, base_time):
        rates = rate_factory([10, 20, 30])
        rates.reverse()

        slots = split_into_half_hour_slots(rates, base_time, base_time + timedelta(hours=2))

        assert [s.price_inc_vat for s in slots] == [10, 20, 30]
        assert [s.valid_from for s in slots] == [base_time + timedelta(minutes=30 * i) for i in range(3)]

    def test_long_block_is_split(self, base_time):
        rates = [
            {
                "valid_from": base_time.isoformat(),
                "valid_to": (base_time + timedelta(hours=2)).isoformat(),
                "value_inc_vat": 24.5,
            }
        ]

        slots = split_into_half_hour_slots(rates, base_time, base_time + timedelta(hours=6))

        assert len(slots) == 4
        assert all(s.price_inc_vat == 24.5 for s in slots)
        assert all(s.valid_to - s.valid_from == timedelta(minutes=30) for s in slots)

    def test_open_ended_block_clipped_to_period(self, base_time):
        rates = [
            {
                "valid_from": (base_time - timedelta(days=30)).isoformat(),
                "valid_to": None,
                "value_inc_vat": 27.0,
            }
        ]
        period_from = base_time + timedelta(minutes=10)

        slots = split_into_half_hour_slots(rates, period_from, base_time + timedelta(hours=3))

        assert slots[0].valid_from == base_time
        assert slots[-1].valid_to == base_time + timedelta(hours=3)
        assert len(slots) == 6

    def test_each_slot_has_unique_id(self, rate_factory, base_time):
        rates = rate_factory([10, 10]) + rate_factory([12])

        slots = split_into_half_hour_slots(rates, base_time, base_time + timedelta(hours=1))

        assert len(slots) == 3
        assert len({s.id for s in slots}) == 3


class TestPriceManager:
    def test_fresh_slots_from_current_slot(self, rate_factory, base_time):
        manager = PriceManager(MockTariffSource(rate_factory([10, 20, 30, 40])), "P", "T")

        slots = manager.get_price_slots(base_time + timedelta(minutes=45))

        assert [s.price_inc_vat for s in slots] == [20, 30, 40]
        assert manager.cache_timestamp == base_time + timedelta(minutes=45)

    def test_each_call_builds_new_slots(self, rate_factory, base_time):
        manager = PriceManager(MockTariffSource(rate_factory([10, 20])), "P", "T")

        first = manager.get_price_slots(base_time)
        second = manager.get_price_slots(base_time)

        assert {s.id for s in first}.isdisjoint({s.id for s in second})

    def test_cached_rates_used_on_failure(self, rate_factory, base_time):
        source = MockTariffSource(rate_factory([10, 20, 30]))
        manager = PriceManager(source, "P", "T")
        manager.get_price_slots(base_time)

        def failing_get_rates(*args):
            raise PriceDataUnavailableError("P")

        source.get_rates = failing_get_rates
        slots = manager.get_price_slots(base_time + timedelta(minutes=30))

        assert [s.price_inc_vat for s in slots] == [20, 30]
        assert manager.cache_timestamp == base_time

    def test_empty_result_uses_cache(self, rate_factory, base_time):
        source = MockTariffSource(rate_factory([10, 20]))
        manager = PriceManager(source, "P", "T")
        manager.get_price_slots(base_time)

        source.rates = []
        assert len(manager.get_price_slots(base_time)) == 2

    def test_no_data_at_all(self, base_time):
        manager = PriceManager(MockTariffSource([]), "P", "T")
        assert manager.get_price_slots(base_time) == []

    def test_health_check(self, rate_factory):
        checks = PriceManager(MockTariffSource(rate_factory([10]))).check_health()
        assert checks[0]["status"] == "OK"


class TestOctopusTariffSource:
    def test_pagination_followed(self, monkeypatch, rate_factory, base_time):
        pages = {
            "first": FakeResponse({"results": rate_factory([10]), "next": "second"}),
            "second": FakeResponse({"results": rate_factory([20], base_time + timedelta(minutes=30)), "next": None}),
        }
        requested = []

        def fake_get(url, params=None, timeout=None):
            requested.append((url, params))
            return pages["second" if url == "second" else "first"]

        monkeypatch.setattr(requests, "get", fake_get)
        source = OctopusTariffSource()

        rates = source.get_rates("AGILE-24-10-01", "E-1R-AGILE-24-10-01-A", base_time, base_time + timedelta(hours=1))

        assert [r["value_inc_vat"] for r in rates] == [10, 20]
        assert "AGILE-24-10-01/electricity-tariffs/E-1R-AGILE-24-10-01-A" in requested[0][0]
        assert requested[0][1]["period_from"] == base_time.isoformat()
        assert requested[1] == ("second", None)

    def test_rate_limit_not_retried(self, monkeypatch, base_time):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append(url)
            return FakeResponse(status_code=429)

        monkeypatch.setattr(requests, "get", fake_get)

        with pytest.raises(PriceDataUnavailableError):
            OctopusTariffSource(retry_delay=0).get_rates("P", "T", base_time, base_time)
        assert len(calls) == 1

    def test_server_errors_retried(self, monkeypatch, base_time):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append(url)
            return FakeResponse(status_code=503)

        monkeypatch.setattr(requests, "get", fake_get)

        with pytest.raises(PriceDataUnavailableError):
            OctopusTariffSource(max_attempts=3, retry_delay=0).get_rates("P", "T", base_time, base_time)
        assert len(calls) == 3

    def test_products_paginated_and_import_only(self, monkeypatch):
        pages = {
            "first": FakeResponse(
                {
                    "results": [
                        {"code": "AGILE-24-10-01", "display_name": "Agile Octopus", "direction": "IMPORT"},
                        {"code": "AGILE-OUTGOING-19-05-13", "display_name": "Agile Outgoing", "direction": "EXPORT"},
                    ],
                    "next": "second",
                }
            ),
            "second": FakeResponse(
                {"results": [{"code": "GO-VAR-22-10-14", "display_name": "Octopus Go", "direction": "IMPORT"}]}
            ),
        }

        def fake_get(url, params=None, timeout=None):
            return pages["second" if url == "second" else "first"]

        monkeypatch.setattr(requests, "get", fake_get)

        products = OctopusTariffSource().get_products()

        assert [p["code"] for p in products] == ["AGILE-24-10-01", "GO-VAR-22-10-14"]
        assert products[0]["display_name"] == "Agile Octopus"

    def test_regional_tariffs(self, monkeypatch):
        requested = []

        def fake_get(url, params=None, timeout=None):
            requested.append(url)
            return FakeResponse(
                {
                    "code": "AGILE-24-10-01",
                    "single_register_electricity_tariffs": {
                        "_B": {"direct_debit_monthly": {"code": "E-1R-AGILE-24-10-01-B"}},
                        "_A": {"direct_debit_monthly": {"code": "E-1R-AGILE-24-10-01-A"}},
                        "_C": {"varying": {"code": "E-1R-AGILE-24-10-01-C"}},
                    },
                }
            )

        monkeypatch.setattr(requests, "get", fake_get)

        tariffs = OctopusTariffSource().get_tariffs("AGILE-24-10-01")

        assert tariffs == ["E-1R-AGILE-24-10-01-A", "E-1R-AGILE-24-10-01-B"]
        assert requested[0].endswith("/v1/products/AGILE-24-10-01/")


class TestCompareTariffs:
    def test_prices_for_both_tariffs(self, rate_factory, base_time):
        source = MockTariffSource(
            [],
            rates_by_tariff={
                "E-1R-AGILE-24-10-01-A": rate_factory([10, 20]),
                "E-1R-GO-VAR-22-10-14-A": rate_factory([8.5, 8.5]),
            },
        )

        comparison = compare_tariffs(
            source, "E-1R-AGILE-24-10-01-A", "E-1R-GO-VAR-22-10-14-A", base_time, base_time + timedelta(hours=1)
        )

        assert comparison.tariff_a == "E-1R-AGILE-24-10-01-A"
        assert [s.price_inc_vat for s in comparison.tariff_a_prices] == [10, 20]
        assert [s.price_inc_vat for s in comparison.tariff_b_prices] == [8.5, 8.5]

    def test_unparseable_tariff_code(self, base_time):
        with pytest.raises(SystemConfigurationError):
            compare_tariffs(MockTariffSource([]), "AGILE", "E-1R-GO-VAR-22-10-14-A", base_time, base_time)
