"""
Tariff price sources for the agile manager.

Sources return raw rate blocks; the price manager normalises them into
30-minute PriceSlots and keeps the last good result so a failed fetch never
aborts a planning cycle.
"""

import logging
import time
from datetime import datetime, timedelta

import requests

from .exceptions import PriceDataUnavailableError, SystemConfigurationError
from .models import SLOT_DURATION, PriceSlot, TariffComparison
from .settings import get_product_from_tariff_code
from .time_utils import (
    ensure_utc,
    half_hour_range,
    parse_iso_datetime,
    round_to_half_hour,
    utc_now,
)

logger = logging.getLogger(__name__)

OCTOPUS_BASE_URL = "https://api.octopus.energy"


class TariffSource:
    """Abstract base class for tariff sources.

    This defines the interface that all tariff sources must implement.
    """

    def get_rates(
        self,
        product_code: str,
        tariff_code: str,
        period_from: datetime,
        period_to: datetime,
    ) -> list[dict]:
        """Get rate blocks overlapping ``[period_from, period_to)``.

        Returns:
            List of dicts with ``valid_from``, ``valid_to`` (may be None for
            open-ended rates) and ``value_inc_vat``, in any order.

        Raises:
            NotImplementedError: If the source doesn't implement this method
        """
        raise NotImplementedError("Tariff sources must implement get_rates")

    def get_products(self) -> list[dict]:
        """Import products on offer.

        Returns:
            Dicts with ``code``, ``display_name``, ``full_name`` and ``direction``
        """
        raise NotImplementedError("Tariff sources must implement get_products")

    def get_tariffs(self, product_code: str) -> list[str]:
        """Regional tariff codes available for ``product_code``."""
        raise NotImplementedError("Tariff sources must implement get_tariffs")

    def perform_health_check(self) -> dict:
        """Perform health check on the tariff source."""
        raise NotImplementedError("Tariff sources must implement perform_health_check")


class MockTariffSource(TariffSource):
    """Mock tariff source for testing and simulation."""

    def __init__(
        self,
        rates: list[dict],
        rates_by_tariff: dict[str, list[dict]] | None = None,
        products: list[dict] | None = None,
        tariffs: dict[str, list[str]] | None = None,
    ) -> None:
        """Initialize with test data.

        Args:
            rates: Rate dicts to return
            rates_by_tariff: Per tariff code rates, taking precedence over ``rates``
            products: Product dicts for ``get_products``
            tariffs: Tariff codes per product code
        """
        self.rates = rates
        self.rates_by_tariff = rates_by_tariff or {}
        self.products = products or []
        self.tariffs = tariffs or {}
        self.calls = 0

    def get_rates(self, product_code, tariff_code, period_from, period_to) -> list[dict]:
        self.calls += 1
        return list(self.rates_by_tariff.get(tariff_code, self.rates))

    def get_products(self) -> list[dict]:
        return list(self.products)

    def get_tariffs(self, product_code: str) -> list[str]:
        return list(self.tariffs.get(product_code, []))

    def perform_health_check(self) -> dict:
        return {
            "status": "OK",
            "checks": [
                {
                    "component": "MockTariffSource",
                    "status": "OK",
                    "message": f"Mock source with {len(self.rates)} rates",
                }
            ],
        }


class OctopusTariffSource(TariffSource):
    """Octopus Energy REST API unit-rate source."""

    def __init__(
        self,
        base_url: str = OCTOPUS_BASE_URL,
        timeout: int = 30,
        max_attempts: int = 3,
        retry_delay: int = 5,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def _get_json(self, url: str, params: dict | None = None) -> dict:
        for attempt in range(self.max_attempts):
            try:
                response = requests.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.json()
            except requests.RequestException as e:
                status = getattr(getattr(e, "response", None), "status_code", None)
                if status == 429:
                    # Rate limited - wait for the next scheduled refresh
                    raise PriceDataUnavailableError(
                        message="Octopus API rate limit hit, will retry at next scheduled update"
                    ) from e
                if attempt < self.max_attempts - 1:
                    logger.warning(
                        "Octopus request to %s failed on attempt %d/%d: %s. Retrying in %d seconds...",
                        url,
                        attempt + 1,
                        self.max_attempts,
                        str(e),
                        self.retry_delay,
                    )
                    time.sleep(self.retry_delay)
                else:
                    raise PriceDataUnavailableError(
                        message=f"Octopus request failed after {self.max_attempts} attempts: {e}"
                    ) from e
        raise PriceDataUnavailableError(message="Octopus request was not attempted")

    def get_rates(self, product_code, tariff_code, period_from, period_to) -> list[dict]:
        if not product_code or not tariff_code:
            raise SystemConfigurationError(
                component="tariff", message="Octopus product and tariff code are required"
            )

        url = (
            f"{self.base_url}/v1/products/{product_code}/electricity-tariffs/"
            f"{tariff_code}/standard-unit-rates/"
        )
        params = {
            "period_from": ensure_utc(period_from).isoformat(),
            "period_to": ensure_utc(period_to).isoformat(),
        }

        rates: list[dict] = []
        while url:
            data = self._get_json(url, params)
            rates.extend(data.get("results") or [])
            url = data.get("next")
            params = None  # next link already carries the query

        if rates:
            logger.info(
                "Retrieved %d rates from Octopus for %s", len(rates), tariff_code
            )
        return rates

    def get_product_tariffs(self, product_code: str) -> dict:
        """Fetch the product description, used to validate tariff codes on save."""
        return self._get_json(f"{self.base_url}/v1/products/{product_code}/")

    def get_products(self) -> list[dict]:
        url = f"{self.base_url}/v1/products/"
        params = {"is_business": "false", "is_prepay": "false"}

        products: list[dict] = []
        while url:
            data = self._get_json(url, params)
            for product in data.get("results") or []:
                if product.get("direction", "IMPORT") != "IMPORT":
                    continue
                products.append(
                    {
                        "code": product.get("code"),
                        "display_name": product.get("display_name"),
                        "full_name": product.get("full_name"),
                        "direction": product.get("direction"),
                    }
                )
            url = data.get("next")
            params = None

        logger.info("Retrieved %d import products from Octopus", len(products))
        return products

    def get_tariffs(self, product_code: str) -> list[str]:
        """Single-register, monthly direct debit tariff code for each region."""
        product = self.get_product_tariffs(product_code)
        regions = product.get("single_register_electricity_tariffs") or {}
        codes = []
        for region in regions.values():
            code = (region.get("direct_debit_monthly") or {}).get("code")
            if code:
                codes.append(code)
        return sorted(codes)

    def perform_health_check(self) -> dict:
        try:
            requests.get(f"{self.base_url}/v1/products/", timeout=self.timeout).raise_for_status()
            return {
                "status": "OK",
                "checks": [
                    {
                        "component": "OctopusTariffSource",
                        "status": "OK",
                        "message": "Octopus API reachable",
                    }
                ],
            }
        except requests.RequestException as e:
            return {
                "status": "ERROR",
                "checks": [
                    {
                        "component": "OctopusTariffSource",
                        "status": "ERROR",
                        "message": f"Failed to reach Octopus API: {e}",
                    }
                ],
            }


def split_into_half_hour_slots(
    rates: list[dict], period_from: datetime, period_to: datetime
) -> list[PriceSlot]:
    """Normalise raw rate blocks into 30-minute PriceSlots ordered by start.

    Rate blocks longer than 30 minutes (fixed or two-rate tariffs) are split
    and clipped to ``[period_from, period_to)``. Open-ended blocks
    (``valid_to`` of None) run until ``period_to``.
    Duplicate timestamps are kept; slots are told apart by their ``id``.
    """
    period_from = ensure_utc(period_from)
    period_to = ensure_utc(period_to)
    slots: list[PriceSlot] = []
    for rate in rates:
        valid_from = _as_datetime(rate["valid_from"])
        valid_to = _as_datetime(rate["valid_to"]) if rate.get("valid_to") else period_to
        price = float(rate["value_inc_vat"])
        if valid_from < period_from < valid_to:
            valid_from = round_to_half_hour(period_from)
        valid_to = min(valid_to, period_to)

        for start in half_hour_range(valid_from, valid_to):
            slots.append(
                PriceSlot(
                    valid_from=start,
                    valid_to=start + SLOT_DURATION,
                    price_inc_vat=price,
                )
            )

    slots.sort(key=lambda s: s.valid_from)
    return slots


def compare_tariffs(
    source: TariffSource,
    tariff_a: str,
    tariff_b: str,
    period_from: datetime,
    period_to: datetime,
) -> TariffComparison:
    """Fetch the prices of two tariffs over the same period.

    Raises:
        SystemConfigurationError: If a product can't be derived from a tariff code
        PriceDataUnavailableError: If the source fails
    """
    prices = []
    for tariff_code in (tariff_a, tariff_b):
        product_code = get_product_from_tariff_code(tariff_code)
        if not product_code:
            raise SystemConfigurationError(
                component="tariff",
                message=f"Could not derive a product from tariff code {tariff_code}",
            )
        rates = source.get_rates(product_code, tariff_code, period_from, period_to)
        prices.append(split_into_half_hour_slots(rates, period_from, period_to))

    return TariffComparison(
        tariff_a=tariff_a,
        tariff_b=tariff_b,
        tariff_a_prices=prices[0],
        tariff_b_prices=prices[1],
    )


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_iso_datetime(str(value))


class PriceManager:
    """Fetches tariff rates and turns them into a fresh slot array.

    The last good slot set is cached so the planner can carry on with stale
    prices when the source is unavailable.
    """

    def __init__(
        self,
        tariff_source: TariffSource,
        product_code: str = "",
        tariff_code: str = "",
        horizon_hours: int = 48,
    ) -> None:
        self.tariff_source = tariff_source
        self.product_code = product_code
        self.tariff_code = tariff_code
        self.horizon_hours = horizon_hours

        self._cached_rates: list[dict] = []
        self._cache_timestamp: datetime | None = None

    def get_price_slots(self, now: datetime | None = None) -> list[PriceSlot]:
        """Return fresh PriceSlots from the current slot onwards.

        A new list (with new slot ids) is built on every call. On source
        failure the cached rates are reused and the failure logged.
        """
        now = now or utc_now()
        period_from = round_to_half_hour(ensure_utc(now))
        period_to = period_from + timedelta(hours=self.horizon_hours)

        try:
            rates = self.tariff_source.get_rates(
                self.product_code, self.tariff_code, period_from, period_to
            )
            if rates:
                self._cached_rates = rates
                self._cache_timestamp = now
            else:
                logger.warning("Tariff source returned no rates, using cached prices")
                rates = self._cached_rates
        except (PriceDataUnavailableError, SystemConfigurationError) as e:
            logger.warning("Failed to get tariff rates (%s), using cached prices", e)
            rates = self._cached_rates

        slots = split_into_half_hour_slots(rates, period_from, period_to)
        # Drop anything that has already finished
        return [s for s in slots if s.valid_to > period_from]

    @property
    def cache_timestamp(self) -> datetime | None:
        return self._cache_timestamp

    def log_price_information(self, slots: list[PriceSlot], title: str | None = None) -> None:
        """Log a formatted table of slot prices and planned actions."""
        if not slots:
            logger.warning("No prices available to log")
            return

        title = title or "Upcoming Agile Prices"
        lines = [f"\n{title}:", "-" * 60, "Slot          | Price      | Type           | Action", "-" * 60]
        for slot in slots:
            lines.append(
                f"{slot.valid_from:%d-%b %H:%M}  | {slot.price_inc_vat:6.2f}p    | "
                f"{slot.price_type.value:<14} | {slot.action_to_execute.value}"
            )
        logger.info("\n".join(lines))

    def check_health(self) -> list:
        """Check price retrieval capabilities."""
        price_check = {
            "name": "Electricity Price Data",
            "description": "Retrieves half-hourly tariff prices for planning",
            "required": True,
            "status": "UNKNOWN",
            "checks": [],
            "last_run": datetime.now().isoformat(),
        }
        try:
            source_health = self.tariff_source.perform_health_check()
            price_check.update(
                {"status": source_health["status"], "checks": source_health["checks"]}
            )
        except Exception as e:
            price_check.update(
                {
                    "status": "ERROR",
                    "checks": [
                        {
                            "name": "Tariff Source Health Check",
                            "status": "ERROR",
                            "error": f"Health check failed: {e}",
                        }
                    ],
                }
            )
        return [price_check]
