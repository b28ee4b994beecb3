"""
Solar forecast sources and slot enrichment.

The forecast is a pass-through input: points are matched onto price slots by
their period start and scaled by a static damping factor. A missing forecast
never fails a planning cycle, the planner simply works from prices alone.
"""

import json
import logging
from datetime import date, datetime, timedelta
from pathlib import Path

import requests

from .exceptions import ForecastUnavailableError
from .models import BatteryState, PriceSlot, SolarForecastPoint
from .settings import MAX_SOLCAST_SITES, get_solcast_sites
from .time_utils import ensure_utc, local_date, parse_iso_datetime, utc_now

logger = logging.getLogger(__name__)

SOLCAST_BASE_URL = "https://api.solcast.com.au"
SOLCAST_CACHE_FILE = "Solcast-cache.json"


def enrich_slots_with_forecast(
    slots: list[PriceSlot],
    forecast: list[SolarForecastPoint] | None,
    battery_state: BatteryState,
    damp_factor: float = 1.0,
    now: datetime | None = None,
) -> list[PriceSlot]:
    """Stamp ``pv_estimate_kwh`` onto slots whose start matches a forecast point.

    Slots without a matching point get ``None`` (no data), never zero.
    Today and tomorrow totals are summed by local calendar date and damped.

    Returns:
        The same slot list, mutated in place
    """
    now = now or utc_now()
    lookup: dict[datetime, float] = {}
    for point in forecast or []:
        lookup[ensure_utc(point.period_start)] = point.forecast_kwh

    matched = 0
    for slot in slots:
        estimate = lookup.get(ensure_utc(slot.valid_from))
        if estimate is None:
            slot.pv_estimate_kwh = None
        else:
            slot.pv_estimate_kwh = estimate * damp_factor
            matched += 1

    today = local_date(now)
    tomorrow = today + timedelta(days=1)
    battery_state.today_forecast_kwh = _total_for_date(lookup, today) * damp_factor
    battery_state.tomorrow_forecast_kwh = _total_for_date(lookup, tomorrow) * damp_factor

    battery_state.forecast_timestamp = now
    if matched:
        logger.debug("Applied solar forecast to %d of %d slots", matched, len(slots))
    elif lookup:
        logger.info("Solar forecast has no points matching the current price slots")

    return slots


def _total_for_date(lookup: dict[datetime, float], day: date) -> float:
    return sum(kwh for start, kwh in lookup.items() if local_date(start) == day)


class ForecastSource:
    """Abstract base class for solar forecast sources."""

    def refresh(self) -> None:
        """Pull new forecast data from the provider, where it has any."""
        raise NotImplementedError("Forecast sources must implement refresh")

    def get_forecast(self) -> list[SolarForecastPoint] | None:
        """Return the current forecast ordered by period start, or None."""
        raise NotImplementedError("Forecast sources must implement get_forecast")

    @property
    def last_updated(self) -> datetime | None:
        return None


class MockForecastSource(ForecastSource):
    """Mock forecast source for testing and simulation."""

    def __init__(self, points: list[SolarForecastPoint] | None = None) -> None:
        self.points = points
        self.refresh_count = 0
        self._last_updated: datetime | None = None

    def refresh(self) -> None:
        self.refresh_count += 1
        self._last_updated = utc_now()

    def get_forecast(self) -> list[SolarForecastPoint] | None:
        return list(self.points) if self.points is not None else None

    @property
    def last_updated(self) -> datetime | None:
        return self._last_updated


class SolcastForecastSource(ForecastSource):
    """Solcast rooftop-site forecasts with a per-day disk cache.

    The free Solcast tier allows only a handful of calls a day, so every
    response is cached on disk and merged with earlier ones from the same day.
    Later updates overwrite earlier ones for the same period; sites are summed.
    """

    def __init__(
        self,
        api_key: str,
        site_identifier: str,
        cache_dir: str | Path = ".",
        base_url: str = SOLCAST_BASE_URL,
        timeout: int = 30,
    ) -> None:
        self.api_key = api_key
        self.site_identifier = site_identifier
        self.cache_path = Path(cache_dir) / SOLCAST_CACHE_FILE
        self.base_url = base_url
        self.timeout = timeout

        self._cache: dict | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.api_key and self.site_identifier)

    def _site_ids(self) -> list[str]:
        sites = get_solcast_sites(self.site_identifier)
        unique: list[str] = []
        for site in sites:
            if site.lower() in (u.lower() for u in unique):
                logger.warning(
                    "Same Solcast site ID %s specified twice in config. Ignoring the second one",
                    site,
                )
                continue
            unique.append(site)
        return unique[:MAX_SOLCAST_SITES]

    def initialise(self) -> None:
        """Load the disk cache, fetching once at startup if it is not from today."""
        if not self.is_valid:
            return
        self._load_cache()
        last = self.last_updated
        if last is None or last.date() != utc_now().date():
            logger.info("Solcast startup - no cache available so running one-off update...")
            self.refresh()

    def refresh(self) -> None:
        if not self.is_valid:
            logger.debug("Solcast not configured, skipping forecast refresh")
            return
        for site_id in self._site_ids():
            try:
                response = self._fetch_site(site_id)
            except ForecastUnavailableError as e:
                logger.warning(str(e))
                continue
            self._cache_response(site_id, response)

    def _fetch_site(self, site_id: str) -> dict:
        url = f"{self.base_url}/rooftop_sites/{site_id}/forecasts"
        logger.info("Querying Solcast API for forecast (site ID: %s)...", site_id)
        try:
            response = requests.get(
                url,
                params={"format": "json", "api_key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            if status == 429:
                raise ForecastUnavailableError(
                    "Solcast API failed - too many requests. "
                    "Will try again at next scheduled update"
                ) from e
            raise ForecastUnavailableError(
                f"HTTP error getting Solcast data for site {site_id}: {e}"
            ) from e

        data = response.json()
        forecasts = data.get("forecasts") or []
        logger.info("Solcast API succeeded: %d forecasts retrieved", len(forecasts))
        return {"last_update": utc_now().isoformat(), "forecasts": forecasts}

    def _load_cache(self) -> None:
        if self._cache is not None:
            return
        if self.cache_path.exists():
            try:
                with self.cache_path.open() as f:
                    self._cache = json.load(f)
                logger.info("Loaded cached Solcast data from %s", self.cache_path)
            except (OSError, ValueError) as e:
                logger.error("Failed to read Solcast cache %s: %s", self.cache_path, e)
        if self._cache is None:
            self._cache = {"date": None, "sites": {}}

    def _cache_response(self, site_id: str, response: dict) -> None:
        self._load_cache()
        today = utc_now().date().isoformat()
        if self._cache.get("date") != today:
            if self._cache.get("date"):
                logger.info("New day - discarding Solcast cache for %s", self._cache["date"])
            self._cache = {"date": today, "sites": {}}

        updates = self._cache["sites"].setdefault(site_id, [])
        updates.append(response)
        logger.info("Caching Solcast response with %d entries", len(response["forecasts"]))

        try:
            with self.cache_path.open("w") as f:
                json.dump(self._cache, f, indent=2)
        except OSError as e:
            logger.error("Failed to write Solcast cache %s: %s", self.cache_path, e)

    @property
    def last_updated(self) -> datetime | None:
        if not self._cache:
            return None
        stamps = [
            parse_iso_datetime(update["last_update"])
            for updates in self._cache.get("sites", {}).values()
            for update in updates
        ]
        return max(stamps) if stamps else None

    def get_forecast(self) -> list[SolarForecastPoint] | None:
        if not self.is_valid:
            return None
        self._load_cache()

        totals: dict[datetime, float] = {}
        for updates in self._cache.get("sites", {}).values():
            for start, kwh in aggregate_site_updates(updates).items():
                totals[start] = totals.get(start, 0.0) + kwh

        if not totals:
            return None
        return [
            SolarForecastPoint(period_start=start, forecast_kwh=kwh)
            for start, kwh in sorted(totals.items())
        ]


def aggregate_site_updates(updates: list[dict]) -> dict[datetime, float]:
    """Merge one site's cached updates, oldest first, into kWh per period start.

    Solcast reports average kW over the half hour ending at ``period_end``,
    so the start is 30 minutes earlier and the energy is half the kW figure.
    """
    data: dict[datetime, float] = {}
    for update in sorted(updates, key=lambda u: u.get("last_update") or ""):
        for point in update.get("forecasts") or []:
            start = parse_iso_datetime(str(point["period_end"])) - timedelta(minutes=30)
            data[start] = float(point["pv_estimate"]) / 2.0
    return data
