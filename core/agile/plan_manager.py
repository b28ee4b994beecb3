"""
PlanManager - owns the live plan state and serialises every change to it.

All mutating operations take the manager lock, so one planning pass runs at a
time. Price and battery fetches run in parallel but both finish before the
evaluator runs. Every pass follows the same cycle:

    harvest manual overrides -> build slots -> enrich with forecast
    -> evaluate -> reapply manual overrides -> apply dispatches
    -> execute first run -> record history
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .dispatch_source import DispatchSource, OctopusDispatchSource
from .exceptions import ConfigValidationError, InverterCommunicationError, PriceDataUnavailableError
from .execution import SlotExecutor
from .forecast import ForecastSource, SolcastForecastSource, enrich_slots_with_forecast
from .history_store import ExecutionHistoryStore, HistoryEntry
from .inverter import Inverter, create_inverter
from .models import (
    BatteryState,
    ManualOverride,
    PriceSlot,
    SlotAction,
    SolarForecastPoint,
    TariffComparison,
)
from .overrides import (
    apply_dispatches,
    apply_manual_overrides,
    create_charge_overrides,
    create_discharge_overrides,
    create_dump_and_charge_overrides,
    harvest_manual_overrides,
    toggle_manual_override,
)
from .price_source import OctopusTariffSource, PriceManager, TariffSource, compare_tariffs
from .settings import ManagerConfig, get_product_from_tariff_code
from .slot_evaluator import evaluate_slot_actions
from .time_utils import round_to_half_hour, utc_now

logger = logging.getLogger(__name__)

TEST_CHARGE_DURATION = timedelta(minutes=5)


class PlanManager:
    """Explicit owner of the price slots, battery state and manual overrides."""

    def __init__(
        self,
        config: ManagerConfig | None = None,
        inverter: Inverter | None = None,
        tariff_source: TariffSource | None = None,
        forecast_source: ForecastSource | None = None,
        dispatch_source: DispatchSource | None = None,
        history_store: ExecutionHistoryStore | None = None,
        config_path: str | Path | None = None,
        data_dir: str | Path = ".",
    ):
        self.config = config or ManagerConfig()
        self.config_path = Path(config_path) if config_path else None
        self.data_dir = Path(data_dir)

        self._lock = threading.RLock()

        self.battery_state = BatteryState()
        self.slots: list[PriceSlot] = []
        self._forecast: list[SolarForecastPoint] | None = None

        self.inverter = inverter or create_inverter(
            self.config.inverter, self.config.battery.max_charge_rate_amps
        )
        self.tariff_source = tariff_source or OctopusTariffSource()
        self.forecast_source = forecast_source or self._create_forecast_source()
        self.dispatch_source = dispatch_source or self._create_dispatch_source()
        self.history_store = history_store or ExecutionHistoryStore(
            self.data_dir / "history.csv", self.config.plan.history_max_entries
        )

        tariff = self.config.tariff
        self.price_manager = PriceManager(
            tariff_source=self.tariff_source,
            product_code=tariff.product or get_product_from_tariff_code(tariff.tariff_code),
            tariff_code=tariff.tariff_code,
        )
        self.executor = SlotExecutor(
            self.inverter, self.history_store, simulate=self.config.inverter.simulate
        )

        logger.info(
            "PlanManager initialized (inverter: %s, simulate: %s)",
            type(self.inverter).__name__,
            self.config.inverter.simulate,
        )

    def _create_forecast_source(self) -> ForecastSource | None:
        solar = self.config.solar
        if not solar.is_valid:
            return None
        return SolcastForecastSource(solar.api_key, solar.site_identifier, cache_dir=self.data_dir)

    def _create_dispatch_source(self) -> DispatchSource | None:
        tariff = self.config.tariff
        if not (tariff.intelligent_go_charging and tariff.dispatch_valid):
            return None
        return OctopusDispatchSource(tariff.api_key, tariff.account_number)

    def start(self, now: datetime | None = None) -> None:
        """Load cached forecast data and run the first full planning pass."""
        if isinstance(self.forecast_source, SolcastForecastSource):
            self.forecast_source.initialise()
        if self.forecast_source is not None:
            self._forecast = self.forecast_source.get_forecast()
        self.refresh_prices(now)
        logger.info("PlanManager started successfully")

    # Telemetry and data refresh

    def _update_battery_state(self, now: datetime) -> bool:
        try:
            updated = self.inverter.update_state(self.battery_state)
        except InverterCommunicationError as e:
            logger.error("Failed to read battery state: %s", e)
            return False
        if updated:
            self.battery_state.battery_timestamp = now
        return updated

    def refresh_battery_state(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        with self._lock:
            return self._update_battery_state(now)

    def refresh_forecast(self, now: datetime | None = None) -> None:
        """Fetch a new solar forecast and stamp it onto the current slots."""
        if self.forecast_source is None:
            logger.debug("No forecast source configured")
            return
        now = now or utc_now()
        self.forecast_source.refresh()
        with self._lock:
            self._forecast = self.forecast_source.get_forecast()
            enrich_slots_with_forecast(
                self.slots, self._forecast, self.battery_state, self.config.solar.damp_factor, now
            )

    def refresh_prices(
        self, now: datetime | None = None, overrides: list[ManualOverride] | None = None
    ) -> list[PriceSlot]:
        """Full planning cycle with freshly fetched prices.

        Manual overrides are harvested from the current slots unless
        ``overrides`` is given, in which case they replace them.
        """
        now = now or utc_now()
        with self._lock:
            if overrides is None:
                overrides = harvest_manual_overrides(self.slots)

            with ThreadPoolExecutor(max_workers=2) as pool:
                price_future = pool.submit(self.price_manager.get_price_slots, now)
                battery_future = pool.submit(self._update_battery_state, now)
                slots = price_future.result()
                battery_future.result()

            if slots:
                self.battery_state.prices_timestamp = now
            else:
                logger.warning("No price slots available, plan will be empty")

            return self._run_plan(slots, overrides, now)

    def recalculate(self, now: datetime | None = None) -> list[PriceSlot]:
        """Re-evaluate the current price window without refetching prices."""
        now = now or utc_now()
        with self._lock:
            return self._recalculate_locked(now)

    def _recalculate_locked(
        self, now: datetime, overrides: list[ManualOverride] | None = None
    ) -> list[PriceSlot]:
        slots = [s for s in self.slots if s.valid_to > now]
        if not slots:
            logger.info("No current price slots, fetching prices")
            return self.refresh_prices(now, overrides)
        if overrides is None:
            overrides = harvest_manual_overrides(slots)
        return self._run_plan(slots, overrides, now)

    def _run_plan(
        self, slots: list[PriceSlot], overrides: list[ManualOverride], now: datetime
    ) -> list[PriceSlot]:
        enrich_slots_with_forecast(
            slots, self._forecast, self.battery_state, self.config.solar.damp_factor, now
        )
        evaluate_slot_actions(slots, self.battery_state, self.config, now)
        apply_manual_overrides(slots, overrides)
        self._apply_dispatches(slots)

        self.slots = slots
        self.price_manager.log_price_information(slots)

        self.executor.simulate = self.config.inverter.simulate
        self.executor.execute(slots, self.battery_state, now)
        self.battery_state.last_update = now
        return slots

    def _apply_dispatches(self, slots: list[PriceSlot]) -> None:
        if not self.config.tariff.intelligent_go_charging or self.dispatch_source is None:
            return
        if not slots:
            return
        dispatches = self.dispatch_source.get_planned_dispatches()
        cheapest_price = min(s.price_inc_vat for s in slots)
        apply_dispatches(slots, dispatches, cheapest_price)

    # Overrides and tools

    def override_slot_action(
        self, slot_start: datetime, action: SlotAction, now: datetime | None = None
    ) -> bool:
        """Toggle a manual override and replan. Returns True if an override is set."""
        now = now or utc_now()
        with self._lock:
            override_set = toggle_manual_override(self.slots, slot_start, action)
            self._recalculate_locked(now)
            return override_set

    def clear_manual_overrides(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        with self._lock:
            logger.info("Clearing all manual overrides")
            self._recalculate_locked(now, overrides=[])

    def _set_manual_overrides(self, overrides: list[ManualOverride], now: datetime) -> None:
        """Replace every manual override with ``overrides`` and replan."""
        with self._lock:
            for override in overrides:
                logger.info("Created override: %s %s", override.slot_start, override.action.value)
            self._recalculate_locked(now, overrides=overrides)

    def charge_battery(self, now: datetime | None = None) -> None:
        """Charge now for as many slots as it takes to fill the battery."""
        now = now or utc_now()
        self._set_manual_overrides(
            create_charge_overrides(
                now,
                self.battery_state.battery_soc,
                self.config.battery.slots_for_full_battery_charge,
            ),
            now,
        )

    def discharge_battery(self, now: datetime | None = None) -> None:
        """Discharge now for as many slots as it takes to empty the battery."""
        now = now or utc_now()
        self._set_manual_overrides(
            create_discharge_overrides(
                now,
                self.battery_state.battery_soc,
                self.config.battery.slots_for_full_battery_charge,
            ),
            now,
        )

    def dump_and_charge_battery(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        self._set_manual_overrides(
            create_dump_and_charge_overrides(
                now,
                self.battery_state.battery_soc,
                self.config.battery.slots_for_full_battery_charge,
            ),
            now,
        )

    def test_charge(self, now: datetime | None = None) -> bool:
        """Charge for five minutes from now, to check the inverter responds.

        The next planning pass puts the inverter back on the plan.
        """
        now = now or utc_now()
        with self._lock:
            logger.info("Starting test charge for 5 minutes")
            return self.inverter.set_charge(
                charge_start=now,
                charge_end=now + TEST_CHARGE_DURATION,
                simulate_only=self.config.inverter.simulate,
                now=now,
            )

    # Read access

    def get_current_state(self) -> dict[str, Any]:
        """Snapshot of the plan for the API. Safe to read without the lock held."""
        with self._lock:
            return {
                "prices": [replace(slot) for slot in self.slots],
                "battery": replace(self.battery_state),
                "simulate": self.config.inverter.simulate,
                "forecast_last_updated": (
                    self.forecast_source.last_updated if self.forecast_source else None
                ),
            }

    def get_history(self) -> list[HistoryEntry]:
        return self.history_store.get_entries()

    # Tariff lookups

    def get_products(self) -> list[dict]:
        return self.tariff_source.get_products()

    def get_tariffs(self, product_code: str) -> list[str]:
        return self.tariff_source.get_tariffs(product_code)

    def compare_tariffs(
        self, tariff_a: str, tariff_b: str, now: datetime | None = None
    ) -> TariffComparison:
        """Upcoming prices of two tariffs over the planning horizon."""
        period_from = round_to_half_hour(now or utc_now())
        period_to = period_from + timedelta(hours=self.price_manager.horizon_hours)
        return compare_tariffs(self.tariff_source, tariff_a, tariff_b, period_from, period_to)

    def update_history_from_inverter(self, now: datetime | None = None) -> int:
        """Fill actual energy figures in the history from inverter samples."""
        now = now or utc_now()
        today = now.date()
        samples = []
        for day in (today - timedelta(days=1), today):
            samples.extend(self.inverter.get_historic_data(day))
        with self._lock:
            return self.history_store.enrich_with_inverter_data(samples)

    def update_inverter_time(self) -> None:
        self.inverter.update_inverter_time(self.config.inverter.simulate)

    # Configuration

    def get_config(self) -> ManagerConfig:
        return ManagerConfig.from_dict(self.config.to_dict())

    def save_config(self, new_config: ManagerConfig) -> None:
        """Validate, apply and persist a new config.

        Raises:
            ConfigValidationError: If the config is rejected; nothing is persisted
        """
        new_config.validate()

        tariff = new_config.tariff
        product = tariff.product or get_product_from_tariff_code(tariff.tariff_code)
        if tariff.tariff_code and not product:
            raise ConfigValidationError(
                "tariff_code", f"Could not derive a product from tariff code {tariff.tariff_code}"
            )
        if product and product != self.price_manager.product_code:
            self._check_product(product)

        with self._lock:
            old_config = self.config
            self.config = new_config

            self.price_manager.product_code = product
            self.price_manager.tariff_code = tariff.tariff_code
            self.history_store.max_entries = new_config.plan.history_max_entries

            if (
                new_config.inverter != old_config.inverter
                or new_config.battery.max_charge_rate_amps != old_config.battery.max_charge_rate_amps
            ):
                self.inverter = create_inverter(
                    new_config.inverter, new_config.battery.max_charge_rate_amps
                )
                self.executor.inverter = self.inverter
            if new_config.solar != old_config.solar:
                self.forecast_source = self._create_forecast_source()
            if new_config.tariff != old_config.tariff:
                self.dispatch_source = self._create_dispatch_source()

            if self.config_path is not None:
                new_config.save_to_file(self.config_path)
            logger.info("Config saved")

    def _check_product(self, product: str) -> None:
        """Confirm the tariff product exists when the source can look it up."""
        if not isinstance(self.tariff_source, OctopusTariffSource):
            return
        try:
            self.tariff_source.get_product_tariffs(product)
        except PriceDataUnavailableError as e:
            raise ConfigValidationError(
                "tariff_code", f"Unable to find Octopus product {product}: {e}"
            ) from e
