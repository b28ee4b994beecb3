"""Inverter backends.

The planner only talks to the ``Inverter`` interface. Each vendor backend
implements reading telemetry and the low-level charge slot write; the shared
``set_charge`` applies the write-skip policy first so every backend avoids
needless EEPROM writes in the same way.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import replace
from datetime import date, datetime

import requests

from .exceptions import InverterCommunicationError, SystemConfigurationError
from .execution import ChargeCommand, build_charge_state, inverter_needs_updating
from .models import BatteryState, ChargeState, InverterFiveMinData
from .settings import InverterSettings
from .time_utils import TIMEZONE, UTC, utc_now

logger = logging.getLogger(__name__)

SOLIS_BASE_URL = "https://www.soliscloud.com:13333"
SOLIS_NEW_FIRMWARE_MARKER = "AA55"


class Inverter:
    """Abstract base class for inverter backends."""

    def __init__(self, max_charge_rate_amps: int) -> None:
        self.max_charge_rate_amps = max_charge_rate_amps

    def update_state(self, battery_state: BatteryState) -> bool:
        """Copy live telemetry into ``battery_state``. Returns False on failure."""
        raise NotImplementedError("Inverters must implement update_state")

    def read_charge_state(self) -> ChargeState | None:
        """Read the charge/discharge slot currently held by the inverter."""
        raise NotImplementedError("Inverters must implement read_charge_state")

    def _write_charge_state(self, state: ChargeState, simulate_only: bool) -> bool:
        raise NotImplementedError("Inverters must implement _write_charge_state")

    def get_historic_data(self, day: date) -> list[InverterFiveMinData]:
        """Per-5-minute samples for one day, energy fields as deltas."""
        raise NotImplementedError("Inverters must implement get_historic_data")

    def update_inverter_time(self, simulate_only: bool) -> None:
        raise NotImplementedError("Inverters must implement update_inverter_time")

    def set_charge(
        self,
        charge_start: datetime | None = None,
        charge_end: datetime | None = None,
        discharge_start: datetime | None = None,
        discharge_end: datetime | None = None,
        hold_charge: bool = False,
        amps: int | None = None,
        simulate_only: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Set the charge and discharge windows. All datetimes are UTC.

        Returns:
            True if the inverter ends up in the requested state (including when
            no write was needed)
        """
        command = ChargeCommand(
            charge_start=charge_start,
            charge_end=charge_end,
            discharge_start=discharge_start,
            discharge_end=discharge_end,
            hold_charge=hold_charge,
            amps=amps,
        )
        new_state = build_charge_state(command, self.max_charge_rate_amps)

        try:
            current = self.read_charge_state()
        except InverterCommunicationError as e:
            logger.warning("Could not read inverter charge state: %s", e)
            current = None

        if not inverter_needs_updating(current, new_state, now):
            logger.info(
                "Inverter already in correct state (%d, %d, %s, %s) so no charge "
                "instructions need to be applied",
                new_state.charge_amps,
                new_state.discharge_amps,
                new_state.charge_times,
                new_state.discharge_times,
            )
            return True

        logger.info(
            "Sending new charge instruction to %s: %d, %d, %s, %s",
            "mock inverter" if simulate_only else type(self).__name__,
            new_state.charge_amps,
            new_state.discharge_amps,
            new_state.charge_times,
            new_state.discharge_times,
        )
        return self._write_charge_state(new_state, simulate_only)


class SimulatedInverter(Inverter):
    """In-memory inverter used for simulation and tests.

    Writes are recorded in ``writes`` so callers can assert how often the
    physical device would have been touched.
    """

    def __init__(
        self,
        max_charge_rate_amps: int = 50,
        battery_soc: int = 50,
        charge_state: ChargeState | None = None,
    ) -> None:
        super().__init__(max_charge_rate_amps)
        self.battery_soc = battery_soc
        self.current_pv_kw = 0.0
        self.house_load_kw = 0.0
        self.charge_state = charge_state
        self.writes: list[ChargeState] = []
        self.time_syncs = 0
        self.historic_data: dict[date, list[InverterFiveMinData]] = {}

    def update_state(self, battery_state: BatteryState) -> bool:
        if self.battery_soc != 0:
            battery_state.battery_soc = self.battery_soc
        else:
            logger.info("Battery SOC returned as zero. Invalid inverter state data")
        battery_state.current_pv_kw = self.current_pv_kw
        battery_state.house_load_kw = self.house_load_kw
        battery_state.inverter_data_timestamp = utc_now()
        return True

    def read_charge_state(self) -> ChargeState | None:
        return replace(self.charge_state) if self.charge_state else None

    def _write_charge_state(self, state: ChargeState, simulate_only: bool) -> bool:
        self.writes.append(replace(state))
        self.charge_state = replace(state)
        return True

    def get_historic_data(self, day: date) -> list[InverterFiveMinData]:
        return list(self.historic_data.get(day, []))

    def update_inverter_time(self, simulate_only: bool) -> None:
        logger.info("Updating simulated inverter time")
        self.time_syncs += 1


class SolisCloudInverter(Inverter):
    """Solis inverter controlled through the SolisCloud API.

    Requests are signed with a Content-MD5 digest and an HMAC-SHA1 signature.
    Older firmware takes a single comma-separated charge command; newer
    firmware ("AA55") exposes one control ID per slot field.
    """

    CID_CHECK_FIRMWARE = 6798
    CID_SET_INVERTER_TIME = 56
    CID_SET_CHARGE = 103
    CID_READ_CHARGE_STATE = 4643
    CID_CHARGE_SLOT1_TIME = 5946
    CID_CHARGE_SLOT1_AMPS = 5948
    CID_CHARGE_SLOT1_SOC = 5928
    CID_DISCHARGE_SLOT1_TIME = 5964
    CID_DISCHARGE_SLOT1_AMPS = 5967
    CID_DISCHARGE_SLOT1_SOC = 5965

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        serial: str,
        max_charge_rate_amps: int,
        base_url: str = SOLIS_BASE_URL,
    ) -> None:
        super().__init__(max_charge_rate_amps)
        self.api_key = api_key
        self.api_secret = api_secret
        self.serial = serial
        self.base_url = base_url
        self.max_attempts = 3
        self.retry_delay = 2  # seconds
        self.readback_delay = 0.05
        self._new_firmware: bool | None = None
        self._day_cache: dict[date, list[InverterFiveMinData]] = {}

    def _sign_headers(self, path: str, body: str) -> dict:
        date_str = datetime.now(tz=UTC).strftime("%a, %d %b %Y %H:%M:%S GMT")
        content_md5 = base64.b64encode(hashlib.md5(body.encode("utf-8")).digest()).decode()
        to_sign = f"POST\n{content_md5}\napplication/json\n{date_str}\n{path}"
        signature = base64.b64encode(
            hmac.new(self.api_secret.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha1).digest()
        ).decode()
        return {
            "Content-MD5": content_md5,
            "Content-Type": "application/json;charset=UTF-8",
            "Time": date_str,
            "Authorization": f"API {self.api_key}:{signature}",
        }

    def _post(self, api_version: int, resource: str, payload: dict) -> dict:
        """POST a signed request with retry.

        Raises:
            InverterCommunicationError: If every attempt fails
        """
        path = f"/v{api_version}/api/{resource}"
        body = json.dumps(payload)
        for attempt in range(self.max_attempts):
            try:
                response = requests.post(
                    f"{self.base_url}{path}",
                    data=body,
                    headers=self._sign_headers(path, body),
                    timeout=30,
                )
                response.raise_for_status()
                logger.debug("Posted request to SolisCloud: %s %s", path, body)
                return response.json() if response.content else {}
            except (requests.RequestException, ValueError) as e:
                if attempt < self.max_attempts - 1:
                    logger.warning(
                        "SolisCloud request to %s failed on attempt %d/%d: %s. Retrying in %d seconds...",
                        path,
                        attempt + 1,
                        self.max_attempts,
                        str(e),
                        self.retry_delay,
                    )
                    time.sleep(self.retry_delay)
                else:
                    raise InverterCommunicationError(
                        resource, f"SolisCloud request to {path} failed: {e}"
                    ) from e
        raise InverterCommunicationError(resource)

    def _read_control_state(self, cid: int) -> str | None:
        result = self._post(2, "atRead", {"inverterSn": self.serial, "cid": cid})
        msg = (result.get("data") or {}).get("msg")
        if not msg:
            logger.warning("No data returned reading control state (CID = %d)", cid)
            return None
        if msg == "ERROR":
            logger.warning("ERROR reading control state (CID = %d)", cid)
            return None
        return msg

    def _read_control_state_int(self, cid: int) -> int | None:
        value = self._read_control_state(cid)
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    def _is_new_firmware(self) -> bool:
        if self._new_firmware is None:
            version = self._read_control_state_int(self.CID_CHECK_FIRMWARE)
            self._new_firmware = version is not None and f"{version:X}" == SOLIS_NEW_FIRMWARE_MARKER
            if self._new_firmware:
                logger.info("Detected new firmware version: %s", version)
        return self._new_firmware

    def update_state(self, battery_state: BatteryState) -> bool:
        try:
            result = self._post(1, "inverterDetail", {"sn": self.serial})
        except InverterCommunicationError as e:
            logger.error("No state returned from the inverter: %s", e)
            return False

        data = result.get("data")
        if not data:
            logger.error("No state returned from the inverter")
            return False

        batteries = data.get("batteryList") or [{}]
        soc = int(batteries[0].get("batteryCapacitySoc") or 0)
        if soc != 0:
            battery_state.battery_soc = soc
        else:
            logger.info("Battery SOC returned as zero. Invalid inverter state data")

        pac = float(data.get("pac") or 0)
        psum = float(data.get("psum") or 0)
        battery_power = float(data.get("batteryPower") or 0)
        battery_state.current_pv_kw = pac
        battery_state.today_pv_kwh = float(data.get("eToday") or 0)
        battery_state.current_battery_power_kw = battery_power
        battery_state.today_export_kwh = float(data.get("gridSellEnergy") or 0)
        battery_state.today_import_kwh = float(data.get("gridPurchasedEnergy") or 0)
        battery_state.station_id = str(data.get("stationId") or "")
        battery_state.house_load_kw = pac - psum - battery_power
        battery_state.inverter_data_timestamp = (
            _parse_time_str(data.get("timeStr")) or utc_now()
        )
        return True

    def read_charge_state(self) -> ChargeState | None:
        if self._is_new_firmware():
            charge_amps = self._read_control_state_int(self.CID_CHARGE_SLOT1_AMPS)
            charge_times = self._read_control_state(self.CID_CHARGE_SLOT1_TIME)
            discharge_amps = self._read_control_state_int(self.CID_DISCHARGE_SLOT1_AMPS)
            discharge_times = self._read_control_state(self.CID_DISCHARGE_SLOT1_TIME)
            if None in (charge_amps, charge_times, discharge_amps, discharge_times):
                return None
            return ChargeState(charge_amps, discharge_amps, charge_times, discharge_times)

        msg = self._read_control_state(self.CID_READ_CHARGE_STATE)
        if not msg:
            return None
        try:
            return ChargeState.from_charge_state_data(msg)
        except ValueError as e:
            # Only means we write instead of skipping the write
            logger.warning("Error reading inverter charge slot state: %s", e)
            return None

    def _send_control_request(self, cid: int, value, simulate_only: bool) -> None:
        value = str(value)
        body = {"inverterSn": self.serial, "cid": cid, "value": value}
        if simulate_only:
            logger.info("Simulated inverter control request: %s", body)
            return

        for attempt in range(self.max_attempts):
            self._post(2, "control", body)
            time.sleep(self.readback_delay)
            if self._read_control_state(cid) == value:
                if attempt > 0:
                    logger.info(
                        "Control request (CID: %d, Value: %s) succeeded on retry %d",
                        cid, value, attempt,
                    )
                return
            logger.warning(
                "Inverter control request did not stick: CID: %d, Value: %s (attempt: %d)",
                cid, value, attempt,
            )
        raise InverterCommunicationError(
            "control", f"Control request CID {cid} = {value} did not stick"
        )

    def _write_charge_state(self, state: ChargeState, simulate_only: bool) -> bool:
        try:
            if self._is_new_firmware():
                # Discharging needs the charge SOC target below the current SOC
                charge_soc = 15 if state.discharge_amps > 0 else 100
                self._send_control_request(self.CID_CHARGE_SLOT1_SOC, charge_soc, simulate_only)
                self._send_control_request(self.CID_DISCHARGE_SLOT1_SOC, 15, simulate_only)
                self._send_control_request(self.CID_CHARGE_SLOT1_AMPS, state.charge_amps, simulate_only)
                self._send_control_request(self.CID_CHARGE_SLOT1_TIME, state.charge_times, simulate_only)
                self._send_control_request(
                    self.CID_DISCHARGE_SLOT1_AMPS, state.discharge_amps, simulate_only
                )
                self._send_control_request(
                    self.CID_DISCHARGE_SLOT1_TIME, state.discharge_times, simulate_only
                )
            else:
                values = (
                    f"{state.charge_amps},{state.discharge_amps},{state.charge_times},"
                    f"{state.discharge_times},0,0,00:00-00:00,00:00-00:00,0,0,00:00-00:00,00:00-00:00"
                )
                self._send_control_request(self.CID_SET_CHARGE, values, simulate_only)
        except InverterCommunicationError as e:
            logger.error("Failed to write charge state to inverter: %s", e)
            return False
        return True

    def get_historic_data(self, day: date) -> list[InverterFiveMinData]:
        today = utc_now().date()
        # Earlier days never change, today does
        if day != today and day in self._day_cache:
            return list(self._day_cache[day])

        try:
            result = self._post(
                1,
                "inverterDay",
                {"sn": self.serial, "money": "UKP", "time": f"{day:%Y-%m-%d}", "timezone": 0},
            )
        except InverterCommunicationError as e:
            logger.error("Failed to get inverter history for %s: %s", day, e)
            return []

        samples = convert_inverter_day(result.get("data") or [])
        logger.info("Retrieved %d inverter stats for %s", len(samples), f"{day:%d-%b-%Y}")
        if samples and day != today:
            self._day_cache[day] = samples
        return samples

    def update_inverter_time(self, simulate_only: bool) -> None:
        logger.info("Updating inverter time to avoid drift...")
        now_local = datetime.now(tz=TIMEZONE).strftime("%Y-%m-%d %H:%M:%S")
        try:
            self._send_control_request(self.CID_SET_INVERTER_TIME, now_local, simulate_only)
        except InverterCommunicationError as e:
            logger.error("Failed to update inverter time: %s", e)


def _parse_time_str(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=UTC)
    except ValueError:
        return None


def convert_inverter_day(records: list[dict]) -> list[InverterFiveMinData]:
    """Turn SolisCloud day records (cumulative daily totals) into per-sample deltas."""
    samples = []
    last_yield = last_house = last_import = last_export = 0.0
    for entry in records:
        start = _parse_time_str(entry.get("timeStr"))
        if start is None:
            continue
        e_today = float(entry.get("eToday") or 0)
        house = float(entry.get("homeLoadTodayEnergy") or 0)
        imported = float(entry.get("gridPurchasedTodayEnergy") or 0)
        exported = float(entry.get("gridSellTodayEnergy") or 0)
        samples.append(
            InverterFiveMinData(
                start=start,
                battery_soc=float(entry.get("batteryCapacitySoc") or 0),
                battery_power_kw=float(entry.get("batteryPower") or 0),
                pv_power_kw=float(entry.get("pSum") or 0) / 1000.0,
                house_load_kw=float(entry.get("familyLoadPower") or 0),
                house_load_kwh=house - last_house,
                pv_yield_kwh=e_today - last_yield,
                import_kwh=imported - last_import,
                export_kwh=exported - last_export,
            )
        )
        last_yield, last_house, last_import, last_export = e_today, house, imported, exported
    return samples


def create_inverter(settings: InverterSettings, max_charge_rate_amps: int) -> Inverter:
    """Build the inverter backend selected by ``settings.type``.

    Raises:
        SystemConfigurationError: For an unknown type or missing credentials
    """
    if settings.type == "simulated":
        return SimulatedInverter(max_charge_rate_amps=max_charge_rate_amps)
    if settings.type == "solis":
        if not settings.is_valid:
            raise SystemConfigurationError(
                "inverter", "Solis inverter needs an API key, API secret and serial number"
            )
        return SolisCloudInverter(
            api_key=settings.api_key,
            api_secret=settings.api_secret,
            serial=settings.serial,
            max_charge_rate_amps=max_charge_rate_amps,
        )
    raise SystemConfigurationError("inverter", f"Unknown inverter type '{settings.type}'")
