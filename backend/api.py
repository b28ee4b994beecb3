"""
API endpoints for the plan view, manual overrides, battery tools, history, config
and Octopus tariff lookups.

"""

from api_conversion import convert_keys_to_camel_case, convert_keys_to_snake_case
from api_dataclasses import (
    APIHistoryEntry,
    APIOverrideRequest,
    APIStateResponse,
    APITariffComparison,
)
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from core.agile.exceptions import (
    ConfigValidationError,
    PriceDataUnavailableError,
    SystemConfigurationError,
)
from core.agile.settings import ManagerConfig

router = APIRouter()

TOOLS = {
    "charge": "charge_battery",
    "discharge": "discharge_battery",
    "dumpandcharge": "dump_and_charge_battery",
    "testcharge": "test_charge",
}


@router.get("/api/state")
async def get_state():
    """Current slot plan and battery telemetry."""
    from app import agile_controller

    try:
        state = agile_controller.manager.get_current_state()
        return convert_keys_to_camel_case(APIStateResponse.from_internal(state))
    except Exception as e:
        logger.error(f"Error getting plan state: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/history")
async def get_history():
    """Executed slots, newest first."""
    from app import agile_controller

    try:
        entries = agile_controller.manager.get_history()
        return convert_keys_to_camel_case(
            [APIHistoryEntry.from_internal(entry) for entry in reversed(entries)]
        )
    except Exception as e:
        logger.error(f"Error getting execution history: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/api/overrides")
async def set_override(request: dict):
    """Toggle a manual override on one slot."""
    from app import agile_controller

    try:
        slot_start, action = APIOverrideRequest(**request).to_internal()
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid override request {request}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        override_set = agile_controller.manager.override_slot_action(slot_start, action)
        return {"success": True, "overrideSet": override_set}
    except Exception as e:
        logger.error(f"Error applying override: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.delete("/api/overrides")
async def clear_overrides():
    from app import agile_controller

    try:
        agile_controller.manager.clear_manual_overrides()
        return {"success": True}
    except Exception as e:
        logger.error(f"Error clearing overrides: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/api/recalculate")
async def recalculate():
    """Re-run the plan on the current prices."""
    from app import agile_controller

    try:
        agile_controller.manager.recalculate()
        return {"success": True}
    except Exception as e:
        logger.error(f"Error recalculating plan: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/api/tools/{tool}")
async def run_tool(tool: str):
    """One-shot battery tools: charge, discharge, dumpandcharge, testcharge."""
    from app import agile_controller

    method_name = TOOLS.get(tool.lower())
    if method_name is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool '{tool}'")

    try:
        getattr(agile_controller.manager, method_name)()
        logger.info(f"Battery tool '{tool}' applied")
        return {"success": True}
    except Exception as e:
        logger.error(f"Error running battery tool {tool}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/config")
async def get_config():
    from app import agile_controller

    try:
        return convert_keys_to_camel_case(agile_controller.manager.get_config().to_dict())
    except Exception as e:
        logger.error(f"Error getting config: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/api/config")
async def save_config(config: dict):
    """Validate and save a new config. Nothing is persisted on rejection."""
    from app import agile_controller

    try:
        new_config = ManagerConfig.from_dict(convert_keys_to_snake_case(config))
        agile_controller.manager.save_config(new_config)
        return {"success": True, "message": "Config saved"}
    except (ConfigValidationError, TypeError, ValueError) as e:
        logger.warning(f"Config rejected: {e}")
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    except Exception as e:
        logger.error(f"Error saving config: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/system-health")
async def get_system_health():
    """Tariff source reachability and last refresh times."""
    from app import agile_controller

    try:
        manager = agile_controller.manager
        state = manager.get_current_state()
        return convert_keys_to_camel_case(
            {
                "checks": manager.price_manager.check_health(),
                "prices_cached_at": manager.price_manager.cache_timestamp,
                "last_update": state["battery"].last_update,
                "simulate": state["simulate"],
            }
        )
    except Exception as e:
        logger.error(f"Error getting system health: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/octopus/products")
async def get_octopus_products():
    """Import products, for picking a tariff in the settings page."""
    from app import agile_controller

    try:
        return convert_keys_to_camel_case(agile_controller.manager.get_products())
    except PriceDataUnavailableError as e:
        logger.warning(f"Octopus product lookup failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Error getting Octopus products: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/octopus/tariffs/{product}")
async def get_octopus_tariffs(product: str):
    from app import agile_controller

    try:
        return agile_controller.manager.get_tariffs(product)
    except PriceDataUnavailableError as e:
        logger.warning(f"Octopus tariff lookup for {product} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Error getting tariffs for {product}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/tariff-comparison/{tariff_a}/{tariff_b}")
async def get_tariff_comparison(tariff_a: str, tariff_b: str):
    """Upcoming prices of two tariffs side by side."""
    from app import agile_controller

    try:
        comparison = agile_controller.manager.compare_tariffs(tariff_a, tariff_b)
        return convert_keys_to_camel_case(APITariffComparison.from_internal(comparison))
    except SystemConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PriceDataUnavailableError as e:
        logger.warning(f"Tariff comparison failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Error comparing tariffs: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e
