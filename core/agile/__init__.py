"""Agile tariff battery management package."""

# Define public API - only include what users should directly access
__all__ = [
    "BatterySettings",  # Public settings classes
    "ExecutionHistoryStore",
    "HistoryEntry",
    "ManagerConfig",
    "PlanManager",  # Main facade
    "PriceSlot",
    "SlotAction",
    "TariffSettings",
    "create_inverter",
]

# Import settings used by other modules
from .settings import (  # noqa: I001
    BatterySettings,
    ManagerConfig,
    TariffSettings,
)

from .models import PriceSlot, SlotAction
from .history_store import ExecutionHistoryStore, HistoryEntry

# Inverter backends are chosen by config
from .inverter import create_inverter

# Import main facade class (the primary entry point to the system)
from .plan_manager import PlanManager
